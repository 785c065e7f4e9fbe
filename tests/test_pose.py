"""Tests for the SE3 transform."""

import numpy as np
import pytest

from depthvo.frontend.pose import SE3


@pytest.fixture
def pose() -> SE3:
    return SE3.from_rvec_tvec(np.array([0.1, -0.2, 0.3]), np.array([1.0, 2.0, 3.0]))


class TestSE3:
    """Test suite for SE3."""

    def test_identity(self):
        """Test that identity leaves points alone."""
        point = np.array([1.0, 2.0, 3.0])
        assert np.allclose(SE3.identity().transform_point(point), point)

    def test_inverse(self, pose):
        """Test that a transform composed with its inverse is identity."""
        assert np.allclose((pose @ pose.inverse()).to_matrix(), np.eye(4))
        assert np.allclose((pose.inverse() @ pose).to_matrix(), np.eye(4))

    def test_compose_matches_matrices(self, pose):
        """Test composition against 4x4 matrix multiplication."""
        other = SE3(rotation=np.eye(3), translation=[0.5, 0.0, -1.0])
        expected = pose.to_matrix() @ other.to_matrix()
        assert np.allclose(pose.compose(other).to_matrix(), expected)

    def test_from_matrix(self, pose):
        """Test construction from a 4x4 matrix."""
        assert np.allclose(SE3.from_matrix(pose.to_matrix()).to_matrix(), pose.to_matrix())
        with pytest.raises(ValueError, match="4x4"):
            SE3.from_matrix(np.eye(3))

    def test_rvec_tvec(self, pose):
        """Test conversion to and from OpenCV vectors."""
        rvec, tvec = pose.to_rvec_tvec()
        assert np.allclose(rvec, [0.1, -0.2, 0.3])
        assert np.allclose(tvec, [1.0, 2.0, 3.0])

    def test_transform_points(self, pose):
        """Test batch transformation against single points."""
        points = np.array([[0.0, 0.0, 1.0], [1.0, -1.0, 2.0]])
        batch = pose.transform_points(points)
        for point, out in zip(points, batch):
            assert np.allclose(pose.transform_point(point), out)

    def test_transform_homogeneous(self, pose):
        """Test that the translation is scaled by the weight."""
        point = np.array([1.0, 2.0, 3.0])
        finite = pose.transform_homogeneous(np.append(point * 2.0, 2.0))
        assert finite[3] == 2.0
        assert np.allclose(finite[:3] / finite[3], pose.transform_point(point))

        infinite = pose.transform_homogeneous(np.append(point, 0.0))
        assert infinite[3] == 0.0
        assert np.allclose(infinite[:3], pose.rotation @ point)

    def test_invalid_shapes(self):
        """Test that malformed inputs are rejected."""
        with pytest.raises(ValueError, match="Rotation"):
            SE3(rotation=np.eye(2), translation=np.zeros(3))
        with pytest.raises(ValueError, match="Translation"):
            SE3(rotation=np.eye(3), translation=np.zeros(2))
        with pytest.raises(ValueError, match="Homogeneous"):
            SE3.identity().transform_homogeneous(np.zeros(3))

    def test_copy_is_independent(self, pose):
        """Test that copies do not share arrays."""
        copy = pose.copy()
        copy.translation[0] = 100.0
        assert pose.translation[0] == 1.0
