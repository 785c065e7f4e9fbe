"""Tests for scipy bundle adjustment."""

import numpy as np
import pytest

from depthvo.backend.optimizer import (
    SceneObservations,
    SceneStructure,
    ScipyBundleAdjustment,
)
from depthvo.frontend.pose import SE3


def make_problem(camera, n_points: int = 30, seed: int = 1):
    """Three views looking down +z at points 4-6 m away."""
    rng = np.random.default_rng(seed)
    points = np.column_stack(
        [
            rng.uniform(-1.0, 1.0, n_points),
            rng.uniform(-1.0, 1.0, n_points),
            rng.uniform(4.0, 6.0, n_points),
            np.ones(n_points),
        ]
    )
    # frame to world poses
    poses = [
        SE3.identity(),
        SE3(rotation=np.eye(3), translation=[0.3, 0.0, 0.0]),
        SE3(rotation=np.eye(3), translation=[0.6, 0.1, 0.0]),
    ]

    structure = SceneStructure(camera=camera)
    observations = SceneObservations()
    for view_idx, pose in enumerate(poses):
        world_to_view = pose.inverse()
        structure.add_view(world_to_view, fixed=view_idx == 0)
        p_cam = world_to_view.transform_points(points[:, :3])
        pixels = camera.norm_to_pixel(p_cam[:, :2] / p_cam[:, 2:3])
        for point_idx, pixel in enumerate(pixels):
            observations.add(view_idx, point_idx, pixel)

    structure.set_points(points / np.linalg.norm(points, axis=1, keepdims=True))
    return structure, observations, poses


class TestScipyBundleAdjustment:
    """Test suite for ScipyBundleAdjustment."""

    def test_refines_perturbed_problem(self, camera):
        """Test that noisy points and poses end with a lower cost."""
        structure, observations, _ = make_problem(camera)
        rng = np.random.default_rng(2)
        noisy = structure.copy()
        noisy.points = noisy.points + rng.normal(0.0, 0.01, noisy.points.shape)
        view = noisy.views[2].world_to_view
        noisy.views[2].world_to_view = SE3(
            rotation=view.rotation, translation=view.translation + [0.02, -0.01, 0.0]
        )

        ba = ScipyBundleAdjustment(loss="linear")
        ba.set_problem(noisy, observations)
        result = ba.optimize(noisy)

        assert result.success
        assert result.final_cost < result.initial_cost
        refined = result.structure
        assert np.allclose(np.linalg.norm(refined.points, axis=1), 1.0)
        # the fixed view is untouched
        assert np.allclose(
            refined.views[0].world_to_view.to_matrix(),
            noisy.views[0].world_to_view.to_matrix(),
        )
        # input is not modified
        assert noisy.views[2].world_to_view.translation[0] == pytest.approx(-0.58)

    def test_exact_problem_stays_put(self, camera):
        """Test that a noise free problem converges to its own solution."""
        structure, observations, poses = make_problem(camera)

        ba = ScipyBundleAdjustment()
        ba.set_problem(structure, observations)
        result = ba.optimize(structure)

        assert result.final_cost < 1e-6
        if result.success:
            for view, pose in zip(result.structure.views, poses):
                assert np.allclose(
                    view.world_to_view.inverse().translation, pose.translation, atol=1e-3
                )

    def test_too_few_observations(self, camera):
        """Test that small problems are skipped."""
        structure, observations, _ = make_problem(camera, n_points=3)

        ba = ScipyBundleAdjustment(min_observations=10)
        ba.set_problem(structure, observations)
        result = ba.optimize(structure)

        assert not result.success
        assert "Too few observations" in result.message

    def test_no_points(self, camera):
        """Test that a problem without points is skipped."""
        structure = SceneStructure(camera=camera)
        structure.add_view(SE3.identity(), fixed=True)

        ba = ScipyBundleAdjustment()
        ba.set_problem(structure, SceneObservations())

        assert not ba.optimize(structure).success

    def test_requires_camera(self):
        """Test that the structure must carry a camera model."""
        ba = ScipyBundleAdjustment()

        with pytest.raises(ValueError, match="camera"):
            ba.optimize(SceneStructure())

    def test_invalid_indices(self, camera):
        """Test that observations must reference existing views and points."""
        structure, _, _ = make_problem(camera, n_points=2)
        ba = ScipyBundleAdjustment()

        bad_view = SceneObservations()
        bad_view.add(5, 0, [1.0, 1.0])
        with pytest.raises(ValueError, match="unknown view"):
            ba.set_problem(structure, bad_view)

        bad_point = SceneObservations()
        bad_point.add(0, 7, [1.0, 1.0])
        with pytest.raises(ValueError, match="unknown point"):
            ba.set_problem(structure, bad_point)
