"""Tests for the pinhole camera model."""

from pathlib import Path

import numpy as np
import pytest

from depthvo.frontend.camera import CameraIntrinsics, DistortionCoeffs, PinholeCamera


@pytest.fixture
def sensor_yaml(tmp_path: Path) -> Path:
    """Write a EuRoC style calibration file.

    Args:
        tmp_path: Pytest temporary directory fixture

    Returns:
        Path to the sensor.yaml file
    """
    path = tmp_path / "sensor.yaml"
    path.write_text(
        "sensor_type: camera\n"
        "resolution: [752, 480]\n"
        "camera_model: pinhole\n"
        "intrinsics: [458.654, 457.296, 367.215, 248.375]\n"
        "distortion_model: radial-tangential\n"
        "distortion_coefficients: [-0.28340811, 0.07395907, 0.00019359, 1.76187114e-05]\n"
    )
    return path


class TestPinholeCamera:
    """Test suite for PinholeCamera."""

    def test_from_yaml(self, sensor_yaml: Path):
        """Test parsing a calibration file."""
        camera = PinholeCamera.from_yaml(sensor_yaml)

        assert camera.width == 752
        assert camera.height == 480
        assert camera.intrinsics.fx == pytest.approx(458.654)
        assert camera.intrinsics.cy == pytest.approx(248.375)
        assert camera.distortion.k1 == pytest.approx(-0.28340811)
        assert not camera.distortion.is_zero

    def test_from_yaml_without_distortion(self, tmp_path: Path):
        """Test that rectified calibrations may omit distortion."""
        path = tmp_path / "sensor.yaml"
        path.write_text("resolution: [640, 480]\nintrinsics: [500, 500, 320, 240]\n")

        camera = PinholeCamera.from_yaml(path)

        assert camera.distortion.is_zero

    def test_from_yaml_missing_file(self, tmp_path: Path):
        """Test that a missing file is reported."""
        with pytest.raises(FileNotFoundError, match="Calibration file not found"):
            PinholeCamera.from_yaml(tmp_path / "missing.yaml")

    def test_from_yaml_invalid(self, tmp_path: Path):
        """Test that malformed calibrations are rejected."""
        path = tmp_path / "sensor.yaml"
        path.write_text("resolution: [640, 480]\nintrinsics: [500, 500]\n")
        with pytest.raises(ValueError, match="intrinsics"):
            PinholeCamera.from_yaml(path)

        path.write_text("intrinsics: [500, 500, 320, 240]\n")
        with pytest.raises(ValueError, match="resolution"):
            PinholeCamera.from_yaml(path)

    def test_pixel_to_norm(self, camera):
        """Test the linear model without distortion."""
        assert np.allclose(camera.pixel_to_norm(np.array([50.0, 50.0])), [0.0, 0.0])
        norm = camera.pixel_to_norm(np.array([[150.0, 50.0], [50.0, 0.0]]))
        assert np.allclose(norm, [[1.0, 0.0], [0.0, -0.5]])
        assert camera.pixel_to_norm(np.empty((0, 2))).shape == (0, 2)

    def test_norm_to_pixel(self, camera):
        """Test projecting normalized coordinates."""
        assert np.allclose(camera.norm_to_pixel(np.array([0.1, -0.2])), [60.0, 30.0])

    def test_distortion_is_undone(self, sensor_yaml: Path):
        """Test that undistortion inverts the distortion model."""
        camera = PinholeCamera.from_yaml(sensor_yaml)
        norm = np.array([[0.1, -0.05], [-0.3, 0.2], [0.0, 0.0]])

        pixels = camera.norm_to_pixel(norm)

        assert np.allclose(camera.pixel_to_norm(pixels), norm, atol=1e-4)

    def test_camera_matrix(self):
        """Test the intrinsic matrix."""
        camera = PinholeCamera(
            width=10, height=10, intrinsics=CameraIntrinsics(1.0, 2.0, 3.0, 4.0)
        )
        expected = np.array([[1.0, 0.0, 3.0], [0.0, 2.0, 4.0], [0.0, 0.0, 1.0]])
        assert np.allclose(camera.camera_matrix, expected)
        assert DistortionCoeffs().is_zero

    def test_is_inside(self, camera):
        """Test image bounds."""
        assert camera.is_inside(0.0, 0.0)
        assert camera.is_inside(99.5, 99.5)
        assert not camera.is_inside(100.0, 50.0)
        assert not camera.is_inside(-0.1, 50.0)
