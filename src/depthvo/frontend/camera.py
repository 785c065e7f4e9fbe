"""Pinhole camera model with radial-tangential distortion."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

import cv2
import numpy as np
import yaml


@dataclass
class CameraIntrinsics:
    """Camera intrinsic parameters (pinhole model)."""

    fx: float  # Focal length x (pixels)
    fy: float  # Focal length y (pixels)
    cx: float  # Principal point x (pixels)
    cy: float  # Principal point y (pixels)

    def to_matrix(self) -> np.ndarray:
        """Return 3x3 camera intrinsic matrix K."""
        return np.array(
            [[self.fx, 0.0, self.cx], [0.0, self.fy, self.cy], [0.0, 0.0, 1.0]],
            dtype=np.float64,
        )


@dataclass
class DistortionCoeffs:
    """Radial-tangential distortion coefficients."""

    k1: float = 0.0  # Radial distortion coefficient 1
    k2: float = 0.0  # Radial distortion coefficient 2
    p1: float = 0.0  # Tangential distortion coefficient 1
    p2: float = 0.0  # Tangential distortion coefficient 2

    def to_array(self) -> np.ndarray:
        """Return distortion coefficients as (4,) array for OpenCV."""
        return np.array([self.k1, self.k2, self.p1, self.p2], dtype=np.float64)

    @property
    def is_zero(self) -> bool:
        return not np.any(self.to_array())


@dataclass
class PinholeCamera:
    """Calibrated camera used by the odometry core.

    Converts between distorted pixel coordinates and normalized image
    coordinates (x/z, y/z). Normalized coordinates are what the motion
    estimator and triangulation consume; pixels are what the tracker
    reports and what bundle adjustment minimizes the error of.

    Attributes:
        width: Image width in pixels
        height: Image height in pixels
        intrinsics: Pinhole intrinsics
        distortion: Radial-tangential distortion (zero for rectified images)
    """

    width: int
    height: int
    intrinsics: CameraIntrinsics
    distortion: DistortionCoeffs = field(default_factory=DistortionCoeffs)

    @classmethod
    def from_yaml(cls, yaml_path: str | Path) -> PinholeCamera:
        """Parse a EuRoC style sensor.yaml calibration file.

        Args:
            yaml_path: Path to sensor.yaml file

        Returns:
            Camera described by the file

        Raises:
            FileNotFoundError: If file doesn't exist
            ValueError: If file format is invalid
        """
        path = Path(yaml_path)
        if not path.exists():
            raise FileNotFoundError(f"Calibration file not found: {yaml_path}")

        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}

        # Parse intrinsics [fu, fv, cu, cv]
        intrinsics_list = data.get("intrinsics")
        if intrinsics_list is None or len(intrinsics_list) != 4:
            raise ValueError(f"Invalid intrinsics in {yaml_path}")

        # Distortion is optional, rectified sources omit it
        distortion_list = data.get("distortion_coefficients", [0.0, 0.0, 0.0, 0.0])
        if len(distortion_list) != 4:
            raise ValueError(f"Invalid distortion coefficients in {yaml_path}")

        resolution = data.get("resolution")
        if resolution is None or len(resolution) != 2:
            raise ValueError(f"Invalid resolution in {yaml_path}")

        return cls(
            width=int(resolution[0]),
            height=int(resolution[1]),
            intrinsics=CameraIntrinsics(*(float(v) for v in intrinsics_list)),
            distortion=DistortionCoeffs(*(float(v) for v in distortion_list)),
        )

    @property
    def camera_matrix(self) -> np.ndarray:
        """Return 3x3 intrinsic matrix K."""
        return self.intrinsics.to_matrix()

    def pixel_to_norm(self, pixels: np.ndarray) -> np.ndarray:
        """Convert distorted pixel coordinates to normalized coordinates.

        Args:
            pixels: (2,) or Nx2 pixel coordinates

        Returns:
            Array of the same shape holding normalized image coordinates
        """
        pixels = np.asarray(pixels, dtype=np.float64)
        single = pixels.ndim == 1
        pts = pixels.reshape(-1, 2)
        if len(pts) == 0:
            return np.empty((0, 2), dtype=np.float64)

        if self.distortion.is_zero:
            K = self.intrinsics
            norm = np.column_stack(
                [(pts[:, 0] - K.cx) / K.fx, (pts[:, 1] - K.cy) / K.fy]
            )
        else:
            norm = cv2.undistortPoints(
                pts.reshape(-1, 1, 2),
                self.camera_matrix,
                self.distortion.to_array(),
            ).reshape(-1, 2)

        return norm[0] if single else norm

    def norm_to_pixel(self, norm: np.ndarray) -> np.ndarray:
        """Apply distortion and intrinsics to normalized coordinates.

        Args:
            norm: (2,) or Nx2 normalized image coordinates

        Returns:
            Array of the same shape holding pixel coordinates
        """
        norm = np.asarray(norm, dtype=np.float64)
        single = norm.ndim == 1
        pts = norm.reshape(-1, 2)
        x, y = pts[:, 0], pts[:, 1]

        d = self.distortion
        r2 = x * x + y * y
        radial = 1.0 + d.k1 * r2 + d.k2 * r2 * r2
        xd = x * radial + 2.0 * d.p1 * x * y + d.p2 * (r2 + 2.0 * x * x)
        yd = y * radial + d.p1 * (r2 + 2.0 * y * y) + 2.0 * d.p2 * x * y

        K = self.intrinsics
        pixels = np.column_stack([K.fx * xd + K.cx, K.fy * yd + K.cy])
        return pixels[0] if single else pixels

    def is_inside(self, x: float, y: float) -> bool:
        """Return True if the pixel lies inside the image bounds."""
        return 0.0 <= x < self.width and 0.0 <= y < self.height
