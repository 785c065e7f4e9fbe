"""SE(3) pose representation for rigid body transformations."""

from __future__ import annotations

from dataclasses import dataclass

import cv2
import numpy as np


@dataclass
class SE3:
    """Rigid body transformation (rotation + translation) in SE(3).

    A frame pose is stored as T_world_frame, transforming points from the
    frame's local coordinates into world coordinates:

        p_world = R @ p_local + t

    Attributes:
        rotation: 3x3 orthonormal rotation matrix (det = +1)
        translation: 3D translation vector
    """

    rotation: np.ndarray  # 3x3 rotation matrix
    translation: np.ndarray  # (3,) translation vector

    def __post_init__(self) -> None:
        """Validate and normalize inputs."""
        self.rotation = np.asarray(self.rotation, dtype=np.float64)
        self.translation = np.asarray(self.translation, dtype=np.float64).flatten()

        if self.rotation.shape != (3, 3):
            raise ValueError(f"Rotation must be 3x3, got {self.rotation.shape}")
        if self.translation.shape != (3,):
            raise ValueError(
                f"Translation must be (3,), got {self.translation.shape}"
            )

    @classmethod
    def identity(cls) -> SE3:
        """Create identity transformation (no rotation, no translation)."""
        return cls(rotation=np.eye(3), translation=np.zeros(3))

    @classmethod
    def from_matrix(cls, T: np.ndarray) -> SE3:
        """Create SE3 from 4x4 homogeneous transformation matrix.

        Args:
            T: 4x4 transformation matrix of the form [[R t] [0 1]]

        Returns:
            SE3 transformation
        """
        T = np.asarray(T)
        if T.shape != (4, 4):
            raise ValueError(f"Transform must be 4x4, got {T.shape}")
        return cls(rotation=T[:3, :3], translation=T[:3, 3])

    @classmethod
    def from_rvec_tvec(cls, rvec: np.ndarray, tvec: np.ndarray) -> SE3:
        """Create SE3 from OpenCV Rodrigues vector and translation.

        cv2.solvePnP returns the transform taking object points into the
        camera, so the result of this call is T_camera_object.

        Args:
            rvec: 3D Rodrigues rotation vector (axis * angle)
            tvec: 3D translation vector

        Returns:
            SE3 transformation
        """
        R, _ = cv2.Rodrigues(np.asarray(rvec, dtype=np.float64).flatten())
        return cls(rotation=R, translation=np.asarray(tvec).flatten())

    def to_matrix(self) -> np.ndarray:
        """Convert to 4x4 homogeneous transformation matrix."""
        T = np.eye(4, dtype=np.float64)
        T[:3, :3] = self.rotation
        T[:3, 3] = self.translation
        return T

    def to_rvec_tvec(self) -> tuple[np.ndarray, np.ndarray]:
        """Convert to OpenCV Rodrigues vector and translation."""
        rvec, _ = cv2.Rodrigues(self.rotation)
        return rvec.flatten(), self.translation.copy()

    def inverse(self) -> SE3:
        """Compute the inverse transformation T^{-1}.

        For T = [R, t], the inverse is [R^T, -R^T @ t].
        """
        R_inv = self.rotation.T
        t_inv = -R_inv @ self.translation
        return SE3(rotation=R_inv, translation=t_inv)

    def compose(self, other: SE3) -> SE3:
        """Chain two transforms, ``other`` is applied first.

        The odometry pipeline places a new frame with
        ``T_world_prev.compose(T_prev_curr)``, giving T_world_curr.
        """
        return SE3(
            rotation=self.rotation @ other.rotation,
            translation=self.rotation @ other.translation + self.translation,
        )

    def transform_point(self, point: np.ndarray) -> np.ndarray:
        """Map a single 3D point through the transform."""
        return self.transform_points(point)[0]

    def transform_points(self, points: np.ndarray) -> np.ndarray:
        """Map an Nx3 array of points through the transform."""
        points = np.asarray(points, dtype=np.float64).reshape(-1, 3)
        return points @ self.rotation.T + self.translation

    def transform_homogeneous(self, point: np.ndarray) -> np.ndarray:
        """Transform a homogeneous 4-vector (x, y, z, w).

        The translation is scaled by w, so points at infinity (w = 0) are
        only rotated. The weight is carried through unchanged.

        Args:
            point: Homogeneous point (4,)

        Returns:
            Transformed homogeneous point (4,)
        """
        point = np.asarray(point, dtype=np.float64).flatten()
        if point.shape != (4,):
            raise ValueError(f"Homogeneous point must be (4,), got {point.shape}")
        xyz = self.rotation @ point[:3] + self.translation * point[3]
        return np.append(xyz, point[3])

    def copy(self) -> SE3:
        return SE3(rotation=self.rotation.copy(), translation=self.translation.copy())

    def __repr__(self) -> str:
        rvec, t = self.to_rvec_tvec()
        return (
            f"SE3(rvec=[{rvec[0]:.4f}, {rvec[1]:.4f}, {rvec[2]:.4f}], "
            f"t=[{t[0]:.3f}, {t[1]:.3f}, {t[2]:.3f}])"
        )

    __matmul__ = compose
