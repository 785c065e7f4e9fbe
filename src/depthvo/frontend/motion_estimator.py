"""Motion estimation using PnP with RANSAC."""

from __future__ import annotations

from dataclasses import dataclass, field

import cv2
import numpy as np

from .pose import SE3


@dataclass
class PnPResult:
    """Result of PnP pose estimation.

    Attributes:
        success: True if pose estimation succeeded
        pose: Transform from the current camera into the reference frame the
            3D points are expressed in (T_reference_current). None if failed.
        inlier_indices: Indices into the input correspondences that were
            accepted as inliers, in ascending order
        reprojection_error: Mean reprojection error of inliers (normalized
            image units)
    """

    success: bool
    pose: SE3 | None
    inlier_indices: np.ndarray = field(
        default_factory=lambda: np.empty(0, dtype=np.int64)
    )
    reprojection_error: float = float("inf")

    @property
    def num_inliers(self) -> int:
        return len(self.inlier_indices)


def _failure() -> PnPResult:
    return PnPResult(success=False, pose=None)


class MotionEstimator:
    """Estimates camera motion using PnP with RANSAC.

    Works on normalized image coordinates, so the camera matrix handed to
    OpenCV is the identity and the inlier threshold is expressed in
    normalized units. Use ``from_pixel_threshold`` to derive it from a
    pixel tolerance.
    """

    def __init__(
        self,
        inlier_threshold: float = 2.0 / 500.0,
        ransac_confidence: float = 0.99,
        max_iterations: int = 500,
        min_inliers: int = 10,
    ) -> None:
        """Initialize motion estimator.

        Args:
            inlier_threshold: RANSAC inlier threshold in normalized image units
            ransac_confidence: Desired probability of finding a good model
            max_iterations: Maximum RANSAC iterations
            min_inliers: Minimum number of inliers for a valid pose
        """
        self._inlier_threshold = inlier_threshold
        self._ransac_confidence = ransac_confidence
        self._max_iterations = max_iterations
        self._min_inliers = min_inliers

    @classmethod
    def from_pixel_threshold(
        cls, focal_length: float, pixel_threshold: float = 2.0, **kwargs
    ) -> MotionEstimator:
        """Create an estimator whose inlier threshold is given in pixels."""
        return cls(inlier_threshold=pixel_threshold / focal_length, **kwargs)

    def estimate(self, points_norm: np.ndarray, points_3d: np.ndarray) -> PnPResult:
        """Estimate the pose of the current camera relative to the 3D points.

        Args:
            points_norm: Nx2 normalized image coordinates in the current frame
            points_3d: Nx3 points in the reference frame

        Returns:
            PnPResult with estimated pose and inlier indices
        """
        n_points = len(points_3d)
        if n_points < max(4, self._min_inliers):
            return _failure()

        object_points = np.asarray(points_3d, dtype=np.float64).reshape(-1, 1, 3)
        image_points = np.asarray(points_norm, dtype=np.float64).reshape(-1, 1, 2)
        camera_matrix = np.eye(3, dtype=np.float64)

        try:
            success, rvec, tvec, inliers = cv2.solvePnPRansac(
                objectPoints=object_points,
                imagePoints=image_points,
                cameraMatrix=camera_matrix,
                distCoeffs=None,
                iterationsCount=self._max_iterations,
                reprojectionError=self._inlier_threshold,
                confidence=self._ransac_confidence,
                flags=cv2.SOLVEPNP_ITERATIVE,
            )
        except cv2.error:
            return _failure()

        if not success or inliers is None or len(inliers) < self._min_inliers:
            return _failure()

        if not np.isfinite(rvec).all() or not np.isfinite(tvec).all():
            return _failure()

        inlier_indices = np.sort(inliers.flatten()).astype(np.int64)

        # solvePnP gives T_current_reference
        pose_current_ref = SE3.from_rvec_tvec(rvec, tvec)

        reproj_error = _reprojection_error(
            object_points[inlier_indices].reshape(-1, 3),
            image_points[inlier_indices].reshape(-1, 2),
            pose_current_ref,
        )

        return PnPResult(
            success=True,
            pose=pose_current_ref.inverse(),
            inlier_indices=inlier_indices,
            reprojection_error=reproj_error,
        )

    @property
    def min_inliers(self) -> int:
        return self._min_inliers


class PoseRefiner:
    """Non-linear refinement of a PnP pose using every inlier."""

    def __init__(self, max_iterations: int = 20) -> None:
        self._criteria = (
            cv2.TERM_CRITERIA_EPS | cv2.TERM_CRITERIA_COUNT,
            max_iterations,
            1e-10,
        )

    def refine(
        self, points_norm: np.ndarray, points_3d: np.ndarray, pose: SE3
    ) -> SE3 | None:
        """Refine ``pose`` (T_reference_current) against the inliers.

        Returns:
            The refined pose, or None if refinement failed
        """
        if len(points_3d) < 4:
            return None

        rvec, tvec = pose.inverse().to_rvec_tvec()
        try:
            rvec, tvec = cv2.solvePnPRefineLM(
                np.asarray(points_3d, dtype=np.float64).reshape(-1, 1, 3),
                np.asarray(points_norm, dtype=np.float64).reshape(-1, 1, 2),
                np.eye(3, dtype=np.float64),
                np.zeros(4, dtype=np.float64),
                rvec.reshape(3, 1).copy(),
                tvec.reshape(3, 1).copy(),
                criteria=self._criteria,
            )
        except cv2.error:
            return None

        if not np.isfinite(rvec).all() or not np.isfinite(tvec).all():
            return None
        return SE3.from_rvec_tvec(rvec, tvec).inverse()


def _reprojection_error(
    points_3d: np.ndarray, points_norm: np.ndarray, pose_cam_ref: SE3
) -> float:
    if len(points_3d) == 0:
        return 0.0
    p_cam = pose_cam_ref.transform_points(points_3d)
    with np.errstate(divide="ignore", invalid="ignore"):
        projected = p_cam[:, :2] / p_cam[:, 2:3]
    errors = np.linalg.norm(projected - points_norm, axis=1)
    errors = errors[np.isfinite(errors)]
    if len(errors) == 0:
        return float("inf")
    return float(np.mean(errors))
