"""Frontend components: camera model, tracking, localization and motion.

The odometry core consumes these through small protocols so that any
tracker, range source or estimator with the same contract can be plugged in.
"""

from .camera import CameraIntrinsics, DistortionCoeffs, PinholeCamera
from .motion_estimator import MotionEstimator, PnPResult, PoseRefiner
from .pixel_to_3d import DepthPixelTo3D, PixelTo3D
from .pose import SE3
from .tracker import KltPointTracker, PointTrack, PointTracker
from .triangulation import triangulate_n_views

__all__ = [
    # Pose
    "SE3",
    # Camera
    "PinholeCamera",
    "CameraIntrinsics",
    "DistortionCoeffs",
    # Tracking
    "PointTrack",
    "PointTracker",
    "KltPointTracker",
    # Range
    "PixelTo3D",
    "DepthPixelTo3D",
    # Motion Estimation
    "MotionEstimator",
    "PoseRefiner",
    "PnPResult",
    # Triangulation
    "triangulate_n_views",
]
