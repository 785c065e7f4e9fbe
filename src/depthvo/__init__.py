"""Python DepthVO - keyframe visual odometry for cameras with range data."""

import logging

__version__ = "0.1.0"

# Re-export main classes for convenient imports
from .backend import (
    BAResult,
    BundleGraph,
    CoverageKeyFramePolicy,
    Frame,
    GraphConsistencyError,
    KeyFramePolicy,
    Observation,
    PeriodicKeyFramePolicy,
    ScipyBundleAdjustment,
    SelectTracksInFrame,
    Track,
)
from .config import VisualOdometryConfig, config_from_dict, load_config
from .frontend import (
    SE3,
    DepthPixelTo3D,
    KltPointTracker,
    MotionEstimator,
    PinholeCamera,
    PixelTo3D,
    PointTrack,
    PointTracker,
    PoseRefiner,
)
from .visual_odometry import VisualOdometry, VOTiming

logging.getLogger(__name__).addHandler(logging.NullHandler())

__all__ = [
    "__version__",
    # Odometry
    "VisualOdometry",
    "VOTiming",
    # Configuration
    "VisualOdometryConfig",
    "config_from_dict",
    "load_config",
    # Frontend
    "SE3",
    "PinholeCamera",
    "PointTrack",
    "PointTracker",
    "KltPointTracker",
    "PixelTo3D",
    "DepthPixelTo3D",
    "MotionEstimator",
    "PoseRefiner",
    # Backend
    "BundleGraph",
    "Frame",
    "Track",
    "Observation",
    "GraphConsistencyError",
    "SelectTracksInFrame",
    "KeyFramePolicy",
    "PeriodicKeyFramePolicy",
    "CoverageKeyFramePolicy",
    "ScipyBundleAdjustment",
    "BAResult",
]
