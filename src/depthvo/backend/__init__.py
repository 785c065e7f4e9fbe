"""Odometry backend: keyframe graph, track selection and bundle adjustment."""

from .graph import (
    BundleGraph,
    Frame,
    GraphConsistencyError,
    Observation,
    Track,
    remove_swap,
)
from .keyframe import (
    CoverageKeyFramePolicy,
    ImageCoverage,
    KeyFramePolicy,
    PeriodicKeyFramePolicy,
    redundancy_score,
)
from .optimizer import (
    BAResult,
    BundleAdjustment,
    SceneObservations,
    SceneStructure,
    ScipyBundleAdjustment,
)
from .track_selection import SelectTracksInFrame

__all__ = [
    # Graph
    "BundleGraph",
    "Frame",
    "Track",
    "Observation",
    "GraphConsistencyError",
    "remove_swap",
    # Track selection
    "SelectTracksInFrame",
    # Keyframe policies
    "KeyFramePolicy",
    "PeriodicKeyFramePolicy",
    "CoverageKeyFramePolicy",
    "ImageCoverage",
    "redundancy_score",
    # Bundle Adjustment
    "BundleAdjustment",
    "ScipyBundleAdjustment",
    "SceneStructure",
    "SceneObservations",
    "BAResult",
]
