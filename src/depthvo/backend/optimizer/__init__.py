"""Bundle adjustment optimizers."""

from .scipy_ba import (
    BAObservation,
    BAResult,
    BundleAdjustment,
    SceneObservations,
    SceneStructure,
    SceneView,
    ScipyBundleAdjustment,
)

__all__ = [
    "ScipyBundleAdjustment",
    "BundleAdjustment",
    "BAResult",
    "BAObservation",
    "SceneStructure",
    "SceneView",
    "SceneObservations",
]
