"""Configuration for the visual odometry pipeline.

Every section is a plain dataclass with working defaults. ``load_config``
reads the same structure from a YAML file, for example::

    threshold_retire_tracks: 2
    keyframe:
      policy: periodic
      max_key_frames: 5
      period: 3
    motion:
      pixel_threshold: 1.5
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml

KEYFRAME_POLICIES = ("coverage", "periodic")
LOSS_FUNCTIONS = ("linear", "huber", "soft_l1", "cauchy", "arctan")


@dataclass
class TrackerConfig:
    """Configuration for the KLT point tracker."""

    max_features: int = 400
    min_distance: float = 10.0
    quality_level: float = 0.01
    window_size: int = 21
    pyramid_levels: int = 3
    max_fb_error: float = 1.0


@dataclass
class MotionConfig:
    """Configuration for PnP motion estimation."""

    pixel_threshold: float = 1.5  # RANSAC inlier threshold (pixels)
    ransac_confidence: float = 0.99
    max_iterations: int = 500
    min_inliers: int = 10
    refine: bool = True  # Non-linear refinement with all inliers
    refine_iterations: int = 20


@dataclass
class BundleConfig:
    """Configuration for windowed bundle adjustment."""

    max_iterations: int = 50
    loss_function: str = "huber"
    f_scale: float = 2.0
    min_observations: int = 10
    max_features_per_frame: int = 200
    min_track_observations: int = 3


@dataclass
class KeyFrameConfig:
    """Configuration for the keyframe window."""

    policy: str = "coverage"
    max_key_frames: int = 5
    period: int = 3  # periodic policy only
    min_coverage: float = 0.4  # coverage policy only
    grid_cells: int = 100  # coverage policy only


@dataclass
class VisualOdometryConfig:
    """Top level configuration of the odometry pipeline."""

    # tracks are retired after lagging the inlier set by more than this many frames
    threshold_retire_tracks: int = 2
    tracker: TrackerConfig = field(default_factory=TrackerConfig)
    motion: MotionConfig = field(default_factory=MotionConfig)
    bundle: BundleConfig = field(default_factory=BundleConfig)
    keyframe: KeyFrameConfig = field(default_factory=KeyFrameConfig)

    def validate(self) -> None:
        """Check value ranges.

        Raises:
            ValueError: If a value is out of range
        """
        if self.threshold_retire_tracks < 0:
            raise ValueError("threshold_retire_tracks must be non-negative")
        if self.keyframe.policy not in KEYFRAME_POLICIES:
            raise ValueError(
                f"Unknown keyframe policy '{self.keyframe.policy}', "
                f"expected one of {KEYFRAME_POLICIES}"
            )
        if self.keyframe.max_key_frames < 2:
            raise ValueError("max_key_frames must be at least 2")
        if self.keyframe.period <= 0:
            raise ValueError("keyframe period must be positive")
        if not 0.0 <= self.keyframe.min_coverage <= 1.0:
            raise ValueError("min_coverage must be in [0, 1]")
        if self.bundle.loss_function not in LOSS_FUNCTIONS:
            raise ValueError(f"Unknown loss function '{self.bundle.loss_function}'")
        if self.bundle.max_features_per_frame <= 0:
            raise ValueError("max_features_per_frame must be positive")
        if self.motion.pixel_threshold <= 0:
            raise ValueError("pixel_threshold must be positive")
        if self.motion.min_inliers < 4:
            raise ValueError("min_inliers must be at least 4")
        if self.tracker.max_features <= 0:
            raise ValueError("tracker max_features must be positive")


_SECTIONS = {
    "tracker": TrackerConfig,
    "motion": MotionConfig,
    "bundle": BundleConfig,
    "keyframe": KeyFrameConfig,
}


def _build_section(cls: type, name: str, data: Any) -> Any:
    if data is None:
        return cls()
    if not isinstance(data, dict):
        raise ValueError(f"Section '{name}' must be a mapping")
    known = {f.name for f in fields(cls)}
    unknown = set(data) - known
    if unknown:
        raise ValueError(f"Unknown keys in '{name}': {sorted(unknown)}")
    return cls(**data)


def config_from_dict(data: dict[str, Any]) -> VisualOdometryConfig:
    """Build and validate a configuration from a nested dictionary."""
    data = dict(data or {})
    kwargs: dict[str, Any] = {}
    for name, cls in _SECTIONS.items():
        kwargs[name] = _build_section(cls, name, data.pop(name, None))

    if "threshold_retire_tracks" in data:
        kwargs["threshold_retire_tracks"] = int(data.pop("threshold_retire_tracks"))
    if data:
        raise ValueError(f"Unknown configuration keys: {sorted(data)}")

    config = VisualOdometryConfig(**kwargs)
    config.validate()
    return config


def load_config(yaml_path: str | Path) -> VisualOdometryConfig:
    """Load the pipeline configuration from a YAML file.

    Raises:
        FileNotFoundError: If the file doesn't exist
        ValueError: If the file contents are invalid
    """
    path = Path(yaml_path)
    if not path.exists():
        raise FileNotFoundError(f"Configuration file not found: {yaml_path}")

    with open(path, "r") as f:
        data = yaml.safe_load(f)

    if data is not None and not isinstance(data, dict):
        raise ValueError(f"Configuration in {yaml_path} must be a mapping")
    return config_from_dict(data or {})
