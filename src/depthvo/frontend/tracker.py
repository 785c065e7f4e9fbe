"""Point feature tracking.

The odometry core only talks to the tracker through the ``PointTracker``
protocol. Each ``PointTrack`` carries a ``cookie`` slot the core uses to
attach its own landmark; the tracker never reads it.

``KltPointTracker`` is the default implementation: Shi-Tomasi corners
followed frame to frame with pyramidal Lucas-Kanade and a forward-backward
consistency check.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

import cv2
import numpy as np

logger = logging.getLogger(__name__)


@dataclass(eq=False)
class PointTrack:
    """A 2D feature followed by the tracker.

    Attributes:
        track_id: Unique feature id assigned by the tracker
        pixel: Current pixel coordinates (x, y)
        cookie: Opaque slot owned by the tracker's user
    """

    track_id: int
    pixel: np.ndarray = field(default_factory=lambda: np.zeros(2))
    cookie: Any = None

    def __post_init__(self) -> None:
        self.pixel = np.asarray(self.pixel, dtype=np.float64).flatten()


class PointTracker(Protocol):
    """Contract between the odometry core and a 2D point tracker."""

    @property
    def frame_id(self) -> int:
        """Id of the most recently processed image, -1 before the first."""
        ...

    def process(self, image: np.ndarray) -> None:
        """Track existing features into a new image."""
        ...

    def get_active_tracks(self) -> list[PointTrack]:
        """Return tracks that were followed into the latest image."""
        ...

    def get_dropped_tracks(self) -> list[PointTrack]:
        """Return tracks the tracker lost during the latest ``process`` call."""
        ...

    def spawn_tracks(self) -> list[PointTrack]:
        """Detect new features in the latest image and return them."""
        ...

    def drop_track(self, track: PointTrack) -> bool:
        """Stop following a track. Returns False if it was not active."""
        ...

    def reset(self) -> None:
        """Forget all tracks and return to the initial state."""
        ...


class KltPointTracker:
    """Sparse KLT tracker implementing the ``PointTracker`` protocol."""

    def __init__(
        self,
        max_features: int = 400,
        min_distance: float = 10.0,
        quality_level: float = 0.01,
        window_size: int = 21,
        pyramid_levels: int = 3,
        max_fb_error: float = 1.0,
    ) -> None:
        """Initialize the tracker.

        Args:
            max_features: Upper bound on simultaneously active tracks
            min_distance: Minimum pixel distance between spawned features
                and existing tracks
            quality_level: Shi-Tomasi quality level relative to the best corner
            window_size: Lucas-Kanade search window (pixels)
            pyramid_levels: Number of pyramid levels used by Lucas-Kanade
            max_fb_error: Maximum forward-backward error (pixels) before a
                track is dropped
        """
        self._max_features = max_features
        self._min_distance = min_distance
        self._quality_level = quality_level
        self._lk_params = dict(
            winSize=(window_size, window_size),
            maxLevel=pyramid_levels,
            criteria=(cv2.TERM_CRITERIA_EPS | cv2.TERM_CRITERIA_COUNT, 30, 0.01),
        )
        self._max_fb_error = max_fb_error

        self._frame_id = -1
        self._next_track_id = 0
        self._gray: np.ndarray | None = None
        self._active: list[PointTrack] = []
        self._dropped: list[PointTrack] = []

    @property
    def frame_id(self) -> int:
        return self._frame_id

    def process(self, image: np.ndarray) -> None:
        """Follow the active tracks into ``image``."""
        gray = image if image.ndim == 2 else cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)
        prev_gray = self._gray
        self._gray = gray
        self._frame_id += 1
        self._dropped = []

        if prev_gray is None or len(self._active) == 0:
            return

        p0 = np.array([t.pixel for t in self._active], dtype=np.float32).reshape(
            -1, 1, 2
        )
        p1, status, _ = cv2.calcOpticalFlowPyrLK(
            prev_gray, gray, p0, None, **self._lk_params
        )
        p0r, status_back, _ = cv2.calcOpticalFlowPyrLK(
            gray, prev_gray, p1, None, **self._lk_params
        )

        fb_error = np.linalg.norm((p0 - p0r).reshape(-1, 2), axis=1)
        p1 = p1.reshape(-1, 2)
        height, width = gray.shape[:2]
        good = (
            (status.flatten() == 1)
            & (status_back.flatten() == 1)
            & (fb_error < self._max_fb_error)
            & (p1[:, 0] >= 0)
            & (p1[:, 1] >= 0)
            & (p1[:, 0] < width)
            & (p1[:, 1] < height)
        )

        survivors = []
        for track, pixel, ok in zip(self._active, p1, good):
            if ok:
                track.pixel = pixel.astype(np.float64)
                survivors.append(track)
            else:
                self._dropped.append(track)
        self._active = survivors

    def get_active_tracks(self) -> list[PointTrack]:
        return list(self._active)

    def get_dropped_tracks(self) -> list[PointTrack]:
        return list(self._dropped)

    def spawn_tracks(self) -> list[PointTrack]:
        """Detect corners away from existing tracks and start following them."""
        if self._gray is None:
            return []

        room = self._max_features - len(self._active)
        if room <= 0:
            return []

        mask = np.full(self._gray.shape[:2], 255, dtype=np.uint8)
        radius = max(1, int(round(self._min_distance)))
        for track in self._active:
            center = (int(round(track.pixel[0])), int(round(track.pixel[1])))
            cv2.circle(mask, center, radius, 0, -1)

        corners = cv2.goodFeaturesToTrack(
            self._gray,
            maxCorners=room,
            qualityLevel=self._quality_level,
            minDistance=self._min_distance,
            mask=mask,
        )
        if corners is None:
            return []

        spawned = []
        for corner in corners.reshape(-1, 2):
            track = PointTrack(track_id=self._next_track_id, pixel=corner)
            self._next_track_id += 1
            spawned.append(track)
        self._active.extend(spawned)

        logger.debug("KLT spawned %d tracks, %d active", len(spawned), len(self._active))
        return spawned

    def drop_track(self, track: PointTrack) -> bool:
        for i, active in enumerate(self._active):
            if active is track:
                del self._active[i]
                return True
        return False

    def reset(self) -> None:
        self._frame_id = -1
        self._next_track_id = 0
        self._gray = None
        self._active = []
        self._dropped = []

    @property
    def num_active(self) -> int:
        return len(self._active)
