"""Keyframe policies deciding which frames leave the active window.

A policy is consulted once per processed frame, after motion estimation and
bundle adjustment. It returns window indices in ascending order; the caller
removes them from the highest index to the lowest so that earlier indices
stay valid.

Two policies are provided:

- ``PeriodicKeyFramePolicy`` keeps a keyframe at a fixed cadence of tracker
  frames and otherwise treats the newest frame as speculative.
- ``CoverageKeyFramePolicy`` keeps the newest frame only when the tracks
  that survive from the last keyframe no longer cover the image well.
"""

from __future__ import annotations

import logging
import math
from typing import TYPE_CHECKING, Callable, Protocol

import numpy as np

if TYPE_CHECKING:
    from ..frontend.tracker import PointTracker
    from .graph import BundleGraph

logger = logging.getLogger(__name__)


class KeyFramePolicy(Protocol):
    """Decides when frames are discarded from the active window."""

    def initialize(self, image_width: int, image_height: int) -> None:
        """One time setup, called with the first image."""
        ...

    def select_frames_to_discard(
        self, tracker: PointTracker, max_key_frames: int, graph: BundleGraph
    ) -> list[int]:
        """Return ascending indices of ``graph.frames`` to discard."""
        ...

    def handle_spawned_tracks(self, tracker: PointTracker) -> None:
        """Called after new tracks were spawned in the newest frame."""
        ...


class PeriodicKeyFramePolicy:
    """Keeps one permanent keyframe every ``period`` tracker frames.

    Once the window is full the newest frame is discarded, unless its
    tracker frame id is a multiple of ``period``. In that case the oldest
    frame is discarded instead and the newest one becomes the anchor.

    Attributes:
        period: Tracker frames between anchors
        last_anchor_id: Tracker frame id of the most recent anchor, -1 before
            the first one. Read only, exposed for callers that report it.
    """

    def __init__(self, period: int = 3) -> None:
        if period <= 0:
            raise ValueError("period must be positive")
        self.period = period
        self.last_anchor_id = -1

    def initialize(self, image_width: int, image_height: int) -> None:
        self.last_anchor_id = -1

    def select_frames_to_discard(
        self, tracker: PointTracker, max_key_frames: int, graph: BundleGraph
    ) -> list[int]:
        n_frames = len(graph.frames)
        if n_frames <= max_key_frames:
            return []

        frame_id = tracker.frame_id
        if frame_id % self.period == 0:
            self.last_anchor_id = frame_id
            logger.debug("Frame %d is an anchor, dropping the oldest frame", frame_id)
            return [0]
        return [n_frames - 1]

    def handle_spawned_tracks(self, tracker: PointTracker) -> None:
        pass


class ImageCoverage:
    """Occupancy grid measuring how much of the image a set of pixels covers."""

    def __init__(self, target_cells: int = 100) -> None:
        self.target_cells = target_cells
        self._cell = 1
        self._cols = 1
        self._rows = 1

    def initialize(self, width: int, height: int) -> None:
        self._cell = max(1, int(math.ceil(math.sqrt(width * height / self.target_cells))))
        self._cols = max(1, int(math.ceil(width / self._cell)))
        self._rows = max(1, int(math.ceil(height / self._cell)))

    def fraction(self, pixels: np.ndarray) -> float:
        """Fraction of grid cells containing at least one pixel."""
        pixels = np.asarray(pixels, dtype=np.float64).reshape(-1, 2)
        if len(pixels) == 0:
            return 0.0
        cols = np.clip((pixels[:, 0] // self._cell).astype(int), 0, self._cols - 1)
        rows = np.clip((pixels[:, 1] // self._cell).astype(int), 0, self._rows - 1)
        occupied = np.unique(rows * self._cols + cols)
        return len(occupied) / float(self._rows * self._cols)


def redundancy_score(graph: BundleGraph, index: int) -> float:
    """Fraction of a frame's tracks that its window neighbours also observe.

    A frame whose tracks are all seen by the frames before and after it
    contributes little geometry of its own. Frames without tracks score 1.
    """
    frame = graph.frames[index]
    if len(frame.tracks) == 0:
        return 1.0

    neighbours = set()
    for other in (index - 1, index + 1):
        if 0 <= other < len(graph.frames):
            neighbours.update(id(t) for t in graph.frames[other].tracks)

    shared = sum(1 for t in frame.tracks if id(t) in neighbours)
    return shared / len(frame.tracks)


class CoverageKeyFramePolicy:
    """Keeps the frames that add the most image coverage.

    After tracks are spawned in a retained frame the policy remembers which
    tracker tracks were alive and how much of the image they covered. When
    the window overflows it measures how much of that coverage the
    surviving tracks still provide. If enough remains, the newest frame
    sees nothing new and is discarded. Otherwise the newest frame is kept
    and the older frame with the highest ``score`` is discarded.
    """

    def __init__(
        self,
        min_coverage: float = 0.4,
        grid_cells: int = 100,
        score: Callable[[BundleGraph, int], float] = redundancy_score,
    ) -> None:
        """Initialize the policy.

        Args:
            min_coverage: Fraction of the keyframe's coverage that surviving
                tracks must keep for the newest frame to be discarded
            grid_cells: Number of cells of the coverage grid
            score: Redundancy of the frame at a window index, highest is
                discarded first
        """
        if not 0.0 <= min_coverage <= 1.0:
            raise ValueError("min_coverage must be in [0, 1]")
        self.min_coverage = min_coverage
        self.score = score
        self._coverage = ImageCoverage(grid_cells)
        self._keyframe_track_ids: set[int] = set()
        self._keyframe_coverage = 0.0

    def initialize(self, image_width: int, image_height: int) -> None:
        self._coverage.initialize(image_width, image_height)
        self._keyframe_track_ids = set()
        self._keyframe_coverage = 0.0

    def select_frames_to_discard(
        self, tracker: PointTracker, max_key_frames: int, graph: BundleGraph
    ) -> list[int]:
        n_frames = len(graph.frames)
        if n_frames <= max_key_frames:
            return []

        survivors = [
            t.pixel
            for t in tracker.get_active_tracks()
            if t.track_id in self._keyframe_track_ids
        ]
        coverage = self._coverage.fraction(np.array(survivors).reshape(-1, 2))
        ratio = coverage / self._keyframe_coverage if self._keyframe_coverage > 0 else 0.0

        if ratio >= self.min_coverage:
            return [n_frames - 1]

        scores = [self.score(graph, i) for i in range(n_frames - 1)]
        # ties go to the oldest frame
        worst = int(np.argmax(scores))
        logger.debug(
            "Coverage %.2f of keyframe, keeping newest and dropping index %d",
            ratio,
            worst,
        )
        return [worst]

    def handle_spawned_tracks(self, tracker: PointTracker) -> None:
        active = tracker.get_active_tracks()
        self._keyframe_track_ids = {t.track_id for t in active}
        pixels = np.array([t.pixel for t in active]).reshape(-1, 2)
        self._keyframe_coverage = self._coverage.fraction(pixels)
