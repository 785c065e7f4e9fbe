"""Selection of the tracks fed into bundle adjustment.

Optimizing every track in the window gets expensive as the map grows.
Instead each frame's image is split into a grid and at most one new track
is picked per cell, which bounds the problem size while keeping tracks
spread across the field of view.
"""

from __future__ import annotations

import math
from typing import TYPE_CHECKING

import numpy as np

if TYPE_CHECKING:
    from .graph import BundleGraph, Track


class SelectTracksInFrame:
    """Grid bucketed, best-per-cell track selection.

    A track is eligible if it has been an inlier of a motion estimate and
    has at least ``min_track_observations`` observations. In every frame the
    eligible tracks are bucketed by their pixel location in that frame. A
    cell that already contains a selected track is left alone, otherwise
    the track with the most observations in the cell is selected.
    """

    def __init__(
        self,
        max_features_per_frame: int = 200,
        min_track_observations: int = 3,
        seed: int = 0xBEEF,
    ) -> None:
        """Initialize the selector.

        Args:
            max_features_per_frame: Target number of grid cells per image
            min_track_observations: Tracks with fewer observations are skipped
            seed: Seed of the generator breaking ties between equal tracks
        """
        if max_features_per_frame <= 0:
            raise ValueError("max_features_per_frame must be positive")
        self.max_features_per_frame = max_features_per_frame
        self.min_track_observations = min_track_observations
        self._rng = np.random.default_rng(seed)

    def cell_size(self, width: int, height: int) -> int:
        """Side length in pixels of a grid cell for the given image size."""
        return max(1, int(math.ceil(math.sqrt(width * height / self.max_features_per_frame))))

    def select_tracks(
        self, graph: BundleGraph, width: int, height: int
    ) -> list[Track]:
        """Flag the tracks to optimize and return them in graph order."""
        for track in graph.tracks:
            track.selected = False

        cell = self.cell_size(width, height)
        cols = max(1, int(math.ceil(width / cell)))
        rows = max(1, int(math.ceil(height / cell)))

        for frame in graph.frames:
            buckets: dict[int, list[Track]] = {}
            for track in frame.tracks:
                if not self._is_eligible(track):
                    continue
                obs = track.find_observation_by(frame)
                if obs is None:
                    continue
                col = min(max(int(obs.pixel[0] // cell), 0), cols - 1)
                row = min(max(int(obs.pixel[1] // cell), 0), rows - 1)
                buckets.setdefault(row * cols + col, []).append(track)

            for bucket in buckets.values():
                if any(t.selected for t in bucket):
                    continue
                most = max(len(t.observations) for t in bucket)
                best = [t for t in bucket if len(t.observations) == most]
                chosen = best[0] if len(best) == 1 else best[self._rng.integers(len(best))]
                chosen.selected = True

        return [t for t in graph.tracks if t.selected]

    def _is_eligible(self, track: Track) -> bool:
        return track.inlier and len(track.observations) >= self.min_track_observations
