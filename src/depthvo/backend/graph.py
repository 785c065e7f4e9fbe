"""Keyframe / landmark graph optimized with windowed bundle adjustment.

The graph owns the active window of frames and every landmark (track)
observed by them. Frames list the tracks they observe and tracks hold an
insertion ordered list of observations pointing back at their frames; the
two sides are kept consistent by the operations below and audited by
``BundleGraph.sanity_check``.

Global track removal swaps the last element into the freed slot, so code
deleting tracks while walking ``BundleGraph.tracks`` must walk from the tail
toward the head. The frame window keeps its order so that index 0 is always
the oldest frame, which is held fixed as the gauge during optimization.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, TypeVar

import numpy as np

from ..frontend.pose import SE3
from .optimizer import BAResult, SceneObservations, SceneStructure
from .track_selection import SelectTracksInFrame

if TYPE_CHECKING:
    from ..frontend.camera import PinholeCamera
    from ..frontend.tracker import PointTrack
    from .optimizer import BundleAdjustment

logger = logging.getLogger(__name__)

T = TypeVar("T")


class GraphConsistencyError(RuntimeError):
    """The graph's internal bookkeeping is broken. Not recoverable."""


def remove_swap(items: list[T], index: int) -> T:
    """Remove ``items[index]`` in O(1) by moving the last element into its slot.

    Any index captured before the call may point at a different element
    afterwards.
    """
    last = items.pop()
    if index == len(items):
        return last
    removed = items[index]
    items[index] = last
    return removed


@dataclass(eq=False)
class Observation:
    """Pixel location of a track in one frame."""

    frame: Frame
    pixel: np.ndarray  # (2,) float64

    def __post_init__(self) -> None:
        self.pixel = np.asarray(self.pixel, dtype=np.float64).flatten()


@dataclass(eq=False)
class Frame:
    """A keyframe in the active window.

    Attributes:
        id: Tracker frame id of the image that created this frame
        pose: Transform from this frame to the world (T_world_frame)
        tracks: Tracks observed in this frame, unordered
        list_index: Position in the active window, -1 when not active
    """

    id: int
    pose: SE3 = field(default_factory=SE3.identity)
    tracks: list[Track] = field(default_factory=list)
    list_index: int = -1


@dataclass(eq=False)
class Track:
    """A 3D landmark and its observations.

    Attributes:
        id: Feature id of the tracker track that created this landmark
        world_loc: Homogeneous world coordinate (x, y, z, w). w == 0 means
            the point is at infinity.
        observations: Observations in insertion order, at most one per frame
        inlier: Was part of an accepted motion estimate
        selected: Was included in the most recent bundle adjustment
        last_used: Tracker frame id of the last time this was an inlier
        tracker_track: Tracker handle, None once the tracker stops following it
    """

    id: int = -1
    world_loc: np.ndarray = field(default_factory=lambda: np.zeros(4))
    observations: list[Observation] = field(default_factory=list)
    inlier: bool = False
    selected: bool = False
    last_used: int = -1
    tracker_track: PointTrack | None = None

    def __post_init__(self) -> None:
        self.world_loc = np.asarray(self.world_loc, dtype=np.float64).flatten()

    @property
    def is_at_infinity(self) -> bool:
        return self.world_loc[3] == 0.0

    def normalize(self) -> None:
        """Scale the homogeneous coordinate to unit norm."""
        n = np.linalg.norm(self.world_loc)
        if n > 0:
            self.world_loc = self.world_loc / n

    def is_observed_by(self, frame: Frame) -> bool:
        return any(o.frame is frame for o in self.observations)

    def find_observation_by(self, frame: Frame) -> Observation | None:
        for o in self.observations:
            if o.frame is frame:
                return o
        return None

    def remove_ref(self, frame: Frame) -> bool:
        """Remove the observation made in ``frame``.

        Returns:
            True if an observation was found and removed
        """
        for i in range(len(self.observations) - 1, -1, -1):
            if self.observations[i].frame is frame:
                del self.observations[i]
                return True
        return False


class BundleGraph:
    """Graph store for the sliding window of keyframes and their landmarks."""

    def __init__(
        self,
        bundle_adjustment: BundleAdjustment,
        select_tracks: SelectTracksInFrame | None = None,
    ) -> None:
        """Initialize an empty graph.

        Args:
            bundle_adjustment: Solver invoked by ``optimize``
            select_tracks: Policy choosing which tracks are optimized
        """
        self._bundle_adjustment = bundle_adjustment
        self.select_tracks = select_tracks or SelectTracksInFrame()

        self.frames: list[Frame] = []
        self.tracks: list[Track] = []
        self.selected_tracks: list[Track] = []
        self.camera: PinholeCamera | None = None

    def set_camera(self, camera: PinholeCamera) -> None:
        self.camera = camera

    def add_frame(self, frame_id: int) -> Frame:
        """Append a new active frame with identity pose."""
        frame = Frame(id=frame_id, list_index=len(self.frames))
        self.frames.append(frame)
        return frame

    def add_track(self, world_loc: np.ndarray) -> Track:
        """Append a new track with no observations."""
        track = Track(world_loc=np.array(world_loc, dtype=np.float64))
        self.tracks.append(track)
        return track

    def add_observation(self, frame: Frame, track: Track, pixel: np.ndarray) -> None:
        """Record that ``track`` was seen at ``pixel`` in ``frame``.

        The caller guarantees that ``track`` is not already observed by
        ``frame``.
        """
        track.observations.append(Observation(frame=frame, pixel=pixel))
        frame.tracks.append(track)

    def find_by_tracker_track(self, target: PointTrack) -> Track | None:
        """Return the track attached to a tracker handle, None if there is none."""
        for track in self.tracks:
            if track.tracker_track is target:
                return track
        return None

    def remove_frame(self, frame: Frame, dropped: list[PointTrack]) -> None:
        """Remove a frame and every reference to it.

        Tracks left without observations are removed from the graph. Their
        tracker handles are detached and returned through ``dropped`` so
        the caller can tell the tracker to stop following them.

        Args:
            frame: Active frame to remove
            dropped: Cleared, then filled with handles of removed tracks

        Raises:
            GraphConsistencyError: If ``frame`` is not active or its track
                list is out of date
        """
        dropped.clear()
        try:
            index = self.frames.index(frame)
        except ValueError:
            raise GraphConsistencyError(
                f"Frame {frame.id} is not in the active window"
            ) from None

        # denotes if at least one track was knocked down to zero observations
        prune = False
        for track in frame.tracks:
            if not track.remove_ref(frame):
                raise GraphConsistencyError(
                    f"Track {track.id} not observed by frame {frame.id}"
                )
            if len(track.observations) == 0:
                prune = True

        if prune:
            for i in range(len(self.tracks) - 1, -1, -1):
                if len(self.tracks[i].observations) != 0:
                    continue
                track = remove_swap(self.tracks, i)
                handle = track.tracker_track
                if handle is not None:
                    if handle.cookie is not track:
                        raise GraphConsistencyError(
                            f"Tracker handle {handle.track_id} is not linked to "
                            f"track {track.id}"
                        )
                    dropped.append(handle)
                    handle.cookie = None
                    track.tracker_track = None

        frame.tracks.clear()
        del self.frames[index]
        frame.list_index = -1
        self._reindex_frames()

    def prune_tracks_without_observations(self) -> int:
        """Remove tracks whose observations were cleared.

        Removes them from the global collection and from every frame's
        track list.

        Returns:
            Number of tracks removed from the global collection
        """
        removed = 0
        for i in range(len(self.tracks) - 1, -1, -1):
            if len(self.tracks[i].observations) == 0:
                remove_swap(self.tracks, i)
                removed += 1

        for frame in self.frames:
            for i in range(len(frame.tracks) - 1, -1, -1):
                if len(frame.tracks[i].observations) == 0:
                    remove_swap(frame.tracks, i)
        return removed

    def optimize(self) -> BAResult:
        """Run bundle adjustment on the window and copy the results back.

        Frame 0 is held fixed. When the solver fails the previous estimates
        are kept.
        """
        if self.camera is None:
            raise RuntimeError("Camera must be set before optimizing")

        self.selected_tracks = self.select_tracks.select_tracks(
            self, self.camera.width, self.camera.height
        )
        structure, observations = self._setup_bundle_structure()

        self._bundle_adjustment.set_problem(structure, observations)
        result = self._bundle_adjustment.optimize(structure)

        if not result.success or result.structure is None:
            logger.debug("Bundle adjustment skipped results: %s", result.message)
            return result

        self._copy_results(result.structure)
        logger.debug(
            "Bundle adjustment: %d views, %d points, cost %.3f -> %.3f",
            result.structure.num_views,
            result.structure.num_points,
            result.initial_cost,
            result.final_cost,
        )
        return result

    def _setup_bundle_structure(self) -> tuple[SceneStructure, SceneObservations]:
        """Converts the graph into a format bundle adjustment understands."""
        structure = SceneStructure(camera=self.camera)
        observations = SceneObservations()

        self._reindex_frames()
        for frame in self.frames:
            structure.add_view(frame.pose.inverse(), fixed=frame.list_index == 0)

        points = []
        for track in self.tracks:
            if not track.selected:
                continue
            point_idx = len(points)
            points.append(track.world_loc)
            for o in track.observations:
                view_idx = o.frame.list_index
                if view_idx < 0 or self.frames[view_idx] is not o.frame:
                    raise GraphConsistencyError(
                        f"Track {track.id} observed by inactive frame {o.frame.id}"
                    )
                observations.add(view_idx, point_idx, o.pixel)

        if len(points) != len(self.selected_tracks):
            raise GraphConsistencyError(
                f"Selected {len(self.selected_tracks)} tracks but "
                f"{len(points)} are flagged as selected"
            )
        structure.set_points(np.array(points) if points else np.empty((0, 4)))
        return structure, observations

    def _copy_results(self, structure: SceneStructure) -> None:
        """Copies refined poses and points back on to the graph."""
        if structure.num_views != len(self.frames):
            raise GraphConsistencyError(
                f"Solver returned {structure.num_views} views for "
                f"{len(self.frames)} frames"
            )
        if structure.num_points != len(self.selected_tracks):
            raise GraphConsistencyError(
                f"Solver returned {structure.num_points} points for "
                f"{len(self.selected_tracks)} selected tracks"
            )

        # skip the first frame since it's fixed
        for frame_idx in range(1, len(self.frames)):
            world_to_view = structure.views[frame_idx].world_to_view
            self.frames[frame_idx].pose = world_to_view.inverse()

        point_idx = 0
        for track in self.tracks:
            if not track.selected:
                continue
            track.world_loc = np.array(structure.points[point_idx], dtype=np.float64)
            point_idx += 1

    def sanity_check(self) -> None:
        """Audit the graph invariants.

        Raises:
            GraphConsistencyError: On the first violation found
        """
        active_tracks = {id(t) for t in self.tracks}
        active_frames = {id(f) for f in self.frames}

        for index, frame in enumerate(self.frames):
            if frame.list_index != index:
                raise GraphConsistencyError(
                    f"Frame {frame.id} has index {frame.list_index}, expected {index}"
                )
            seen = set()
            for track in frame.tracks:
                if id(track) in seen:
                    raise GraphConsistencyError(
                        f"Frame {frame.id} lists track {track.id} twice"
                    )
                seen.add(id(track))
                if not track.is_observed_by(frame):
                    raise GraphConsistencyError(
                        f"Frame's track list is out of date. frame.id={frame.id} "
                        f"track.id={track.id} obs={len(track.observations)}"
                    )
                if id(track) not in active_tracks:
                    raise GraphConsistencyError(
                        f"Frame {frame.id} references removed track {track.id}"
                    )

        for track in self.tracks:
            if len(track.observations) == 0:
                raise GraphConsistencyError(f"Track {track.id} has no observations")
            if track.world_loc.shape != (4,):
                raise GraphConsistencyError(
                    f"Track {track.id} location is not homogeneous"
                )
            seen = set()
            for o in track.observations:
                if id(o.frame) not in active_frames:
                    raise GraphConsistencyError(
                        f"Track {track.id} observed by inactive frame {o.frame.id}"
                    )
                if id(o.frame) in seen:
                    raise GraphConsistencyError(
                        f"Track {track.id} observed twice by frame {o.frame.id}"
                    )
                seen.add(id(o.frame))
                if not any(t is track for t in o.frame.tracks):
                    raise GraphConsistencyError(
                        f"Frame {o.frame.id} does not list track {track.id}"
                    )
            handle = track.tracker_track
            if handle is not None and handle.cookie is not track:
                raise GraphConsistencyError(
                    f"Tracker handle of track {track.id} points elsewhere"
                )

    def reset(self) -> None:
        """Remove all frames and tracks. The camera model is kept."""
        self.frames.clear()
        self.tracks.clear()
        self.selected_tracks.clear()

    def _reindex_frames(self) -> None:
        for index, frame in enumerate(self.frames):
            frame.list_index = index

    def get_last_frame(self) -> Frame:
        return self.frames[-1]

    def get_first_frame(self) -> Frame:
        return self.frames[0]

    @property
    def num_frames(self) -> int:
        return len(self.frames)

    @property
    def num_tracks(self) -> int:
        return len(self.tracks)
