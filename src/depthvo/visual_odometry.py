"""Visual odometry for cameras with per-pixel range information.

The 3D location of new features is measured directly by a range source
(stereo, structured light or time of flight), so motion can be estimated
with PnP against the previous keyframe and the translation carries metric
scale. Each processed image goes through these stages:

1. Track features into the new image
2. Bootstrap the map from the first image
3. Detach landmarks from features the tracker lost
4. Estimate motion with PnP + RANSAC, optionally refine it
5. Add inlier observations to the new frame
6. Retire features that have not been inliers for a while
7. Bundle adjustment over the keyframe window
8. Re-triangulate landmarks left out of bundle adjustment
9. Drop landmarks that ended up behind a camera
10. Discard keyframes chosen by the keyframe policy
11. Spawn new features if the new frame was kept
12. Publish the inlier and visible landmarks
"""

from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass

import numpy as np

from .backend.graph import BundleGraph, Frame, GraphConsistencyError, Track, remove_swap
from .backend.keyframe import (
    CoverageKeyFramePolicy,
    KeyFramePolicy,
    PeriodicKeyFramePolicy,
)
from .backend.optimizer import BundleAdjustment, ScipyBundleAdjustment
from .backend.track_selection import SelectTracksInFrame
from .config import VisualOdometryConfig
from .frontend.camera import PinholeCamera
from .frontend.motion_estimator import MotionEstimator, PoseRefiner
from .frontend.pixel_to_3d import PixelTo3D
from .frontend.pose import SE3
from .frontend.tracker import KltPointTracker, PointTrack, PointTracker
from .frontend.triangulation import triangulate_n_views

logger = logging.getLogger(__name__)

# Distance used for points at infinity during motion estimation. The right
# value depends on units; 1e6 works for meters.
FAR_AWAY_DISTANCE = 1e6


@dataclass
class VOTiming:
    """Timing breakdown for a single frame."""

    tracking_ms: float = 0.0
    estimate_ms: float = 0.0
    bundle_ms: float = 0.0
    drop_unused_ms: float = 0.0
    maintenance_ms: float = 0.0
    spawn_ms: float = 0.0
    total_ms: float = 0.0


def homogeneous_to_3d(loc: np.ndarray) -> np.ndarray:
    """Convert a homogeneous point in camera coordinates to a 3D point.

    Points at infinity (w == 0) have no 3D location. They are replaced by a
    point along the same ray, far away and in front of the camera, since
    the feature was observed.

    Args:
        loc: Homogeneous point (x, y, z, w) in camera coordinates

    Returns:
        Finite 3D point
    """
    w = loc[3]
    if w != 0.0:
        return loc[:3] / w

    n = float(np.linalg.norm(loc))
    if n == 0.0:
        n = 1.0
    scale = FAR_AWAY_DISTANCE / n
    if loc[2] < 0:
        scale = -scale
    return loc[:3] * scale


class VisualOdometry:
    """Keyframe based visual odometry driven by a point tracker and range data.

    All collaborators are supplied by the caller; ``from_config`` builds the
    default set. The camera model must be set before the first call to
    ``process``.
    """

    def __init__(
        self,
        tracker: PointTracker,
        pixel_to_3d: PixelTo3D,
        motion_estimator: MotionEstimator,
        bundle_adjustment: BundleAdjustment,
        key_frame_policy: KeyFramePolicy | None = None,
        pose_refiner: PoseRefiner | None = None,
        select_tracks: SelectTracksInFrame | None = None,
        max_key_frames: int = 5,
        threshold_retire_tracks: int = 2,
    ) -> None:
        """Initialize the pipeline.

        Args:
            tracker: Point feature tracker
            pixel_to_3d: Computes the 3D location of pixels in the latest image
            motion_estimator: Robust PnP estimator
            bundle_adjustment: Solver used to refine the keyframe window
            key_frame_policy: Decides which frames leave the window
            pose_refiner: Optional non-linear refinement of the PnP pose
            select_tracks: Chooses the tracks fed into bundle adjustment
            max_key_frames: Maximum number of frames in the window
            threshold_retire_tracks: Tracks that have not been inliers for
                more than this many frames are dropped from the tracker
        """
        self._tracker = tracker
        self._pixel_to_3d = pixel_to_3d
        self._motion_estimator = motion_estimator
        self._pose_refiner = pose_refiner
        self._key_frame_policy = key_frame_policy or CoverageKeyFramePolicy()
        self._graph = BundleGraph(bundle_adjustment, select_tracks)

        self.max_key_frames = max_key_frames
        self.threshold_retire_tracks = threshold_retire_tracks

        self._camera: PinholeCamera | None = None

        # State
        self._first = True
        self._frame_current: Frame | None = None
        self._frame_previous: Frame | None = None
        self._current_to_world = SE3.identity()
        self._timing = VOTiming()

        # Output
        self._inlier_tracks: list[Track] = []
        self._visible_tracks: list[Track] = []
        # visible tracks before maintenance dropped any of them
        self._initial_visible: list[Track] = []

        # workspace
        self._removed_tracker_tracks: list[PointTrack] = []

    @classmethod
    def from_config(
        cls,
        camera: PinholeCamera,
        pixel_to_3d: PixelTo3D,
        config: VisualOdometryConfig | None = None,
        tracker: PointTracker | None = None,
    ) -> VisualOdometry:
        """Create a pipeline with the default collaborators.

        Args:
            camera: Calibrated camera
            pixel_to_3d: Range source for the camera's images
            config: Pipeline configuration, defaults if None
            tracker: Tracker to use instead of the default KLT tracker

        Returns:
            Pipeline ready to process images
        """
        config = config or VisualOdometryConfig()
        config.validate()

        motion = config.motion
        motion_estimator = MotionEstimator.from_pixel_threshold(
            camera.intrinsics.fx,
            motion.pixel_threshold,
            ransac_confidence=motion.ransac_confidence,
            max_iterations=motion.max_iterations,
            min_inliers=motion.min_inliers,
        )
        pose_refiner = PoseRefiner(motion.refine_iterations) if motion.refine else None

        bundle = config.bundle
        bundle_adjustment = ScipyBundleAdjustment(
            max_iterations=bundle.max_iterations,
            loss=bundle.loss_function,
            f_scale=bundle.f_scale,
            min_observations=bundle.min_observations,
        )
        select_tracks = SelectTracksInFrame(
            max_features_per_frame=bundle.max_features_per_frame,
            min_track_observations=bundle.min_track_observations,
        )

        keyframe = config.keyframe
        if keyframe.policy == "periodic":
            policy: KeyFramePolicy = PeriodicKeyFramePolicy(period=keyframe.period)
        else:
            policy = CoverageKeyFramePolicy(
                min_coverage=keyframe.min_coverage, grid_cells=keyframe.grid_cells
            )

        vo = cls(
            tracker=tracker or KltPointTracker(**asdict(config.tracker)),
            pixel_to_3d=pixel_to_3d,
            motion_estimator=motion_estimator,
            bundle_adjustment=bundle_adjustment,
            key_frame_policy=policy,
            pose_refiner=pose_refiner,
            select_tracks=select_tracks,
            max_key_frames=keyframe.max_key_frames,
            threshold_retire_tracks=config.threshold_retire_tracks,
        )
        vo.set_camera(camera)
        logger.info(
            "VisualOdometry initialized: %s keyframe policy, window of %d",
            keyframe.policy,
            keyframe.max_key_frames,
        )
        return vo

    def set_camera(self, camera: PinholeCamera) -> None:
        """Set the camera model. Must be called before ``process``."""
        self._camera = camera
        self._graph.set_camera(camera)

    def reset(self) -> None:
        """Reset to the initial state. The camera model is kept."""
        logger.info("VisualOdometry reset")
        self._tracker.reset()
        self._graph.reset()
        self._current_to_world = SE3.identity()
        self._frame_current = None
        self._frame_previous = None
        self._inlier_tracks.clear()
        self._visible_tracks.clear()
        self._initial_visible.clear()
        self._first = True

    def process(self, image: np.ndarray) -> bool:
        """Estimate the motion of the camera from a new image.

        Any range data ``pixel_to_3d`` needs for this image must be provided
        to it before calling.

        Args:
            image: Camera image

        Returns:
            True if the motion was estimated, False if the image was skipped
        """
        if self._camera is None:
            raise RuntimeError("set_camera() must be called before process()")

        timing = VOTiming()
        self._timing = timing

        t0 = time.perf_counter()
        self._tracker.process(image)
        t1 = time.perf_counter()
        timing.tracking_ms = (t1 - t0) * 1000

        logger.debug(
            "Frame %d: window=%d tracks=%d active=%d",
            self._tracker.frame_id,
            len(self._graph.frames),
            len(self._graph.tracks),
            len(self._tracker.get_active_tracks()),
        )

        self._inlier_tracks.clear()
        self._visible_tracks.clear()
        self._initial_visible.clear()

        # Previous keyframe is the most recently added one
        self._frame_previous = None if self._first else self._graph.get_last_frame()
        self._frame_current = self._graph.add_frame(self._tracker.frame_id)

        if self._first:
            self._current_to_world = SE3.identity()
            self._spawn_new_tracks()
            self._key_frame_policy.initialize(self._camera.width, self._camera.height)
            self._key_frame_policy.handle_spawned_tracks(self._tracker)
            self._first = False
            timing.total_ms = (time.perf_counter() - t0) * 1000
            logger.debug("First frame, spawned %d tracks", len(self._visible_tracks))
            return True

        # Tell landmarks that their features are no longer tracked
        for pt in self._tracker.get_dropped_tracks():
            track = pt.cookie
            if track is not None:
                track.tracker_track = None
                pt.cookie = None

        if not self._estimate_motion():
            logger.debug("Frame %d: motion estimation failed", self._tracker.frame_id)
            # discard the current frame and attempt to jump over it
            self._graph.remove_frame(self._frame_current, self._removed_tracker_tracks)
            self._drop_removed_bundle_tracks()
            self._update_visible_tracks_for_output()
            self._frame_current = None
            timing.total_ms = (time.perf_counter() - t0) * 1000
            return False

        self._drop_unused_tracker_tracks()
        t2 = time.perf_counter()
        timing.estimate_ms = (t2 - t1) * 1000

        self._graph.optimize()
        self._current_to_world = self._frame_current.pose.copy()
        self._triangulate_not_selected_tracks()
        t3 = time.perf_counter()
        timing.bundle_ms = (t3 - t2) * 1000

        self._drop_bad_tracks()
        t4 = time.perf_counter()
        timing.drop_unused_ms = (t4 - t3) * 1000

        discard = self._key_frame_policy.select_frames_to_discard(
            self._tracker, self.max_key_frames, self._graph
        )
        dropped_current = False
        # highest index first so the remaining indices stay valid
        for index in sorted(discard, reverse=True):
            frame = self._graph.frames[index]
            dropped_current |= frame is self._frame_current
            self._graph.remove_frame(frame, self._removed_tracker_tracks)
            self._drop_removed_bundle_tracks()
            self._drop_tracks_not_visible_and_too_few_observations()
        self._update_visible_tracks_for_output()
        t5 = time.perf_counter()
        timing.maintenance_ms = (t5 - t4) * 1000

        if not dropped_current:
            self._spawn_new_tracks()
            self._key_frame_policy.handle_spawned_tracks(self._tracker)
        t6 = time.perf_counter()
        timing.spawn_ms = (t6 - t5) * 1000
        timing.total_ms = (t6 - t0) * 1000

        logger.debug(
            "Timing ms: TRK %.1f Est %.1f Bun %.1f DU %.1f Scene %.1f Spn %.1f TOTAL %.1f",
            timing.tracking_ms,
            timing.estimate_ms,
            timing.bundle_ms,
            timing.drop_unused_ms,
            timing.maintenance_ms,
            timing.spawn_ms,
            timing.total_ms,
        )
        return True

    def _estimate_motion(self) -> bool:
        """Estimates motion from the active tracks and their 3D locations.

        Points are expressed in the previous keyframe's coordinates, which
        keeps the numbers small no matter how far the camera has travelled.
        """
        active = self._tracker.get_active_tracks()
        world_to_prev = self._frame_previous.pose.inverse()

        pixels = np.array([pt.pixel for pt in active], dtype=np.float64).reshape(-1, 2)
        points_norm = self._camera.pixel_to_norm(pixels)
        points_3d = np.empty((len(active), 3), dtype=np.float64)

        for i, pt in enumerate(active):
            track = pt.cookie
            if track is None:
                raise GraphConsistencyError(
                    f"Active tracker track {pt.track_id} has no landmark"
                )
            self._initial_visible.append(track)
            prev_loc = world_to_prev.transform_homogeneous(track.world_loc)
            points_3d[i] = homogeneous_to_3d(prev_loc)

        result = self._motion_estimator.estimate(points_norm, points_3d)
        if not result.success:
            return False

        current_to_key = result.pose
        if self._pose_refiner is not None:
            idx = result.inlier_indices
            refined = self._pose_refiner.refine(
                points_norm[idx], points_3d[idx], current_to_key
            )
            if refined is not None:
                current_to_key = refined

        self._frame_current.pose = self._frame_previous.pose @ current_to_key

        tick = self._tracker.frame_id
        for index in result.inlier_indices:
            pt = active[int(index)]
            track = pt.cookie
            track.last_used = tick
            track.inlier = True
            self._graph.add_observation(self._frame_current, track, pt.pixel)
            self._inlier_tracks.append(track)

        return True

    def _drop_unused_tracker_tracks(self) -> None:
        """Stop tracking features that have not been inliers recently."""
        tick = self._tracker.frame_id
        frame = self._frame_current

        for pt in self._tracker.get_active_tracks():
            track = pt.cookie
            if track is None:
                raise GraphConsistencyError(
                    f"Active tracker track {pt.track_id} has no landmark"
                )
            if tick - track.last_used <= self.threshold_retire_tracks:
                continue
            # remove the observation made in the current frame, if any
            if track.observations and track.observations[-1].frame is frame:
                track.observations.pop()
            track.tracker_track = None
            pt.cookie = None
            self._tracker.drop_track(pt)

        # The newest observation of a track in the current frame is the
        # current frame, unless it was just removed above
        for i in range(len(frame.tracks) - 1, -1, -1):
            track = frame.tracks[i]
            if len(track.observations) == 0:
                raise GraphConsistencyError(
                    f"Track {track.id} lost every observation while retiring"
                )
            if track.observations[-1].frame is not frame:
                remove_swap(frame.tracks, i)

    def _triangulate_not_selected_tracks(self) -> None:
        """Triangulate tracks which were not included in the optimization."""
        for track in self._graph.tracks:
            # selected tracks were just optimized, two views are too unstable
            if track.selected or len(track.observations) < 3:
                continue

            pixels = np.array([o.pixel for o in track.observations])
            obs_norm = self._camera.pixel_to_norm(pixels)
            world_to_frame = [o.frame.pose.inverse() for o in track.observations]

            point = triangulate_n_views(obs_norm, world_to_frame)
            if point is None:
                continue
            track.world_loc = np.append(point, 1.0)
            track.normalize()

    def _drop_bad_tracks(self) -> None:
        """Remove tracks that are behind a camera observing them."""
        for frame in self._graph.frames:
            world_to_frame = frame.pose.inverse()

            for i in range(len(frame.tracks) - 1, -1, -1):
                track = frame.tracks[i]
                if len(track.observations) == 0:
                    continue
                loc = world_to_frame.transform_homogeneous(track.world_loc)

                # behind the camera, without dividing by w
                if np.sign(loc[2]) * np.sign(loc[3]) < 0:
                    # marks it for removal below
                    track.observations.clear()
                    pt = track.tracker_track
                    if pt is not None:
                        pt.cookie = None
                        self._tracker.drop_track(pt)
                        track.tracker_track = None

        removed = self._graph.prune_tracks_without_observations()
        if removed:
            logger.debug("Dropped %d tracks behind the camera", removed)

    def _drop_removed_bundle_tracks(self) -> None:
        for pt in self._removed_tracker_tracks:
            self._tracker.drop_track(pt)
        self._removed_tracker_tracks.clear()

    def _drop_tracks_not_visible_and_too_few_observations(self) -> None:
        """Drop untracked tracks with fewer than three observations.

        Three observations are much more stable than two and less prone to
        be a false positive.
        """
        for track in self._graph.tracks:
            if track.tracker_track is None and len(track.observations) < 3:
                track.observations.clear()
        self._graph.prune_tracks_without_observations()

    def _update_visible_tracks_for_output(self) -> None:
        in_graph = {id(t) for t in self._graph.tracks}
        for track in self._initial_visible:
            if track.tracker_track is not None:
                self._visible_tracks.append(track)

        # inliers deleted by pruning or frame removal are no longer published
        self._inlier_tracks = [
            t
            for t in self._inlier_tracks
            if t.tracker_track is not None and id(t) in in_graph
        ]

    def _spawn_new_tracks(self) -> None:
        """Detect new features and compute their 3D coordinates."""
        frame = self._frame_current
        frame_id = self._tracker.frame_id

        for pt in self._tracker.spawn_tracks():
            success, loc = self._pixel_to_3d.localize(pt.pixel[0], pt.pixel[1])
            loc = np.asarray(loc, dtype=np.float64).flatten()
            # discard point if it can't be localized
            if not success or not np.isfinite(loc).all() or not np.any(loc):
                self._tracker.drop_track(pt)
                continue

            if pt.cookie is not None or self._graph.find_by_tracker_track(pt) is not None:
                raise GraphConsistencyError(
                    f"Tracker recycled track {pt.track_id} while still attached"
                )

            track = self._graph.add_track(loc)
            track.id = pt.track_id
            track.last_used = frame_id
            track.tracker_track = pt
            pt.cookie = track

            # local to world, then keep the homogeneous scale manageable
            track.world_loc = frame.pose.transform_homogeneous(track.world_loc)
            track.normalize()

            self._graph.add_observation(frame, track, pt.pixel)
            self._visible_tracks.append(track)

    @property
    def current_pose(self) -> SE3:
        """Pose of the most recently processed image (T_world_camera)."""
        return self._current_to_world.copy()

    def get_inlier_tracks(self) -> list[Track]:
        """Tracks in the inlier set of the latest motion estimate."""
        return list(self._inlier_tracks)

    def get_visible_tracks(self) -> list[Track]:
        """Tracks visible in the latest image."""
        return list(self._visible_tracks)

    @property
    def frame_id(self) -> int:
        return self._tracker.frame_id

    @property
    def graph(self) -> BundleGraph:
        return self._graph

    @property
    def tracker(self) -> PointTracker:
        return self._tracker

    @property
    def key_frame_policy(self) -> KeyFramePolicy:
        return self._key_frame_policy

    @property
    def timing(self) -> VOTiming:
        return self._timing

    @property
    def is_initialized(self) -> bool:
        return not self._first
