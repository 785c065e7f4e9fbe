"""Shared fixtures and scripted collaborators for the odometry tests."""

from __future__ import annotations

import cv2
import numpy as np
import pytest

from depthvo.backend.optimizer import BAResult, SceneObservations, SceneStructure
from depthvo.frontend.camera import CameraIntrinsics, PinholeCamera
from depthvo.frontend.motion_estimator import PnPResult
from depthvo.frontend.pose import SE3
from depthvo.frontend.tracker import PointTrack


class FakeTracker:
    """Tracker whose features never move unless told to.

    Features queued with ``queue_spawn`` are returned by the next
    ``spawn_tracks`` call; features passed to ``lose`` are reported as
    dropped by the next ``process`` call.
    """

    def __init__(self) -> None:
        self._frame_id = -1
        self._next_id = 0
        self.active: list[PointTrack] = []
        self.dropped: list[PointTrack] = []
        self.pending_spawn: list[PointTrack] = []
        self.pending_loss: list[PointTrack] = []
        self.drop_calls: list[PointTrack] = []
        self.spawn_calls = 0
        self.reset_calls = 0

    @property
    def frame_id(self) -> int:
        return self._frame_id

    def queue_spawn(self, pixels) -> list[PointTrack]:
        tracks = []
        for pixel in pixels:
            tracks.append(PointTrack(track_id=self._next_id, pixel=np.array(pixel)))
            self._next_id += 1
        self.pending_spawn.extend(tracks)
        return tracks

    def lose(self, tracks: list[PointTrack]) -> None:
        self.pending_loss.extend(tracks)

    def process(self, image) -> None:
        self._frame_id += 1
        self.dropped = []
        for track in self.pending_loss:
            if self._remove(track):
                self.dropped.append(track)
        self.pending_loss = []

    def get_active_tracks(self) -> list[PointTrack]:
        return list(self.active)

    def get_dropped_tracks(self) -> list[PointTrack]:
        return list(self.dropped)

    def spawn_tracks(self) -> list[PointTrack]:
        self.spawn_calls += 1
        spawned = self.pending_spawn
        self.pending_spawn = []
        self.active.extend(spawned)
        return list(spawned)

    def drop_track(self, track: PointTrack) -> bool:
        self.drop_calls.append(track)
        return self._remove(track)

    def reset(self) -> None:
        self.reset_calls += 1
        self._frame_id = -1
        self.active = []
        self.dropped = []
        self.pending_spawn = []
        self.pending_loss = []

    def _remove(self, track: PointTrack) -> bool:
        for i, active in enumerate(self.active):
            if active is track:
                del self.active[i]
                return True
        return False


class FakeRangeSource:
    """Places every pixel on a plane 2 m in front of a 100 px focal camera.

    Individual pixels can be overridden with ``set``.
    """

    def __init__(self, depth: float = 2.0) -> None:
        self.depth = depth
        self.overrides: dict[tuple[float, float], tuple[bool, np.ndarray]] = {}

    def set(self, pixel, success: bool, loc) -> None:
        self.overrides[(float(pixel[0]), float(pixel[1]))] = (
            success,
            np.asarray(loc, dtype=np.float64),
        )

    def localize(self, x: float, y: float) -> tuple[bool, np.ndarray]:
        key = (float(x), float(y))
        if key in self.overrides:
            return self.overrides[key]
        d = self.depth
        return True, np.array([(x - 50.0) / 100.0 * d, (y - 50.0) / 100.0 * d, d, 1.0])


class FakeMotionEstimator:
    """Returns scripted results and remembers what it was asked.

    By default every correspondence is an inlier and the camera did not move.
    """

    def __init__(self) -> None:
        self.pose = SE3.identity()
        self.fail = False
        self.inliers: list[int] | None = None
        self.calls: list[tuple[np.ndarray, np.ndarray]] = []

    def estimate(self, points_norm: np.ndarray, points_3d: np.ndarray) -> PnPResult:
        self.calls.append((np.array(points_norm), np.array(points_3d)))
        if self.fail:
            return PnPResult(success=False, pose=None)
        if self.inliers is None:
            indices = np.arange(len(points_3d), dtype=np.int64)
        else:
            indices = np.array(
                [i for i in self.inliers if i < len(points_3d)], dtype=np.int64
            )
        return PnPResult(
            success=True,
            pose=self.pose.copy(),
            inlier_indices=indices,
            reprojection_error=0.0,
        )


class FakeBundleAdjustment:
    """Solver stand-in.

    Fails by default so graph estimates stay untouched. ``respond`` can be
    set to a function mapping the input structure to the returned one.
    """

    def __init__(self) -> None:
        self.structure: SceneStructure | None = None
        self.observations: SceneObservations | None = None
        self.respond = None
        self.calls = 0

    def set_problem(
        self, structure: SceneStructure, observations: SceneObservations
    ) -> None:
        self.structure = structure
        self.observations = observations

    def optimize(self, structure: SceneStructure) -> BAResult:
        self.calls += 1
        if self.respond is None:
            return BAResult(success=False, message="disabled")
        return BAResult(success=True, structure=self.respond(structure.copy()))


@pytest.fixture
def camera() -> PinholeCamera:
    """100x100 pixel camera without distortion."""
    return PinholeCamera(
        width=100, height=100, intrinsics=CameraIntrinsics(100.0, 100.0, 50.0, 50.0)
    )


@pytest.fixture
def tracker() -> FakeTracker:
    return FakeTracker()


@pytest.fixture
def range_source() -> FakeRangeSource:
    return FakeRangeSource()


@pytest.fixture
def motion_estimator() -> FakeMotionEstimator:
    return FakeMotionEstimator()


@pytest.fixture
def bundle_adjustment() -> FakeBundleAdjustment:
    return FakeBundleAdjustment()


@pytest.fixture
def textured_image():
    """Factory for smooth random textures with plenty of trackable corners."""

    def make(width: int = 160, height: int = 120, seed: int = 0) -> np.ndarray:
        rng = np.random.default_rng(seed)
        noise = rng.integers(0, 256, size=(height, width)).astype(np.uint8)
        return cv2.GaussianBlur(noise, (0, 0), 2.0)

    return make
