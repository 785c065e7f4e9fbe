"""Bundle adjustment using scipy.optimize.least_squares.

Bundle adjustment jointly optimizes camera poses and 3D point positions
by minimizing the sum of squared reprojection errors.

The optimization problem:
    minimize sum_i ||observed_i - project(view_j, point_k)||^2

Where:
- observed_i is a 2D pixel observation
- view_j is the world-to-view transform of the observing frame
- point_k is the homogeneous 4-vector of the landmark
- project() applies the pinhole model and lens distortion

Points are kept homogeneous so that landmarks at or near infinity stay
well conditioned. A homogeneous point is only defined up to scale, so each
point contributes one extra residual pinning its norm to 1.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Protocol

import cv2
import numpy as np
from scipy.optimize import least_squares
from scipy.sparse import lil_matrix

from ...frontend.camera import PinholeCamera
from ...frontend.pose import SE3

logger = logging.getLogger(__name__)


@dataclass
class SceneView:
    """A camera view in the bundle adjustment problem."""

    world_to_view: SE3
    fixed: bool = False


@dataclass
class SceneStructure:
    """Parameters optimized by bundle adjustment.

    A single shared camera model, one view per frame and one homogeneous
    point per landmark.
    """

    camera: PinholeCamera | None = None
    views: list[SceneView] = field(default_factory=list)
    points: np.ndarray = field(default_factory=lambda: np.empty((0, 4)))

    def add_view(self, world_to_view: SE3, fixed: bool = False) -> None:
        self.views.append(SceneView(world_to_view=world_to_view.copy(), fixed=fixed))

    def set_points(self, points: np.ndarray) -> None:
        self.points = np.asarray(points, dtype=np.float64).reshape(-1, 4).copy()

    def copy(self) -> SceneStructure:
        return SceneStructure(
            camera=self.camera,
            views=[SceneView(v.world_to_view.copy(), v.fixed) for v in self.views],
            points=self.points.copy(),
        )

    @property
    def num_views(self) -> int:
        return len(self.views)

    @property
    def num_points(self) -> int:
        return len(self.points)


@dataclass
class BAObservation:
    """A single 2D observation for bundle adjustment."""

    view_idx: int  # Index in SceneStructure.views
    point_idx: int  # Index in SceneStructure.points
    pixel: np.ndarray  # (2,) observed pixel coordinates


@dataclass
class SceneObservations:
    """Pixel observations linking views to points."""

    observations: list[BAObservation] = field(default_factory=list)

    def add(self, view_idx: int, point_idx: int, pixel: np.ndarray) -> None:
        self.observations.append(
            BAObservation(
                view_idx=view_idx,
                point_idx=point_idx,
                pixel=np.asarray(pixel, dtype=np.float64).flatten(),
            )
        )

    def __len__(self) -> int:
        return len(self.observations)


@dataclass
class BAResult:
    """Result of bundle adjustment optimization."""

    success: bool
    structure: SceneStructure | None = None
    initial_cost: float = 0.0
    final_cost: float = 0.0
    iterations: int = 0
    message: str = ""


class BundleAdjustment(Protocol):
    """Solver contract used by the graph store."""

    def set_problem(
        self, structure: SceneStructure, observations: SceneObservations
    ) -> None: ...

    def optimize(self, structure: SceneStructure) -> BAResult: ...


def _rvec_to_rotation(rvec: np.ndarray) -> np.ndarray:
    """Convert Rodrigues vector to rotation matrix."""
    R, _ = cv2.Rodrigues(np.asarray(rvec, dtype=np.float64))
    return R


def _rotation_to_rvec(R: np.ndarray) -> np.ndarray:
    """Convert rotation matrix to Rodrigues vector."""
    rvec, _ = cv2.Rodrigues(R)
    return rvec.flatten()


class ScipyBundleAdjustment:
    """Bundle adjustment using scipy's trust region reflective optimizer.

    Optimizes the free views and the homogeneous points to minimize
    reprojection error. Uses sparse Jacobian structure for efficiency.
    """

    def __init__(
        self,
        max_iterations: int = 50,
        ftol: float = 1e-6,
        xtol: float = 1e-6,
        loss: str = "huber",
        f_scale: float = 2.0,
        min_observations: int = 10,
    ) -> None:
        """Initialize bundle adjustment optimizer.

        Args:
            max_iterations: Maximum iterations (scaled by parameter count)
            ftol: Function tolerance for convergence
            xtol: Parameter tolerance for convergence
            loss: Loss function ("linear", "huber", "soft_l1", "cauchy")
            f_scale: Inlier scale of the robust loss (pixels)
            min_observations: Problems with fewer observations are skipped
        """
        self._max_iterations = max_iterations
        self._ftol = ftol
        self._xtol = xtol
        self._loss = loss
        self._f_scale = f_scale
        self._min_observations = min_observations

        self._observations: list[BAObservation] = []

    def set_problem(
        self, structure: SceneStructure, observations: SceneObservations
    ) -> None:
        """Set the observations of the next ``optimize`` call."""
        for obs in observations.observations:
            if not 0 <= obs.view_idx < structure.num_views:
                raise ValueError(f"Observation references unknown view {obs.view_idx}")
            if not 0 <= obs.point_idx < structure.num_points:
                raise ValueError(
                    f"Observation references unknown point {obs.point_idx}"
                )
        self._observations = list(observations.observations)

    def optimize(self, structure: SceneStructure) -> BAResult:
        """Run bundle adjustment optimization.

        Args:
            structure: Initial estimate. It is not modified.

        Returns:
            BAResult whose ``structure`` holds the refined estimate
        """
        if structure.camera is None:
            raise ValueError("SceneStructure has no camera model")

        observations = self._observations
        if structure.num_points == 0 or structure.num_views == 0:
            return BAResult(success=False, message="No views or points")
        if len(observations) < self._min_observations:
            return BAResult(
                success=False, message=f"Too few observations: {len(observations)}"
            )

        free_views = [i for i, v in enumerate(structure.views) if not v.fixed]
        view_to_param = {view_idx: k for k, view_idx in enumerate(free_views)}

        x0 = self._pack_parameters(structure, free_views)

        view_idx = np.array([o.view_idx for o in observations], dtype=np.int64)
        point_idx = np.array([o.point_idx for o in observations], dtype=np.int64)
        pixels = np.array([o.pixel for o in observations], dtype=np.float64)

        args = (structure, free_views, view_idx, point_idx, pixels)
        initial_residuals = self._compute_residuals(x0, *args)
        initial_cost = 0.5 * np.sum(initial_residuals**2)

        sparsity = self._build_sparsity_matrix(
            observations, view_to_param, len(free_views), structure.num_points
        )

        try:
            result = least_squares(
                fun=self._compute_residuals,
                x0=x0,
                jac_sparsity=sparsity,
                args=args,
                method="trf",
                loss=self._loss,
                f_scale=self._f_scale,
                ftol=self._ftol,
                xtol=self._xtol,
                x_scale="jac",
                max_nfev=self._max_iterations,
                verbose=0,
            )
        except (ValueError, np.linalg.LinAlgError) as e:
            logger.warning("Bundle adjustment failed: %s", e)
            return BAResult(success=False, message=f"Optimization failed: {e}")

        final_cost = 0.5 * np.sum(result.fun**2)

        # Check for divergence
        if not np.isfinite(final_cost) or final_cost > initial_cost * 10:
            logger.warning(
                "Bundle adjustment diverged: cost %.3g -> %.3g", initial_cost, final_cost
            )
            return BAResult(
                success=False,
                message="Optimization diverged",
                initial_cost=initial_cost,
                final_cost=final_cost,
            )

        refined = self._unpack_parameters(result.x, structure, free_views)

        return BAResult(
            success=bool(result.success) or final_cost < initial_cost,
            structure=refined,
            initial_cost=initial_cost,
            final_cost=final_cost,
            iterations=result.nfev,
            message=result.message,
        )

    def _pack_parameters(
        self, structure: SceneStructure, free_views: list[int]
    ) -> np.ndarray:
        """Pack free views and points into a flat parameter vector."""
        params = []
        for view_idx in free_views:
            T = structure.views[view_idx].world_to_view
            params.extend(_rotation_to_rvec(T.rotation))
            params.extend(T.translation)

        points = structure.points.copy()
        norms = np.linalg.norm(points, axis=1, keepdims=True)
        norms[norms == 0] = 1.0
        params.extend((points / norms).ravel())

        return np.array(params, dtype=np.float64)

    def _unpack_parameters(
        self, params: np.ndarray, structure: SceneStructure, free_views: list[int]
    ) -> SceneStructure:
        """Unpack the parameter vector into a new SceneStructure."""
        refined = structure.copy()
        for k, view_idx in enumerate(free_views):
            rvec = params[k * 6 : k * 6 + 3]
            tvec = params[k * 6 + 3 : k * 6 + 6]
            refined.views[view_idx].world_to_view = SE3(
                rotation=_rvec_to_rotation(rvec), translation=tvec
            )

        points = params[6 * len(free_views) :].reshape(-1, 4).copy()
        norms = np.linalg.norm(points, axis=1, keepdims=True)
        norms[norms == 0] = 1.0
        refined.points = points / norms
        return refined

    def _compute_residuals(
        self,
        params: np.ndarray,
        structure: SceneStructure,
        free_views: list[int],
        view_idx: np.ndarray,
        point_idx: np.ndarray,
        pixels: np.ndarray,
    ) -> np.ndarray:
        """Compute reprojection residuals followed by point norm residuals."""
        n_views = structure.num_views
        rotations = np.empty((n_views, 3, 3), dtype=np.float64)
        translations = np.empty((n_views, 3), dtype=np.float64)
        for i, view in enumerate(structure.views):
            rotations[i] = view.world_to_view.rotation
            translations[i] = view.world_to_view.translation
        for k, i in enumerate(free_views):
            rotations[i] = _rvec_to_rotation(params[k * 6 : k * 6 + 3])
            translations[i] = params[k * 6 + 3 : k * 6 + 6]

        points = params[6 * len(free_views) :].reshape(-1, 4)

        X = points[point_idx]
        # X and -X are the same point; keep the weight non-negative
        X = X * np.where(X[:, 3:4] < 0, -1.0, 1.0)
        p_cam = (
            np.einsum("nij,nj->ni", rotations[view_idx], X[:, :3])
            + translations[view_idx] * X[:, 3:4]
        )

        behind = p_cam[:, 2] <= 1e-9
        z = np.where(behind, 1.0, p_cam[:, 2])
        projected = structure.camera.norm_to_pixel(p_cam[:, :2] / z[:, None])
        # Point behind camera - return large coordinates
        projected[behind] = 1e6

        reprojection = (pixels - projected).ravel()
        norm_error = np.sum(points**2, axis=1) - 1.0
        return np.concatenate([reprojection, norm_error])

    def _build_sparsity_matrix(
        self,
        observations: list[BAObservation],
        view_to_param: dict[int, int],
        n_free_views: int,
        n_points: int,
    ) -> lil_matrix:
        """Build sparse Jacobian structure for efficient optimization.

        Each observation only affects the 6 parameters of its view (when
        the view is free) and the 4 parameters of its point. Each norm
        residual only affects its point.
        """
        pose_params = 6 * n_free_views
        n_params = pose_params + 4 * n_points
        n_residuals = 2 * len(observations) + n_points

        sparsity = lil_matrix((n_residuals, n_params), dtype=int)

        for i, obs in enumerate(observations):
            row = 2 * i
            param = view_to_param.get(obs.view_idx)
            if param is not None:
                col = param * 6
                sparsity[row : row + 2, col : col + 6] = 1

            col = pose_params + obs.point_idx * 4
            sparsity[row : row + 2, col : col + 4] = 1

        row0 = 2 * len(observations)
        for k in range(n_points):
            col = pose_params + k * 4
            sparsity[row0 + k, col : col + 4] = 1

        return sparsity
