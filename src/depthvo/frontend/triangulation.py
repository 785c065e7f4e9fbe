"""Multi-view triangulation from calibrated observations."""

from __future__ import annotations

from typing import Sequence

import numpy as np
from scipy.optimize import least_squares

from .pose import SE3


def _residuals(point: np.ndarray, obs_norm: np.ndarray, rotations, translations):
    p_cam = np.einsum("nij,j->ni", rotations, point) + translations
    z = p_cam[:, 2:3]
    z = np.where(np.abs(z) < 1e-12, 1e-12, z)
    return (p_cam[:, :2] / z - obs_norm).ravel()


def triangulate_n_views(
    obs_norm: np.ndarray,
    world_to_view: Sequence[SE3],
    max_iterations: int = 10,
) -> np.ndarray | None:
    """Triangulate a 3D point seen from two or more views.

    A linear (DLT) estimate is refined by minimizing the error in normalized
    image coordinates for a few iterations.

    Args:
        obs_norm: Nx2 normalized image coordinates, one per view
        world_to_view: N transforms from world into each view
        max_iterations: Iteration limit of the non-linear refinement

    Returns:
        The 3D point in world coordinates, or None if the views have no
        baseline, the point could not be triangulated or it lies behind one
        of the views
    """
    obs_norm = np.asarray(obs_norm, dtype=np.float64).reshape(-1, 2)
    n_views = len(world_to_view)
    if n_views < 2 or len(obs_norm) != n_views:
        return None

    rotations = np.array([T.rotation for T in world_to_view])
    translations = np.array([T.translation for T in world_to_view])

    # Linear estimate: x * P3 - P1 = 0, y * P3 - P2 = 0
    A = np.empty((2 * n_views, 4), dtype=np.float64)
    for i in range(n_views):
        P = np.hstack([rotations[i], translations[i].reshape(3, 1)])
        x, y = obs_norm[i]
        A[2 * i] = x * P[2] - P[0]
        A[2 * i + 1] = y * P[2] - P[1]

    _, s, vt = np.linalg.svd(A)
    # rays without baseline leave more than one solution
    if s[-2] <= 1e-9 * s[0]:
        return None
    X = vt[-1]
    if abs(X[3]) < 1e-12 * np.linalg.norm(X):
        return None
    point = X[:3] / X[3]

    if max_iterations > 0:
        result = least_squares(
            _residuals,
            point,
            args=(obs_norm, rotations, translations),
            method="lm",
            max_nfev=max_iterations * 4,
        )
        point = result.x

    if not np.isfinite(point).all():
        return None

    depths = np.einsum("nij,j->ni", rotations, point)[:, 2] + translations[:, 2]
    if np.any(depths <= 0):
        return None

    return point
