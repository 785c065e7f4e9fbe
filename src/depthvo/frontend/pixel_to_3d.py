"""Per-pixel 3D localization from range data."""

from __future__ import annotations

from typing import Protocol

import numpy as np

from .camera import PinholeCamera


class PixelTo3D(Protocol):
    """Computes the 3D location of a single pixel in the current image."""

    def localize(self, x: float, y: float) -> tuple[bool, np.ndarray]:
        """Localize pixel (x, y).

        Returns:
            Tuple of (success, homogeneous point (x, y, z, w) in the camera frame)
        """
        ...


class DepthPixelTo3D:
    """Back-projects pixels using a depth image registered to the camera.

    The depth image must be set with ``set_depth`` before the tracker
    processes the matching color or intensity image. Depths past
    ``max_depth`` are returned as points at infinity along the pixel's ray,
    which keeps distant features usable for rotation estimation.
    """

    def __init__(
        self,
        camera: PinholeCamera,
        depth_scale: float = 1.0,
        min_depth: float = 0.1,
        max_depth: float = 40.0,
    ) -> None:
        """Initialize the localizer.

        Args:
            camera: Camera the depth image is registered to
            depth_scale: Multiplier converting raw depth values to meters
                (e.g. 0.001 for millimeter uint16 depth maps)
            min_depth: Depths below this (meters) are rejected
            max_depth: Depths above this (meters) become points at infinity
        """
        self._camera = camera
        self._depth_scale = depth_scale
        self._min_depth = min_depth
        self._max_depth = max_depth
        self._depth: np.ndarray | None = None

    def set_depth(self, depth: np.ndarray) -> None:
        """Set the depth image used by subsequent ``localize`` calls."""
        depth = np.asarray(depth)
        if depth.shape[:2] != (self._camera.height, self._camera.width):
            raise ValueError(
                f"Depth image shape {depth.shape[:2]} does not match camera "
                f"{(self._camera.height, self._camera.width)}"
            )
        self._depth = depth

    def localize(self, x: float, y: float) -> tuple[bool, np.ndarray]:
        if self._depth is None:
            return False, np.zeros(4)

        col = int(round(x))
        row = int(round(y))
        if not (0 <= col < self._camera.width and 0 <= row < self._camera.height):
            return False, np.zeros(4)

        depth = float(self._depth[row, col]) * self._depth_scale
        if not np.isfinite(depth) or depth < self._min_depth:
            return False, np.zeros(4)

        nx, ny = self._camera.pixel_to_norm(np.array([x, y], dtype=np.float64))
        if depth > self._max_depth:
            return True, np.array([nx, ny, 1.0, 0.0])

        return True, np.array([nx * depth, ny * depth, depth, 1.0])
