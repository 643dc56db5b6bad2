"""
Colour volume paired with a TSDF volume.

Holds one running-average RGB value per voxel. Colour is taken from the
voxels the current prediction hits: each valid predicted vertex selects its
voxel, the voxel centre is projected into the colour image, and the sampled
colour is averaged in with a weight capped at ``max_weight``.
"""

import logging
from typing import Sequence

import numpy as np

from ..config import Intrinsics
from .tsdf import TsdfVolume

logger = logging.getLogger(__name__)

DEFAULT_MAX_WEIGHT = 255


class ColorVolume:
    """
    Args:
        tsdf_volume: Volume providing the grid geometry
        max_weight: Running-average weight cap; negative selects the default
    """

    def __init__(self, tsdf_volume: TsdfVolume, max_weight: int = -1):
        self.tsdf_volume = tsdf_volume
        self.max_weight = min(DEFAULT_MAX_WEIGHT if max_weight < 0 else int(max_weight), 255)
        res = tuple(tsdf_volume.resolution)
        self.colors = np.zeros(res + (3,), dtype=np.float32)
        self.weight = np.zeros(res, dtype=np.uint8)

    def reset(self):
        self.colors.fill(0.0)
        self.weight.fill(0)

    @property
    def data(self):
        return self.colors, self.weight

    def integrate(
        self,
        vmap_local: np.ndarray,
        rgb: np.ndarray,
        intr: Intrinsics,
        R_inv: np.ndarray,
        t_local: np.ndarray,
        trunc_dist: float,
    ) -> int:
        """
        Fuse colour for the voxels hit by the predicted surface.

        Args:
            vmap_local: HxWx3 predicted vertices in window-local coordinates
            rgb: HxWx3 uint8 colour image registered to depth
            intr: Full-resolution intrinsics
            R_inv: World-to-camera rotation
            t_local: Camera position in window-local coordinates
            trunc_dist: Maximum vertex-to-voxel-centre distance

        Returns:
            Number of updated voxels
        """
        rows, cols = rgb.shape[:2]
        points = vmap_local.reshape(-1, 3)
        points = points[np.isfinite(points[:, 2])]
        if points.shape[0] == 0:
            return 0

        vol = self.tsdf_volume
        res = vol.resolution
        voxel = np.floor(points / vol.voxel_size).astype(np.int64)
        inside = np.all((voxel >= 0) & (voxel < res), axis=1)
        voxel, points = voxel[inside], points[inside]

        centers = (voxel + 0.5) * vol.voxel_size
        close = np.linalg.norm(centers - points, axis=1) < trunc_dist
        voxel, centers = voxel[close], centers[close]

        cam = (centers - t_local) @ R_inv.T
        z = cam[:, 2]
        with np.errstate(divide='ignore', invalid='ignore'):
            u = np.rint(intr.fx * cam[:, 0] / z + intr.cx)
            v = np.rint(intr.fy * cam[:, 1] / z + intr.cy)
        visible = (z > 0) & (u >= 0) & (v >= 0) & (u < cols) & (v < rows)
        voxel = voxel[visible]
        if voxel.shape[0] == 0:
            return 0

        # one update per voxel and frame
        flat, first = np.unique(np.ravel_multi_index(voxel.T, tuple(res)), return_index=True)
        ui = u[visible][first].astype(np.int64)
        vi = v[visible][first].astype(np.int64)
        sample = rgb[vi, ui, :3].astype(np.float32)

        colors = self.colors.reshape(-1, 3)
        weight = self.weight.reshape(-1)
        w_old = weight[flat].astype(np.float32)
        colors[flat] = (colors[flat] * w_old[:, None] + sample) / (w_old[:, None] + 1.0)
        weight[flat] = np.minimum(w_old + 1.0, self.max_weight).astype(np.uint8)
        return int(flat.size)

    def shift(self, offset: Sequence[int]):
        """Follow a TSDF window shift; vacated slabs are cleared."""
        for axis, k in enumerate(int(o) for o in offset):
            if k == 0:
                continue
            n = self.weight.shape[axis]
            if abs(k) >= n:
                self.reset()
                return
            self.colors = np.roll(self.colors, -k, axis=axis)
            self.weight = np.roll(self.weight, -k, axis=axis)
            cleared = [slice(None)] * 3
            cleared[axis] = slice(n - k, n) if k > 0 else slice(0, -k)
            self.colors[tuple(cleared)] = 0.0
            self.weight[tuple(cleared)] = 0

    def fetch_colors(self, points_local: np.ndarray) -> np.ndarray:
        """Nearest-voxel colour (uint8) for window-local points; black outside."""
        vol = self.tsdf_volume
        voxel = np.floor(points_local / vol.voxel_size).astype(np.int64)
        inside = np.all((voxel >= 0) & (voxel < vol.resolution), axis=1)
        out = np.zeros((points_local.shape[0], 3), dtype=np.uint8)
        vx = voxel[inside]
        out[inside] = np.clip(self.colors[vx[:, 0], vx[:, 1], vx[:, 2]], 0, 255).astype(np.uint8)
        return out
