"""
TSDF Volume
===========

Dense truncated signed distance volume addressed in the window-local frame:
voxel ``(0, 0, 0)`` sits at the window origin, voxel centres at
``(index + 0.5) * voxel_size``.

The integration kernel is a vectorised numpy port of the classic projective
TSDF update: every voxel centre is projected into the depth image, the
signed distance along the viewing ray is truncated, normalised to
``[-1, 1]`` and averaged with a running weight capped at ``MAX_WEIGHT``.
"""

import logging
from typing import Optional, Sequence, Tuple, Union

import numpy as np

from ..config import Intrinsics

logger = logging.getLogger(__name__)

MAX_WEIGHT = 128

Vector3 = Union[float, Sequence[float], np.ndarray]


def _as_vec3(value: Vector3, dtype=np.float64) -> np.ndarray:
    arr = np.asarray(value, dtype=dtype)
    if arr.ndim == 0:
        arr = np.full(3, arr, dtype=dtype)
    return arr.reshape(3)


class TsdfVolume:
    """
    Truncated signed distance volume.

    Args:
        resolution: Voxels per axis (int or 3-sequence)
        size: Physical size per axis in meters (float or 3-sequence)
        trunc_dist: Truncation distance in meters
    """

    def __init__(self, resolution: Vector3 = 128, size: Vector3 = 3.0, trunc_dist: float = 0.03):
        self.resolution = _as_vec3(resolution, np.int64)
        self._size = _as_vec3(size)
        self._trunc_dist = 0.0
        self.tsdf = np.ones(tuple(self.resolution), dtype=np.float32)
        self.weight = np.zeros(tuple(self.resolution), dtype=np.float32)
        self._centers: Optional[np.ndarray] = None
        self.set_tsdf_trunc_dist(trunc_dist)

    @property
    def size(self) -> np.ndarray:
        return self._size.copy()

    @property
    def voxel_size(self) -> np.ndarray:
        return self._size / self.resolution

    @property
    def trunc_dist(self) -> float:
        return self._trunc_dist

    @property
    def data(self) -> Tuple[np.ndarray, np.ndarray]:
        """``(tsdf, weight)`` arrays, indexed ``[x, y, z]``."""
        return self.tsdf, self.weight

    def set_size(self, size: Vector3):
        self._size = _as_vec3(size)
        self._centers = None
        self.set_tsdf_trunc_dist(self._trunc_dist)

    def set_tsdf_trunc_dist(self, distance: float):
        """Truncation is clamped to at least 2.1 voxels."""
        min_trunc = 2.1 * float(np.max(self.voxel_size))
        if distance < min_trunc:
            logger.info(f"Truncation distance {distance:.4f} raised to {min_trunc:.4f} (2.1 voxels)")
        self._trunc_dist = max(float(distance), min_trunc)

    def reset(self):
        self.tsdf.fill(1.0)
        self.weight.fill(0.0)

    def is_empty(self) -> bool:
        return not np.any(self.weight > 0)

    def voxel_centers(self) -> np.ndarray:
        """Local coordinates of all voxel centres, shape (X*Y*Z, 3), C order."""
        if self._centers is None:
            axes = [(np.arange(n, dtype=np.float32) + 0.5) * np.float32(s)
                    for n, s in zip(self.resolution, self.voxel_size)]
            gx, gy, gz = np.meshgrid(*axes, indexing='ij')
            self._centers = np.stack([gx.ravel(), gy.ravel(), gz.ravel()], axis=1)
        return self._centers

    def integrate(
        self,
        depth: np.ndarray,
        intr: Intrinsics,
        R_inv: np.ndarray,
        t_local: np.ndarray,
    ) -> int:
        """
        Fuse one metric depth frame.

        Args:
            depth: HxW depth in meters (0 = invalid)
            intr: Full-resolution intrinsics
            R_inv: Inverse camera rotation (world-to-camera)
            t_local: Camera position in window-local coordinates

        Returns:
            Number of updated voxels
        """
        rows, cols = depth.shape
        centers = self.voxel_centers()
        cam = (centers - t_local.astype(np.float32)) @ R_inv.T.astype(np.float32)
        z = cam[:, 2]

        with np.errstate(divide='ignore', invalid='ignore'):
            u = np.rint(intr.fx * cam[:, 0] / z + intr.cx)
            v = np.rint(intr.fy * cam[:, 1] / z + intr.cy)
        inside = (z > 0) & (u >= 0) & (v >= 0) & (u < cols) & (v < rows)
        idx = np.nonzero(inside)[0]
        ui, vi = u[idx].astype(np.int64), v[idx].astype(np.int64)

        d = depth[vi, ui]
        has_depth = d > 0
        idx, ui, vi, d = idx[has_depth], ui[has_depth], vi[has_depth], d[has_depth]

        # signed distance along the viewing ray
        ray_scale = np.sqrt(((ui - intr.cx) / intr.fx) ** 2 + ((vi - intr.cy) / intr.fy) ** 2 + 1.0)
        sdf = d * ray_scale - np.linalg.norm(cam[idx], axis=1)
        near = sdf >= -self._trunc_dist
        idx, sdf = idx[near], sdf[near]

        tsdf_new = np.minimum(1.0, sdf / self._trunc_dist).astype(np.float32)
        flat_tsdf = self.tsdf.reshape(-1)
        flat_weight = self.weight.reshape(-1)
        w_old = flat_weight[idx]
        flat_tsdf[idx] = (flat_tsdf[idx] * w_old + tsdf_new) / (w_old + 1.0)
        flat_weight[idx] = np.minimum(w_old + 1.0, MAX_WEIGHT)
        return int(idx.size)

    def interpolate(self, points: np.ndarray) -> np.ndarray:
        """
        Trilinear TSDF lookup at window-local points (N, 3).

        Returns NaN outside the grid or where any of the 8 neighbours has
        never been observed.
        """
        g = points / self.voxel_size - 0.5
        i0 = np.floor(g).astype(np.int64)
        frac = (g - i0).astype(np.float32)
        res = self.resolution
        valid = np.all((i0 >= 0) & (i0 < res - 1), axis=1) & np.all(np.isfinite(points), axis=1)

        out = np.full(points.shape[0], np.nan, dtype=np.float32)
        if not np.any(valid):
            return out
        i0, frac = i0[valid], frac[valid]
        x, y, z = i0[:, 0], i0[:, 1], i0[:, 2]
        fx, fy, fz = frac[:, 0], frac[:, 1], frac[:, 2]

        acc = np.zeros(x.shape[0], dtype=np.float32)
        observed = np.ones(x.shape[0], dtype=bool)
        for dx in (0, 1):
            wx = fx if dx else 1.0 - fx
            for dy in (0, 1):
                wy = fy if dy else 1.0 - fy
                for dz in (0, 1):
                    wz = fz if dz else 1.0 - fz
                    acc += wx * wy * wz * self.tsdf[x + dx, y + dy, z + dz]
                    observed &= self.weight[x + dx, y + dy, z + dz] > 0

        acc[~observed] = np.nan
        out[valid] = acc
        return out

    def gradient(self, points: np.ndarray) -> np.ndarray:
        """Central-difference TSDF gradient at window-local points (N, 3)."""
        grad = np.empty_like(points, dtype=np.float32)
        for axis in range(3):
            step = np.zeros(3)
            step[axis] = self.voxel_size[axis]
            grad[:, axis] = self.interpolate(points + step) - self.interpolate(points - step)
        return grad

    def shift(self, offset: Sequence[int]):
        """
        Move the grid content by ``offset`` voxels (new index = old - offset)
        and clear the vacated slabs.
        """
        for axis, k in enumerate(int(o) for o in offset):
            if k == 0:
                continue
            n = int(self.resolution[axis])
            if abs(k) >= n:
                self.reset()
                return
            self.tsdf = np.roll(self.tsdf, -k, axis=axis)
            self.weight = np.roll(self.weight, -k, axis=axis)
            cleared = [slice(None)] * 3
            cleared[axis] = slice(n - k, n) if k > 0 else slice(0, -k)
            self.tsdf[tuple(cleared)] = 1.0
            self.weight[tuple(cleared)] = 0.0
