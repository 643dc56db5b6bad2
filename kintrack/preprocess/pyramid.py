"""
Depth Pyramid Construction
==========================

Turns one raw depth frame into an L-level pyramid of smoothed depth,
camera-space vertex maps and normal maps.

Steps:
1. Edge-aware smoothing (OpenCV bilateral filter on metric depth)
2. Optional truncation at the maximum ICP range
3. Depth-aware 2x downsampling per level
4. Back-projection with intrinsics scaled per level
5. Normals from a local plane fit (smallest eigenvector of the
   neighbourhood covariance), oriented towards the camera

Conventions:
- Depth is in meters, 0 marks an invalid sample
- Vertex/normal maps are HxWx3 float32, NaN marks an invalid entry
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional

import cv2
import numpy as np

from ..config import Intrinsics, LEVELS

logger = logging.getLogger(__name__)

# 5-tap binomial kernel used by the depth-aware downsampler
_GAUSS_TAPS = np.array([1.0, 4.0, 6.0, 4.0, 1.0]) / 16.0


@dataclass
class Pyramid:
    """Multi-resolution depth / vertex / normal maps, finest level first."""
    depths: List[np.ndarray] = field(default_factory=list)
    vmaps: List[np.ndarray] = field(default_factory=list)
    nmaps: List[np.ndarray] = field(default_factory=list)

    @property
    def levels(self) -> int:
        return len(self.vmaps)

    @classmethod
    def allocate(cls, rows: int, cols: int, levels: int = LEVELS) -> "Pyramid":
        """Preallocate all levels (``rows >> i`` x ``cols >> i``)."""
        pyramid = cls()
        for i in range(levels):
            r, c = rows >> i, cols >> i
            pyramid.depths.append(np.zeros((r, c), dtype=np.float32))
            pyramid.vmaps.append(np.full((r, c, 3), np.nan, dtype=np.float32))
            pyramid.nmaps.append(np.full((r, c, 3), np.nan, dtype=np.float32))
        return pyramid

    def copy(self) -> "Pyramid":
        return Pyramid(
            depths=[d.copy() for d in self.depths],
            vmaps=[v.copy() for v in self.vmaps],
            nmaps=[n.copy() for n in self.nmaps],
        )

    def valid_mask(self, level: int = 0) -> np.ndarray:
        return np.isfinite(self.vmaps[level][..., 2])


def bilateral_filter(
    depth: np.ndarray,
    sigma_color: float = 0.03,
    sigma_space: float = 4.5,
    diameter: int = 7,
) -> np.ndarray:
    """Edge-preserving smoothing of a metric depth map; invalid samples stay 0."""
    depth = np.ascontiguousarray(depth, dtype=np.float32)
    filtered = cv2.bilateralFilter(depth, diameter, sigma_color, sigma_space)
    filtered[depth <= 0] = 0.0
    return filtered


def truncate_depth(depth: np.ndarray, max_distance: float) -> np.ndarray:
    """Invalidate samples beyond ``max_distance`` meters (in place)."""
    depth[depth > max_distance] = 0.0
    return depth


def pyr_down(depth: np.ndarray, sigma_color: float = 0.03) -> np.ndarray:
    """
    Half-resolution depth, averaging a 5x5 Gaussian window around each
    even pixel but only over samples within ``3 * sigma_color`` of it.
    """
    rows, cols = depth.shape[0] // 2, depth.shape[1] // 2
    center = depth[0:rows * 2:2, 0:cols * 2:2]
    padded = np.pad(depth, 2, mode='constant')

    acc = np.zeros((rows, cols), dtype=np.float64)
    wsum = np.zeros((rows, cols), dtype=np.float64)
    for dy in range(5):
        for dx in range(5):
            sample = padded[dy:dy + rows * 2:2, dx:dx + cols * 2:2]
            mask = (sample > 0) & (np.abs(sample - center) < 3.0 * sigma_color)
            w = _GAUSS_TAPS[dy] * _GAUSS_TAPS[dx]
            acc += np.where(mask, sample * w, 0.0)
            wsum += np.where(mask, w, 0.0)

    out = np.zeros((rows, cols), dtype=np.float32)
    ok = (center > 0) & (wsum > 0)
    out[ok] = (acc[ok] / wsum[ok]).astype(np.float32)
    return out


def create_vmap(depth: np.ndarray, intr: Intrinsics) -> np.ndarray:
    """Back-project a metric depth map into camera-space points."""
    rows, cols = depth.shape
    u, v = np.meshgrid(np.arange(cols, dtype=np.float32), np.arange(rows, dtype=np.float32))
    z = depth.astype(np.float32)
    vmap = np.stack([
        (u - intr.cx) * z / intr.fx,
        (v - intr.cy) * z / intr.fy,
        z,
    ], axis=-1)
    vmap[depth <= 0] = np.nan
    return vmap


def compute_normals(vmap: np.ndarray, window: int = 7, min_fraction: float = 0.5) -> np.ndarray:
    """
    Per-pixel normals by a local plane fit.

    The covariance of the valid points inside a ``window`` x ``window``
    neighbourhood is accumulated with box filters; the eigenvector of its
    smallest eigenvalue is the normal. Pixels whose own vertex is invalid
    or whose neighbourhood holds less than ``min_fraction`` valid points
    get NaN.
    """
    rows, cols, _ = vmap.shape
    valid = np.isfinite(vmap[..., 2])
    pts = np.where(valid[..., None], vmap, 0.0).astype(np.float64)
    mask = valid.astype(np.float64)

    def box(img: np.ndarray) -> np.ndarray:
        return cv2.boxFilter(np.ascontiguousarray(img), cv2.CV_64F, (window, window), normalize=False,
                             borderType=cv2.BORDER_CONSTANT)

    count = box(mask)
    sums = [box(pts[..., i]) for i in range(3)]
    x, y, z = pts[..., 0], pts[..., 1], pts[..., 2]
    second = {
        (0, 0): box(x * x), (0, 1): box(x * y), (0, 2): box(x * z),
        (1, 1): box(y * y), (1, 2): box(y * z), (2, 2): box(z * z),
    }

    enough = valid & (count >= min_fraction * window * window) & (count >= 3)
    normals = np.full((rows, cols, 3), np.nan, dtype=np.float32)
    if not np.any(enough):
        return normals

    n = count[enough]
    mean = np.stack([s[enough] / n for s in sums], axis=-1)
    cov = np.empty((mean.shape[0], 3, 3), dtype=np.float64)
    for (i, j), s in second.items():
        c = s[enough] / n - mean[:, i] * mean[:, j]
        cov[:, i, j] = c
        cov[:, j, i] = c

    _, evecs = np.linalg.eigh(cov)
    nrm = evecs[:, :, 0]
    # face the camera (camera centre at the origin)
    flip = np.einsum('ij,ij->i', nrm, vmap[enough].astype(np.float64)) > 0
    nrm[flip] *= -1.0
    normals[enough] = nrm.astype(np.float32)
    return normals


class FramePreprocessor:
    """
    Builds the current-frame pyramid consumed by ICP.

    Args:
        intrinsics: Depth camera intrinsics at full resolution
        levels: Number of pyramid levels
        depth_scale: Raw depth units to meters (0.001 for millimetres)
        max_icp_distance: Truncate depth beyond this for ICP (0 = unlimited)
        sigma_color: Bilateral range sigma / downsampling gate (meters)
        sigma_space: Bilateral spatial sigma (pixels)
        normal_window: Neighbourhood size for the normal plane fit
    """

    def __init__(
        self,
        intrinsics: Intrinsics,
        levels: int = LEVELS,
        depth_scale: float = 0.001,
        max_icp_distance: float = 0.0,
        sigma_color: float = 0.03,
        sigma_space: float = 4.5,
        normal_window: int = 7,
    ):
        self.intrinsics = intrinsics
        self.levels = levels
        self.depth_scale = depth_scale
        self.max_icp_distance = max_icp_distance
        self.sigma_color = sigma_color
        self.sigma_space = sigma_space
        self.normal_window = normal_window

    def to_meters(self, depth_raw: np.ndarray) -> np.ndarray:
        """Raw sensor depth to float32 meters (0 stays invalid)."""
        if np.issubdtype(depth_raw.dtype, np.floating):
            depth = np.nan_to_num(depth_raw.astype(np.float32), nan=0.0)
            return depth * np.float32(self.depth_scale)
        return depth_raw.astype(np.float32) * np.float32(self.depth_scale)

    def process(self, depth_raw: np.ndarray, pyramid: Optional[Pyramid] = None) -> Pyramid:
        """
        Build the pyramid for one raw depth frame.

        Args:
            depth_raw: HxW raw depth (uint16 sensor units or float)
            pyramid: Preallocated pyramid to fill; a new one is allocated if None

        Returns:
            The filled pyramid
        """
        if depth_raw.ndim != 2:
            raise ValueError(f"Depth must be HxW, got shape {depth_raw.shape}")
        rows, cols = depth_raw.shape
        if pyramid is None:
            pyramid = Pyramid.allocate(rows, cols, self.levels)
        elif pyramid.depths[0].shape != (rows, cols):
            raise ValueError(
                f"Depth shape {depth_raw.shape} doesn't match workspace {pyramid.depths[0].shape}"
            )

        depth = bilateral_filter(self.to_meters(depth_raw), self.sigma_color, self.sigma_space)
        if self.max_icp_distance > 0:
            truncate_depth(depth, self.max_icp_distance)
        np.copyto(pyramid.depths[0], depth)

        for i in range(1, self.levels):
            np.copyto(pyramid.depths[i], pyr_down(pyramid.depths[i - 1], self.sigma_color))

        for i in range(self.levels):
            vmap = create_vmap(pyramid.depths[i], self.intrinsics.level(i))
            np.copyto(pyramid.vmaps[i], vmap)
            np.copyto(pyramid.nmaps[i], compute_normals(vmap, self.normal_window))

        logger.debug(f"Pyramid built: {int(pyramid.valid_mask(0).sum())} valid points at level 0")
        return pyramid
