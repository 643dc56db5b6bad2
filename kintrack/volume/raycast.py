"""
TSDF Raycasting
===============

Renders the predicted surface seen from a camera pose by marching every
pixel ray through the volume until the TSDF changes sign from positive to
negative. The crossing is refined by linear interpolation between the last
two samples; normals come from the TSDF gradient at the hit point.

Everything is expressed in the window-local frame: the caller passes the
camera translation relative to the window origin and rebases the returned
vertex map to world coordinates itself.
"""

import logging
from typing import Tuple

import numpy as np

from ..config import Intrinsics
from .tsdf import TsdfVolume

logger = logging.getLogger(__name__)

# step = trunc_dist * RAY_STEP_FACTOR
RAY_STEP_FACTOR = 0.8


def _ray_box_interval(origin: np.ndarray, dirs: np.ndarray, box_max: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """Entry/exit ray parameters for the box ``[0, box_max]`` (slab method)."""
    with np.errstate(divide='ignore', invalid='ignore'):
        inv = 1.0 / dirs
        t0 = (0.0 - origin) * inv
        t1 = (box_max - origin) * inv
    t_near = np.nanmax(np.minimum(t0, t1), axis=1)
    t_far = np.nanmin(np.maximum(t0, t1), axis=1)
    return np.maximum(t_near, 0.0), t_far


def raycast(
    volume: TsdfVolume,
    intr: Intrinsics,
    R: np.ndarray,
    t_local: np.ndarray,
    rows: int,
    cols: int,
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Raycast the volume from a camera pose.

    Args:
        volume: TSDF volume
        intr: Intrinsics of the rendered image
        R: Camera-to-world rotation
        t_local: Camera position in window-local coordinates
        rows, cols: Rendered image size

    Returns:
        ``(vmap, nmap)``, HxWx3 float32 in window-local coordinates,
        NaN where no surface was hit
    """
    u, v = np.meshgrid(np.arange(cols, dtype=np.float64), np.arange(rows, dtype=np.float64))
    dirs_cam = np.stack([(u - intr.cx) / intr.fx, (v - intr.cy) / intr.fy, np.ones_like(u)], axis=-1)
    dirs = dirs_cam.reshape(-1, 3) @ R.T
    dirs /= np.linalg.norm(dirs, axis=1, keepdims=True)
    origin = np.asarray(t_local, dtype=np.float64)

    n_rays = dirs.shape[0]
    t_near, t_far = _ray_box_interval(origin, dirs, volume.size)
    hit_t = np.full(n_rays, np.nan)

    step = volume.trunc_dist * RAY_STEP_FACTOR
    active = np.flatnonzero(t_far > t_near)
    t_curr = t_near[active]
    prev = volume.interpolate(origin + dirs[active] * t_curr[:, None])

    while active.size > 0:
        t_next = t_curr + step
        alive = t_next <= t_far[active]
        active, t_next, prev = active[alive], t_next[alive], prev[alive]
        if active.size == 0:
            break

        val = volume.interpolate(origin + dirs[active] * t_next[:, None])
        crossing = (prev > 0) & (val < 0)
        back_face = (prev < 0) & (val > 0)

        if np.any(crossing):
            p, q = prev[crossing], val[crossing]
            hit_t[active[crossing]] = t_next[crossing] - step * q / (q - p)

        keep = ~(crossing | back_face)
        active, t_curr, prev = active[keep], t_next[keep], val[keep]

    hit = np.flatnonzero(np.isfinite(hit_t))
    vmap = np.full((n_rays, 3), np.nan, dtype=np.float32)
    nmap = np.full((n_rays, 3), np.nan, dtype=np.float32)
    if hit.size > 0:
        points = origin + dirs[hit] * hit_t[hit, None]
        grad = volume.gradient(points)
        norm = np.linalg.norm(grad, axis=1)
        good = np.isfinite(norm) & (norm > 0)
        hit, points, grad, norm = hit[good], points[good], grad[good], norm[good]
        vmap[hit] = points.astype(np.float32)
        nmap[hit] = (grad / norm[:, None]).astype(np.float32)

    logger.debug(f"Raycast: {hit.size} of {n_rays} rays hit the surface")
    return vmap.reshape(rows, cols, 3), nmap.reshape(rows, cols, 3)


def resize_vmap(vmap: np.ndarray) -> np.ndarray:
    """2x downsampling; a block with any invalid vertex gives NaN."""
    rows, cols = vmap.shape[0] // 2, vmap.shape[1] // 2
    blocks = vmap[:rows * 2, :cols * 2].reshape(rows, 2, cols, 2, 3)
    return blocks.mean(axis=(1, 3)).astype(np.float32)


def resize_nmap(nmap: np.ndarray) -> np.ndarray:
    """2x downsampling of normals, renormalised; invalid blocks give NaN."""
    rows, cols = nmap.shape[0] // 2, nmap.shape[1] // 2
    blocks = nmap[:rows * 2, :cols * 2].reshape(rows, 2, cols, 2, 3)
    summed = blocks.sum(axis=(1, 3))
    with np.errstate(divide='ignore', invalid='ignore'):
        out = summed / np.linalg.norm(summed, axis=-1, keepdims=True)
    return out.astype(np.float32)


def render_shaded(vmap: np.ndarray, nmap: np.ndarray, light_pos: np.ndarray) -> np.ndarray:
    """
    Lambert shading of a vertex/normal map with a point light.

    Returns:
        HxWx3 uint8 grey image, black where the maps are invalid
    """
    valid = np.isfinite(vmap[..., 2]) & np.isfinite(nmap[..., 2])
    to_light = np.asarray(light_pos, dtype=np.float32) - vmap
    with np.errstate(divide='ignore', invalid='ignore'):
        to_light /= np.linalg.norm(to_light, axis=-1, keepdims=True)
        shade = np.abs(np.einsum('ijk,ijk->ij', to_light, nmap))
    intensity = np.where(valid, 0.2 + 0.8 * np.nan_to_num(shade), 0.0)
    grey = np.clip(intensity * 255.0, 0, 255).astype(np.uint8)
    return np.repeat(grey[..., None], 3, axis=-1)
