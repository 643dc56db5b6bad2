"""
Point-to-plane ICP reduction.

Projective data association between the current vertex/normal maps and
the predicted (raycast) maps, followed by accumulation of the 6x6 normal
equations. Unknowns are ordered ``(rx, ry, rz, tx, ty, tz)``.
"""

from dataclasses import dataclass

import numpy as np

from ..config import Intrinsics


@dataclass
class LinearSystem:
    """Normal equations of one ICP iteration."""
    A: np.ndarray  # 6x6 symmetric
    b: np.ndarray  # 6
    correspondences: int = 0

    @property
    def determinant(self) -> float:
        return float(np.linalg.det(self.A))


def estimate_combined(
    R_curr: np.ndarray,
    t_curr: np.ndarray,
    vmap_curr: np.ndarray,
    nmap_curr: np.ndarray,
    R_prev_inv: np.ndarray,
    t_prev: np.ndarray,
    intr: Intrinsics,
    vmap_prev: np.ndarray,
    nmap_prev: np.ndarray,
    dist_threshold: float,
    angle_threshold: float,
) -> LinearSystem:
    """
    Build the ICP normal equations for one pyramid level.

    Args:
        R_curr, t_curr: Current pose estimate (window-local translation)
        vmap_curr, nmap_curr: Current frame maps in camera coordinates
        R_prev_inv, t_prev: Inverse rotation and window-local translation
            of the previous pose (the prediction viewpoint)
        intr: Intrinsics of this pyramid level
        vmap_prev, nmap_prev: Predicted maps in window-local coordinates
        dist_threshold: Maximum point distance of a kept pair (meters)
        angle_threshold: Pairs with ``|n_curr x n_prev| >= angle_threshold``
            are dropped

    Returns:
        LinearSystem accumulated over all kept correspondences
    """
    rows, cols = vmap_prev.shape[:2]
    valid = np.isfinite(vmap_curr[..., 2]) & np.isfinite(nmap_curr[..., 0])

    s = vmap_curr[valid].astype(np.float64) @ R_curr.T + t_curr
    n_curr = nmap_curr[valid].astype(np.float64) @ R_curr.T

    # project into the previous camera
    p = (s - t_prev) @ R_prev_inv.T
    z = p[:, 2]
    with np.errstate(divide='ignore', invalid='ignore'):
        u = np.rint(p[:, 0] * intr.fx / z + intr.cx)
        v = np.rint(p[:, 1] * intr.fy / z + intr.cy)
    inside = (z > 0) & (u >= 0) & (v >= 0) & (u < cols) & (v < rows)

    s, n_curr = s[inside], n_curr[inside]
    ui, vi = u[inside].astype(np.int64), v[inside].astype(np.int64)
    d = vmap_prev[vi, ui].astype(np.float64)
    n_prev = nmap_prev[vi, ui].astype(np.float64)

    ok = np.isfinite(d[:, 0]) & np.isfinite(n_prev[:, 0])
    s, n_curr, d, n_prev = s[ok], n_curr[ok], d[ok], n_prev[ok]

    dist = np.linalg.norm(d - s, axis=1)
    sine = np.linalg.norm(np.cross(n_curr, n_prev), axis=1)
    keep = (dist <= dist_threshold) & (sine < angle_threshold)
    s, d, n_prev = s[keep], d[keep], n_prev[keep]

    rows_j = np.concatenate([np.cross(s, n_prev), n_prev], axis=1)
    residual = np.einsum('ij,ij->i', n_prev, d - s)

    A = rows_j.T @ rows_j
    b = rows_j.T @ residual
    return LinearSystem(A=A, b=b, correspondences=int(keep.sum()))
