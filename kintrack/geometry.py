"""
Rigid Pose Algebra
==================

Small helpers shared by the ICP solver, the pose arbitrator and the volume
integration controller.

Conventions:
- Poses are camera-to-world, stored as a 3x3 rotation ``R`` and a
  3-vector ``t`` (float64).
- An *increment* ``(R_inc, t_inc)`` is applied on the left:
  ``R' = R_inc @ R`` and ``t' = R_inc @ t + t_inc``.
- The volume window is addressed in a local frame that differs from the
  world frame by a pure translation (the window origin). All conversions
  between the two go through ``to_local`` / ``to_world``.
"""

from typing import Tuple

import numpy as np
from scipy.spatial.transform import Rotation


def make_pose(R: np.ndarray, t: np.ndarray) -> np.ndarray:
    """Build a 4x4 homogeneous matrix from rotation and translation."""
    T = np.eye(4, dtype=np.float64)
    T[:3, :3] = R
    T[:3, 3] = np.asarray(t, dtype=np.float64).reshape(3)
    return T


def split_pose(T: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """Split a 4x4 homogeneous matrix into ``(R, t)`` copies."""
    T = np.asarray(T, dtype=np.float64)
    if T.shape != (4, 4):
        raise ValueError(f"Pose must be 4x4, got shape {T.shape}")
    return T[:3, :3].copy(), T[:3, 3].copy()


def compose_increment(
    R_inc: np.ndarray,
    t_inc: np.ndarray,
    R: np.ndarray,
    t: np.ndarray,
) -> Tuple[np.ndarray, np.ndarray]:
    """Apply the increment ``(R_inc, t_inc)`` to the pose ``(R, t)``."""
    return R_inc @ R, R_inc @ t + t_inc


def small_angle_rotation(alpha: float, beta: float, gamma: float) -> np.ndarray:
    """
    Rotation for the ICP solution vector.

    Composed in fixed order ``Rz(gamma) @ Ry(beta) @ Rx(alpha)``.
    """
    return Rotation.from_euler("xyz", [alpha, beta, gamma]).as_matrix()


def orthonormalize(R: np.ndarray) -> np.ndarray:
    """Project a drifting 3x3 matrix back onto SO(3) with an SVD."""
    U, _, Vt = np.linalg.svd(R)
    R_ortho = U @ Vt
    if np.linalg.det(R_ortho) < 0:
        U[:, -1] = -U[:, -1]
        R_ortho = U @ Vt
    return R_ortho


def rotation_angle(R: np.ndarray) -> float:
    """Angle-axis length of ``R`` (radians), after projection onto SO(3)."""
    return float(Rotation.from_matrix(orthonormalize(R)).magnitude())


def euler_xyz(R: np.ndarray) -> np.ndarray:
    """Intrinsic X-Y-Z Euler angles; all NaN if ``R`` holds a NaN."""
    R = np.asarray(R, dtype=np.float64)
    if not np.all(np.isfinite(R)):
        return np.full(3, np.nan)
    return Rotation.from_matrix(orthonormalize(R)).as_euler("XYZ")


def to_local(points: np.ndarray, origin: np.ndarray) -> np.ndarray:
    """World coordinates (translation or ``(..., 3)`` map) to window-local ones."""
    return np.asarray(points) - np.asarray(origin, dtype=np.float64)


def to_world(points: np.ndarray, origin: np.ndarray) -> np.ndarray:
    """Window-local coordinates back to world coordinates."""
    return np.asarray(points) + np.asarray(origin, dtype=np.float64)


def transform_maps(
    vmap: np.ndarray,
    nmap: np.ndarray,
    R: np.ndarray,
    t: np.ndarray,
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Rigidly transform a vertex map and its normal map.

    Invalid (NaN) entries stay NaN.
    """
    v = vmap @ R.T + np.asarray(t).reshape(1, 1, 3)
    n = nmap @ R.T
    return v.astype(vmap.dtype, copy=False), n.astype(nmap.dtype, copy=False)
