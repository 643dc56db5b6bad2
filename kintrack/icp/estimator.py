"""
Multi-Resolution ICP Pose Estimator
===================================

Coarse-to-fine point-to-plane ICP between the current frame pyramid and the
pyramid predicted from the previous frame (raycast from the volume, stored
in world coordinates).

Each iteration:
1. the prediction is moved into the current window-local frame
2. correspondences are found by projective association and filtered by
   distance and normal angle
3. the 6x6 normal equations are accumulated and solved by Cholesky
4. the small-angle solution ``Rz(gamma) Ry(beta) Rx(alpha)``, ``t`` is
   composed onto the estimate: ``R = R_inc R``, ``t = R_inc t + t_inc``

A singular or NaN system raises ``TrackingLost`` immediately.

Usage:
    estimator = PoseEstimator(config.intrinsics, icp_iterations=[10, 5, 4])
    R, t = estimator.solve_absolute(current, prediction, R_prev, t_prev, origin)
"""

import logging
import math
from typing import Dict, Sequence, Tuple

import numpy as np
from scipy.linalg import LinAlgError, cho_factor, cho_solve

from ..config import Intrinsics
from ..errors import TrackingLost
from ..geometry import compose_increment, small_angle_rotation, to_local
from ..preprocess import Pyramid
from .reduction import LinearSystem, estimate_combined

logger = logging.getLogger(__name__)

SINGULAR_DETERMINANT = 1e-15


class PoseEstimator:
    """
    Point-to-plane ICP over a depth pyramid.

    Args:
        intrinsics: Full-resolution depth intrinsics
        icp_iterations: Iterations per level, finest level first
        dist_threshold: Correspondence distance rejection (meters)
        angle_threshold: Sine of the maximum angle between matched normals
    """

    def __init__(
        self,
        intrinsics: Intrinsics,
        icp_iterations: Sequence[int] = (10, 5, 4),
        dist_threshold: float = 0.10,
        angle_threshold: float = math.sin(20.0 * math.pi / 180.0),
    ):
        self.intrinsics = intrinsics
        self.icp_iterations = list(icp_iterations)
        self.dist_threshold = dist_threshold
        self.angle_threshold = angle_threshold
        self.last_correspondences: Dict[int, int] = {}

    def set_corresp_filtering_params(self, dist_threshold: float, sine_of_angle: float):
        self.dist_threshold = dist_threshold
        self.angle_threshold = sine_of_angle

    @staticmethod
    def check_system(system: LinearSystem, level: int = -1, iteration: int = -1) -> None:
        """Raise ``TrackingLost`` if the normal equations are degenerate."""
        if not np.all(np.isfinite(system.A)) or not np.all(np.isfinite(system.b)):
            raise TrackingLost("ICP system contains NaN", level, iteration)
        det = system.determinant
        if math.isnan(det) or abs(det) < SINGULAR_DETERMINANT:
            raise TrackingLost(
                f"ICP system singular (det={det:.3e}, "
                f"{system.correspondences} correspondences)",
                level,
                iteration,
            )

    @staticmethod
    def solve_system(system: LinearSystem, level: int = -1, iteration: int = -1) -> Tuple[np.ndarray, np.ndarray]:
        """Cholesky solve of ``A x = b``; returns the increment ``(R_inc, t_inc)``."""
        try:
            x = cho_solve(cho_factor(system.A), system.b)
        except LinAlgError as e:
            raise TrackingLost(f"ICP system not positive definite: {e}", level, iteration) from e
        if not np.all(np.isfinite(x)):
            raise TrackingLost("ICP solution contains NaN", level, iteration)
        return small_angle_rotation(x[0], x[1], x[2]), x[3:].copy()

    def _run(
        self,
        current: Pyramid,
        prediction: Pyramid,
        R_prev: np.ndarray,
        t_prev: np.ndarray,
        origin: np.ndarray,
    ) -> Tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray]:
        R_prev_inv = np.linalg.inv(R_prev)
        t_prev_local = to_local(t_prev, origin)

        R_curr, t_curr = R_prev.copy(), t_prev.copy()
        R_cum, t_cum = np.eye(3), np.zeros(3)
        self.last_correspondences = {}

        for level in reversed(range(current.levels)):
            intr = self.intrinsics.level(level)
            vmap_prev = to_local(prediction.vmaps[level], origin)
            nmap_prev = prediction.nmaps[level]

            for iteration in range(self.icp_iterations[level]):
                system = estimate_combined(
                    R_curr, to_local(t_curr, origin),
                    current.vmaps[level], current.nmaps[level],
                    R_prev_inv, t_prev_local, intr,
                    vmap_prev, nmap_prev,
                    self.dist_threshold, self.angle_threshold,
                )
                self.last_correspondences[level] = system.correspondences
                self.check_system(system, level, iteration)

                R_inc, t_inc = self.solve_system(system, level, iteration)
                R_curr, t_curr = compose_increment(R_inc, t_inc, R_curr, t_curr)
                R_cum, t_cum = compose_increment(R_inc, t_inc, R_cum, t_cum)

            logger.debug(
                f"ICP level {level}: {self.last_correspondences.get(level, 0)} correspondences"
            )

        return R_curr, t_curr, R_cum, t_cum

    def solve_absolute(
        self,
        current: Pyramid,
        prediction: Pyramid,
        R_prev: np.ndarray,
        t_prev: np.ndarray,
        origin: np.ndarray,
    ) -> Tuple[np.ndarray, np.ndarray]:
        """
        Estimate the new global camera pose.

        Raises:
            TrackingLost: If any iteration produced a degenerate system
        """
        R_curr, t_curr, _, _ = self._run(current, prediction, R_prev, t_prev, origin)
        return R_curr, t_curr

    def solve_incremental(
        self,
        current: Pyramid,
        prediction: Pyramid,
        R_prev: np.ndarray,
        t_prev: np.ndarray,
        origin: np.ndarray,
    ) -> Tuple[np.ndarray, np.ndarray]:
        """
        Estimate only the cumulative increment applied to ``(R_prev, t_prev)``.

        Composing the result onto the previous pose with
        ``geometry.compose_increment`` gives the ``solve_absolute`` pose.

        Raises:
            TrackingLost: If any iteration produced a degenerate system
        """
        _, _, R_cum, t_cum = self._run(current, prediction, R_prev, t_prev, origin)
        return R_cum, t_cum
