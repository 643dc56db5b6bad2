"""
ICP / visual-odometry arbitration.

A threshold tie-break on the translation norms of the two increments:
when they disagree by more than ``mu`` meters the visual-odometry increment
wins, otherwise ICP is kept. No weighted fusion.

Both norms are taken from world-frame left increments
(``t_inc = t - R_inc t_prev``), so they are not invariant to where the camera
sits in the world: a rotation by theta adds roughly ``theta * |t_prev|`` to
each of them. The two candidates share ``t_prev``, which keeps the comparison
consistent within a frame, but the same camera motion can be arbitrated
differently at different distances from the world origin.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np

from ..errors import TrackingLost
from ..geometry import compose_increment
from .vo_adapter import VOEstimate

logger = logging.getLogger(__name__)

SOURCE_ICP = "icp"
SOURCE_VO = "vo"


@dataclass
class ArbitrationResult:
    source: str
    reason: str
    n_icp: float
    n_vo: float
    R: np.ndarray
    t: np.ndarray


class PoseArbitrator:
    """
    Args:
        mu: Translation-norm disagreement (meters) above which VO is selected
    """

    def __init__(self, mu: float = 0.03):
        self.mu = mu

    def select(
        self,
        icp_increment: Optional[Tuple[np.ndarray, np.ndarray]],
        vo: VOEstimate,
        R_prev: np.ndarray,
        t_prev: np.ndarray,
    ) -> ArbitrationResult:
        """
        Pick an increment and compose it onto the previous pose.

        Args:
            icp_increment: ``(R_inc, t_inc)`` from ICP, None when ICP was lost
            vo: Adapter output for the same frame
            R_prev, t_prev: Previous absolute pose

        Raises:
            TrackingLost: Neither ICP nor VO produced a usable increment
        """
        n_icp = float(np.linalg.norm(icp_increment[1])) if icp_increment is not None else float('nan')
        n_vo = vo.translation_norm if vo.valid else float('nan')

        if icp_increment is None:
            if not vo.valid:
                raise TrackingLost("ICP lost and visual odometry invalid")
            source, reason = SOURCE_VO, "icp lost"
        elif not vo.valid:
            source, reason = SOURCE_ICP, "vo invalid"
        elif abs(n_vo - n_icp) > self.mu:
            source, reason = SOURCE_VO, f"|n_vo - n_icp| > {self.mu}"
        else:
            source, reason = SOURCE_ICP, f"|n_vo - n_icp| <= {self.mu}"

        R_inc, t_inc = icp_increment if source == SOURCE_ICP else (vo.R_inc, vo.t_inc)
        R, t = compose_increment(R_inc, t_inc, R_prev, t_prev)
        logger.debug(f"Arbitration: {source} ({reason}), n_icp={n_icp:.4f}, n_vo={n_vo:.4f}")
        return ArbitrationResult(source=source, reason=reason, n_icp=n_icp, n_vo=n_vo, R=R, t=t)
