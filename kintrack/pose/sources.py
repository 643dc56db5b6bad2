"""
Pose Sources
============

Strategies producing the new absolute camera pose for a tracked frame.

Available sources:
- icp: multi-resolution point-to-plane ICP only
- hybrid: ICP increment arbitrated against RGB-D visual odometry

Usage:
    from kintrack.pose import get_pose_source

    source = get_pose_source('icp', icp=PoseEstimator(intrinsics))
    result = source.estimate(current, prediction, R_prev, t_prev, origin, depth_raw)
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import numpy as np

from ..errors import EstimatorInvalid, TrackingLost
from ..icp import PoseEstimator
from ..preprocess import Pyramid
from .arbitration import ArbitrationResult, PoseArbitrator
from .vo_adapter import VisualOdometryAdapter

logger = logging.getLogger(__name__)


@dataclass
class PoseResult:
    """New absolute pose for one frame."""
    R: np.ndarray
    t: np.ndarray
    source: str = "icp"
    arbitration: Optional[ArbitrationResult] = None


class BasePoseSource(ABC):
    """Abstract base class for pose sources."""

    @abstractmethod
    def estimate(
        self,
        current: Pyramid,
        prediction: Pyramid,
        R_prev: np.ndarray,
        t_prev: np.ndarray,
        origin: np.ndarray,
        depth_raw: np.ndarray,
        color: Optional[np.ndarray] = None,
    ) -> PoseResult:
        """
        Estimate the pose of the current frame.

        Raises:
            TrackingLost: No pose could be estimated
        """
        pass

    @abstractmethod
    def get_name(self) -> str:
        pass

    @property
    def requires_color(self) -> bool:
        return False

    def bootstrap(self, depth_raw: np.ndarray, color: Optional[np.ndarray], R0: np.ndarray, t0: np.ndarray):
        """Called with the first frame after a reset."""
        pass

    def reset(self):
        pass


class IcpPoseSource(BasePoseSource):
    """Absolute pose straight from ICP."""

    def __init__(self, icp: PoseEstimator):
        self.icp = icp

    def get_name(self) -> str:
        return "icp"

    def estimate(self, current, prediction, R_prev, t_prev, origin, depth_raw, color=None) -> PoseResult:
        R, t = self.icp.solve_absolute(current, prediction, R_prev, t_prev, origin)
        return PoseResult(R=R, t=t, source="icp")


class HybridPoseSource(BasePoseSource):
    """
    ICP and visual odometry run on every frame; the arbitrator picks one
    increment. VO is fed before ICP so it stays in lockstep with the
    frame stream even when ICP fails.
    """

    def __init__(self, icp: PoseEstimator, adapter: VisualOdometryAdapter, arbitrator: PoseArbitrator):
        self.icp = icp
        self.adapter = adapter
        self.arbitrator = arbitrator
        self.vo_failure_streak = 0

    def get_name(self) -> str:
        return "hybrid"

    @property
    def requires_color(self) -> bool:
        return True

    def estimate(self, current, prediction, R_prev, t_prev, origin, depth_raw, color=None) -> PoseResult:
        if color is None:
            raise RuntimeError("Hybrid pose source needs a colour frame")

        vo = self.adapter.estimate(depth_raw, color, R_prev, t_prev)
        try:
            vo.require_valid()
            self.vo_failure_streak = 0
        except EstimatorInvalid as e:
            self.vo_failure_streak += 1
            logger.warning(f"{e}, candidate excluded ({self.vo_failure_streak} consecutive frames)")

        try:
            icp_increment = self.icp.solve_incremental(current, prediction, R_prev, t_prev, origin)
        except TrackingLost as e:
            logger.warning(f"ICP lost in hybrid mode: {e}")
            icp_increment = None

        result = self.arbitrator.select(icp_increment, vo, R_prev, t_prev)
        return PoseResult(R=result.R, t=result.t, source=result.source, arbitration=result)

    def bootstrap(self, depth_raw, color, R0, t0):
        if color is None:
            raise RuntimeError("Hybrid pose source needs a colour frame")
        # gives the estimator its first reference frame
        self.adapter.estimate(depth_raw, color, R0, t0)

    def reset(self):
        self.adapter.reset()
        self.vo_failure_streak = 0


_SOURCES = {
    'icp': IcpPoseSource,
    'hybrid': HybridPoseSource,
}

AVAILABLE_SOURCES: List[str] = list(_SOURCES.keys())


def get_pose_source(name: str, **kwargs: Any) -> BasePoseSource:
    """
    Get a pose source by name.

    Args:
        name: Source name ('icp', 'hybrid')
        **kwargs: Passed to the constructor

    Raises:
        ValueError: If the source name is unknown
    """
    name_lower = name.lower().replace('-', '_')
    if name_lower not in _SOURCES:
        raise ValueError(f"Unknown pose source: {name}. Available: {AVAILABLE_SOURCES}")
    return _SOURCES[name_lower](**kwargs)


def list_pose_sources() -> Dict[str, str]:
    return {
        'icp': 'Multi-resolution point-to-plane ICP',
        'hybrid': 'ICP arbitrated against RGB-D visual odometry',
    }
