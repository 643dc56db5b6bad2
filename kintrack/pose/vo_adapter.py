"""
Visual Odometry Adapter
=======================

Bridges the tracker and a ``VisualOdometryEstimator``: converts the sensor
frames into what the estimator expects, drives it once per frame and turns
its camera-frame motion estimate into a left increment in tracker world
coordinates, so that ICP and VO increments compose with the same rule.

Given the previous tracker pose ``(R_prev, t_prev)`` and the estimator's
relative motion ``(R_rel, t_rel)`` (current camera in previous camera frame):

    R_inc = R_prev R_rel R_prev^T
    t_inc = t_prev + R_prev t_rel - R_inc t_prev

so ``compose_increment(R_inc, t_inc, R_prev, t_prev)`` equals
``(R_prev R_rel, t_prev + R_prev t_rel)``.

The world-frame increment carries the lever arm of the previous position,
so its translation norm grows with ``|t_prev|`` under rotation. Arbitration
compares it against the ICP increment built the same way.
"""

import logging
from dataclasses import dataclass

import numpy as np

from ..errors import EstimatorInvalid
from ..geometry import euler_xyz, split_pose
from .rgbd_vo import VisualOdometryEstimator

logger = logging.getLogger(__name__)

_LUMA_WEIGHTS = np.array([0.2125, 0.7154, 0.0721])


@dataclass
class VOEstimate:
    """Visual-odometry increment expressed in tracker world coordinates."""
    R_inc: np.ndarray
    t_inc: np.ndarray
    pose: np.ndarray  # estimator's own accumulated 4x4 pose
    valid: bool

    @property
    def translation_norm(self) -> float:
        return float(np.linalg.norm(self.t_inc))

    def require_valid(self) -> "VOEstimate":
        if not self.valid:
            raise EstimatorInvalid("Visual odometry estimate contains NaN")
        return self


class VisualOdometryAdapter:
    """
    Args:
        estimator: External frame-to-frame estimator
        depth_scale: Raw depth units to meters
    """

    def __init__(self, estimator: VisualOdometryEstimator, depth_scale: float = 0.001):
        self.estimator = estimator
        self.depth_scale = depth_scale
        self.frames_fed = 0

    @staticmethod
    def to_luminance(rgb: np.ndarray) -> np.ndarray:
        """``floor(0.2125 R + 0.7154 G + 0.0721 B)`` as uint8."""
        if rgb.ndim == 2:
            return rgb.astype(np.uint8, copy=False)
        luma = np.floor(rgb[..., :3].astype(np.float64) @ _LUMA_WEIGHTS)
        return np.clip(luma, 0, 255).astype(np.uint8)

    def to_metric_depth(self, depth_raw: np.ndarray) -> np.ndarray:
        """Raw depth to float32 meters, invalid (0) samples become NaN."""
        depth = depth_raw.astype(np.float32) * np.float32(self.depth_scale)
        depth[depth_raw == 0] = np.nan
        return depth

    def estimate(
        self,
        depth_raw: np.ndarray,
        rgb: np.ndarray,
        R_prev: np.ndarray,
        t_prev: np.ndarray,
    ) -> VOEstimate:
        """
        Feed one frame to the estimator and read back its motion.

        Returns:
            VOEstimate; ``valid`` is False when the translation or any Euler
            angle of the increment is NaN
        """
        self.estimator.process_frame(self.to_luminance(rgb), self.to_metric_depth(depth_raw))
        self.frames_fed += 1

        R_rel, t_rel = split_pose(self.estimator.get_motion_estimate())
        R_inc = R_prev @ R_rel @ R_prev.T
        t_inc = t_prev + R_prev @ t_rel - R_inc @ t_prev

        valid = bool(np.all(np.isfinite(t_inc)) and np.all(np.isfinite(euler_xyz(R_inc))))
        if not valid:
            logger.debug("Visual odometry returned no motion estimate")
        return VOEstimate(R_inc=R_inc, t_inc=t_inc, pose=self.estimator.get_pose(), valid=valid)

    def reset(self):
        self.estimator.reset()
        self.frames_fed = 0
