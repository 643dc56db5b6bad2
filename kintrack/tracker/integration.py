"""
Volume Integration Controller
=============================

Everything that happens to the volume after a pose has been accepted:

1. movement gate: fuse the frame only if the camera moved enough
2. TSDF integration at the window-local pose
3. cyclical-buffer shift check (may move the window origin)
4. raycast of the new surface prediction from the local pose under the
   current origin, rebased to world coordinates
5. coarser prediction levels by 2x resampling

The window origin is re-read after the shift check; every conversion between
world and local coordinates goes through ``geometry.to_local`` /
``geometry.to_world`` with the origin active at that moment.
"""

import logging
from dataclasses import dataclass, field
from typing import Optional

import numpy as np

from ..config import Intrinsics
from ..geometry import make_pose, rotation_angle, to_local, to_world, transform_maps
from ..preprocess import FramePreprocessor
from ..volume import (
    ColorVolume,
    CyclicalBuffer,
    TsdfVolume,
    raycast,
    resize_nmap,
    resize_vmap,
)
from .workspace import TrackerWorkspace

logger = logging.getLogger(__name__)


def motion_score(R_prev: np.ndarray, t_prev: np.ndarray, R: np.ndarray, t: np.ndarray) -> float:
    """Mean of the relative rotation angle (radians) and translation (meters)."""
    rnorm = rotation_angle(np.linalg.inv(R) @ R_prev)
    tnorm = float(np.linalg.norm(t - t_prev))
    return (rnorm + tnorm) / 2.0


@dataclass
class IntegrationDecision:
    score: float
    threshold: float
    integrate: bool


@dataclass
class FrameIntegration:
    """What happened to the volume for one frame."""
    decision: Optional[IntegrationDecision]
    shifted: bool = False
    origin: np.ndarray = field(default_factory=lambda: np.zeros(3))
    integrated_voxels: int = 0


class VolumeIntegrationController:
    """
    Args:
        volume: TSDF volume
        cyclical: Cyclical buffer owning the window origin
        workspace: Tracker workspace holding the prediction pyramid
        preprocessor: Converts raw depth to meters
        intrinsics: Full-resolution depth intrinsics
        threshold: Minimum motion score for integration
        shift_trigger_fraction: Camera target distance as a fraction of the
            volume size
        color_volume: Optional colour volume
    """

    def __init__(
        self,
        volume: TsdfVolume,
        cyclical: CyclicalBuffer,
        workspace: TrackerWorkspace,
        preprocessor: FramePreprocessor,
        intrinsics: Intrinsics,
        threshold: float = 0.0,
        shift_trigger_fraction: float = 0.6,
        color_volume: Optional[ColorVolume] = None,
    ):
        self.volume = volume
        self.cyclical = cyclical
        self.workspace = workspace
        self.preprocessor = preprocessor
        self.intrinsics = intrinsics
        self.threshold = threshold
        self.shift_trigger_fraction = shift_trigger_fraction
        self.color_volume = color_volume

    @property
    def origin(self) -> np.ndarray:
        return self.cyclical.origin_metric.copy()

    @property
    def target_distance(self) -> float:
        return self.shift_trigger_fraction * float(np.max(self.volume.size))

    def decide(self, R_prev: np.ndarray, t_prev: np.ndarray, R: np.ndarray, t: np.ndarray) -> IntegrationDecision:
        score = motion_score(R_prev, t_prev, R, t)
        return IntegrationDecision(score=score, threshold=self.threshold, integrate=score >= self.threshold)

    def _integrate_depth(self, depth_raw: np.ndarray, R: np.ndarray, t: np.ndarray) -> int:
        depth_m = self.preprocessor.to_meters(depth_raw)
        return self.volume.integrate(depth_m, self.intrinsics, np.linalg.inv(R), to_local(t, self.origin))

    def bootstrap(self, depth_raw: np.ndarray, R0: np.ndarray, t0: np.ndarray) -> FrameIntegration:
        """
        Fuse the first frame at the initial pose; the prediction becomes the
        current pyramid moved into world coordinates.
        """
        voxels = self._integrate_depth(depth_raw, R0, t0)
        current, prediction = self.workspace.current, self.workspace.prediction
        for level in range(current.levels):
            vmap, nmap = transform_maps(current.vmaps[level], current.nmaps[level], R0, t0)
            np.copyto(prediction.vmaps[level], vmap)
            np.copyto(prediction.nmaps[level], nmap)
        logger.debug(f"Bootstrap integrated {voxels:,} voxels")
        return FrameIntegration(decision=None, origin=self.origin, integrated_voxels=voxels)

    def integrate_and_predict(
        self,
        depth_raw: np.ndarray,
        R_prev: np.ndarray,
        t_prev: np.ndarray,
        R: np.ndarray,
        t: np.ndarray,
        perform_last_scan: bool = False,
    ) -> FrameIntegration:
        decision = self.decide(R_prev, t_prev, R, t)
        voxels = 0
        if decision.integrate:
            voxels = self._integrate_depth(depth_raw, R, t)
        logger.debug(
            f"Motion score {decision.score:.4f} (threshold {decision.threshold}), "
            f"integrated {voxels:,} voxels"
        )

        shifted = self.cyclical.check_for_shift(
            self.volume,
            make_pose(R, t),
            self.target_distance,
            perform_shift=True,
            last_shift=perform_last_scan,
        )
        if shifted:
            if self.color_volume is not None:
                self.color_volume.shift(self.cyclical.last_offset)
            logger.warning(f"Volume window shifted, new origin {np.round(self.origin, 3).tolist()}")

        self.predict(R, t)
        return FrameIntegration(decision=decision, shifted=shifted, origin=self.origin, integrated_voxels=voxels)

    def predict(self, R: np.ndarray, t: np.ndarray):
        """Raycast the prediction pyramid from ``(R, t)`` under the current origin."""
        origin = self.origin
        prediction = self.workspace.prediction
        vmap, nmap = raycast(
            self.volume, self.intrinsics, R, to_local(t, origin),
            self.workspace.rows, self.workspace.cols,
        )
        np.copyto(prediction.vmaps[0], to_world(vmap, origin))
        np.copyto(prediction.nmaps[0], nmap)
        for level in range(1, prediction.levels):
            np.copyto(prediction.vmaps[level], resize_vmap(prediction.vmaps[level - 1]))
            np.copyto(prediction.nmaps[level], resize_nmap(prediction.nmaps[level - 1]))

    def integrate_color(self, rgb: np.ndarray, R: np.ndarray, t: np.ndarray) -> int:
        """Fuse colour along the current prediction; no-op without a colour volume."""
        if self.color_volume is None:
            return 0
        origin = self.origin
        vmap_local = to_local(self.workspace.prediction.vmaps[0], origin)
        return self.color_volume.integrate(
            vmap_local, rgb, self.intrinsics, np.linalg.inv(R), to_local(t, origin), self.volume.trunc_dist,
        )
