"""
Tracker Configuration
=====================

All parameters are set before streaming starts. Defaults follow the
large-scale KinectFusion tracker:

- 3 m cube, shifted when the camera target drifts 1.5 m from its centre
- ICP iterations 10/5/4 (finest to coarsest level)
- correspondence rejection at 0.10 m and sin(20 deg)
- 0.03 m TSDF truncation

Usage:
    from kintrack.config import TrackerConfig

    config = TrackerConfig.from_yaml("configs/kinect.yaml")
    config = TrackerConfig(rows=240, cols=320, volume_resolution=64)
"""

import logging
import math
from dataclasses import dataclass, field, fields, asdict
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import numpy as np
import yaml

logger = logging.getLogger(__name__)

LEVELS = 3
DEFAULT_FOCAL_LENGTH = 525.0


@dataclass
class Intrinsics:
    """Pinhole intrinsics of the depth camera (pixels)."""
    fx: float = DEFAULT_FOCAL_LENGTH
    fy: float = DEFAULT_FOCAL_LENGTH
    cx: float = 319.5
    cy: float = 239.5

    def level(self, level_index: int) -> "Intrinsics":
        """Intrinsics of pyramid level ``level_index`` (half resolution per level)."""
        div = float(1 << level_index)
        return Intrinsics(self.fx / div, self.fy / div, self.cx / div, self.cy / div)

    def matrix(self) -> np.ndarray:
        return np.array([
            [self.fx, 0.0, self.cx],
            [0.0, self.fy, self.cy],
            [0.0, 0.0, 1.0],
        ], dtype=np.float64)

    def to_dict(self) -> Dict[str, float]:
        return {'fx': self.fx, 'fy': self.fy, 'cx': self.cx, 'cy': self.cy}

    @classmethod
    def from_dict(cls, intrinsics: Dict[str, float]) -> "Intrinsics":
        return cls(
            fx=float(intrinsics['fx']),
            fy=float(intrinsics['fy']),
            cx=float(intrinsics['cx']),
            cy=float(intrinsics['cy']),
        )

    @classmethod
    def centered(
        cls,
        rows: int,
        cols: int,
        fx: float,
        fy: float,
        cx: Optional[float] = None,
        cy: Optional[float] = None,
    ) -> "Intrinsics":
        """Principal point defaults to the image centre."""
        return cls(
            fx=fx,
            fy=fy,
            cx=cols / 2 - 0.5 if cx is None else cx,
            cy=rows / 2 - 0.5 if cy is None else cy,
        )


@dataclass
class TrackerConfig:
    """
    Configuration for ``KinfuTracker``.

    Attributes:
        rows, cols: Depth image resolution
        volume_size: Edge length of the TSDF cube (meters)
        volume_resolution: Voxels per cube edge
        shifting_distance: Distance between the camera target point and the
            cube centre that triggers a window shift (meters)
        fx, fy, cx, cy: Depth intrinsics; cx/cy default to the image centre
        icp_iterations: Iterations per pyramid level, finest level first
        dist_threshold: ICP correspondence distance rejection (meters)
        angle_threshold: Sine of the maximum angle between matched normals
        trunc_dist: TSDF truncation distance (meters)
        max_icp_distance: Depth samples beyond this are ignored by ICP (0 = unlimited)
        integration_metric_threshold: Minimum motion score for integration
        hybrid_mu: ICP / visual-odometry disagreement threshold (meters)
        shift_trigger_fraction: Camera target distance as a fraction of volume_size
        perform_last_scan: Export the world and finish on the next shift
        initial_pose: 4x4 camera-to-world pose; None places the camera
            at the back of the cube looking along +Z
        color_max_weight: Enable colour integration with this max weight
        depth_scale: Raw depth units to meters
        use_visual_odometry: Select the hybrid ICP + visual odometry pose source
        orthonormalize_rotation: Re-project the composed rotation onto SO(3)
        world_output_path: Target of the world-model export
    """
    rows: int = 480
    cols: int = 640
    volume_size: float = 3.0
    volume_resolution: int = 128
    shifting_distance: float = 1.5
    fx: float = DEFAULT_FOCAL_LENGTH
    fy: float = DEFAULT_FOCAL_LENGTH
    cx: Optional[float] = None
    cy: Optional[float] = None
    icp_iterations: List[int] = field(default_factory=lambda: [10, 5, 4])
    dist_threshold: float = 0.10
    angle_threshold: float = math.sin(20.0 * math.pi / 180.0)
    trunc_dist: float = 0.03
    max_icp_distance: float = 0.0
    integration_metric_threshold: float = 0.0
    hybrid_mu: float = 0.03
    shift_trigger_fraction: float = 0.6
    perform_last_scan: bool = False
    initial_pose: Optional[np.ndarray] = None
    color_max_weight: Optional[int] = None
    depth_scale: float = 0.001
    use_visual_odometry: bool = False
    orthonormalize_rotation: bool = False
    world_output_path: str = "world.ply"

    def __post_init__(self):
        if len(self.icp_iterations) != LEVELS:
            raise ValueError(
                f"icp_iterations needs one entry per pyramid level ({LEVELS}), "
                f"got {self.icp_iterations}"
            )
        if self.initial_pose is not None:
            self.initial_pose = np.asarray(self.initial_pose, dtype=np.float64)
            if self.initial_pose.shape != (4, 4):
                raise ValueError(f"initial_pose must be 4x4, got shape {self.initial_pose.shape}")

    @property
    def intrinsics(self) -> Intrinsics:
        return Intrinsics.centered(self.rows, self.cols, self.fx, self.fy, self.cx, self.cy)

    def default_initial_pose(self) -> np.ndarray:
        """Camera centred in X/Y, 0.6 cube edges behind the cube centre."""
        pose = np.eye(4, dtype=np.float64)
        size = self.volume_size
        pose[:3, 3] = np.array([size * 0.5, size * 0.5, size * 0.5 - size / 2 * 1.2])
        return pose

    def resolve_initial_pose(self) -> np.ndarray:
        if self.initial_pose is None:
            return self.default_initial_pose()
        return self.initial_pose.copy()

    @classmethod
    def from_dict(cls, config: Dict[str, Any]) -> "TrackerConfig":
        """Build a config from a dict, ignoring unknown keys with a warning."""
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(config) - known)
        if unknown:
            logger.warning(f"Ignoring unknown tracker config keys: {unknown}")
        kwargs = {k: v for k, v in config.items() if k in known}
        return cls(**kwargs)

    @classmethod
    def from_yaml(cls, path: Union[str, Path]) -> "TrackerConfig":
        with open(path, 'r') as f:
            data = yaml.safe_load(f) or {}
        logger.info(f"Loaded tracker config from {path}")
        return cls.from_dict(data)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        if self.initial_pose is not None:
            data['initial_pose'] = self.initial_pose.tolist()
        return data
