"""
Frame Data Structures and Sources
=================================

This module provides:
- Frame: one raw RGB-D observation as fed to the tracker
- FrameSource: abstract base class for frame iteration
- TumRGBDSource: replay of TUM RGB-D benchmark sequences

Depth stays in raw sensor units (uint16); the tracker converts it with its
configured ``depth_scale``.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional

import cv2
import numpy as np
from scipy.spatial.transform import Rotation

logger = logging.getLogger(__name__)


@dataclass
class Frame:
    """
    A single RGB-D observation.

    Attributes:
        idx: Frame index (sequential, 0-based)
        timestamp: Dataset timestamp (seconds)
        depth: HxW raw depth (uint16 sensor units, 0 = invalid)
        rgb: Optional HxWx3 uint8 RGB registered to depth
        gt_pose: Optional 4x4 camera-to-world ground truth
        metadata: Additional frame-specific data
    """
    idx: int
    timestamp: float
    depth: np.ndarray
    rgb: Optional[np.ndarray] = None
    gt_pose: Optional[np.ndarray] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if self.depth.ndim != 2:
            raise ValueError(f"Depth must be HxW, got shape {self.depth.shape}")
        if self.rgb is not None:
            if self.rgb.ndim != 3 or self.rgb.shape[2] != 3:
                raise ValueError(f"RGB must be HxWx3, got shape {self.rgb.shape}")
            if self.rgb.shape[:2] != self.depth.shape:
                raise ValueError(
                    f"Depth shape {self.depth.shape} doesn't match RGB {self.rgb.shape[:2]}"
                )
        if self.gt_pose is not None and self.gt_pose.shape != (4, 4):
            raise ValueError(f"Pose must be 4x4, got shape {self.gt_pose.shape}")

    @property
    def image_size(self):
        """(width, height) of the frame."""
        return self.depth.shape[1], self.depth.shape[0]


class FrameSource(ABC):
    """
    Iterable over ``Frame`` objects in temporal order.

    Example usage:
        source = TumRGBDSource("/data/tum/rgbd_dataset_freiburg1_desk")
        for frame in source:
            tracker.process_frame(frame.depth, frame.rgb)
    """

    @abstractmethod
    def __iter__(self) -> Iterator[Frame]:
        pass

    @abstractmethod
    def __len__(self) -> int:
        """Number of frames, or -1 if unknown."""
        pass

    def get_intrinsics(self) -> Dict[str, float]:
        raise NotImplementedError("Subclass should implement get_intrinsics()")


class TumRGBDSource(FrameSource):
    """
    Frame source for TUM RGB-D benchmark sequences.

    TUM RGB-D format:
        <dataset>/
            rgb/             # RGB images (png)
            depth/           # Depth images (png, 16-bit, 5000 units per meter)
            rgb.txt          # Timestamps and filenames for RGB
            depth.txt        # Timestamps and filenames for depth
            groundtruth.txt  # Optional: timestamp tx ty tz qx qy qz qw

    Frames are driven by the depth stream; RGB and ground truth are attached
    when a timestamp lies within ``max_time_diff``.

    Args:
        dataset_root: Path of the sequence folder
        max_time_diff: Association tolerance in seconds
        intrinsics: fx, fy, cx, cy; Freiburg 1 defaults if None
        load_rgb: Load colour frames
    """

    # TUM depth PNGs store 5000 units per meter
    DEPTH_SCALE = 1.0 / 5000.0

    DEFAULT_INTRINSICS = {
        'fx': 517.3,
        'fy': 516.5,
        'cx': 318.6,
        'cy': 255.3,
    }

    def __init__(
        self,
        dataset_root: str,
        max_time_diff: float = 0.05,
        intrinsics: Optional[Dict[str, float]] = None,
        load_rgb: bool = True,
    ):
        self._dataset_path = Path(dataset_root)
        self._max_time_diff = max_time_diff
        self._intrinsics = intrinsics or self.DEFAULT_INTRINSICS.copy()
        self._load_rgb = load_rgb

        if not (self._dataset_path / "depth.txt").exists():
            raise FileNotFoundError(f"No TUM sequence at {dataset_root} (depth.txt missing)")

        self._frames_info = self._load_frame_info()
        logger.info(f"Loaded {len(self._frames_info)} frames from {self._dataset_path}")

    def _load_frame_info(self) -> List[Dict[str, Any]]:
        depth_data = self._read_file_list(self._dataset_path / "depth.txt")

        rgb_file = self._dataset_path / "rgb.txt"
        rgb_data = self._read_file_list(rgb_file) if rgb_file.exists() else {}

        gt_file = self._dataset_path / "groundtruth.txt"
        gt_data = self._read_groundtruth(gt_file) if gt_file.exists() else {}

        frames = []
        for ts, depth_path in sorted(depth_data.items()):
            rgb_path = None
            closest = self._find_closest_timestamp(ts, rgb_data.keys())
            if closest is not None and abs(closest - ts) < self._max_time_diff:
                rgb_path = self._dataset_path / rgb_data[closest]

            pose = None
            closest = self._find_closest_timestamp(ts, gt_data.keys())
            if closest is not None and abs(closest - ts) < self._max_time_diff:
                pose = gt_data[closest]

            frames.append({
                'timestamp': ts,
                'depth_path': self._dataset_path / depth_path,
                'rgb_path': rgb_path,
                'pose': pose,
            })
        return frames

    @staticmethod
    def _read_file_list(filepath: Path) -> Dict[float, str]:
        """Timestamp -> filename from rgb.txt / depth.txt."""
        result = {}
        with open(filepath, 'r') as f:
            for line in f:
                line = line.strip()
                if not line or line.startswith('#'):
                    continue
                parts = line.split()
                if len(parts) >= 2:
                    result[float(parts[0])] = parts[1]
        return result

    @staticmethod
    def _read_groundtruth(filepath: Path) -> Dict[float, np.ndarray]:
        """Timestamp -> 4x4 camera-to-world pose from groundtruth.txt."""
        result = {}
        with open(filepath, 'r') as f:
            for line in f:
                line = line.strip()
                if not line or line.startswith('#'):
                    continue
                parts = line.split()
                if len(parts) < 8:
                    continue
                values = [float(p) for p in parts[:8]]
                T = np.eye(4)
                T[:3, :3] = Rotation.from_quat(values[4:8]).as_matrix()
                T[:3, 3] = values[1:4]
                result[values[0]] = T
        return result

    @staticmethod
    def _find_closest_timestamp(target: float, timestamps: Iterable[float]) -> Optional[float]:
        timestamps = list(timestamps)
        if not timestamps:
            return None
        return min(timestamps, key=lambda t: abs(t - target))

    def __iter__(self) -> Iterator[Frame]:
        for idx, info in enumerate(self._frames_info):
            depth = cv2.imread(str(info['depth_path']), cv2.IMREAD_UNCHANGED)
            if depth is None:
                logger.warning(f"Failed to load depth: {info['depth_path']}")
                continue

            rgb = None
            if self._load_rgb and info['rgb_path'] is not None:
                bgr = cv2.imread(str(info['rgb_path']))
                if bgr is None:
                    logger.warning(f"Failed to load RGB: {info['rgb_path']}")
                else:
                    rgb = cv2.cvtColor(bgr, cv2.COLOR_BGR2RGB)

            yield Frame(
                idx=idx,
                timestamp=info['timestamp'],
                depth=depth,
                rgb=rgb,
                gt_pose=info['pose'],
            )

    def __len__(self) -> int:
        return len(self._frames_info)

    def get_intrinsics(self) -> Dict[str, float]:
        return self._intrinsics.copy()
