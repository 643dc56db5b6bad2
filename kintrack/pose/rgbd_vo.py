"""
RGB-D Visual Odometry
=====================

Frame-to-frame visual odometry from a grayscale image plus metric depth.

Depth gives each tracked corner a metric 3D position, so the frame-to-frame
motion comes straight out of a PnP solve with no scale ambiguity.

Features:
- GFTT / FAST / ORB corner detection
- Pyramidal Lucas-Kanade tracking
- PnP RANSAC motion estimation
- Motion gate rejecting implausible jumps

Coordinate Conventions:
- OpenCV camera frame (X-right, Y-down, Z-forward)
- Depth in meters, NaN or 0 = invalid

Usage:
    from kintrack.pose.rgbd_vo import RGBDVO

    vo = RGBDVO(max_features=300)
    vo.set_intrinsics(fx=525, fy=525, cx=319.5, cy=239.5)

    vo.process_frame(gray, depth_m)
    motion = vo.get_motion_estimate()  # 4x4, NaN when lost
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional, Tuple

import cv2
import numpy as np

logger = logging.getLogger(__name__)


def _nan_motion() -> np.ndarray:
    motion = np.full((4, 4), np.nan)
    motion[3] = [0.0, 0.0, 0.0, 1.0]
    return motion


class FeatureType(Enum):
    """Available feature detectors."""
    FAST = "fast"
    GFTT = "gftt"
    ORB = "orb"


class TrackingStatus(Enum):
    INITIALIZING = "initializing"
    OK = "ok"
    LOST = "lost"


@dataclass
class VOResult:
    """Result of one ``RGBDVO.process_frame`` call."""
    pose: np.ndarray  # 4x4 camera-to-odometry-frame
    motion: np.ndarray  # 4x4 current camera in previous camera frame
    tracking_status: TrackingStatus
    num_inliers: int


class VisualOdometryEstimator(ABC):
    """
    Interface of the external frame-to-frame estimator driven by the
    hybrid tracker.

    ``process_frame`` is called exactly once per tracked frame;
    ``get_motion_estimate`` then describes the motion between the last two
    frames as a 4x4 transform of the current camera in the previous camera
    frame, NaN-filled when no estimate is available.
    """

    @abstractmethod
    def process_frame(self, gray: np.ndarray, depth: np.ndarray):
        pass

    @abstractmethod
    def get_pose(self) -> np.ndarray:
        pass

    @abstractmethod
    def get_motion_estimate(self) -> np.ndarray:
        pass

    @abstractmethod
    def reset(self):
        pass


class MotionGate:
    """Rejects frame-to-frame motions larger than a physical camera can make."""

    def __init__(self, max_translation: float = 0.3, max_rotation: float = 0.3):
        self._max_trans = max_translation
        self._max_rot = max_rotation

    def accept(self, motion: np.ndarray) -> bool:
        trans = np.linalg.norm(motion[:3, 3])
        if trans > self._max_trans:
            logger.debug(f"VO motion rejected: translation {trans:.3f} m")
            return False

        angle = np.arccos(np.clip((np.trace(motion[:3, :3]) - 1) / 2, -1, 1))
        if angle > self._max_rot:
            logger.debug(f"VO motion rejected: rotation {angle:.3f} rad")
            return False
        return True


class RGBDVO(VisualOdometryEstimator):
    """
    Feature-based RGB-D visual odometry.

    Args:
        max_features: Maximum features to track
        min_features: Minimum features before re-detection
        feature_type: Feature detector type
        min_depth: Minimum valid depth in meters
        max_depth: Maximum valid depth in meters
        max_translation: Motion gate translation limit per frame (meters)
        max_rotation: Motion gate rotation limit per frame (radians)
    """

    def __init__(
        self,
        max_features: int = 300,
        min_features: int = 50,
        feature_type: FeatureType = FeatureType.GFTT,
        min_depth: float = 0.1,
        max_depth: float = 8.0,
        max_translation: float = 0.3,
        max_rotation: float = 0.3,
    ):
        self.max_features = max_features
        self.min_features = min_features
        self.min_depth = min_depth
        self.max_depth = max_depth

        self._K: Optional[np.ndarray] = None
        self._fx = self._fy = self._cx = self._cy = None

        self._pose = np.eye(4, dtype=np.float64)
        self._motion = _nan_motion()
        self._status = TrackingStatus.INITIALIZING
        self._initialized = False

        self._prev_gray: Optional[np.ndarray] = None
        self._prev_points: Optional[np.ndarray] = None
        self._prev_points_3d: Optional[np.ndarray] = None

        self._detector = self._create_detector(feature_type, max_features)
        self._lk_params = dict(
            winSize=(21, 21),
            maxLevel=3,
            criteria=(cv2.TERM_CRITERIA_EPS | cv2.TERM_CRITERIA_COUNT, 30, 0.01),
        )
        self._gate = MotionGate(max_translation, max_rotation)
        self._frame_count = 0

    @staticmethod
    def _create_detector(feature_type: FeatureType, max_features: int):
        if feature_type == FeatureType.FAST:
            return cv2.FastFeatureDetector_create(threshold=20, nonmaxSuppression=True)
        elif feature_type == FeatureType.GFTT:
            return cv2.GFTTDetector_create(
                maxCorners=max_features,
                qualityLevel=0.01,
                minDistance=10,
                blockSize=7,
            )
        else:
            return cv2.ORB_create(nfeatures=max_features)

    def set_intrinsics(self, fx: float, fy: float, cx: float, cy: float):
        self._fx, self._fy, self._cx, self._cy = fx, fy, cx, cy
        self._K = np.array([[fx, 0, cx], [0, fy, cy], [0, 0, 1]], dtype=np.float64)

    def set_intrinsics_from_dict(self, intrinsics: Dict[str, float]):
        self.set_intrinsics(
            fx=intrinsics['fx'],
            fy=intrinsics['fy'],
            cx=intrinsics['cx'],
            cy=intrinsics['cy'],
        )

    @property
    def status(self) -> TrackingStatus:
        return self._status

    def _detect_features(self, gray: np.ndarray) -> np.ndarray:
        kps = self._detector.detect(gray, None)
        if len(kps) == 0:
            return np.array([], dtype=np.float32).reshape(0, 2)
        kps = sorted(kps, key=lambda x: x.response, reverse=True)[:self.max_features]
        return np.array([kp.pt for kp in kps], dtype=np.float32)

    def _unproject_points(self, points_2d: np.ndarray, depth: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        """Returns (points_3d, valid_mask)."""
        if len(points_2d) == 0:
            return np.array([]).reshape(0, 3), np.array([], dtype=bool)

        h, w = depth.shape
        u = points_2d[:, 0]
        v = points_2d[:, 1]
        d = depth[np.clip(v.astype(int), 0, h - 1), np.clip(u.astype(int), 0, w - 1)]

        with np.errstate(invalid='ignore'):
            valid = np.isfinite(d) & (d > self.min_depth) & (d < self.max_depth)

        points_3d = np.stack([
            (u - self._cx) * d / self._fx,
            (v - self._cy) * d / self._fy,
            d,
        ], axis=1)
        return points_3d, valid

    def _estimate_motion_pnp(self, points_3d: np.ndarray, points_2d: np.ndarray) -> Tuple[Optional[np.ndarray], int]:
        """Transform taking previous-camera points into the current camera."""
        if len(points_3d) < 6:
            return None, 0

        success, rvec, tvec, inliers = cv2.solvePnPRansac(
            points_3d.astype(np.float64),
            points_2d.astype(np.float64),
            self._K,
            None,
            iterationsCount=100,
            reprojectionError=2.0,
            confidence=0.99,
            flags=cv2.SOLVEPNP_ITERATIVE,
        )
        if not success or inliers is None or len(inliers) < 4:
            return None, 0

        R, _ = cv2.Rodrigues(rvec)
        T = np.eye(4)
        T[:3, :3] = R
        T[:3, 3] = tvec.flatten()
        return T, len(inliers)

    def _keep_frame(self, gray: np.ndarray, depth: np.ndarray, points_2d: Optional[np.ndarray] = None):
        """Make ``gray`` the reference frame, re-detecting when tracks run low."""
        self._prev_gray = gray
        if points_2d is not None and len(points_2d) > 0:
            points_3d, valid = self._unproject_points(points_2d, depth)
            points_2d, points_3d = points_2d[valid], points_3d[valid]
        else:
            points_2d, points_3d = np.zeros((0, 2), np.float32), np.zeros((0, 3))

        if len(points_2d) < self.max_features // 2:
            new_pts = self._detect_features(gray)
            new_3d, valid = self._unproject_points(new_pts, depth)
            points_2d = np.vstack([points_2d, new_pts[valid]])[:self.max_features]
            points_3d = np.vstack([points_3d, new_3d[valid]])[:self.max_features]

        self._prev_points = points_2d.astype(np.float32)
        self._prev_points_3d = points_3d

    def _lost(self, gray: np.ndarray, depth: np.ndarray, num_inliers: int = 0) -> VOResult:
        self._motion = _nan_motion()
        self._status = TrackingStatus.LOST
        self._keep_frame(gray, depth)
        return VOResult(self._pose.copy(), self._motion.copy(), self._status, num_inliers)

    def process_frame(self, gray: np.ndarray, depth: np.ndarray) -> VOResult:
        """
        Process one frame.

        Args:
            gray: HxW uint8 grayscale image
            depth: HxW depth in meters (NaN = invalid)

        Returns:
            VOResult with the accumulated pose and the last motion
        """
        if self._K is None:
            raise RuntimeError("Intrinsics not set. Call set_intrinsics() first.")
        if gray.ndim == 3:
            gray = cv2.cvtColor(gray, cv2.COLOR_RGB2GRAY)
        self._frame_count += 1

        if not self._initialized:
            self._keep_frame(gray, depth)
            self._initialized = len(self._prev_points) >= self.min_features
            self._motion = _nan_motion()
            self._status = TrackingStatus.INITIALIZING
            return VOResult(self._pose.copy(), self._motion.copy(), self._status, len(self._prev_points))

        if self._prev_points is None or len(self._prev_points) < 6:
            return self._lost(gray, depth)

        curr_points, status, _ = cv2.calcOpticalFlowPyrLK(
            self._prev_gray, gray,
            self._prev_points.reshape(-1, 1, 2),
            None,
            **self._lk_params
        )
        if curr_points is None:
            return self._lost(gray, depth)

        status = status.flatten().astype(bool)
        prev_3d = self._prev_points_3d[status]
        curr_2d = curr_points[status].reshape(-1, 2)

        h, w = gray.shape
        inside = (
            (curr_2d[:, 0] >= 0) & (curr_2d[:, 0] < w) &
            (curr_2d[:, 1] >= 0) & (curr_2d[:, 1] < h)
        )
        prev_3d, curr_2d = prev_3d[inside], curr_2d[inside]

        T_curr_prev, num_inliers = self._estimate_motion_pnp(prev_3d, curr_2d)
        if T_curr_prev is None:
            return self._lost(gray, depth, num_inliers)

        motion = np.linalg.inv(T_curr_prev)
        if not self._gate.accept(motion):
            return self._lost(gray, depth, num_inliers)

        self._motion = motion
        self._pose = self._pose @ motion
        self._status = TrackingStatus.OK
        self._keep_frame(gray, depth, curr_2d)
        return VOResult(self._pose.copy(), self._motion.copy(), self._status, num_inliers)

    def get_pose(self) -> np.ndarray:
        """Accumulated camera-to-odometry-frame pose."""
        return self._pose.copy()

    def get_motion_estimate(self) -> np.ndarray:
        return self._motion.copy()

    def reset(self):
        self._pose = np.eye(4, dtype=np.float64)
        self._motion = _nan_motion()
        self._status = TrackingStatus.INITIALIZING
        self._initialized = False
        self._prev_gray = None
        self._prev_points = None
        self._prev_points_3d = None
        self._frame_count = 0


def create_rgbd_vo(intrinsics: Optional[Dict] = None, fast: bool = False) -> RGBDVO:
    """
    Create an RGBDVO instance with common settings.

    Args:
        intrinsics: Dictionary with fx, fy, cx, cy
        fast: If True, use FAST features; else GFTT (more stable)
    """
    vo = RGBDVO(
        max_features=250 if fast else 400,
        min_features=40 if fast else 80,
        feature_type=FeatureType.FAST if fast else FeatureType.GFTT,
    )
    if intrinsics:
        vo.set_intrinsics_from_dict(intrinsics)
    return vo
