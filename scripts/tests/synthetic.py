"""
Synthetic depth scenes and a scripted visual odometry for the test suite.

The corner scene is three orthogonal planes (back wall, floor, left wall)
seen by a camera looking along +Z; it constrains all six ICP degrees of
freedom. Coordinates are in the frame of the camera at ``offset = 0``.
"""

import cv2
import numpy as np

from kintrack.pose import VisualOdometryEstimator

BACK_WALL_Z = 2.0
FLOOR_Y = 0.5
LEFT_WALL_X = -0.6


def ray_directions(rows, cols, fx, fy, cx=None, cy=None):
    cx = cols / 2 - 0.5 if cx is None else cx
    cy = rows / 2 - 0.5 if cy is None else cy
    u, v = np.meshgrid(np.arange(cols, dtype=np.float64), np.arange(rows, dtype=np.float64))
    return (u - cx) / fx, (v - cy) / fy


def corner_depth(rows, cols, fx, fy, offset=(0.0, 0.0, 0.0)):
    """Depth in meters of the corner scene from a camera translated by ``offset``."""
    ox, oy, oz = offset
    dx, dy = ray_directions(rows, cols, fx, fy)

    depth = np.full((rows, cols), BACK_WALL_Z - oz)
    with np.errstate(divide='ignore', invalid='ignore'):
        floor = np.where(dy > 0, (FLOOR_Y - oy) / dy, np.inf)
        left = np.where(dx < 0, (LEFT_WALL_X - ox) / dx, np.inf)
    depth = np.minimum(depth, floor)
    depth = np.minimum(depth, left)
    return depth


def to_millimetres(depth_m):
    return np.rint(depth_m * 1000.0).astype(np.uint16)


def wall_depth_mm(rows, cols, distance=1.0):
    return np.full((rows, cols), int(round(distance * 1000)), dtype=np.uint16)


def textured_rgb(rows, cols, seed=0):
    """Smooth random texture, HxWx3 uint8."""
    rng = np.random.default_rng(seed)
    noise = rng.integers(0, 256, size=(rows // 4, cols // 4), dtype=np.uint8)
    gray = cv2.resize(noise, (cols, rows), interpolation=cv2.INTER_CUBIC)
    return np.repeat(gray[..., None], 3, axis=-1)


class FakeVO(VisualOdometryEstimator):
    """Replays a fixed list of motions, one per frame; NaN once exhausted."""

    def __init__(self, motions=None):
        self.motions = list(motions or [])
        self.calls = 0
        self.last_gray = None
        self.last_depth = None
        self._motion = np.full((4, 4), np.nan)

    def process_frame(self, gray, depth):
        self.last_gray, self.last_depth = gray, depth
        if self.calls < len(self.motions) and self.motions[self.calls] is not None:
            self._motion = np.asarray(self.motions[self.calls], dtype=np.float64)
        else:
            self._motion = np.full((4, 4), np.nan)
        self.calls += 1

    def get_pose(self):
        return np.eye(4)

    def get_motion_estimate(self):
        return self._motion.copy()

    def reset(self):
        self.calls = 0
