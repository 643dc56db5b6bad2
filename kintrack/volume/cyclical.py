"""
Cyclical Buffer
===============

Keeps the TSDF cube centred on what the camera looks at. The target point
is the camera position pushed ``distance_camera_target`` meters along the
optical axis; once it drifts more than ``distance_threshold`` from the cube
centre the window is shifted so that the target becomes the new centre.

A shift moves the grid by a whole number of voxels:

1. voxels leaving the window that hold a surface sample are written to the
   world model in world coordinates (the whole cube on a last scan)
2. the TSDF content is rolled and the vacated slabs are cleared
3. the metric origin advances by ``offset * voxel_size``

The origin is the world position of voxel ``(0, 0, 0)``; the tracker reads
it to move between world and window-local coordinates.
"""

import logging
from typing import Optional, Sequence, Union

import numpy as np

from ..geometry import split_pose, to_world
from .tsdf import TsdfVolume
from .world_model import WorldModel

logger = logging.getLogger(__name__)

# |tsdf| below this marks a voxel close to the surface
SURFACE_BAND = 0.98


class CyclicalBuffer:
    """
    Args:
        distance_threshold: Target-to-centre distance that triggers a shift (meters)
        volume_size: Cube size in meters (float or 3-sequence)
        resolution: Voxels per axis (int or 3-sequence)
    """

    def __init__(
        self,
        distance_threshold: float = 1.5,
        volume_size: Union[float, Sequence[float]] = 3.0,
        resolution: Union[int, Sequence[int]] = 128,
    ):
        self.distance_threshold = distance_threshold
        self.volume_size = np.broadcast_to(np.asarray(volume_size, dtype=np.float64), (3,)).copy()
        self.resolution = np.broadcast_to(np.asarray(resolution, dtype=np.int64), (3,)).copy()
        self.origin_metric = np.zeros(3)
        self.origin_grid = np.zeros(3, dtype=np.int64)
        self.last_offset = np.zeros(3, dtype=np.int64)
        self.world_model = WorldModel()
        self.shift_count = 0

    @property
    def voxel_size(self) -> np.ndarray:
        return self.volume_size / self.resolution

    def set_distance_threshold(self, threshold: float):
        self.distance_threshold = threshold

    def init_buffer(self, volume: TsdfVolume):
        """Adopt the geometry of ``volume`` and place the window at the world origin."""
        self.volume_size = volume.size
        self.resolution = volume.resolution.copy()
        self.reset_buffer(volume)

    def reset_buffer(self, volume: Optional[TsdfVolume] = None):
        """Back to the initial placement; the world model is kept."""
        self.origin_metric = np.zeros(3)
        self.origin_grid = np.zeros(3, dtype=np.int64)
        self.last_offset = np.zeros(3, dtype=np.int64)
        self.shift_count = 0
        if volume is not None:
            volume.reset()

    def compute_target_point(self, pose: np.ndarray, distance_camera_target: float) -> np.ndarray:
        R, t = split_pose(pose)
        return R @ np.array([0.0, 0.0, distance_camera_target]) + t

    def check_for_shift(
        self,
        volume: TsdfVolume,
        pose: np.ndarray,
        distance_camera_target: float,
        perform_shift: bool = True,
        last_shift: bool = False,
        force_shift: bool = False,
    ) -> bool:
        """
        Shift the window if the camera target left the central region.

        Args:
            volume: TSDF volume to shift
            pose: 4x4 camera-to-world pose
            distance_camera_target: Target point distance along the optical axis
            perform_shift: If False only report whether a shift is due
            last_shift: Extract the whole cube into the world model
            force_shift: Shift regardless of the distance

        Returns:
            True if a shift is due (and was performed when ``perform_shift``)
        """
        target = self.compute_target_point(pose, distance_camera_target)
        center = self.origin_metric + self.volume_size / 2.0
        distance = float(np.linalg.norm(target - center))

        if distance <= self.distance_threshold and not force_shift:
            return False
        if perform_shift:
            self.perform_shift(volume, target, last_shift)
        return True

    def perform_shift(self, volume: TsdfVolume, target_point: np.ndarray, last_shift: bool = False):
        new_origin = target_point - self.volume_size / 2.0
        offset = np.trunc((new_origin - self.origin_metric) / self.voxel_size).astype(np.int64)

        extracted = self._extract_leaving(volume, offset, last_shift)
        volume.shift(offset)

        self.origin_grid += offset
        self.origin_metric = self.origin_metric + offset * self.voxel_size
        self.last_offset = offset
        self.shift_count += 1
        logger.info(
            f"Shifted window by {offset.tolist()} voxels, "
            f"extracted {extracted:,} points, new origin {np.round(self.origin_metric, 3).tolist()}"
        )

    def _extract_leaving(self, volume: TsdfVolume, offset: np.ndarray, last_shift: bool) -> int:
        tsdf, weight = volume.data
        res = volume.resolution
        if last_shift:
            leaving = np.ones(tuple(res), dtype=bool)
        else:
            leaving = np.zeros(tuple(res), dtype=bool)
            for axis in range(3):
                k = int(offset[axis])
                if k == 0:
                    continue
                index = np.arange(res[axis])
                axis_mask = index < k if k > 0 else index >= res[axis] + k
                shape = [1, 1, 1]
                shape[axis] = int(res[axis])
                leaving |= axis_mask.reshape(shape)

        surface = leaving & (weight > 0) & (np.abs(tsdf) < SURFACE_BAND)
        flat = np.flatnonzero(surface)
        if flat.size == 0:
            return 0

        points_local = volume.voxel_centers()[flat]
        self.world_model.add_points(to_world(points_local, self.origin_metric), tsdf.reshape(-1)[flat])
        return int(flat.size)
