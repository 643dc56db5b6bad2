"""
Accumulated world model.

Surface samples pushed out of the moving TSDF window are kept here in world
coordinates as ``(x, y, z, intensity)`` rows, where intensity is the TSDF
value of the sample. Export writes a binary PLY with ``plyfile``.
"""

import logging
from pathlib import Path
from typing import List, Union

import numpy as np
from plyfile import PlyData, PlyElement

logger = logging.getLogger(__name__)


class WorldModel:
    """Append-only point store in world coordinates."""

    def __init__(self):
        self._chunks: List[np.ndarray] = []
        self._size = 0

    def add_points(self, xyz: np.ndarray, intensity: np.ndarray):
        xyz = np.asarray(xyz, dtype=np.float32).reshape(-1, 3)
        intensity = np.asarray(intensity, dtype=np.float32).reshape(-1)
        if xyz.shape[0] != intensity.shape[0]:
            raise ValueError(f"{xyz.shape[0]} points but {intensity.shape[0]} intensities")
        if xyz.shape[0] == 0:
            return
        self._chunks.append(np.concatenate([xyz, intensity[:, None]], axis=1))
        self._size += xyz.shape[0]

    @property
    def world(self) -> np.ndarray:
        """All points as an (N, 4) float32 array."""
        if not self._chunks:
            return np.zeros((0, 4), dtype=np.float32)
        if len(self._chunks) > 1:
            self._chunks = [np.concatenate(self._chunks, axis=0)]
        return self._chunks[0]

    @property
    def size(self) -> int:
        return self._size

    def is_empty(self) -> bool:
        return self._size == 0

    def reset(self):
        self._chunks = []
        self._size = 0

    def export(self, path: Union[str, Path]) -> int:
        """
        Write the world model as a binary PLY (x, y, z, intensity).

        Returns:
            Number of exported points (0 if the model is empty and nothing
            was written)
        """
        if self.is_empty():
            logger.warning("World model is empty, nothing to export")
            return 0

        world = self.world
        elements = np.empty(world.shape[0], dtype=[
            ('x', 'f4'), ('y', 'f4'), ('z', 'f4'), ('intensity', 'f4'),
        ])
        elements['x'] = world[:, 0]
        elements['y'] = world[:, 1]
        elements['z'] = world[:, 2]
        elements['intensity'] = world[:, 3]

        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        el = PlyElement.describe(elements, 'vertex')
        PlyData([el], text=False).write(str(path))
        logger.info(f"Saved world model with {world.shape[0]:,} points to {path}")
        return int(world.shape[0])
