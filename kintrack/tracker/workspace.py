"""
Per-tracker scratch memory.

Both pyramids are allocated once at construction and overwritten every
frame: ``current`` holds the preprocessed input in camera coordinates,
``prediction`` the surface predicted from the last pose in world
coordinates.
"""

from dataclasses import dataclass

import numpy as np

from ..config import LEVELS
from ..preprocess import Pyramid


@dataclass
class TrackerWorkspace:
    rows: int
    cols: int
    current: Pyramid
    prediction: Pyramid

    @classmethod
    def allocate(cls, rows: int, cols: int, levels: int = LEVELS) -> "TrackerWorkspace":
        return cls(
            rows=rows,
            cols=cols,
            current=Pyramid.allocate(rows, cols, levels),
            prediction=Pyramid.allocate(rows, cols, levels),
        )

    @property
    def levels(self) -> int:
        return self.current.levels

    def check_frame(self, depth: np.ndarray, color: np.ndarray = None):
        """Raise ``RuntimeError`` for frames that don't match the workspace."""
        if depth.shape != (self.rows, self.cols):
            raise RuntimeError(
                f"Depth frame is {depth.shape}, tracker expects {(self.rows, self.cols)}"
            )
        if color is not None and color.shape[:2] != (self.rows, self.cols):
            raise RuntimeError(
                f"Colour frame is {color.shape[:2]}, tracker expects {(self.rows, self.cols)}"
            )

    def clear_prediction(self):
        for vmap, nmap in zip(self.prediction.vmaps, self.prediction.nmaps):
            vmap.fill(np.nan)
            nmap.fill(np.nan)
