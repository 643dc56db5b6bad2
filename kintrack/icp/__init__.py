# Multi-resolution point-to-plane ICP

from .reduction import LinearSystem, estimate_combined
from .estimator import PoseEstimator, SINGULAR_DETERMINANT

__all__ = [
    "LinearSystem",
    "estimate_combined",
    "PoseEstimator",
    "SINGULAR_DETERMINANT",
]
