# kintrack - Large-Scale KinectFusion Tracking Core
# =================================================
#
# Dense RGB-D camera tracking and volumetric fusion with a shifting
# (cyclical) TSDF window. Multi-resolution point-to-plane ICP, optional
# hybrid arbitration against RGB-D visual odometry, movement-gated
# integration and world-model extraction.

__version__ = "0.1.0"

from .config import TrackerConfig, Intrinsics
from .errors import TrackingLost, EstimatorInvalid
from .tracker import KinfuTracker, TrackerState

__all__ = [
    "TrackerConfig",
    "Intrinsics",
    "TrackingLost",
    "EstimatorInvalid",
    "KinfuTracker",
    "TrackerState",
]
