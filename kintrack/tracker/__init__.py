# Tracker state machine, integration controller and workspace

from .workspace import TrackerWorkspace
from .integration import (
    motion_score,
    IntegrationDecision,
    FrameIntegration,
    VolumeIntegrationController,
)
from .kinfu import KinfuTracker, TrackerState

__all__ = [
    "TrackerWorkspace",
    "motion_score",
    "IntegrationDecision",
    "FrameIntegration",
    "VolumeIntegrationController",
    "KinfuTracker",
    "TrackerState",
]
