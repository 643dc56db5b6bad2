"""
Pose Estimation Module
======================

Pose sources for the tracker, plus the visual-odometry pieces used by the
hybrid source.

Usage:
    from kintrack.pose import get_pose_source, VisualOdometryAdapter, RGBDVO

    adapter = VisualOdometryAdapter(RGBDVO())
    source = get_pose_source('hybrid', icp=icp, adapter=adapter,
                             arbitrator=PoseArbitrator(mu=0.03))
"""

from .rgbd_vo import (
    RGBDVO,
    VOResult,
    FeatureType,
    TrackingStatus,
    VisualOdometryEstimator,
    create_rgbd_vo,
)
from .vo_adapter import VisualOdometryAdapter, VOEstimate
from .arbitration import PoseArbitrator, ArbitrationResult
from .sources import (
    PoseResult,
    BasePoseSource,
    IcpPoseSource,
    HybridPoseSource,
    AVAILABLE_SOURCES,
    get_pose_source,
    list_pose_sources,
)

__all__ = [
    # Pose sources
    'PoseResult',
    'BasePoseSource',
    'IcpPoseSource',
    'HybridPoseSource',
    'AVAILABLE_SOURCES',
    'get_pose_source',
    'list_pose_sources',
    # Visual odometry
    'VisualOdometryEstimator',
    'VisualOdometryAdapter',
    'VOEstimate',
    'RGBDVO',
    'VOResult',
    'FeatureType',
    'TrackingStatus',
    'create_rgbd_vo',
    # Arbitration
    'PoseArbitrator',
    'ArbitrationResult',
]
