"""
Large-Scale KinectFusion Tracker
================================

Per-frame state machine tying the components together:

    depth (+ colour) -> FramePreprocessor -> pose source (ICP or hybrid)
        -> pose history -> VolumeIntegrationController -> prediction

States:
- BOOTSTRAP: the next frame is fused at the initial pose
- TRACKING: frames are registered against the prediction
- LOST: transient; tracking failed and the tracker is reset to BOOTSTRAP

``finished`` is a sticky flag set by ``extract_and_mesh_world``, either
called directly or triggered by a window shift in last-scan mode.

Usage:
    from kintrack import KinfuTracker, TrackerConfig

    tracker = KinfuTracker(TrackerConfig(rows=480, cols=640))
    for depth in frames:
        ok = tracker.process_frame(depth)
        pose = tracker.get_camera_pose()
"""

import logging
from enum import Enum
from pathlib import Path
from typing import Optional, Union

import numpy as np

from ..config import LEVELS, Intrinsics, TrackerConfig
from ..errors import TrackingLost
from ..geometry import make_pose, orthonormalize, split_pose
from ..icp import PoseEstimator
from ..pose import (
    BasePoseSource,
    PoseArbitrator,
    VisualOdometryAdapter,
    VisualOdometryEstimator,
    create_rgbd_vo,
    get_pose_source,
)
from ..preprocess import FramePreprocessor
from ..volume import ColorVolume, CyclicalBuffer, TsdfVolume, render_shaded
from .integration import FrameIntegration, VolumeIntegrationController
from .workspace import TrackerWorkspace

logger = logging.getLogger(__name__)


class TrackerState(Enum):
    BOOTSTRAP = "bootstrap"
    TRACKING = "tracking"
    LOST = "lost"


class KinfuTracker:
    """
    KinectFusion camera tracker with a shifting TSDF window.

    Args:
        config: Tracker configuration; defaults to ``TrackerConfig()``
        vo_estimator: Visual odometry used when ``config.use_visual_odometry``
            is set; an ``RGBDVO`` is created if None
    """

    def __init__(
        self,
        config: Optional[TrackerConfig] = None,
        vo_estimator: Optional[VisualOdometryEstimator] = None,
    ):
        self.config = config or TrackerConfig()
        cfg = self.config
        self._intrinsics = cfg.intrinsics

        self.tsdf_volume = TsdfVolume(cfg.volume_resolution, cfg.volume_size, cfg.trunc_dist)
        self.cyclical = CyclicalBuffer(cfg.shifting_distance, cfg.volume_size, cfg.volume_resolution)
        self.cyclical.init_buffer(self.tsdf_volume)

        self.workspace = TrackerWorkspace.allocate(cfg.rows, cfg.cols, LEVELS)
        self.preprocessor = FramePreprocessor(
            self._intrinsics,
            levels=LEVELS,
            depth_scale=cfg.depth_scale,
            max_icp_distance=cfg.max_icp_distance,
        )
        self.icp = PoseEstimator(
            self._intrinsics,
            icp_iterations=cfg.icp_iterations,
            dist_threshold=cfg.dist_threshold,
            angle_threshold=cfg.angle_threshold,
        )
        self.integration = VolumeIntegrationController(
            self.tsdf_volume,
            self.cyclical,
            self.workspace,
            self.preprocessor,
            self._intrinsics,
            threshold=cfg.integration_metric_threshold,
            shift_trigger_fraction=cfg.shift_trigger_fraction,
        )
        self.pose_source = self._create_pose_source(vo_estimator)

        self._color_volume: Optional[ColorVolume] = None
        if cfg.color_max_weight is not None:
            self.init_color_integration(cfg.color_max_weight)

        self._init_R, self._init_t = split_pose(cfg.resolve_initial_pose())
        self.global_time = 0
        self.finished = False
        self._cube_extracted = False
        self.last_integration: Optional[FrameIntegration] = None

        logger.info(
            f"KinfuTracker: {cfg.rows}x{cfg.cols}, volume {cfg.volume_size} m / "
            f"{cfg.volume_resolution} voxels, pose source '{self.pose_source.get_name()}'"
        )
        self.reset()

    def _create_pose_source(self, vo_estimator: Optional[VisualOdometryEstimator]) -> BasePoseSource:
        if not self.config.use_visual_odometry:
            return get_pose_source('icp', icp=self.icp)
        if vo_estimator is None:
            vo_estimator = create_rgbd_vo(self._intrinsics.to_dict())
        adapter = VisualOdometryAdapter(vo_estimator, depth_scale=self.config.depth_scale)
        return get_pose_source(
            'hybrid',
            icp=self.icp,
            adapter=adapter,
            arbitrator=PoseArbitrator(mu=self.config.hybrid_mu),
        )

    # ------------------------------------------------------------------
    # Setup
    # ------------------------------------------------------------------

    def set_depth_intrinsics(self, fx: float, fy: float, cx: Optional[float] = None, cy: Optional[float] = None):
        """Principal point defaults to the image centre."""
        self.config.fx, self.config.fy = fx, fy
        self.config.cx, self.config.cy = cx, cy
        self._intrinsics = Intrinsics.centered(self.rows, self.cols, fx, fy, cx, cy)
        self.preprocessor.intrinsics = self._intrinsics
        self.icp.intrinsics = self._intrinsics
        self.integration.intrinsics = self._intrinsics
        adapter = getattr(self.pose_source, 'adapter', None)
        if adapter is not None and hasattr(adapter.estimator, 'set_intrinsics_from_dict'):
            adapter.estimator.set_intrinsics_from_dict(self._intrinsics.to_dict())
        logger.info(f"Depth intrinsics set to {self._intrinsics}")

    def set_initial_camera_pose(self, pose: np.ndarray):
        """Set the bootstrap pose (4x4 camera-to-world) and reset."""
        self._init_R, self._init_t = split_pose(pose)
        self.config.initial_pose = make_pose(self._init_R, self._init_t)
        self.reset()

    def set_depth_truncation_for_icp(self, max_icp_distance: float = 0.0):
        self.preprocessor.max_icp_distance = max_icp_distance

    def set_camera_movement_threshold(self, threshold: float = 0.001):
        self.integration.threshold = threshold

    def set_icp_corresp_filtering_params(self, dist_threshold: float, sine_of_angle: float):
        self.icp.set_corresp_filtering_params(dist_threshold, sine_of_angle)

    def init_color_integration(self, max_weight: int = -1):
        self._color_volume = ColorVolume(self.tsdf_volume, max_weight)
        self.integration.color_volume = self._color_volume
        logger.info(f"Colour integration enabled (max weight {self._color_volume.max_weight})")

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def rows(self) -> int:
        return self.workspace.rows

    @property
    def cols(self) -> int:
        return self.workspace.cols

    @property
    def intrinsics(self) -> Intrinsics:
        return self._intrinsics

    @property
    def volume(self) -> TsdfVolume:
        return self.tsdf_volume

    @property
    def color_volume(self) -> Optional[ColorVolume]:
        return self._color_volume

    @property
    def cyclical_buffer(self) -> CyclicalBuffer:
        return self.cyclical

    @property
    def vo_failure_streak(self) -> int:
        return getattr(self.pose_source, 'vo_failure_streak', 0)

    def get_camera_pose(self, time: int = -1) -> np.ndarray:
        """4x4 camera-to-world pose of frame ``time``; out of range gives the latest."""
        if time < 0 or time >= len(self.rmats):
            time = len(self.rmats) - 1
        return make_pose(self.rmats[time], self.tvecs[time])

    def get_number_of_poses(self) -> int:
        return len(self.rmats)

    def get_last_frame_cloud(self) -> np.ndarray:
        """Predicted world-space vertex map (level 0)."""
        return self.workspace.prediction.vmaps[0].copy()

    def get_last_frame_normals(self) -> np.ndarray:
        return self.workspace.prediction.nmaps[0].copy()

    def get_image(self) -> np.ndarray:
        """Lambert-shaded rendering of the prediction, light at the camera."""
        prediction = self.workspace.prediction
        return render_shaded(prediction.vmaps[0], prediction.nmaps[0], self.tvecs[-1])

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------

    def reset(self):
        if self.global_time:
            logger.info(f"Reset after {self.global_time} frames")
        self.global_time = 0
        self._cube_extracted = False
        self.rmats = [self._init_R.copy()]
        self.tvecs = [self._init_t.copy()]
        self.tsdf_volume.reset()
        self.cyclical.reset_buffer(self.tsdf_volume)
        if self._color_volume is not None:
            self._color_volume.reset()
        self.pose_source.reset()
        self.workspace.clear_prediction()
        self.state = TrackerState.BOOTSTRAP

    def _bootstrap(self, depth: np.ndarray, color: Optional[np.ndarray]) -> bool:
        R0, t0 = self.rmats[0], self.tvecs[0]
        self.last_integration = self.integration.bootstrap(depth, R0, t0)
        self.pose_source.bootstrap(depth, color, R0, t0)
        if color is not None:
            self.integration.integrate_color(color, R0, t0)
        self.global_time += 1
        self.state = TrackerState.TRACKING
        # no pose was estimated for this frame
        return False

    def process_frame(self, depth: np.ndarray, color: Optional[np.ndarray] = None) -> bool:
        """
        Track one frame and fuse it into the volume.

        Args:
            depth: HxW raw depth (uint16 sensor units)
            color: Optional HxWx3 uint8 RGB registered to depth; required
                by the hybrid pose source

        Returns:
            True if a pose was estimated for the frame. False for the
            bootstrap frame, which is fused at the initial pose, and when
            tracking was lost and the tracker reset; ``state`` tells the two
            apart (TRACKING after a bootstrap, BOOTSTRAP after a reset)

        Raises:
            RuntimeError: Frame shape doesn't match the configuration, or
                the hybrid source got no colour frame
        """
        self.workspace.check_frame(depth, color)
        if color is None and self.pose_source.requires_color:
            raise RuntimeError("Hybrid tracking needs a colour frame")

        self.preprocessor.process(depth, self.workspace.current)

        if self.global_time == 0:
            return self._bootstrap(depth, color)

        R_prev, t_prev = self.rmats[-1], self.tvecs[-1]
        try:
            result = self.pose_source.estimate(
                self.workspace.current,
                self.workspace.prediction,
                R_prev,
                t_prev,
                self.cyclical.origin_metric,
                depth,
                color,
            )
        except TrackingLost as e:
            logger.error(f"Tracking lost at frame {self.global_time}: {e}")
            self.state = TrackerState.LOST
            self.reset()
            return False

        R, t = result.R, result.t
        if self.config.orthonormalize_rotation:
            R = orthonormalize(R)
        self.rmats.append(R)
        self.tvecs.append(t)

        self.last_integration = self.integration.integrate_and_predict(
            depth, R_prev, t_prev, R, t, self.config.perform_last_scan,
        )
        if color is not None:
            self.integration.integrate_color(color, R, t)

        self.global_time += 1
        self.state = TrackerState.TRACKING

        last_scan = self.last_integration.shifted and self.config.perform_last_scan
        if self.last_integration.decision.integrate or self.last_integration.shifted:
            # the cube holds surface not yet in the world model unless a last shift took it
            self._cube_extracted = last_scan
        if last_scan:
            self.extract_and_mesh_world()
        return True

    def extract_and_mesh_world(self, path: Optional[Union[str, Path]] = None, flush_volume: bool = False) -> int:
        """
        Export the world model and mark the tracker finished.

        Args:
            path: Output PLY; defaults to ``config.world_output_path``
            flush_volume: First move the whole current cube into the world
                model with a forced last shift; skipped when a last shift
                already extracted the cube

        Returns:
            Number of exported points (0 when the world model is empty)
        """
        self.finished = True
        if flush_volume and not self._cube_extracted:
            self._cube_extracted = True
            self.cyclical.check_for_shift(
                self.tsdf_volume,
                self.get_camera_pose(),
                self.integration.target_distance,
                perform_shift=True,
                last_shift=True,
                force_shift=True,
            )
        world_model = self.cyclical.world_model
        if world_model.is_empty():
            logger.warning("World model currently has no points, skipping save")
            return 0
        return world_model.export(path or self.config.world_output_path)
