import numpy as np
import pytest
from scipy.spatial.transform import Rotation

from kintrack.errors import EstimatorInvalid, TrackingLost
from kintrack.geometry import compose_increment, make_pose
from kintrack.pose import (
    AVAILABLE_SOURCES,
    PoseArbitrator,
    RGBDVO,
    TrackingStatus,
    VisualOdometryAdapter,
    VOEstimate,
    get_pose_source,
    list_pose_sources,
)

from synthetic import FakeVO, textured_rgb


def _estimate(t_inc, valid=True):
    return VOEstimate(R_inc=np.eye(3), t_inc=np.asarray(t_inc, dtype=np.float64), pose=np.eye(4), valid=valid)


def test_luminance_conversion():
    rgb = np.array([[[100, 150, 200]]], dtype=np.uint8)
    assert VisualOdometryAdapter.to_luminance(rgb)[0, 0] == 142
    gray = np.full((2, 2), 7, dtype=np.uint8)
    assert VisualOdometryAdapter.to_luminance(gray) is gray


def test_metric_depth_marks_invalid():
    adapter = VisualOdometryAdapter(FakeVO())
    depth = adapter.to_metric_depth(np.array([[0, 1000]], dtype=np.uint16))
    assert np.isnan(depth[0, 0])
    assert depth[0, 1] == pytest.approx(1.0)


def test_adapter_composes_like_relative_motion():
    R_rel = Rotation.from_rotvec([0.0, 0.02, 0.01]).as_matrix()
    t_rel = np.array([0.01, -0.02, 0.03])
    adapter = VisualOdometryAdapter(FakeVO([make_pose(R_rel, t_rel)]))

    R_prev = Rotation.from_rotvec([0.1, -0.2, 0.3]).as_matrix()
    t_prev = np.array([1.0, 1.5, -0.3])
    depth = np.full((4, 4), 1000, dtype=np.uint16)
    rgb = np.zeros((4, 4, 3), dtype=np.uint8)

    estimate = adapter.estimate(depth, rgb, R_prev, t_prev)
    assert estimate.valid
    R, t = compose_increment(estimate.R_inc, estimate.t_inc, R_prev, t_prev)
    assert np.allclose(R, R_prev @ R_rel)
    assert np.allclose(t, t_prev + R_prev @ t_rel)


def test_increment_norm_grows_with_distance_from_origin():
    # a pure camera rotation still has a world-frame translation increment
    turn = make_pose(Rotation.from_rotvec([0.0, 0.05, 0.0]).as_matrix(), np.zeros(3))
    adapter = VisualOdometryAdapter(FakeVO([turn, turn]))
    depth = np.full((4, 4), 1000, dtype=np.uint16)
    rgb = np.zeros((4, 4, 3), dtype=np.uint8)

    at_origin = adapter.estimate(depth, rgb, np.eye(3), np.zeros(3))
    far_away = adapter.estimate(depth, rgb, np.eye(3), np.array([2.0, 0.0, 0.0]))
    assert at_origin.translation_norm == pytest.approx(0.0, abs=1e-12)
    assert far_away.translation_norm == pytest.approx(0.1, abs=1e-3)


def test_adapter_feeds_once_per_call():
    fake = FakeVO()
    adapter = VisualOdometryAdapter(fake)
    depth = np.full((4, 4), 1000, dtype=np.uint16)
    rgb = np.zeros((4, 4, 3), dtype=np.uint8)
    for _ in range(3):
        adapter.estimate(depth, rgb, np.eye(3), np.zeros(3))
    assert fake.calls == 3
    assert adapter.frames_fed == 3
    assert fake.last_gray.shape == (4, 4)

    adapter.reset()
    assert adapter.frames_fed == 0


def test_nan_motion_is_invalid():
    adapter = VisualOdometryAdapter(FakeVO())
    estimate = adapter.estimate(
        np.ones((4, 4), dtype=np.uint16), np.zeros((4, 4, 3), dtype=np.uint8), np.eye(3), np.zeros(3)
    )
    assert not estimate.valid
    with pytest.raises(EstimatorInvalid):
        estimate.require_valid()


def test_arbitration_prefers_vo_on_disagreement():
    arbitrator = PoseArbitrator(mu=0.03)
    icp = (np.eye(3), np.array([0.05, 0.0, 0.0]))
    result = arbitrator.select(icp, _estimate([0.09, 0.0, 0.0]), np.eye(3), np.zeros(3))
    assert result.source == "vo"
    assert np.allclose(result.t, [0.09, 0.0, 0.0])


def test_arbitration_keeps_icp_when_close():
    arbitrator = PoseArbitrator(mu=0.03)
    icp = (np.eye(3), np.array([0.05, 0.0, 0.0]))
    result = arbitrator.select(icp, _estimate([0.06, 0.0, 0.0]), np.eye(3), np.ones(3))
    assert result.source == "icp"
    assert np.allclose(result.t, [1.05, 1.0, 1.0])


def test_arbitration_fallbacks():
    arbitrator = PoseArbitrator()
    icp = (np.eye(3), np.array([0.05, 0.0, 0.0]))

    assert arbitrator.select(icp, _estimate([np.nan] * 3, valid=False), np.eye(3), np.zeros(3)).source == "icp"
    assert arbitrator.select(None, _estimate([0.01, 0.0, 0.0]), np.eye(3), np.zeros(3)).source == "vo"
    with pytest.raises(TrackingLost):
        arbitrator.select(None, _estimate([np.nan] * 3, valid=False), np.eye(3), np.zeros(3))


def test_pose_source_registry():
    assert AVAILABLE_SOURCES == ['icp', 'hybrid']
    assert set(list_pose_sources()) == {'icp', 'hybrid'}
    with pytest.raises(ValueError):
        get_pose_source('orb_slam')


def test_hybrid_source_needs_color():
    adapter = VisualOdometryAdapter(FakeVO())
    source = get_pose_source('hybrid', icp=None, adapter=adapter, arbitrator=PoseArbitrator())
    assert source.requires_color
    with pytest.raises(RuntimeError):
        source.estimate(None, None, np.eye(3), np.zeros(3), np.zeros(3), np.zeros((4, 4)), color=None)


def test_rgbd_vo_requires_intrinsics():
    vo = RGBDVO()
    with pytest.raises(RuntimeError):
        vo.process_frame(np.zeros((8, 8), dtype=np.uint8), np.ones((8, 8), dtype=np.float32))


def test_rgbd_vo_static_scene():
    rows, cols = 240, 320
    gray = textured_rgb(rows, cols, seed=3)[..., 0]
    depth = np.full((rows, cols), 1.5, dtype=np.float32)

    vo = RGBDVO()
    vo.set_intrinsics(fx=300.0, fy=300.0, cx=159.5, cy=119.5)

    first = vo.process_frame(gray, depth)
    assert first.tracking_status == TrackingStatus.INITIALIZING
    assert np.all(np.isnan(first.motion[:3]))

    second = vo.process_frame(gray, depth)
    assert second.tracking_status == TrackingStatus.OK
    assert np.allclose(second.motion, np.eye(4), atol=1e-2)

    vo.reset()
    assert vo.status == TrackingStatus.INITIALIZING
