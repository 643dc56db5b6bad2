import numpy as np
import pytest

from kintrack.errors import TrackingLost
from kintrack.geometry import compose_increment, make_pose, split_pose, transform_maps
from kintrack.icp import LinearSystem, PoseEstimator
from kintrack.preprocess import FramePreprocessor, Pyramid

from conftest import COLS, ROWS


def _pyramids(config, depth_raw, pose):
    preprocessor = FramePreprocessor(config.intrinsics)
    current = preprocessor.process(depth_raw)
    R, t = split_pose(pose)
    prediction = Pyramid.allocate(ROWS, COLS)
    for level in range(current.levels):
        v, n = transform_maps(current.vmaps[level], current.nmaps[level], R, t)
        np.copyto(prediction.vmaps[level], v)
        np.copyto(prediction.nmaps[level], n)
    return current, prediction


def test_check_system_rejects_singular():
    with pytest.raises(TrackingLost):
        PoseEstimator.check_system(LinearSystem(A=np.zeros((6, 6)), b=np.zeros(6)))


def test_check_system_rejects_nan():
    A = np.eye(6)
    A[2, 2] = np.nan
    with pytest.raises(TrackingLost):
        PoseEstimator.check_system(LinearSystem(A=A, b=np.zeros(6)))


def test_check_system_accepts_well_conditioned():
    PoseEstimator.check_system(LinearSystem(A=np.eye(6), b=np.ones(6), correspondences=100))


def test_empty_prediction_loses_tracking(small_config, corner_frame):
    pose = small_config.resolve_initial_pose()
    current, prediction = _pyramids(small_config, corner_frame, pose)
    for vmap in prediction.vmaps:
        vmap[:] = np.nan

    R, t = split_pose(pose)
    estimator = PoseEstimator(small_config.intrinsics)
    with pytest.raises(TrackingLost) as excinfo:
        estimator.solve_absolute(current, prediction, R, t, np.zeros(3))
    # coarsest level runs first
    assert excinfo.value.level == 2
    assert excinfo.value.iteration == 0


def test_static_frame_keeps_pose(small_config, corner_frame):
    pose = small_config.resolve_initial_pose()
    current, prediction = _pyramids(small_config, corner_frame, pose)
    R, t = split_pose(pose)

    estimator = PoseEstimator(small_config.intrinsics)
    R_new, t_new = estimator.solve_absolute(current, prediction, R, t, np.zeros(3))
    assert np.allclose(R_new, R, atol=1e-4)
    assert np.allclose(t_new, t, atol=1e-4)
    assert estimator.last_correspondences[0] > 0.3 * ROWS * COLS


def test_incremental_matches_absolute(small_config, corner_frame, corner_frame_at):
    pose = small_config.resolve_initial_pose()
    _, prediction = _pyramids(small_config, corner_frame, pose)
    current = FramePreprocessor(small_config.intrinsics).process(corner_frame_at((0.02, 0.0, 0.01)))
    R, t = split_pose(pose)
    origin = np.zeros(3)

    estimator = PoseEstimator(small_config.intrinsics)
    R_abs, t_abs = estimator.solve_absolute(current, prediction, R, t, origin)
    R_inc, t_inc = estimator.solve_incremental(current, prediction, R, t, origin)
    R_comp, t_comp = compose_increment(R_inc, t_inc, R, t)

    assert np.allclose(R_comp, R_abs, atol=1e-9)
    assert np.allclose(t_comp, t_abs, atol=1e-9)


def test_recovers_translation(small_config, corner_frame, corner_frame_at):
    pose = small_config.resolve_initial_pose()
    _, prediction = _pyramids(small_config, corner_frame, pose)
    current = FramePreprocessor(small_config.intrinsics).process(corner_frame_at((0.02, 0.0, 0.0)))
    R, t = split_pose(pose)

    estimator = PoseEstimator(small_config.intrinsics)
    R_new, t_new = estimator.solve_absolute(current, prediction, R, t, np.zeros(3))
    expected = make_pose(R, t) @ make_pose(np.eye(3), [0.02, 0.0, 0.0])
    assert np.allclose(t_new, expected[:3, 3], atol=5e-3)
    assert np.allclose(R_new, np.eye(3), atol=5e-3)


def test_zero_normals_lose_tracking(small_config, corner_frame):
    pose = small_config.resolve_initial_pose()
    current, prediction = _pyramids(small_config, corner_frame, pose)
    for nmap in prediction.nmaps:
        nmap[np.isfinite(nmap)] = 0.0

    R, t = split_pose(pose)
    estimator = PoseEstimator(small_config.intrinsics)
    with pytest.raises(TrackingLost):
        estimator.solve_incremental(current, prediction, R, t, np.zeros(3))
