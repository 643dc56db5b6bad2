import json

import numpy as np
import pytest
from scipy.spatial.transform import Rotation

from kintrack.evaluation import (
    compute_ate,
    compute_rpe,
    load_tum_trajectory,
    save_metrics_to_json,
    save_tum_trajectory,
    trajectory_metrics,
)
from kintrack.geometry import make_pose


def _trajectory(n=10):
    poses = []
    for i in range(n):
        R = Rotation.from_rotvec([0.0, 0.05 * i, 0.01 * i]).as_matrix()
        poses.append(make_pose(R, [0.1 * i, 0.02 * i ** 2, -0.05 * i]))
    return np.array(poses)


def test_ate_identical_trajectories():
    poses = _trajectory()
    metrics = compute_ate(poses, poses)
    assert metrics['ate_rmse'] == pytest.approx(0.0, abs=1e-9)
    assert metrics['ate_max'] == pytest.approx(0.0, abs=1e-9)


def test_ate_aligns_rigid_offset():
    gt = _trajectory()
    offset = make_pose(Rotation.from_rotvec([0.3, -0.1, 0.2]).as_matrix(), [1.0, -2.0, 0.5])
    est = np.array([offset @ T for T in gt])

    assert compute_ate(est, gt, align=True)['ate_rmse'] == pytest.approx(0.0, abs=1e-6)
    assert compute_ate(est, gt, align=False)['ate_rmse'] > 0.5


def test_ate_rejects_length_mismatch():
    poses = _trajectory()
    with pytest.raises(ValueError):
        compute_ate(poses, poses[:-1])


def test_rpe_detects_constant_drift():
    gt = _trajectory()
    est = np.array([make_pose(T[:3, :3], T[:3, 3] + [0.01 * i, 0.0, 0.0]) for i, T in enumerate(gt)])
    metrics = compute_rpe(est, gt)
    assert metrics['rpe_trans_mean'] == pytest.approx(0.01, abs=1e-9)
    assert metrics['rpe_rot_mean'] == pytest.approx(0.0, abs=1e-6)
    assert compute_rpe(gt[:1], gt[:1])['rpe_trans_rmse'] == 0.0


def test_tum_trajectory_round_trip(tmp_path):
    poses = _trajectory(5)
    timestamps = [1305031102.175304 + 0.033 * i for i in range(5)]
    path = tmp_path / "traj" / "trajectory.txt"
    save_tum_trajectory(poses, timestamps, path)

    loaded_ts, loaded = load_tum_trajectory(path)
    assert loaded.shape == (5, 4, 4)
    assert np.allclose(loaded_ts, timestamps, atol=1e-6)
    assert np.allclose(loaded, poses, atol=1e-5)

    with pytest.raises(ValueError):
        save_tum_trajectory(poses, timestamps[:2], path)


def test_metrics_json(tmp_path):
    poses = _trajectory()
    metrics = trajectory_metrics(poses, poses)
    assert {'ate_rmse', 'rpe_trans_rmse'} <= set(metrics)
    path = tmp_path / "metrics.json"
    save_metrics_to_json(metrics, path)
    assert json.loads(path.read_text())['ate_rmse'] == pytest.approx(0.0, abs=1e-9)
