"""
Trajectory I/O and error metrics.

- TUM trajectory files (``timestamp tx ty tz qx qy qz qw``)
- ATE (Absolute Trajectory Error) after rigid Umeyama alignment
- RPE (Relative Pose Error) over a fixed frame delta
"""

import json
import logging
from pathlib import Path
from typing import Dict, Optional, Sequence, Tuple, Union

import numpy as np
from scipy.spatial.transform import Rotation

logger = logging.getLogger(__name__)


def save_tum_trajectory(
    poses: Sequence[np.ndarray],
    timestamps: Sequence[float],
    filepath: Union[str, Path],
) -> None:
    """Write 4x4 camera-to-world poses in TUM format."""
    if len(poses) != len(timestamps):
        raise ValueError(f"{len(poses)} poses but {len(timestamps)} timestamps")
    filepath = Path(filepath)
    filepath.parent.mkdir(parents=True, exist_ok=True)
    with open(filepath, 'w') as f:
        f.write("# timestamp tx ty tz qx qy qz qw\n")
        for ts, pose in zip(timestamps, poses):
            t = pose[:3, 3]
            q = Rotation.from_matrix(pose[:3, :3]).as_quat()  # xyzw
            f.write(
                f"{ts:.6f} {t[0]:.6f} {t[1]:.6f} {t[2]:.6f} "
                f"{q[0]:.6f} {q[1]:.6f} {q[2]:.6f} {q[3]:.6f}\n"
            )
    logger.info(f"Saved {len(poses)} poses to {filepath}")


def load_tum_trajectory(filepath: Union[str, Path]) -> Tuple[np.ndarray, np.ndarray]:
    """Read a TUM trajectory; returns ``(timestamps, Nx4x4 poses)``."""
    timestamps, poses = [], []
    with open(filepath, 'r') as f:
        for line in f:
            line = line.strip()
            if not line or line.startswith('#'):
                continue
            values = [float(v) for v in line.split()[:8]]
            T = np.eye(4)
            T[:3, :3] = Rotation.from_quat(values[4:8]).as_matrix()
            T[:3, 3] = values[1:4]
            timestamps.append(values[0])
            poses.append(T)
    return np.array(timestamps), np.array(poses).reshape(-1, 4, 4)


def umeyama_alignment(source: np.ndarray, target: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """
    Rigid transform ``(R, t)`` minimising ``||target - (R source + t)||``.

    Args:
        source, target: Nx3 corresponding points
    """
    src_mean = source.mean(axis=0)
    tgt_mean = target.mean(axis=0)
    H = (source - src_mean).T @ (target - tgt_mean)
    U, _, Vt = np.linalg.svd(H)
    R = Vt.T @ U.T
    if np.linalg.det(R) < 0:
        Vt[-1, :] *= -1
        R = Vt.T @ U.T
    return R, tgt_mean - R @ src_mean


def compute_ate(
    estimated_poses: np.ndarray,
    ground_truth_poses: np.ndarray,
    align: bool = True,
) -> Dict[str, float]:
    """
    Absolute Trajectory Error on camera positions.

    Args:
        estimated_poses: Nx4x4 estimated camera-to-world transforms
        ground_truth_poses: Nx4x4 ground truth transforms
        align: Align with Umeyama before measuring

    Returns:
        Dictionary with 'ate_rmse', 'ate_mean', 'ate_median', 'ate_std', 'ate_max'
    """
    est_pos = np.asarray(estimated_poses)[:, :3, 3]
    gt_pos = np.asarray(ground_truth_poses)[:, :3, 3]
    if est_pos.shape != gt_pos.shape:
        raise ValueError(f"Trajectory lengths differ: {est_pos.shape[0]} vs {gt_pos.shape[0]}")

    if align and est_pos.shape[0] >= 3:
        R, t = umeyama_alignment(est_pos, gt_pos)
        est_pos = est_pos @ R.T + t

    errors = np.linalg.norm(est_pos - gt_pos, axis=1)
    return {
        'ate_rmse': float(np.sqrt(np.mean(errors ** 2))),
        'ate_mean': float(np.mean(errors)),
        'ate_median': float(np.median(errors)),
        'ate_std': float(np.std(errors)),
        'ate_max': float(np.max(errors)),
    }


def compute_rpe(
    estimated_poses: np.ndarray,
    ground_truth_poses: np.ndarray,
    delta: int = 1,
) -> Dict[str, float]:
    """
    Relative Pose Error over ``delta`` frames.

    Returns:
        Dictionary with translational (meters) and rotational (radians) RMSE/mean
    """
    n = len(estimated_poses)
    if n <= delta:
        return {'rpe_trans_rmse': 0.0, 'rpe_trans_mean': 0.0, 'rpe_rot_rmse': 0.0, 'rpe_rot_mean': 0.0}

    trans_errors = []
    rot_errors = []
    for i in range(n - delta):
        est_rel = np.linalg.inv(estimated_poses[i]) @ estimated_poses[i + delta]
        gt_rel = np.linalg.inv(ground_truth_poses[i]) @ ground_truth_poses[i + delta]
        error = np.linalg.inv(gt_rel) @ est_rel
        trans_errors.append(np.linalg.norm(error[:3, 3]))
        rot_errors.append(np.arccos(np.clip((np.trace(error[:3, :3]) - 1) / 2, -1, 1)))

    trans_errors = np.array(trans_errors)
    rot_errors = np.array(rot_errors)
    return {
        'rpe_trans_rmse': float(np.sqrt(np.mean(trans_errors ** 2))),
        'rpe_trans_mean': float(np.mean(trans_errors)),
        'rpe_rot_rmse': float(np.sqrt(np.mean(rot_errors ** 2))),
        'rpe_rot_mean': float(np.mean(rot_errors)),
    }


def save_metrics_to_json(metrics: Dict[str, float], filepath: Union[str, Path]) -> None:
    with open(filepath, 'w') as f:
        json.dump(metrics, f, indent=2)


def trajectory_metrics(
    estimated_poses: np.ndarray,
    ground_truth_poses: np.ndarray,
    align: bool = True,
    delta: Optional[int] = 1,
) -> Dict[str, float]:
    """ATE and RPE in one dictionary."""
    metrics = compute_ate(estimated_poses, ground_truth_poses, align)
    if delta:
        metrics.update(compute_rpe(estimated_poses, ground_truth_poses, delta))
    return metrics
