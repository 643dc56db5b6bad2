# Trajectory export and accuracy metrics

from .trajectory import (
    save_tum_trajectory,
    load_tum_trajectory,
    umeyama_alignment,
    compute_ate,
    compute_rpe,
    trajectory_metrics,
    save_metrics_to_json,
)

__all__ = [
    "save_tum_trajectory",
    "load_tum_trajectory",
    "umeyama_alignment",
    "compute_ate",
    "compute_rpe",
    "trajectory_metrics",
    "save_metrics_to_json",
]
