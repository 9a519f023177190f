"""
Evaluation metrics for LiDAR odometry.

Absolute errors compare estimated and true sensor positions in the world
frame. Relative errors compare the motion between consecutive poses, which
measures the frame-to-frame drift independently of the accumulated error.
"""

from typing import Dict

import numpy as np

from lidar_slam.slam.se3 import se3_distance, se3_relative


def compute_position_errors(
    truth: np.ndarray, estimated: np.ndarray
) -> np.ndarray:
    """
    Compute position errors between true and estimated positions.

    Args:
        truth: True positions, shape (N, 3)
        estimated: Estimated positions, shape (N, 3)

    Returns:
        errors: Position error vectors, shape (N, 3)

    Raises:
        ValueError: If inputs have incompatible shapes
    """
    truth = np.asarray(truth)
    estimated = np.asarray(estimated)

    if truth.shape != estimated.shape:
        raise ValueError(
            f"Shape mismatch: truth {truth.shape} vs estimated {estimated.shape}"
        )

    return estimated - truth


def compute_error_stats(errors: np.ndarray) -> Dict[str, float]:
    """
    Compute error statistics.

    Args:
        errors: Error vectors, shape (N, d) or (N,)

    Returns:
        stats: Dictionary with keys 'mean', 'median', 'std', 'rmse',
               'p90', 'p95' and 'max' of the error magnitudes
    """
    errors = np.asarray(errors)

    if errors.ndim > 1:
        error_magnitudes = np.linalg.norm(errors, axis=1)
    else:
        error_magnitudes = np.abs(errors)

    return {
        "mean": float(np.mean(error_magnitudes)),
        "median": float(np.median(error_magnitudes)),
        "std": float(np.std(error_magnitudes)),
        "rmse": float(np.sqrt(np.mean(error_magnitudes**2))),
        "p90": float(np.percentile(error_magnitudes, 90)),
        "p95": float(np.percentile(error_magnitudes, 95)),
        "max": float(np.max(error_magnitudes)),
    }


def compute_relative_pose_errors(
    truth_poses: np.ndarray, estimated_poses: np.ndarray
) -> np.ndarray:
    """
    Frame-to-frame motion errors.

    For each pair of consecutive poses, the true and estimated relative
    motions are compared; the error is the residual motion between them.

    Args:
        truth_poses: True world poses, shape (N, 6)
        estimated_poses: Estimated world poses, shape (N, 6)

    Returns:
        errors: Shape (N - 1, 2), columns are the translation error (m)
                and the rotation error (rad) of each step
    """
    truth_poses = np.asarray(truth_poses, dtype=np.float64)
    estimated_poses = np.asarray(estimated_poses, dtype=np.float64)
    if truth_poses.shape != estimated_poses.shape:
        raise ValueError(
            f"Shape mismatch: truth {truth_poses.shape} vs estimated {estimated_poses.shape}"
        )
    if truth_poses.ndim != 2 or truth_poses.shape[1] != 6:
        raise ValueError(f"poses must have shape (N, 6), got {truth_poses.shape}")

    errors = np.zeros((max(len(truth_poses) - 1, 0), 2))
    for k in range(1, len(truth_poses)):
        true_step = se3_relative(truth_poses[k - 1], truth_poses[k])
        estimated_step = se3_relative(estimated_poses[k - 1], estimated_poses[k])
        errors[k - 1] = se3_distance(true_step, estimated_step)
    return errors
