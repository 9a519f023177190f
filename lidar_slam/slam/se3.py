"""SE(3) operations on 6-vector poses.

Poses are NumPy arrays [rx, ry, rz, tx, ty, tz] of shape (6,): ZYX Euler
angles followed by a translation. A pose T maps points from its own
referential into the reference one:

    x_ref = R(rx, ry, rz) @ x + [tx, ty, tz]

The pipeline keeps three standing poses:
    - t_relative: current sweep → previous sweep
    - t_world: current sweep → world
    - previous_t_world: previous sweep → world
with t_world = se3_compose(previous_t_world, t_relative).

Key functions:
    - se3_compose: Chain two poses (p1 ⊕ p2)
    - se3_inverse: Invert a pose (p⁻¹)
    - se3_relative: Relative pose p1⁻¹ ⊕ p2
    - se3_apply: Transform points by a pose
"""

from typing import Tuple

import numpy as np

from lidar_slam.coords.rotations import euler_to_rotation_matrix, rotation_matrix_to_euler


def validate_pose(pose: np.ndarray, name: str = "pose") -> np.ndarray:
    """Return pose as a float array, checking shape (6,) and finiteness."""
    pose = np.asarray(pose, dtype=np.float64)
    if pose.shape != (6,):
        raise ValueError(f"{name} must have shape (6,), got {pose.shape}")
    if not np.all(np.isfinite(pose)):
        raise ValueError(f"{name} must be finite, got {pose}")
    return pose


def se3_identity() -> np.ndarray:
    """Return the identity pose [0, 0, 0, 0, 0, 0]."""
    return np.zeros(6, dtype=np.float64)


def se3_rotation(pose: np.ndarray) -> np.ndarray:
    """Rotation matrix of a pose.

    Args:
        pose: Pose [rx, ry, rz, tx, ty, tz].

    Returns:
        3x3 rotation matrix.
    """
    pose = validate_pose(pose)
    return euler_to_rotation_matrix(pose[0], pose[1], pose[2])


def se3_to_matrix(pose: np.ndarray) -> np.ndarray:
    """Convert a pose to a 4x4 homogeneous transformation matrix."""
    pose = validate_pose(pose)
    T = np.eye(4)
    T[:3, :3] = euler_to_rotation_matrix(pose[0], pose[1], pose[2])
    T[:3, 3] = pose[3:]
    return T


def se3_from_matrix(T: np.ndarray) -> np.ndarray:
    """Convert a 4x4 homogeneous transformation matrix to a pose.

    Raises:
        ValueError: If T is not 4x4.
    """
    T = np.asarray(T, dtype=np.float64)
    if T.shape != (4, 4):
        raise ValueError(f"T must have shape (4, 4), got {T.shape}")
    return np.concatenate([rotation_matrix_to_euler(T[:3, :3]), T[:3, 3]])


def se3_from_rotation_translation(R: np.ndarray, t: np.ndarray) -> np.ndarray:
    """Build a pose from a rotation matrix and a translation vector."""
    t = np.asarray(t, dtype=np.float64)
    if t.shape != (3,):
        raise ValueError(f"t must have shape (3,), got {t.shape}")
    return np.concatenate([rotation_matrix_to_euler(R), t])


def se3_compose(p1: np.ndarray, p2: np.ndarray) -> np.ndarray:
    """
    Compose two poses: p_result = p1 ⊕ p2.

    If p2 maps frame C into frame B and p1 maps frame B into frame A,
    the result maps frame C into frame A:
        R = R1 @ R2
        t = R1 @ t2 + t1

    Args:
        p1: First pose [rx, ry, rz, tx, ty, tz].
        p2: Second pose.

    Returns:
        Composed pose, shape (6,).

    Raises:
        ValueError: If poses do not have shape (6,).

    Examples:
        >>> p1 = np.array([0, 0, np.pi / 2, 1.0, 0.0, 0.0])
        >>> p2 = np.array([0, 0, 0, 1.0, 0.0, 0.0])
        >>> np.allclose(se3_compose(p1, p2), [0, 0, np.pi / 2, 1.0, 1.0, 0.0])
        True
    """
    p1 = validate_pose(p1, "p1")
    p2 = validate_pose(p2, "p2")
    R1 = euler_to_rotation_matrix(p1[0], p1[1], p1[2])
    R2 = euler_to_rotation_matrix(p2[0], p2[1], p2[2])
    return np.concatenate([rotation_matrix_to_euler(R1 @ R2), R1 @ p2[3:] + p1[3:]])


def se3_inverse(pose: np.ndarray) -> np.ndarray:
    """
    Invert a pose: p⁻¹ such that p ⊕ p⁻¹ = identity.

    Args:
        pose: Pose [rx, ry, rz, tx, ty, tz].

    Returns:
        Inverse pose, shape (6,).
    """
    pose = validate_pose(pose)
    R = euler_to_rotation_matrix(pose[0], pose[1], pose[2])
    return np.concatenate([rotation_matrix_to_euler(R.T), -R.T @ pose[3:]])


def se3_relative(p1: np.ndarray, p2: np.ndarray) -> np.ndarray:
    """Relative pose p1⁻¹ ⊕ p2 (p2 expressed in the referential of p1)."""
    return se3_compose(se3_inverse(p1), p2)


def se3_apply(pose: np.ndarray, points: np.ndarray) -> np.ndarray:
    """
    Transform points by a pose: x' = R @ x + t.

    Args:
        pose: Pose [rx, ry, rz, tx, ty, tz].
        points: Points, shape (N, 3) or (3,).

    Returns:
        Transformed points with the same shape as the input.

    Raises:
        ValueError: If points do not have 3 columns.
    """
    pose = validate_pose(pose)
    points = np.asarray(points, dtype=np.float64)

    single = points.ndim == 1
    if single:
        points = points[None, :]
    if points.ndim != 2 or points.shape[1] != 3:
        raise ValueError(f"points must have shape (N, 3), got {points.shape}")

    R = euler_to_rotation_matrix(pose[0], pose[1], pose[2])
    transformed = points @ R.T + pose[3:]
    return transformed[0] if single else transformed


def se3_distance(p1: np.ndarray, p2: np.ndarray) -> Tuple[float, float]:
    """Translation and rotation-angle distance between two poses.

    Returns:
        Tuple (translation_distance, rotation_angle) in meters and radians.
    """
    delta = se3_relative(p1, p2)
    R = euler_to_rotation_matrix(delta[0], delta[1], delta[2])
    cos_angle = np.clip((np.trace(R) - 1.0) / 2.0, -1.0, 1.0)
    return float(np.linalg.norm(delta[3:])), float(np.arccos(cos_angle))
