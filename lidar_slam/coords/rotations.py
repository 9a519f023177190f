"""Rotation representations and conversions.

The pose of the LiDAR is stored as a 6-vector [rx, ry, rz, tx, ty, tz]
whose angular part follows the ZYX (yaw-pitch-roll) Euler convention.
This module converts that angular part to and from the other
representations used in the pipeline:
- Rotation matrices (3x3, SO(3)), used to move points between frames
- Quaternions (q = [qw, qx, qy, qz]), used for attitude interpolation
- Euler angles [rx, ry, rz], the optimisation parameters of the solver

Conventions:
- R = Rz(rz) @ Ry(ry) @ Rx(rx), so that x_ref = R @ x_sensor
- Quaternions are scalar-first and normalised
"""

from typing import Tuple

import numpy as np
from numpy.typing import NDArray


def euler_to_rotation_matrix(
    roll: float,
    pitch: float,
    yaw: float,
) -> NDArray[np.float64]:
    """Convert ZYX Euler angles to a rotation matrix.

    Args:
        roll: Rotation about the x-axis in radians.
        pitch: Rotation about the y-axis in radians.
        yaw: Rotation about the z-axis in radians.

    Returns:
        3x3 rotation matrix R = Rz(yaw) @ Ry(pitch) @ Rx(roll).

    Example:
        >>> R = euler_to_rotation_matrix(0.0, 0.0, np.pi / 2)
        >>> np.allclose(R @ [1.0, 0.0, 0.0], [0.0, 1.0, 0.0])
        True
    """
    cr, sr = np.cos(roll), np.sin(roll)
    cp, sp = np.cos(pitch), np.sin(pitch)
    cy, sy = np.cos(yaw), np.sin(yaw)

    return np.array(
        [
            [cy * cp, cy * sp * sr - sy * cr, cy * sp * cr + sy * sr],
            [sy * cp, sy * sp * sr + cy * cr, sy * sp * cr - cy * sr],
            [-sp, cp * sr, cp * cr],
        ],
        dtype=np.float64,
    )


def euler_rotation_jacobians(
    roll: float,
    pitch: float,
    yaw: float,
) -> Tuple[NDArray[np.float64], NDArray[np.float64], NDArray[np.float64]]:
    """Partial derivatives of R = Rz Ry Rx with respect to each angle.

    Used to linearise point-to-primitive residuals around the current
    pose estimate: d(R @ x)/d(roll) = dR_droll @ x, and so on.

    Args:
        roll: Rotation about the x-axis in radians.
        pitch: Rotation about the y-axis in radians.
        yaw: Rotation about the z-axis in radians.

    Returns:
        Tuple (dR_droll, dR_dpitch, dR_dyaw) of 3x3 matrices.
    """
    cr, sr = np.cos(roll), np.sin(roll)
    cp, sp = np.cos(pitch), np.sin(pitch)
    cy, sy = np.cos(yaw), np.sin(yaw)

    Rx = np.array([[1.0, 0.0, 0.0], [0.0, cr, -sr], [0.0, sr, cr]])
    Ry = np.array([[cp, 0.0, sp], [0.0, 1.0, 0.0], [-sp, 0.0, cp]])
    Rz = np.array([[cy, -sy, 0.0], [sy, cy, 0.0], [0.0, 0.0, 1.0]])

    dRx = np.array([[0.0, 0.0, 0.0], [0.0, -sr, -cr], [0.0, cr, -sr]])
    dRy = np.array([[-sp, 0.0, cp], [0.0, 0.0, 0.0], [-cp, 0.0, -sp]])
    dRz = np.array([[-sy, -cy, 0.0], [cy, -sy, 0.0], [0.0, 0.0, 0.0]])

    return Rz @ Ry @ dRx, Rz @ dRy @ Rx, dRz @ Ry @ Rx


def rotation_matrix_to_euler(R: NDArray[np.float64]) -> NDArray[np.float64]:
    """Convert a rotation matrix to ZYX Euler angles.

    Handles gimbal lock (pitch near ±90°) by setting roll to zero.

    Args:
        R: 3x3 rotation matrix.

    Returns:
        Euler angles [roll, pitch, yaw] in radians.

    Raises:
        ValueError: If R is not a 3x3 matrix.
    """
    R = np.asarray(R, dtype=np.float64)
    if R.shape != (3, 3):
        raise ValueError(f"Expected 3x3 matrix, got shape {R.shape}")

    sin_pitch = -R[2, 0]
    if abs(sin_pitch) >= 1.0:
        pitch = np.copysign(np.pi / 2.0, sin_pitch)
        yaw = np.arctan2(-R[0, 1], R[1, 1])
        roll = 0.0
    else:
        pitch = np.arcsin(sin_pitch)
        roll = np.arctan2(R[2, 1], R[2, 2])
        yaw = np.arctan2(R[1, 0], R[0, 0])

    return np.array([roll, pitch, yaw], dtype=np.float64)


def euler_to_quat(
    roll: float,
    pitch: float,
    yaw: float,
) -> NDArray[np.float64]:
    """Convert ZYX Euler angles to a unit quaternion [qw, qx, qy, qz]."""
    cr, sr = np.cos(roll / 2.0), np.sin(roll / 2.0)
    cp, sp = np.cos(pitch / 2.0), np.sin(pitch / 2.0)
    cy, sy = np.cos(yaw / 2.0), np.sin(yaw / 2.0)

    return np.array(
        [
            cr * cp * cy + sr * sp * sy,
            sr * cp * cy - cr * sp * sy,
            cr * sp * cy + sr * cp * sy,
            cr * cp * sy - sr * sp * cy,
        ],
        dtype=np.float64,
    )


def quat_to_euler(q: NDArray[np.float64]) -> NDArray[np.float64]:
    """Convert a unit quaternion [qw, qx, qy, qz] to ZYX Euler angles.

    Raises:
        ValueError: If q is not a 4-element array.
    """
    q = np.asarray(q, dtype=np.float64)
    if q.shape != (4,):
        raise ValueError(f"Expected 4-element quaternion, got shape {q.shape}")

    qw, qx, qy, qz = q
    roll = np.arctan2(2.0 * (qw * qx + qy * qz), 1.0 - 2.0 * (qx * qx + qy * qy))
    pitch = np.arcsin(np.clip(2.0 * (qw * qy - qz * qx), -1.0, 1.0))
    yaw = np.arctan2(2.0 * (qw * qz + qx * qy), 1.0 - 2.0 * (qy * qy + qz * qz))

    return np.array([roll, pitch, yaw], dtype=np.float64)


def quats_to_rotation_matrices(q: NDArray[np.float64]) -> NDArray[np.float64]:
    """Batched quaternion to rotation matrix conversion.

    Args:
        q: Unit quaternions, shape (N, 4), scalar first.

    Returns:
        Rotation matrices, shape (N, 3, 3).

    Raises:
        ValueError: If q does not have shape (N, 4).
    """
    q = np.asarray(q, dtype=np.float64)
    if q.ndim != 2 or q.shape[1] != 4:
        raise ValueError(f"quaternions must have shape (N, 4), got {q.shape}")

    qw, qx, qy, qz = q[:, 0], q[:, 1], q[:, 2], q[:, 3]
    R = np.empty((len(q), 3, 3), dtype=np.float64)
    R[:, 0, 0] = 1.0 - 2.0 * (qy * qy + qz * qz)
    R[:, 0, 1] = 2.0 * (qx * qy - qw * qz)
    R[:, 0, 2] = 2.0 * (qx * qz + qw * qy)
    R[:, 1, 0] = 2.0 * (qx * qy + qw * qz)
    R[:, 1, 1] = 1.0 - 2.0 * (qx * qx + qz * qz)
    R[:, 1, 2] = 2.0 * (qy * qz - qw * qx)
    R[:, 2, 0] = 2.0 * (qx * qz - qw * qy)
    R[:, 2, 1] = 2.0 * (qy * qz + qw * qx)
    R[:, 2, 2] = 1.0 - 2.0 * (qx * qx + qy * qy)
    return R


def quat_slerp(
    q0: NDArray[np.float64],
    q1: NDArray[np.float64],
    s: NDArray[np.float64],
) -> NDArray[np.float64]:
    """Spherical linear interpolation between two unit quaternions.

    Interpolates along the shortest arc. When the two attitudes are
    almost identical, normalised linear interpolation is used instead
    to avoid dividing by sin(Ω) ≈ 0.

    Args:
        q0: Start quaternion [qw, qx, qy, qz] (returned at s = 0).
        q1: End quaternion (returned at s = 1).
        s: Interpolation parameters, scalar or array of shape (N,).

    Returns:
        Interpolated unit quaternions, shape (4,) for scalar s
        or (N, 4) for array s.

    Example:
        >>> q0 = euler_to_quat(0.0, 0.0, 0.0)
        >>> q1 = euler_to_quat(0.0, 0.0, 1.0)
        >>> q_half = quat_slerp(q0, q1, 0.5)
        >>> np.allclose(quat_to_euler(q_half), [0.0, 0.0, 0.5])
        True
    """
    q0 = np.asarray(q0, dtype=np.float64)
    q1 = np.asarray(q1, dtype=np.float64)
    if q0.shape != (4,) or q1.shape != (4,):
        raise ValueError(
            f"quaternions must have shape (4,), got {q0.shape} and {q1.shape}"
        )

    scalar_input = np.ndim(s) == 0
    s = np.atleast_1d(np.asarray(s, dtype=np.float64))

    dot = float(np.dot(q0, q1))
    if dot < 0.0:
        q1 = -q1
        dot = -dot
    dot = min(dot, 1.0)

    if dot > 0.9995:
        q = (1.0 - s)[:, None] * q0 + s[:, None] * q1
    else:
        omega = np.arccos(dot)
        sin_omega = np.sin(omega)
        w0 = np.sin((1.0 - s) * omega) / sin_omega
        w1 = np.sin(s * omega) / sin_omega
        q = w0[:, None] * q0 + w1[:, None] * q1

    q = q / np.linalg.norm(q, axis=1, keepdims=True)
    return q[0] if scalar_input else q
