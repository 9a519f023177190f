"""Rotation representations used by the pose algebra.

Provides conversions between rotation matrices, unit quaternions
(q = [qw, qx, qy, qz]) and ZYX Euler angles, plus quaternion slerp
for interpolating the sensor attitude inside a sweep.
"""

from lidar_slam.coords.rotations import (
    euler_to_quat,
    euler_to_rotation_matrix,
    euler_rotation_jacobians,
    quat_slerp,
    quat_to_euler,
    quats_to_rotation_matrices,
    rotation_matrix_to_euler,
)

__all__ = [
    "euler_to_quat",
    "euler_to_rotation_matrix",
    "euler_rotation_jacobians",
    "quat_slerp",
    "quat_to_euler",
    "quats_to_rotation_matrices",
    "rotation_matrix_to_euler",
]
