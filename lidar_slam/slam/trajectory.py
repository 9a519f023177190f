"""Append-only sequence of world poses."""

from typing import List

import numpy as np

from lidar_slam.coords.rotations import euler_to_quat

from .se3 import validate_pose


class Trajectory:
    """
    World poses of the processed sweeps, in processing order.

    Attributes:
        poses: List of poses [rx, ry, rz, tx, ty, tz].
        timestamps: Timestamp of each pose (s).

    Example:
        >>> trajectory = Trajectory()
        >>> trajectory.append(np.zeros(6), timestamp=0.0)
        >>> trajectory.positions().shape
        (1, 3)
    """

    def __init__(self):
        self.poses: List[np.ndarray] = []
        self.timestamps: List[float] = []

    def __len__(self) -> int:
        return len(self.poses)

    def append(self, pose: np.ndarray, timestamp: float) -> None:
        self.poses.append(validate_pose(pose).copy())
        self.timestamps.append(float(timestamp))

    def clear(self) -> None:
        self.poses.clear()
        self.timestamps.clear()

    def as_array(self) -> np.ndarray:
        """All poses stacked, shape (N, 6)."""
        if not self.poses:
            return np.zeros((0, 6))
        return np.vstack(self.poses)

    def positions(self) -> np.ndarray:
        """Sensor positions in the world frame, shape (N, 3)."""
        return self.as_array()[:, 3:]

    def orientations(self) -> np.ndarray:
        """Sensor orientations as quaternions [qw, qx, qy, qz], shape (N, 4)."""
        if not self.poses:
            return np.zeros((0, 4))
        return np.vstack([euler_to_quat(*pose[:3]) for pose in self.poses])
