"""Motion interpolation inside a sweep.

A spinning LiDAR acquires the points of one sweep over a time interval
while it moves. With the sensor pose known at the start (s = 0) and at the
end (s = 1) of the sweep, the pose at any normalised time s is obtained by
slerp on the attitude and linear interpolation on the position. This is
used to deskew points: each point is moved from the sensor pose at its own
acquisition time into a single reference (the end of the sweep).
"""

from typing import Optional, Tuple

import numpy as np

from lidar_slam.coords.rotations import (
    euler_to_quat,
    quat_slerp,
    quat_to_euler,
    quats_to_rotation_matrices,
)

from .se3 import se3_apply, se3_identity, se3_inverse, validate_pose


class MotionInterpolator:
    """
    Interpolate a pose between two endpoints over normalised time [0, 1].

    Both endpoints map the sensor referential into the same reference
    frame. The interpolator is immutable: create a new one for every frame
    and every estimation phase.

    Attributes:
        start_pose: Pose at s = 0, [rx, ry, rz, tx, ty, tz].
        end_pose: Pose at s = 1.

    Example:
        >>> end = np.array([0.0, 0.0, 0.2, 1.0, 0.0, 0.0])
        >>> interp = MotionInterpolator(end_pose=end)
        >>> np.allclose(interp.pose_at(0.5), [0.0, 0.0, 0.1, 0.5, 0.0, 0.0])
        True
    """

    def __init__(self, end_pose: np.ndarray, start_pose: Optional[np.ndarray] = None):
        if start_pose is None:
            start_pose = se3_identity()
        self.start_pose = validate_pose(start_pose, "start_pose").copy()
        self.end_pose = validate_pose(end_pose, "end_pose").copy()

        self._q0 = euler_to_quat(*self.start_pose[:3])
        self._q1 = euler_to_quat(*self.end_pose[:3])
        self._end_inverse = se3_inverse(self.end_pose)

    def rotations_translations(self, s: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        """
        Interpolated rotations and translations.

        Args:
            s: Normalised times, shape (N,). Values are clipped to [0, 1].

        Returns:
            Tuple (R, t) with R of shape (N, 3, 3) and t of shape (N, 3).
        """
        s = np.clip(np.atleast_1d(np.asarray(s, dtype=np.float64)), 0.0, 1.0)
        q = quat_slerp(self._q0, self._q1, s)
        R = quats_to_rotation_matrices(q)
        t = (1.0 - s)[:, None] * self.start_pose[3:] + s[:, None] * self.end_pose[3:]
        return R, t

    def pose_at(self, s: float) -> np.ndarray:
        """Interpolated pose at a single normalised time s."""
        s = float(np.clip(s, 0.0, 1.0))
        q = quat_slerp(self._q0, self._q1, s)
        t = (1.0 - s) * self.start_pose[3:] + s * self.end_pose[3:]
        return np.concatenate([quat_to_euler(q), t])

    def transform_points(self, points: np.ndarray, s: np.ndarray) -> np.ndarray:
        """
        Move points from the sensor pose at their time into the reference frame.

        Args:
            points: Points in the sensor referential, shape (N, 3).
            s: Acquisition time of each point, shape (N,).

        Returns:
            Points in the reference frame, shape (N, 3).

        Raises:
            ValueError: If points and s have inconsistent lengths.
        """
        points = np.asarray(points, dtype=np.float64)
        s = np.asarray(s, dtype=np.float64)
        if points.ndim != 2 or points.shape[1] != 3:
            raise ValueError(f"points must have shape (N, 3), got {points.shape}")
        if s.shape != (len(points),):
            raise ValueError(f"s must have shape ({len(points)},), got {s.shape}")
        if len(points) == 0:
            return points.copy()

        R, t = self.rotations_translations(s)
        return np.einsum("nij,nj->ni", R, points) + t

    def deskew(self, points: np.ndarray, s: np.ndarray) -> np.ndarray:
        """
        Express points acquired at times s in the end-of-sweep referential.

        Equivalent to end_pose⁻¹ ∘ pose(s) applied to each point.

        Args:
            points: Points in the sensor referential, shape (N, 3).
            s: Acquisition time of each point, shape (N,).

        Returns:
            Deskewed points, shape (N, 3).
        """
        in_reference = self.transform_points(points, s)
        if len(in_reference) == 0:
            return in_reference
        return se3_apply(self._end_inverse, in_reference)
