"""LiDAR odometry and mapping from sequential multi-beam sweeps.

This package contains the building blocks of a LOAM-style pipeline:
- coords: Rotation representations (Euler, quaternion, matrix, slerp)
- estimators: Levenberg-Marquardt solver with robust weights
- slam: Keypoint extraction, ego-motion, mapping, rolling map, trajectory
- eval: Trajectory error metrics
"""

__version__ = "0.1.0"
