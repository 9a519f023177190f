"""Runnable demos of the LiDAR odometry and mapping pipeline."""
