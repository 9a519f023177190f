"""Nonlinear least-squares estimation for pose registration.

The registration loops of the pipeline linearise point-to-line and
point-to-plane residuals and hand the stacked, whitened system to the
Levenberg-Marquardt solver defined here.
"""

from lidar_slam.estimators.nonlinear_least_squares import (
    ROBUST_LOSSES,
    NonlinearLSResult,
    compute_robust_weights,
    levenberg_marquardt,
)

__all__ = [
    "ROBUST_LOSSES",
    "NonlinearLSResult",
    "compute_robust_weights",
    "levenberg_marquardt",
]
