"""
Evaluation and Visualization Module.

Modules:
    metrics: Absolute and frame-to-frame trajectory errors
    plots: Trajectory and diagnostic figures
"""

from .metrics import (
    compute_error_stats,
    compute_position_errors,
    compute_relative_pose_errors,
)
from .plots import plot_diagnostics, plot_trajectory_top_view, save_figure

__all__ = [
    # Metrics
    "compute_position_errors",
    "compute_error_stats",
    "compute_relative_pose_errors",
    # Plots
    "plot_trajectory_top_view",
    "plot_diagnostics",
    "save_figure",
]
