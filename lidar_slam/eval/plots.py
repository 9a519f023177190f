"""
Visualization utilities for LiDAR odometry.

All functions return matplotlib Figure objects for flexible display/saving.
"""

from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple, Union

import matplotlib.pyplot as plt
import numpy as np

from lidar_slam.slam.diagnostics import DiagnosticSeries


def plot_trajectory_top_view(
    est_xyz_dict: Dict[str, np.ndarray],
    truth_xyz: Optional[np.ndarray] = None,
    map_points: Optional[np.ndarray] = None,
    title: str = "Trajectory (top view)",
) -> plt.Figure:
    """
    Plot trajectories projected on the XY plane, over the map points.

    Args:
        est_xyz_dict: Dictionary of estimated positions {name: (N, 3) array}
        truth_xyz: True positions, shape (N, 3) (optional)
        map_points: World-frame map points, shape (M, 3) (optional)
        title: Plot title

    Returns:
        fig: Matplotlib figure
    """
    fig, ax = plt.subplots(figsize=(10, 8))

    if map_points is not None and len(map_points) > 0:
        ax.scatter(
            map_points[:, 0],
            map_points[:, 1],
            s=1,
            c="lightgray",
            label="Map",
            zorder=1,
        )

    if truth_xyz is not None:
        ax.plot(truth_xyz[:, 0], truth_xyz[:, 1], "k-", linewidth=2, label="Ground Truth", zorder=10)

    colors = ["blue", "red", "green", "orange", "purple"]
    for i, (name, est_xyz) in enumerate(est_xyz_dict.items()):
        ax.plot(
            est_xyz[:, 0],
            est_xyz[:, 1],
            "--",
            color=colors[i % len(colors)],
            linewidth=1.5,
            marker=".",
            label=name,
            zorder=11,
        )

    ax.set_xlabel("X (m)", fontsize=12)
    ax.set_ylabel("Y (m)", fontsize=12)
    ax.set_title(title, fontsize=14, fontweight="bold")
    ax.legend(fontsize=10)
    ax.grid(True, alpha=0.3)
    ax.axis("equal")

    plt.tight_layout()
    return fig


def plot_diagnostics(
    diagnostics: DiagnosticSeries,
    names: Sequence[str],
    dt: float = 0.1,
    title: str = "Pipeline diagnostics",
) -> plt.Figure:
    """
    Plot some diagnostic series against time, one subplot per series.

    Args:
        diagnostics: Series recorded by the pipeline
        names: Names of the series to plot
        dt: Sweep period in seconds
        title: Plot title

    Returns:
        fig: Matplotlib figure
    """
    fig, axes_arr = plt.subplots(len(names), 1, figsize=(12, 2.5 * len(names)), squeeze=False)

    for ax, name in zip(axes_arr[:, 0], names):
        values = diagnostics.get(name)
        time = np.arange(len(values)) * dt
        ax.plot(time, values, color="blue", linewidth=1.5)
        ax.set_ylabel(name, fontsize=9)
        ax.grid(True, alpha=0.3)
    axes_arr[-1, 0].set_xlabel("Time (s)", fontsize=11)

    fig.suptitle(title, fontsize=14, fontweight="bold")
    plt.tight_layout()
    return fig


def save_figure(
    fig: plt.Figure,
    out_dir: Union[str, Path],
    name: str,
    formats: Tuple[str, ...] = ("svg", "pdf", "png"),
) -> List[Path]:
    """
    Save figure in multiple formats.

    Args:
        fig: Matplotlib figure to save
        out_dir: Output directory
        name: Base filename (without extension)
        formats: Tuple of format extensions

    Returns:
        paths: List of saved file paths
    """
    out_dir = Path(out_dir)
    out_dir.mkdir(parents=True, exist_ok=True)

    paths = []
    for fmt in formats:
        filepath = out_dir / f"{name}.{fmt}"
        fig.savefig(filepath, dpi=150, bbox_inches="tight")
        paths.append(filepath)

    return paths
