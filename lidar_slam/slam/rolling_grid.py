"""Rolling voxel map of world-frame keypoints.

The map covers a fixed cube of ``grid_nb_voxel`` coarse voxels of
``voxel_size`` meters centred on the sensor. Only occupied coarse voxels
are stored (dict of cells). Inside a cell, points are filtered on a fine
``leaf_size`` grid: every leaf keeps a single representative, the running
mean of the points that fell in it.

When the sensor moves more than ``recenter_threshold`` coarse voxels away
from the centre, the grid is recentred on the sensor and the cells that
leave the extent are dropped. Queries may be restricted to the smaller
``pointcloud_nb_voxel`` cube around a position.
"""

import logging
from dataclasses import dataclass
from typing import Dict, Optional, Sequence, Tuple

import numpy as np

from .config import SlamConfig

logger = logging.getLogger(__name__)

VoxelKey = Tuple[int, int, int]


@dataclass
class _Cell:
    """Leaf representatives of one coarse voxel."""

    leaves: np.ndarray  # (n, 3) int leaf indices
    means: np.ndarray  # (n, 3)
    counts: np.ndarray  # (n,)


class RollingGrid:
    """
    Sparse rolling grid of leaf-filtered points.

    Attributes:
        voxel_size: Edge of a coarse voxel (m).
        grid_nb_voxel: Extent of the grid in coarse voxels per axis.
        pointcloud_nb_voxel: Extent of a local query in coarse voxels.
        leaf_size: Edge of a leaf of the point filter (m).
        recenter_threshold: Voxel offset of the sensor from the centre
            that triggers a recentering.
        center: Coarse voxel index at the centre of the grid.

    Example:
        >>> grid = RollingGrid(voxel_size=10.0, grid_nb_voxel=(5, 5, 5),
        ...                    pointcloud_nb_voxel=(3, 3, 3), leaf_size=1.0)
        >>> grid.insert(np.array([[0.2, 0.2, 0.2], [0.4, 0.4, 0.4]]))
        >>> grid.get_points()
        array([[0.3, 0.3, 0.3]])
    """

    def __init__(
        self,
        voxel_size: float = 10.0,
        grid_nb_voxel: Sequence[int] = (50, 50, 50),
        pointcloud_nb_voxel: Sequence[int] = (25, 25, 25),
        leaf_size: float = 0.6,
        recenter_threshold: Optional[int] = None,
    ):
        if voxel_size <= 0:
            raise ValueError(f"voxel_size must be positive, got {voxel_size}")
        if leaf_size <= 0:
            raise ValueError(f"leaf_size must be positive, got {leaf_size}")
        grid_nb_voxel = np.asarray(grid_nb_voxel, dtype=np.int64)
        pointcloud_nb_voxel = np.asarray(pointcloud_nb_voxel, dtype=np.int64)
        if grid_nb_voxel.shape != (3,) or np.any(grid_nb_voxel < 1):
            raise ValueError(f"grid_nb_voxel must be 3 positive counts, got {grid_nb_voxel}")
        if pointcloud_nb_voxel.shape != (3,) or np.any(pointcloud_nb_voxel < 1):
            raise ValueError(
                f"pointcloud_nb_voxel must be 3 positive counts, got {pointcloud_nb_voxel}"
            )
        if np.any(pointcloud_nb_voxel > grid_nb_voxel):
            raise ValueError(
                f"pointcloud_nb_voxel {pointcloud_nb_voxel} must fit inside "
                f"grid_nb_voxel {grid_nb_voxel}"
            )
        if recenter_threshold is None:
            recenter_threshold = max(1, int(grid_nb_voxel.min()) // 4)
        if recenter_threshold < 0:
            raise ValueError(f"recenter_threshold must be >= 0, got {recenter_threshold}")

        self.voxel_size = float(voxel_size)
        self.grid_nb_voxel = grid_nb_voxel
        self.pointcloud_nb_voxel = pointcloud_nb_voxel
        self.leaf_size = float(leaf_size)
        self.recenter_threshold = int(recenter_threshold)
        self.center = np.zeros(3, dtype=np.int64)
        self._cells: Dict[VoxelKey, _Cell] = {}

    def __len__(self) -> int:
        """Number of leaf representatives stored."""
        return sum(len(cell.counts) for cell in self._cells.values())

    @property
    def n_occupied_voxels(self) -> int:
        return len(self._cells)

    def extent(self) -> Tuple[np.ndarray, np.ndarray]:
        """Voxel index bounds [low, high) of the grid."""
        low = self.center - self.grid_nb_voxel // 2
        return low, low + self.grid_nb_voxel

    def voxel_of(self, position: np.ndarray) -> np.ndarray:
        """Coarse voxel index of a world position."""
        return np.floor(np.asarray(position, dtype=np.float64) / self.voxel_size).astype(np.int64)

    def clear(self) -> None:
        self._cells.clear()

    def reset(self, position: Optional[np.ndarray] = None) -> None:
        """Empty the grid and centre it on a position (the origin by default)."""
        self.clear()
        self.center = (
            np.zeros(3, dtype=np.int64) if position is None else self.voxel_of(position)
        )

    def roll(self, position: np.ndarray) -> bool:
        """
        Recentre the grid on the sensor when it moved too far.

        Args:
            position: Sensor position in the world frame, shape (3,).

        Returns:
            True when the grid was recentred.
        """
        sensor_voxel = self.voxel_of(position)
        if np.max(np.abs(sensor_voxel - self.center)) <= self.recenter_threshold:
            return False

        self.center = sensor_voxel
        low, high = self.extent()
        evicted = [
            key
            for key in self._cells
            if np.any(np.asarray(key) < low) or np.any(np.asarray(key) >= high)
        ]
        for key in evicted:
            del self._cells[key]
        logger.debug(
            "Rolling grid recentred on voxel %s, %d voxels evicted",
            sensor_voxel.tolist(),
            len(evicted),
        )
        return True

    def insert(self, points: np.ndarray) -> None:
        """
        Add world-frame points to the grid.

        Points falling outside the current extent are dropped. A point
        landing in an occupied leaf updates the running mean of that leaf.

        Args:
            points: Points in the world frame, shape (N, 3).
        """
        points = np.asarray(points, dtype=np.float64)
        if points.ndim != 2 or points.shape[1] != 3:
            raise ValueError(f"points must have shape (N, 3), got {points.shape}")
        points = points[np.all(np.isfinite(points), axis=1)]
        if len(points) == 0:
            return

        leaves = np.floor(points / self.leaf_size).astype(np.int64)
        # A leaf belongs to the coarse voxel holding its centre
        voxels = np.floor((leaves + 0.5) * self.leaf_size / self.voxel_size).astype(np.int64)
        low, high = self.extent()
        inside = np.all((voxels >= low) & (voxels < high), axis=1)
        if not np.any(inside):
            return
        points, leaves, voxels = points[inside], leaves[inside], voxels[inside]

        keys, inverse = np.unique(voxels, axis=0, return_inverse=True)
        inverse = inverse.reshape(-1)
        for v, key in enumerate(map(tuple, keys.tolist())):
            member = inverse == v
            self._cells[key] = _merge(self._cells.get(key), leaves[member], points[member])

    def get_points(self, position: Optional[np.ndarray] = None) -> np.ndarray:
        """
        Leaf representatives of the grid.

        Args:
            position: When given, only the voxels of the
                ``pointcloud_nb_voxel`` cube around this position are used.

        Returns:
            Points, shape (M, 3).
        """
        if position is None:
            cells = list(self._cells.values())
        else:
            low = self.voxel_of(position) - self.pointcloud_nb_voxel // 2
            high = low + self.pointcloud_nb_voxel
            cells = [
                cell
                for key, cell in self._cells.items()
                if np.all(np.asarray(key) >= low) and np.all(np.asarray(key) < high)
            ]
        if not cells:
            return np.zeros((0, 3))
        return np.concatenate([cell.means for cell in cells])


def _merge(cell: Optional[_Cell], leaves: np.ndarray, points: np.ndarray) -> _Cell:
    """Fold new points into the leaf means of a cell."""
    if cell is None:
        all_leaves = leaves
        sums = points
        counts = np.ones(len(points))
    else:
        all_leaves = np.concatenate([cell.leaves, leaves])
        sums = np.concatenate([cell.means * cell.counts[:, None], points])
        counts = np.concatenate([cell.counts, np.ones(len(points))])

    unique_leaves, inverse = np.unique(all_leaves, axis=0, return_inverse=True)
    inverse = inverse.reshape(-1)
    leaf_sums = np.zeros((len(unique_leaves), 3))
    leaf_counts = np.zeros(len(unique_leaves))
    np.add.at(leaf_sums, inverse, sums)
    np.add.at(leaf_counts, inverse, counts)
    return _Cell(
        leaves=unique_leaves,
        means=leaf_sums / leaf_counts[:, None],
        counts=leaf_counts,
    )


class RollingMap:
    """
    Edge, planar and blob rolling grids kept in lockstep.

    Attributes:
        edges: Grid of edge keypoints.
        planars: Grid of planar keypoints.
        blobs: Grid of blob keypoints.

    Example:
        >>> rolling_map = RollingMap.from_config(SlamConfig())
        >>> rolling_map.roll(t_world[3:])
        >>> rolling_map.insert(edges=world_edges, planars=world_planars)
    """

    def __init__(self, edges: RollingGrid, planars: RollingGrid, blobs: RollingGrid):
        self.edges = edges
        self.planars = planars
        self.blobs = blobs

    @classmethod
    def from_config(cls, config: SlamConfig) -> "RollingMap":
        def make() -> RollingGrid:
            return RollingGrid(
                voxel_size=config.rolling_grid_voxel_size,
                grid_nb_voxel=config.rolling_grid_nb_voxel,
                pointcloud_nb_voxel=config.rolling_grid_pointcloud_nb_voxel,
                leaf_size=config.leaf_size,
            )

        return cls(make(), make(), make())

    def grids(self) -> Tuple[RollingGrid, RollingGrid, RollingGrid]:
        return self.edges, self.planars, self.blobs

    def __len__(self) -> int:
        return sum(len(grid) for grid in self.grids())

    def reset(self, position: Optional[np.ndarray] = None) -> None:
        for grid in self.grids():
            grid.reset(position)

    def roll(self, position: np.ndarray) -> bool:
        """Recentre all grids together; True when they were recentred."""
        rolled = [grid.roll(position) for grid in self.grids()]
        return any(rolled)

    def insert(
        self,
        edges: Optional[np.ndarray] = None,
        planars: Optional[np.ndarray] = None,
        blobs: Optional[np.ndarray] = None,
    ) -> None:
        """Insert world-frame keypoints of each kind."""
        for grid, points in zip(self.grids(), (edges, planars, blobs)):
            if points is not None:
                grid.insert(points)
