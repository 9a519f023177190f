"""Nearest-neighbor index and voxel downsampling for 3D point sets.

Both helpers wrap generic containers behind the narrow interface the
pipeline needs:
    - SpatialIndex: k-nearest-neighbor queries on a fixed reference set
      (scipy.spatial.KDTree), padded when the set is smaller than k
    - voxel_downsample: one centroid per occupied voxel
"""

from typing import Optional, Tuple, Union

import numpy as np
from scipy.spatial import KDTree


class SpatialIndex:
    """
    k-nearest-neighbor index over a reference point set.

    The index is built once and is read-only afterwards. Optional per-point
    attributes (the scan line of each reference point) travel with it so
    that neighbor selection rules can use them.

    Attributes:
        points: Reference points, shape (M, 3).
        laser_id: Scan line of each reference point, shape (M,), or None.

    Example:
        >>> ref = np.array([[0.0, 0.0, 0.0], [1.0, 0.0, 0.0], [5.0, 0.0, 0.0]])
        >>> index = SpatialIndex(ref)
        >>> dist, idx = index.query(np.array([[0.9, 0.0, 0.0]]), k=2)
        >>> idx.tolist()
        [[1, 0]]
    """

    def __init__(self, points: np.ndarray, laser_id: Optional[np.ndarray] = None):
        points = np.asarray(points, dtype=np.float64)
        if points.ndim != 2 or points.shape[1] != 3:
            raise ValueError(f"points must have shape (M, 3), got {points.shape}")
        if laser_id is not None:
            laser_id = np.asarray(laser_id, dtype=np.int64)
            if laser_id.shape != (len(points),):
                raise ValueError(
                    f"laser_id must have shape ({len(points)},), got {laser_id.shape}"
                )

        self.points = points
        self.laser_id = laser_id
        self._tree = KDTree(points) if len(points) > 0 else None

    def __len__(self) -> int:
        return len(self.points)

    def query(self, queries: np.ndarray, k: int) -> Tuple[np.ndarray, np.ndarray]:
        """
        Find the k nearest reference points of each query.

        Args:
            queries: Query points, shape (Q, 3).
            k: Number of neighbors.

        Returns:
            Tuple of (distances, indices), both shape (Q, k), sorted by
            increasing distance. Missing neighbors (reference set smaller
            than k) have distance inf and index len(self).

        Raises:
            ValueError: If queries do not have shape (Q, 3) or k < 1.
        """
        queries = np.asarray(queries, dtype=np.float64)
        if queries.ndim != 2 or queries.shape[1] != 3:
            raise ValueError(f"queries must have shape (Q, 3), got {queries.shape}")
        if k < 1:
            raise ValueError(f"k must be >= 1, got {k}")

        n_queries = len(queries)
        if self._tree is None or n_queries == 0:
            return (
                np.full((n_queries, k), np.inf),
                np.full((n_queries, k), len(self), dtype=np.int64),
            )

        distances, indices = self._tree.query(queries, k=k)
        if k == 1:
            distances = distances[:, None]
            indices = indices[:, None]
        return distances, indices.astype(np.int64)

    def gather(self, indices: np.ndarray) -> np.ndarray:
        """Reference points at the given indices, padded rows filled with nan."""
        indices = np.asarray(indices, dtype=np.int64)
        out = np.full(indices.shape + (3,), np.nan)
        valid = indices < len(self)
        out[valid] = self.points[indices[valid]]
        return out


def voxel_downsample(
    points: np.ndarray,
    voxel_size: float,
    values: Optional[np.ndarray] = None,
) -> Union[np.ndarray, Tuple[np.ndarray, np.ndarray]]:
    """
    Voxel grid downsampling by centroid.

    Points are quantised to voxel coordinates and the points sharing a
    voxel are replaced by their mean. Output order follows the
    lexicographic order of voxel keys, so the result is deterministic.

    Args:
        points: Input points, shape (N, 3).
        voxel_size: Voxel edge length in meters.
        values: Optional per-point values, shape (N,), averaged per voxel
            alongside the points (e.g. acquisition times).

    Returns:
        Downsampled points, shape (M, 3) with M <= N, or the tuple
        (points, values) when values are given.

    Raises:
        ValueError: If voxel_size is not positive or points are not (N, 3).
    """
    if voxel_size <= 0:
        raise ValueError(f"voxel_size must be positive, got {voxel_size}")
    points = np.asarray(points, dtype=np.float64)
    if points.ndim != 2 or points.shape[1] != 3:
        raise ValueError(f"points must have shape (N, 3), got {points.shape}")
    if values is not None:
        values = np.asarray(values, dtype=np.float64)
        if values.shape != (len(points),):
            raise ValueError(f"values must have shape ({len(points)},), got {values.shape}")
    if len(points) == 0:
        return points.copy() if values is None else (points.copy(), values.copy())

    keys = np.floor(points / voxel_size).astype(np.int64)
    _, inverse, counts = np.unique(keys, axis=0, return_inverse=True, return_counts=True)
    inverse = inverse.reshape(-1)

    sums = np.zeros((len(counts), 3))
    np.add.at(sums, inverse, points)
    if values is None:
        return sums / counts[:, None]

    value_sums = np.zeros(len(counts))
    np.add.at(value_sums, inverse, values)
    return sums / counts[:, None], value_sums / counts
