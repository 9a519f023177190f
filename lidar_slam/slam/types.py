"""Type definitions and data structures for LiDAR odometry and mapping.

Key types:
    - Frame: One sweep of a multi-beam LiDAR, stored as parallel arrays
    - KeypointSet: Points selected as edges, planars or blobs
    - FrameKeypoints: All keypoint sets extracted from one Frame
    - KeypointLabel: Per-point classification written by the extractor
"""

from dataclasses import dataclass
from enum import IntEnum
from typing import Dict, List, Optional

import numpy as np


class KeypointLabel(IntEnum):
    """Per-point label assigned during keypoint extraction."""

    INVALID = -1
    UNLABELED = 0
    EDGE = 1
    PLANAR = 2


@dataclass
class Frame:
    """
    One LiDAR sweep stored as a structure of arrays.

    Points of the same laser must be stored in acquisition order; the
    extractor walks each scan line in that order. Positions are expressed
    in the sensor referential.

    Attributes:
        points: Point positions, shape (N, 3), meters.
        laser_id: Owning scan line of each point, shape (N,), integers.
        time: Acquisition time offset since the sweep start, shape (N,),
            seconds. Defaults to zeros.
        intensity: Return intensity, shape (N,). Defaults to zeros.
        normals: Per-point normal slot, shape (N, 3). Defaults to zeros.
        timestamp: Sweep timestamp in seconds.
        sweep_duration: Duration of one sweep in seconds, used to
            normalise ``time`` to [0, 1].

    Examples:
        >>> points = np.array([[5.0, 0.0, 0.0], [5.0, 0.1, 0.0]])
        >>> frame = Frame(points=points, laser_id=np.array([0, 0]))
        >>> len(frame)
        2
    """

    points: np.ndarray
    laser_id: np.ndarray
    time: Optional[np.ndarray] = None
    intensity: Optional[np.ndarray] = None
    normals: Optional[np.ndarray] = None
    timestamp: float = 0.0
    sweep_duration: float = 0.1

    def __post_init__(self) -> None:
        """Validate array shapes and fill optional fields."""
        self.points = np.asarray(self.points, dtype=np.float64)
        if self.points.ndim != 2 or self.points.shape[1] != 3:
            raise ValueError(f"points must have shape (N, 3), got {self.points.shape}")
        n = len(self.points)

        self.laser_id = np.asarray(self.laser_id)
        if self.laser_id.shape != (n,):
            raise ValueError(
                f"laser_id must have shape ({n},), got {self.laser_id.shape}"
            )
        if n > 0 and not np.issubdtype(self.laser_id.dtype, np.integer):
            raise ValueError(f"laser_id must be integers, got dtype {self.laser_id.dtype}")
        self.laser_id = self.laser_id.astype(np.int64)

        if self.time is None:
            self.time = np.zeros(n)
        self.time = np.asarray(self.time, dtype=np.float64)
        if self.time.shape != (n,):
            raise ValueError(f"time must have shape ({n},), got {self.time.shape}")

        if self.intensity is None:
            self.intensity = np.zeros(n)
        self.intensity = np.asarray(self.intensity, dtype=np.float64)
        if self.intensity.shape != (n,):
            raise ValueError(
                f"intensity must have shape ({n},), got {self.intensity.shape}"
            )

        if self.normals is None:
            self.normals = np.zeros((n, 3))
        self.normals = np.asarray(self.normals, dtype=np.float64)
        if self.normals.shape != (n, 3):
            raise ValueError(f"normals must have shape ({n}, 3), got {self.normals.shape}")

        if not np.all(np.isfinite(self.points)):
            raise ValueError("points must be finite")
        if not np.isfinite(self.timestamp):
            raise ValueError(f"timestamp must be finite, got {self.timestamp}")
        if self.sweep_duration <= 0:
            raise ValueError(f"sweep_duration must be positive, got {self.sweep_duration}")

    def __len__(self) -> int:
        return len(self.points)

    def relative_time(self) -> np.ndarray:
        """Acquisition time of each point normalised to [0, 1]."""
        return np.clip(self.time / self.sweep_duration, 0.0, 1.0)

    def scan_lines(self) -> List[np.ndarray]:
        """Indices of the points of each laser, in ascending laser id.

        The order of the indices inside one scan line is the storage
        (acquisition) order.
        """
        return [
            np.flatnonzero(self.laser_id == laser)
            for laser in np.unique(self.laser_id)
        ]


@dataclass
class KeypointSet:
    """
    A set of keypoints of one kind (edge, planar or blob).

    Attributes:
        points: Keypoint positions, shape (K, 3).
        laser_id: Scan line of each keypoint, shape (K,).
        time: Normalised acquisition time in [0, 1], shape (K,).
        index: Index of each keypoint in its source Frame, shape (K,).
        radius: Neighborhood uncertainty radius (blobs), zeros otherwise.
    """

    points: np.ndarray
    laser_id: np.ndarray
    time: np.ndarray
    index: np.ndarray
    radius: Optional[np.ndarray] = None

    def __post_init__(self) -> None:
        self.points = np.asarray(self.points, dtype=np.float64).reshape(-1, 3)
        k = len(self.points)
        self.laser_id = np.asarray(self.laser_id, dtype=np.int64).reshape(k)
        self.time = np.asarray(self.time, dtype=np.float64).reshape(k)
        self.index = np.asarray(self.index, dtype=np.int64).reshape(k)
        if self.radius is None:
            self.radius = np.zeros(k)
        self.radius = np.asarray(self.radius, dtype=np.float64).reshape(k)

    def __len__(self) -> int:
        return len(self.points)

    @classmethod
    def empty(cls) -> "KeypointSet":
        """Create a keypoint set without any point."""
        return cls(
            points=np.zeros((0, 3)),
            laser_id=np.zeros(0, dtype=np.int64),
            time=np.zeros(0),
            index=np.zeros(0, dtype=np.int64),
        )

    def with_points(self, points: np.ndarray) -> "KeypointSet":
        """Copy of this set with moved positions (e.g. after deskewing)."""
        points = np.asarray(points, dtype=np.float64)
        if points.shape != self.points.shape:
            raise ValueError(
                f"points must have shape {self.points.shape}, got {points.shape}"
            )
        return KeypointSet(
            points=points,
            laser_id=self.laser_id.copy(),
            time=self.time.copy(),
            index=self.index.copy(),
            radius=self.radius.copy(),
        )


@dataclass
class FrameKeypoints:
    """
    Keypoints and per-point diagnostics extracted from one Frame.

    Attributes:
        edges: Sharp points on scan-line corners or occlusion borders.
        planars: Smooth points used by ego-motion (and by mapping when
            ``fast_slam`` is enabled).
        blobs: Points with a spherical neighborhood (empty unless enabled).
        dense_planars: Every valid smooth point, used by mapping when
            ``fast_slam`` is disabled.
        labels: KeypointLabel of each Frame point, shape (N,).
        sin_angle: Sharpness measure of each Frame point, shape (N,).
        depth_gap: Depth discontinuity next to each point, shape (N,).
    """

    edges: KeypointSet
    planars: KeypointSet
    blobs: KeypointSet
    dense_planars: KeypointSet
    labels: np.ndarray
    sin_angle: np.ndarray
    depth_gap: np.ndarray

    @classmethod
    def empty(cls, n_points: int = 0) -> "FrameKeypoints":
        """Keypoints of a frame where nothing could be extracted."""
        return cls(
            edges=KeypointSet.empty(),
            planars=KeypointSet.empty(),
            blobs=KeypointSet.empty(),
            dense_planars=KeypointSet.empty(),
            labels=np.full(n_points, KeypointLabel.INVALID, dtype=np.int8),
            sin_angle=np.zeros(n_points),
            depth_gap=np.zeros(n_points),
        )

    @property
    def valid(self) -> np.ndarray:
        """Boolean mask of the Frame points that passed validity checks."""
        return self.labels != KeypointLabel.INVALID

    def counts(self) -> Dict[str, int]:
        """Number of keypoints of each kind."""
        return {
            "edges": len(self.edges),
            "planars": len(self.planars),
            "blobs": len(self.blobs),
            "dense_planars": len(self.dense_planars),
        }
