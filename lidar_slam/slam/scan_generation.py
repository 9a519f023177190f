"""Multi-beam LiDAR sweep generation with ray-casting.

This module generates synthetic sweeps of a spinning multi-beam LiDAR in a
simple 3D scene: a convex room bounded by planes (n·x <= d inside) and
axis-aligned box obstacles. Each ray returns the closest hit, so obstacles
occlude the walls behind them and produce the depth discontinuities and
corners the keypoint extractor looks for.

The sensor spins once per sweep. The azimuth index of a ray gives its
normalised acquisition time s; when a start pose is given the sensor moves
during the sweep and every point is expressed in the sensor referential at
its own acquisition time, like raw (skewed) LiDAR data.
"""

from dataclasses import dataclass, field
from typing import List, Optional, Sequence

import numpy as np

from .interpolation import MotionInterpolator
from .se3 import validate_pose
from .types import Frame

# Ray component below which a direction is treated as parallel to an axis
_PARALLEL_EPS = 1e-12


@dataclass
class Box:
    """Axis-aligned box obstacle, given by its low and high corners."""

    low: np.ndarray
    high: np.ndarray

    def __post_init__(self) -> None:
        self.low = np.asarray(self.low, dtype=np.float64)
        self.high = np.asarray(self.high, dtype=np.float64)
        if self.low.shape != (3,) or self.high.shape != (3,):
            raise ValueError("Box corners must have shape (3,)")
        if np.any(self.high <= self.low):
            raise ValueError(f"Box high corner {self.high} must exceed low corner {self.low}")


@dataclass
class Scene:
    """
    Convex room with box obstacles.

    Attributes:
        normals: Outward unit normals of the room planes, shape (P, 3).
        offsets: Plane offsets d, the room being {x : normals @ x <= offsets}.
        boxes: Obstacles inside the room.
    """

    normals: np.ndarray
    offsets: np.ndarray
    boxes: List[Box] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.normals = np.asarray(self.normals, dtype=np.float64)
        self.offsets = np.asarray(self.offsets, dtype=np.float64)
        if self.normals.ndim != 2 or self.normals.shape[1] != 3:
            raise ValueError(f"normals must have shape (P, 3), got {self.normals.shape}")
        if self.offsets.shape != (len(self.normals),):
            raise ValueError(
                f"offsets must have shape ({len(self.normals)},), got {self.offsets.shape}"
            )
        self.normals = self.normals / np.linalg.norm(self.normals, axis=1, keepdims=True)

    def contains(self, point: np.ndarray) -> bool:
        """Whether a point lies inside the room and outside every box."""
        point = np.asarray(point, dtype=np.float64)
        if np.any(self.normals @ point > self.offsets):
            return False
        return not any(np.all((point > b.low) & (point < b.high)) for b in self.boxes)

    def raycast(self, origins: np.ndarray, directions: np.ndarray) -> np.ndarray:
        """
        Distance to the closest surface along each ray.

        Args:
            origins: Ray origins inside the room, shape (N, 3).
            directions: Unit ray directions, shape (N, 3).

        Returns:
            Ranges, shape (N,). inf when a ray escapes (open room).
        """
        origins = np.asarray(origins, dtype=np.float64)
        directions = np.asarray(directions, dtype=np.float64)

        # Room: exit through the first plane the ray moves towards
        along = directions @ self.normals.T  # (N, P)
        room_t = (self.offsets[None, :] - origins @ self.normals.T) / np.where(
            along > _PARALLEL_EPS, along, 1.0
        )
        room_t = np.where(along > _PARALLEL_EPS, room_t, np.inf)
        ranges = room_t.min(axis=1)

        # Boxes: slab method
        safe = np.where(np.abs(directions) < _PARALLEL_EPS, _PARALLEL_EPS, directions)
        for box in self.boxes:
            t1 = (box.low - origins) / safe
            t2 = (box.high - origins) / safe
            t_near = np.minimum(t1, t2).max(axis=1)
            t_far = np.maximum(t1, t2).min(axis=1)
            hit = (t_near <= t_far) & (t_near > 0.0)
            ranges = np.where(hit & (t_near < ranges), t_near, ranges)

        return ranges


def create_room_scene() -> Scene:
    """
    Room used by the demo script and the tests.

    Floor at z = -2, ceiling at z = 6, two side walls leaning by 25° and a
    far wall leaning by 20° so that the vertical axis is observed by the
    walls, plus four pillars whose corners make sharp edges.
    """
    tilt_x = np.deg2rad(25.0)
    tilt_y = np.deg2rad(20.0)
    normals = np.array(
        [
            [0.0, 0.0, -1.0],  # floor
            [0.0, 0.0, 1.0],  # ceiling
            [np.cos(tilt_x), 0.0, np.sin(tilt_x)],  # +x wall
            [-np.cos(tilt_x), 0.0, np.sin(tilt_x)],  # -x wall
            [0.0, np.cos(tilt_y), -np.sin(tilt_y)],  # +y wall
            [0.0, -1.0, 0.0],  # -y wall
        ]
    )
    offsets = np.array([2.0, 6.0, 12.0, 11.0, 10.0, 9.0])

    pillars = [(5.0, 4.0), (-6.0, 3.0), (4.0, -5.0), (-4.0, -6.0)]
    boxes = [
        Box(low=[x - 0.4, y - 0.4, -2.0], high=[x + 0.4, y + 0.4, 6.0]) for x, y in pillars
    ]
    return Scene(normals=normals, offsets=offsets, boxes=boxes)


def laser_directions(
    n_lasers: int = 16,
    vertical_fov_deg: Sequence[float] = (-15.0, 15.0),
    azimuth_step_deg: float = 0.4,
) -> np.ndarray:
    """
    Beam directions in the sensor referential.

    Returns:
        Unit directions, shape (n_lasers, n_azimuth, 3), azimuth starting
        at -π and increasing with acquisition time.
    """
    if n_lasers < 1:
        raise ValueError(f"n_lasers must be >= 1, got {n_lasers}")
    if azimuth_step_deg <= 0:
        raise ValueError(f"azimuth_step_deg must be positive, got {azimuth_step_deg}")

    elevations = np.deg2rad(np.linspace(vertical_fov_deg[0], vertical_fov_deg[1], n_lasers))
    n_azimuth = int(round(360.0 / azimuth_step_deg))
    azimuths = -np.pi + np.arange(n_azimuth) * np.deg2rad(azimuth_step_deg)

    el, az = np.meshgrid(elevations, azimuths, indexing="ij")
    return np.stack([np.cos(el) * np.cos(az), np.cos(el) * np.sin(az), np.sin(el)], axis=-1)


def generate_sweep(
    scene: Scene,
    end_pose: np.ndarray,
    start_pose: Optional[np.ndarray] = None,
    n_lasers: int = 16,
    vertical_fov_deg: Sequence[float] = (-15.0, 15.0),
    azimuth_step_deg: float = 0.4,
    max_range: float = 100.0,
    noise_std: float = 0.0,
    timestamp: float = 0.0,
    sweep_duration: float = 0.1,
    rng: Optional[np.random.Generator] = None,
) -> Frame:
    """
    Generate one sweep of a spinning multi-beam LiDAR.

    Args:
        scene: Scene to ray-cast.
        end_pose: Sensor pose in the world at the end of the sweep.
        start_pose: Sensor pose at the start of the sweep. Defaults to
            ``end_pose`` (no motion during the sweep).
        n_lasers: Number of beams.
        vertical_fov_deg: Elevation of the lowest and highest beams.
        azimuth_step_deg: Azimuth between two firings of a beam.
        max_range: Returns beyond this range are dropped.
        noise_std: Standard deviation of the range noise (meters).
        timestamp: Timestamp of the sweep.
        sweep_duration: Duration of one revolution (seconds).
        rng: Random generator for the range noise.

    Returns:
        Frame with points in the sensor referential at acquisition time,
        stored laser by laser in acquisition order.

    Example:
        >>> scene = create_room_scene()
        >>> frame = generate_sweep(scene, np.zeros(6))
        >>> np.unique(frame.laser_id).size
        16
    """
    end_pose = validate_pose(end_pose, "end_pose")
    start_pose = end_pose if start_pose is None else validate_pose(start_pose, "start_pose")

    directions = laser_directions(n_lasers, vertical_fov_deg, azimuth_step_deg)
    n_azimuth = directions.shape[1]
    s = np.tile(np.arange(n_azimuth) / n_azimuth, n_lasers)
    laser_id = np.repeat(np.arange(n_lasers), n_azimuth)
    local = directions.reshape(-1, 3)

    R, t = MotionInterpolator(end_pose=end_pose, start_pose=start_pose).rotations_translations(s)
    world_directions = np.einsum("nij,nj->ni", R, local)
    ranges = scene.raycast(t, world_directions)

    if noise_std > 0:
        rng = np.random.default_rng() if rng is None else rng
        ranges = ranges + rng.normal(0.0, noise_std, size=ranges.shape)

    keep = np.isfinite(ranges) & (ranges > 0.0) & (ranges <= max_range)
    return Frame(
        points=ranges[keep, None] * local[keep],
        laser_id=laser_id[keep],
        time=s[keep] * sweep_duration,
        timestamp=timestamp,
        sweep_duration=sweep_duration,
    )
