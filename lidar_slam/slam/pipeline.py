"""LiDAR odometry and mapping pipeline.

Every sweep goes through the same loop:
    1. Keypoint extraction: edges and planars from the scan-line geometry
    2. Ego-motion: sweep-to-sweep registration giving t_relative
    3. Mapping: sweep-to-map registration refining t_world
    4. Map update: the keypoints, moved with t_world, enter the rolling map

The first sweep initialises the world frame (t_world = identity) and seeds
the map. A registration that fails keeps its prior and the pipeline moves
on; the failure is visible in the diagnostics.
"""

import logging
from typing import Dict, Optional

import numpy as np

from .config import SlamConfig
from .correspondences import RejectionHistogram
from .diagnostics import DiagnosticSeries
from .ego_motion import EgoMotionEstimator
from .keypoints import KeypointExtractor
from .mapping import MappingEstimator
from .registration import RegistrationResult
from .rolling_grid import RollingMap
from .se3 import se3_compose, se3_identity, se3_relative
from .trajectory import Trajectory
from .types import Frame, FrameKeypoints

logger = logging.getLogger(__name__)

_GRID_PARAMETERS = (
    "rolling_grid_voxel_size",
    "rolling_grid_nb_voxel",
    "rolling_grid_pointcloud_nb_voxel",
    "leaf_size",
)


class LidarSlam:
    """
    Online LiDAR odometry and mapping.

    Attributes:
        config: Current configuration (immutable, see ``update_config``).
        trajectory: World poses of the processed sweeps.
        diagnostics: Per-frame diagnostic series.
        rolling_map: Edge, planar and blob map around the sensor.

    Example:
        >>> slam = LidarSlam()
        >>> for frame in frames:
        ...     slam.add_frame(frame)
        >>> slam.get_world_transform()
        array([...])
        >>> slam.trajectory.positions()[-1]
    """

    def __init__(self, config: Optional[SlamConfig] = None):
        self.config = config if config is not None else SlamConfig()
        self._build_components()
        self.reset()

    def _build_components(self) -> None:
        self.extractor = KeypointExtractor(self.config)
        self.ego_motion = EgoMotionEstimator(self.config)
        self.mapping = MappingEstimator(self.config)

    def reset(self) -> None:
        """Forget all frames, the map and the trajectory."""
        self._t_world = se3_identity()
        self._previous_t_world = se3_identity()
        self._t_relative = se3_identity()
        self._previous_keypoints: Optional[FrameKeypoints] = None
        self.rolling_map = RollingMap.from_config(self.config)
        self.trajectory = Trajectory()
        self.diagnostics = DiagnosticSeries()
        self.last_keypoints: Optional[FrameKeypoints] = None
        self.last_ego_motion: Optional[RegistrationResult] = None
        self.last_mapping: Optional[RegistrationResult] = None

    @property
    def n_frames(self) -> int:
        return len(self.trajectory)

    @property
    def t_relative(self) -> np.ndarray:
        """Pose of the last sweep in the referential of the one before."""
        return self._t_relative.copy()

    @property
    def previous_t_world(self) -> np.ndarray:
        return self._previous_t_world.copy()

    def get_world_transform(self) -> np.ndarray:
        """Pose of the last sweep in the world frame."""
        return self._t_world.copy()

    def update_config(self, **changes) -> SlamConfig:
        """
        Replace some configuration values between two frames.

        Raises:
            ValueError: If a new value is invalid. The previous
                configuration stays in effect.
            TypeError: If a parameter name is unknown.
        """
        new_config = self.config.replace(**changes)
        rebuild_map = any(
            getattr(new_config, name) != getattr(self.config, name) for name in _GRID_PARAMETERS
        )
        self.config = new_config
        self._build_components()

        if rebuild_map:
            old_map = self.rolling_map
            self.rolling_map = RollingMap.from_config(new_config)
            self.rolling_map.reset(self._t_world[3:])
            self.rolling_map.insert(
                edges=old_map.edges.get_points(),
                planars=old_map.planars.get_points(),
                blobs=old_map.blobs.get_points(),
            )
        logger.debug("Configuration updated: %s", sorted(changes))
        return new_config

    def add_frame(self, frame: Frame) -> None:
        """
        Process one sweep.

        Args:
            frame: Sweep whose points are each expressed in the sensor
                referential at their own acquisition time (``frame.time``,
                normalised by ``sweep_duration``). When undistortion is
                enabled they are deskewed into the referential at the end
                of the sweep, which is the pose reported in the trajectory.

        Raises:
            TypeError: If frame is not a Frame.
        """
        if not isinstance(frame, Frame):
            raise TypeError(f"frame must be a Frame, got {type(frame)}")

        keypoints = self.extractor.extract(frame)
        self.last_keypoints = keypoints

        if self._previous_keypoints is None:
            self._initialize(frame, keypoints)
            return

        # 1. Ego-motion, constant velocity prior
        ego = self.ego_motion.estimate(keypoints, self._previous_keypoints, self._t_relative)

        # 2. Mapping from the ego-motion propagated pose
        previous_t_world = self._t_world.copy()
        initial_t_world = se3_compose(previous_t_world, ego.pose)
        mapping = self.mapping.estimate(
            keypoints, self.rolling_map, previous_t_world, initial_t_world
        )

        self._previous_t_world = previous_t_world
        self._t_world = mapping.pose.copy()
        self._t_relative = se3_relative(previous_t_world, self._t_world)

        # 3. Map update
        self._update_map(keypoints)

        self.last_ego_motion = ego
        self.last_mapping = mapping
        self._previous_keypoints = keypoints
        self.trajectory.append(self._t_world, frame.timestamp)
        self.diagnostics.record(self._frame_diagnostics(keypoints, ego, mapping))

        if ego.degraded or mapping.degraded:
            logger.info(
                "Frame %d (t=%.3f): ego-motion degraded=%s, mapping degraded=%s",
                self.n_frames - 1,
                frame.timestamp,
                ego.degraded,
                mapping.degraded,
            )
        logger.debug(
            "Frame %d: t_world %s", self.n_frames - 1, np.array2string(self._t_world, precision=4)
        )

    def _initialize(self, frame: Frame, keypoints: FrameKeypoints) -> None:
        """First sweep: define the world frame and seed the map."""
        self._t_world = se3_identity()
        self._previous_t_world = se3_identity()
        self._t_relative = se3_identity()
        self.rolling_map.reset(self._t_world[3:])
        self._update_map(keypoints)

        self._previous_keypoints = keypoints
        self.last_ego_motion = None
        self.last_mapping = None
        self.trajectory.append(self._t_world, frame.timestamp)
        self.diagnostics.record(self._frame_diagnostics(keypoints, None, None))
        logger.debug("Initialised on frame at t=%.3f with %s", frame.timestamp, keypoints.counts())

    def _update_map(self, keypoints: FrameKeypoints) -> None:
        self.rolling_map.roll(self._t_world[3:])
        planar_points, planar_times = self.mapping.planar_queries(keypoints)
        to_world = self.mapping.to_world
        blobs = None
        if self.config.use_blob:
            blobs = to_world(
                keypoints.blobs.points, keypoints.blobs.time, self._t_world, self._previous_t_world
            )
        self.rolling_map.insert(
            edges=to_world(
                keypoints.edges.points, keypoints.edges.time, self._t_world, self._previous_t_world
            ),
            planars=to_world(planar_points, planar_times, self._t_world, self._previous_t_world),
            blobs=blobs,
        )

    def _frame_diagnostics(
        self,
        keypoints: FrameKeypoints,
        ego: Optional[RegistrationResult],
        mapping: Optional[RegistrationResult],
    ) -> Dict[str, float]:
        values: Dict[str, float] = {
            f"keypoints.{name}": count for name, count in keypoints.counts().items()
        }
        for step, result in (("ego_motion", ego), ("mapping", mapping)):
            if result is None:
                values.update(
                    {
                        f"{step}.degraded": 0.0,
                        f"{step}.n_matches": 0.0,
                        f"{step}.cost": float("nan"),
                        f"{step}.icp_iterations": 0.0,
                        f"{step}.rejections": 0.0,
                    }
                )
            else:
                values.update(
                    {
                        f"{step}.degraded": float(result.degraded),
                        f"{step}.n_matches": result.n_matches,
                        f"{step}.cost": result.cost,
                        f"{step}.icp_iterations": result.icp_iterations,
                        f"{step}.rejections": result.histogram.total(),
                    }
                )
            histogram = RejectionHistogram() if result is None else result.histogram
            for kind, causes in histogram.as_dict().items():
                for cause, count in causes.items():
                    values[f"{step}.rejections.{kind}.{cause}"] = count
        values["map.n_points"] = len(self.rolling_map)
        return values
