"""Mapping: sweep-to-map registration.

Refines t_world, the pose mapping the current sweep into the world frame,
by matching keypoints to primitives of the rolling map around the sensor.
The initial estimate is the ego-motion propagated pose
previous_t_world ⊕ t_relative.
"""

import logging
from typing import List, Tuple

import numpy as np

from .config import MatchingStep, SlamConfig
from .correspondences import PrimitiveKind
from .interpolation import MotionInterpolator
from .registration import MatchingTarget, RegistrationResult, register
from .rolling_grid import RollingMap
from .se3 import se3_apply, validate_pose
from .spatial_index import SpatialIndex, voxel_downsample
from .types import FrameKeypoints

logger = logging.getLogger(__name__)


class MappingEstimator:
    """
    Sweep-to-map pose estimation.

    Attributes:
        config: Pipeline configuration.

    Example:
        >>> estimator = MappingEstimator(SlamConfig())
        >>> result = estimator.estimate(keypoints, rolling_map,
        ...                             previous_t_world, initial_t_world)
        >>> t_world = result.pose
    """

    def __init__(self, config: SlamConfig):
        self.config = config

    def planar_queries(self, keypoints: FrameKeypoints) -> Tuple[np.ndarray, np.ndarray]:
        """
        Planar points used for mapping and map insertion.

        Returns the sparse planars with ``fast_slam``, otherwise every
        valid smooth point downsampled on a ``leaf_size`` grid.

        Returns:
            Tuple (points, times), shapes (K, 3) and (K,).
        """
        if self.config.fast_slam:
            return keypoints.planars.points, keypoints.planars.time
        return voxel_downsample(
            keypoints.dense_planars.points,
            self.config.leaf_size,
            values=keypoints.dense_planars.time,
        )

    def estimate(
        self,
        keypoints: FrameKeypoints,
        rolling_map: RollingMap,
        previous_t_world: np.ndarray,
        initial_t_world: np.ndarray,
    ) -> RegistrationResult:
        """
        Register the keypoints of the current sweep onto the rolling map.

        Args:
            keypoints: Keypoints of the current sweep.
            rolling_map: Map built from the previous sweeps (world frame).
            previous_t_world: World pose at the end of the previous sweep.
            initial_t_world: Ego-motion propagated world pose.

        Returns:
            RegistrationResult whose pose is t_world. When degraded the
            pose is ``initial_t_world``.
        """
        previous_t_world = validate_pose(previous_t_world, "previous_t_world")
        initial_t_world = validate_pose(initial_t_world, "initial_t_world")
        params = self.config.matching(MatchingStep.MAPPING)
        position = initial_t_world[3:]

        planar_points, planar_times = self.planar_queries(keypoints)
        targets: List[MatchingTarget] = [
            MatchingTarget(
                kind=PrimitiveKind.LINE,
                points=keypoints.edges.points,
                times=keypoints.edges.time,
                reference=SpatialIndex(rolling_map.edges.get_points(position)),
            ),
            MatchingTarget(
                kind=PrimitiveKind.PLANE,
                points=planar_points,
                times=planar_times,
                reference=SpatialIndex(rolling_map.planars.get_points(position)),
            ),
        ]
        if self.config.use_blob:
            targets.append(
                MatchingTarget(
                    kind=PrimitiveKind.BLOB,
                    points=keypoints.blobs.points,
                    times=keypoints.blobs.time,
                    reference=SpatialIndex(rolling_map.blobs.get_points(position)),
                    radius=keypoints.blobs.radius,
                )
            )

        deskew_start = previous_t_world if self.config.undistortion else None
        result = register(targets, initial_t_world, params, self.config, deskew_start=deskew_start)

        if not result.degraded:
            logger.debug(
                "Mapping: %d line + %d plane + %d blob matches, %d ICP iterations, "
                "t_world %s",
                result.n_line_matches,
                result.n_plane_matches,
                result.n_blob_matches,
                result.icp_iterations,
                np.array2string(result.pose, precision=4),
            )
        return result

    def to_world(
        self,
        points: np.ndarray,
        times: np.ndarray,
        t_world: np.ndarray,
        previous_t_world: np.ndarray,
    ) -> np.ndarray:
        """
        Express keypoints of the current sweep in the world frame.

        With ``undistortion`` each point is moved with the pose
        interpolated at its acquisition time, otherwise with t_world.
        """
        points = np.asarray(points, dtype=np.float64).reshape(-1, 3)
        if len(points) == 0:
            return points
        if self.config.undistortion:
            interpolator = MotionInterpolator(end_pose=t_world, start_pose=previous_t_world)
            return interpolator.transform_points(points, times)
        return se3_apply(t_world, points)
