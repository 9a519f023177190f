"""LiDAR odometry and mapping.

Building blocks of a LOAM-style pipeline working on multi-beam sweeps:
    - Frame, KeypointSet, FrameKeypoints: Core data structures
    - se3_compose, se3_inverse, se3_relative, se3_apply: SE(3) operations
    - KeypointExtractor: Edge / planar / blob keypoints from scan lines
    - CorrespondenceBuilder: Point-to-line, point-to-plane, point-to-blob
    - EgoMotionEstimator: Sweep-to-sweep registration (t_relative)
    - MappingEstimator: Sweep-to-map registration (t_world)
    - RollingGrid, RollingMap: Voxel map following the sensor
    - MotionInterpolator: Pose slerp inside a sweep, deskewing
    - LidarSlam: The full per-frame pipeline

The LM solver lives in lidar_slam/estimators, rotations in lidar_slam/coords.

Example usage:
    >>> from lidar_slam.slam import LidarSlam, create_room_scene, generate_sweep
    >>> import numpy as np
    >>>
    >>> scene = create_room_scene()
    >>> slam = LidarSlam()
    >>> for x in (0.0, 0.1, 0.2):
    ...     pose = np.array([0.0, 0.0, 0.0, x, 0.0, 0.0])
    ...     slam.add_frame(generate_sweep(scene, pose))
    >>> slam.get_world_transform()[3:]
"""

from .config import MatchingParameters, MatchingStep, SlamConfig, load_config, save_config
from .correspondences import (
    CorrespondenceBuilder,
    CorrespondenceSet,
    PrimitiveKind,
    RejectionCause,
    RejectionHistogram,
)
from .diagnostics import DiagnosticSeries
from .ego_motion import EgoMotionEstimator
from .interpolation import MotionInterpolator
from .keypoints import KeypointExtractor
from .mapping import MappingEstimator
from .pipeline import LidarSlam
from .registration import MatchingTarget, RegistrationResult, register
from .rolling_grid import RollingGrid, RollingMap
from .scan_generation import Box, Scene, create_room_scene, generate_sweep, laser_directions
from .se3 import (
    se3_apply,
    se3_compose,
    se3_distance,
    se3_from_matrix,
    se3_from_rotation_translation,
    se3_identity,
    se3_inverse,
    se3_relative,
    se3_rotation,
    se3_to_matrix,
    validate_pose,
)
from .spatial_index import SpatialIndex, voxel_downsample
from .trajectory import Trajectory
from .types import Frame, FrameKeypoints, KeypointLabel, KeypointSet

__all__ = [
    # Data structures
    "Frame",
    "FrameKeypoints",
    "KeypointLabel",
    "KeypointSet",
    # Configuration
    "MatchingParameters",
    "MatchingStep",
    "SlamConfig",
    "load_config",
    "save_config",
    # SE(3) operations
    "se3_apply",
    "se3_compose",
    "se3_distance",
    "se3_from_matrix",
    "se3_from_rotation_translation",
    "se3_identity",
    "se3_inverse",
    "se3_relative",
    "se3_rotation",
    "se3_to_matrix",
    "validate_pose",
    # Geometry containers
    "SpatialIndex",
    "voxel_downsample",
    "RollingGrid",
    "RollingMap",
    # Front-end
    "KeypointExtractor",
    "MotionInterpolator",
    "CorrespondenceBuilder",
    "CorrespondenceSet",
    "PrimitiveKind",
    "RejectionCause",
    "RejectionHistogram",
    "MatchingTarget",
    "RegistrationResult",
    "register",
    "EgoMotionEstimator",
    "MappingEstimator",
    # Pipeline
    "LidarSlam",
    "Trajectory",
    "DiagnosticSeries",
    # Simulation
    "Box",
    "Scene",
    "create_room_scene",
    "generate_sweep",
    "laser_directions",
]
