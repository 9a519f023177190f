"""Configuration of the LiDAR odometry and mapping pipeline.

The pipeline is driven by a single immutable value, ``SlamConfig``. A new
configuration is produced with ``SlamConfig.replace(**changes)`` (or
``dataclasses.replace``); validation runs in ``__post_init__`` so that an
invalid change raises ``ValueError`` and never reaches a running pipeline.

The ego-motion and mapping steps share the same registration loop but
read different thresholds. ``SlamConfig.matching(step)`` returns the
``MatchingParameters`` view for one step.

Defaults reproduce the values of the reference LOAM-style implementation
for a 16-beam sensor spinning at 600 rpm.
"""

import dataclasses
import json
import warnings
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional, Tuple, Union

from lidar_slam.estimators.nonlinear_least_squares import ROBUST_LOSSES


class MatchingStep(Enum):
    """Registration step a correspondence is built for."""

    EGO_MOTION = "ego_motion"
    MAPPING = "mapping"


@dataclass(frozen=True)
class MatchingParameters:
    """Thresholds of one registration step.

    Attributes:
        step: Step these parameters belong to.
        icp_max_iter: Maximum number of outer ICP iterations.
        lm_max_iter: Maximum number of LM iterations per ICP iteration.
        line_nbr_neighbors: Neighbors queried for a line fit.
        min_line_neighbors: Minimum neighbors kept to accept a line fit.
        line_distance_factor: Required ratio λ2 / λ1 of a line neighborhood.
        max_line_distance: Maximum distance of a neighbor to the fitted line.
        line_max_dist_inlier: Inlier distance of the sample-consensus line
            selection (mapping only, None for ego-motion).
        plane_nbr_neighbors: Neighbors queried for a plane (and blob) fit.
        plane_distance_factor1: Required ratio λ1 / λ0 of a plane neighborhood.
        plane_distance_factor2: Maximum ratio λ2 / λ1 of a plane neighborhood.
        max_plane_distance: Maximum distance of a neighbor to the fitted plane.
        max_neighbor_distance: Farthest accepted neighbor of a query point.
        incertitude_coef: Inflation of the blob neighborhood radius.
    """

    step: MatchingStep
    icp_max_iter: int
    lm_max_iter: int
    line_nbr_neighbors: int
    min_line_neighbors: int
    line_distance_factor: float
    max_line_distance: float
    line_max_dist_inlier: Optional[float]
    plane_nbr_neighbors: int
    plane_distance_factor1: float
    plane_distance_factor2: float
    max_plane_distance: float
    max_neighbor_distance: float
    incertitude_coef: float


@dataclass(frozen=True)
class SlamConfig:
    """
    Immutable parameter set of the pipeline.

    Keypoint extraction:
        neighbor_width: Half-width N of the scan-line neighborhood.
        min_distance_to_sensor: Points closer than this are invalid (m).
        angle_resolution: Azimuth resolution of the sensor (rad).
        max_edge_per_scan_line / max_planar_per_scan_line: Selection caps.
        edge_sin_angle_threshold: Minimum sharpness of an edge.
        plane_sin_angle_threshold: Maximum sharpness of a planar point.
        edge_depth_gap_threshold: Depth jump marking an occlusion border (m).
        min_beam_surface_sin_angle: Minimum sine between beam and surface.
        use_blob / sphericity_threshold: Blob extraction switch and gate.

    Registration:
        ego_motion_* / mapping_*: Per-step iteration caps and thresholds.
        max_dist_between_two_frames: Farthest accepted ego-motion neighbor.
        max_distance_for_icp_matching: Farthest accepted mapping neighbor.
        incertitude_coef: Blob neighborhood radius inflation.
        robust_loss / robust_loss_scale: Attenuation of large residuals.
        icp_convergence_tolerance: Pose change ending the ICP loop.
        lm_initial_damping / lm_max_condition_number: Solver settings.
        max_far_neighbor_ratio: Share of line and plane keypoints rejected
            with NEIGHBORS_TOO_FAR above which a registration is degraded
            (the motion exceeds the step's neighbor bound).

    Pipeline:
        fast_slam: Mapping uses the sparse planars instead of all valid
            smooth points.
        undistortion: Deskew keypoints with the interpolated motion.
        leaf_size: Leaf of the map voxel filter (m).
        rolling_grid_*: Extent and resolution of the rolling map.

    Example:
        >>> config = SlamConfig()
        >>> faster = config.replace(mapping_icp_max_iter=1)
        >>> config.mapping_icp_max_iter, faster.mapping_icp_max_iter
        (3, 1)
    """

    # Keypoint extraction
    neighbor_width: int = 4
    min_distance_to_sensor: float = 3.0
    angle_resolution: float = 0.00698132
    max_edge_per_scan_line: int = 200
    max_planar_per_scan_line: int = 200
    edge_sin_angle_threshold: float = 0.86
    plane_sin_angle_threshold: float = 0.5
    edge_depth_gap_threshold: float = 0.15
    min_beam_surface_sin_angle: float = 0.17
    use_blob: bool = False
    sphericity_threshold: float = 0.35

    # Ego-motion
    ego_motion_lm_max_iter: int = 15
    ego_motion_icp_max_iter: int = 4
    ego_motion_line_distance_nbr_neighbors: int = 10
    ego_motion_minimum_line_neighbor_rejection: int = 4
    ego_motion_line_distance_factor: float = 5.0
    ego_motion_plane_distance_nbr_neighbors: int = 5
    ego_motion_plane_distance_factor1: float = 35.0
    ego_motion_plane_distance_factor2: float = 8.0
    ego_motion_max_line_distance: float = 0.10
    ego_motion_max_plane_distance: float = 0.2
    max_dist_between_two_frames: float = (90.0 / 3.6) * (60.0 / 600.0)

    # Mapping
    mapping_lm_max_iter: int = 15
    mapping_icp_max_iter: int = 3
    mapping_line_distance_nbr_neighbors: int = 15
    mapping_minimum_line_neighbor_rejection: int = 5
    mapping_line_distance_factor: float = 5.0
    mapping_plane_distance_nbr_neighbors: int = 5
    mapping_plane_distance_factor1: float = 35.0
    mapping_plane_distance_factor2: float = 8.0
    mapping_max_line_distance: float = 0.2
    mapping_max_plane_distance: float = 0.2
    mapping_line_max_dist_inlier: float = 0.2
    max_distance_for_icp_matching: float = 20.0
    incertitude_coef: float = 3.0

    # Solver
    robust_loss: str = "huber"
    robust_loss_scale: float = 0.05
    icp_convergence_tolerance: float = 1e-4
    lm_initial_damping: float = 1e-3
    lm_max_condition_number: float = 1e8
    max_far_neighbor_ratio: float = 0.2

    # Pipeline and map
    fast_slam: bool = True
    undistortion: bool = False
    leaf_size: float = 0.6
    rolling_grid_voxel_size: float = 10.0
    rolling_grid_nb_voxel: Tuple[int, int, int] = (50, 50, 50)
    rolling_grid_pointcloud_nb_voxel: Tuple[int, int, int] = (25, 25, 25)

    def __post_init__(self) -> None:
        """Validate every parameter."""
        for name in (
            "max_edge_per_scan_line",
            "max_planar_per_scan_line",
            "ego_motion_lm_max_iter",
            "ego_motion_icp_max_iter",
            "mapping_lm_max_iter",
            "mapping_icp_max_iter",
        ):
            _check_int(name, getattr(self, name), minimum=1)

        _check_int("neighbor_width", self.neighbor_width, minimum=1)
        _check_int(
            "ego_motion_line_distance_nbr_neighbors",
            self.ego_motion_line_distance_nbr_neighbors,
            minimum=2,
        )
        _check_int(
            "mapping_line_distance_nbr_neighbors",
            self.mapping_line_distance_nbr_neighbors,
            minimum=2,
        )
        _check_int(
            "ego_motion_minimum_line_neighbor_rejection",
            self.ego_motion_minimum_line_neighbor_rejection,
            minimum=2,
        )
        _check_int(
            "mapping_minimum_line_neighbor_rejection",
            self.mapping_minimum_line_neighbor_rejection,
            minimum=2,
        )
        _check_int(
            "ego_motion_plane_distance_nbr_neighbors",
            self.ego_motion_plane_distance_nbr_neighbors,
            minimum=3,
        )
        _check_int(
            "mapping_plane_distance_nbr_neighbors",
            self.mapping_plane_distance_nbr_neighbors,
            minimum=3,
        )
        if (
            self.ego_motion_minimum_line_neighbor_rejection
            > self.ego_motion_line_distance_nbr_neighbors
        ):
            raise ValueError(
                "ego_motion_minimum_line_neighbor_rejection "
                f"({self.ego_motion_minimum_line_neighbor_rejection}) cannot exceed "
                "ego_motion_line_distance_nbr_neighbors "
                f"({self.ego_motion_line_distance_nbr_neighbors})"
            )
        if (
            self.mapping_minimum_line_neighbor_rejection
            > self.mapping_line_distance_nbr_neighbors
        ):
            raise ValueError(
                "mapping_minimum_line_neighbor_rejection "
                f"({self.mapping_minimum_line_neighbor_rejection}) cannot exceed "
                "mapping_line_distance_nbr_neighbors "
                f"({self.mapping_line_distance_nbr_neighbors})"
            )

        for name in (
            "angle_resolution",
            "edge_depth_gap_threshold",
            "ego_motion_line_distance_factor",
            "ego_motion_plane_distance_factor1",
            "ego_motion_plane_distance_factor2",
            "ego_motion_max_line_distance",
            "ego_motion_max_plane_distance",
            "max_dist_between_two_frames",
            "mapping_line_distance_factor",
            "mapping_plane_distance_factor1",
            "mapping_plane_distance_factor2",
            "mapping_max_line_distance",
            "mapping_max_plane_distance",
            "mapping_line_max_dist_inlier",
            "max_distance_for_icp_matching",
            "incertitude_coef",
            "robust_loss_scale",
            "icp_convergence_tolerance",
            "lm_initial_damping",
            "lm_max_condition_number",
            "leaf_size",
            "rolling_grid_voxel_size",
        ):
            _check_positive(name, getattr(self, name))

        _check_non_negative("min_distance_to_sensor", self.min_distance_to_sensor)

        for name in (
            "edge_sin_angle_threshold",
            "plane_sin_angle_threshold",
            "min_beam_surface_sin_angle",
            "sphericity_threshold",
            "max_far_neighbor_ratio",
        ):
            value = getattr(self, name)
            _check_number(name, value)
            if not 0.0 <= value <= 1.0:
                raise ValueError(f"{name} must be in [0, 1], got {value}")

        if self.plane_sin_angle_threshold > self.edge_sin_angle_threshold:
            raise ValueError(
                f"plane_sin_angle_threshold ({self.plane_sin_angle_threshold}) must not "
                f"exceed edge_sin_angle_threshold ({self.edge_sin_angle_threshold})"
            )

        for name in ("use_blob", "fast_slam", "undistortion"):
            if not isinstance(getattr(self, name), bool):
                raise TypeError(f"{name} must be a bool, got {type(getattr(self, name))}")

        if self.robust_loss not in ROBUST_LOSSES:
            raise ValueError(
                f"robust_loss must be one of {ROBUST_LOSSES}, got {self.robust_loss!r}"
            )

        _check_voxel_counts("rolling_grid_nb_voxel", self.rolling_grid_nb_voxel)
        _check_voxel_counts(
            "rolling_grid_pointcloud_nb_voxel", self.rolling_grid_pointcloud_nb_voxel
        )
        # JSON lists become tuples
        object.__setattr__(self, "rolling_grid_nb_voxel", tuple(self.rolling_grid_nb_voxel))
        object.__setattr__(
            self,
            "rolling_grid_pointcloud_nb_voxel",
            tuple(self.rolling_grid_pointcloud_nb_voxel),
        )
        if any(
            sub > full
            for sub, full in zip(
                self.rolling_grid_pointcloud_nb_voxel, self.rolling_grid_nb_voxel
            )
        ):
            raise ValueError(
                "rolling_grid_pointcloud_nb_voxel "
                f"{self.rolling_grid_pointcloud_nb_voxel} must fit inside "
                f"rolling_grid_nb_voxel {self.rolling_grid_nb_voxel}"
            )

        if self.max_dist_between_two_frames > self.max_distance_for_icp_matching:
            warnings.warn(
                f"max_dist_between_two_frames ({self.max_dist_between_two_frames} m) "
                f"is larger than max_distance_for_icp_matching "
                f"({self.max_distance_for_icp_matching} m); ego-motion will accept "
                f"neighbors that mapping rejects.",
                UserWarning,
            )
        if self.leaf_size > self.rolling_grid_voxel_size:
            warnings.warn(
                f"leaf_size ({self.leaf_size} m) is larger than the rolling grid "
                f"voxel ({self.rolling_grid_voxel_size} m); every voxel keeps a "
                f"single point.",
                UserWarning,
            )

    def replace(self, **changes: Any) -> "SlamConfig":
        """Return a validated copy with some parameters changed.

        Raises:
            ValueError: If a new value is invalid.
            TypeError: If an unknown parameter name is given.
        """
        return dataclasses.replace(self, **changes)

    def matching(self, step: MatchingStep) -> MatchingParameters:
        """Thresholds used by one registration step.

        Args:
            step: MatchingStep.EGO_MOTION or MatchingStep.MAPPING.

        Returns:
            Frozen MatchingParameters view of this configuration.

        Raises:
            ValueError: If step is not a MatchingStep.
        """
        if step is MatchingStep.EGO_MOTION:
            return MatchingParameters(
                step=step,
                icp_max_iter=self.ego_motion_icp_max_iter,
                lm_max_iter=self.ego_motion_lm_max_iter,
                line_nbr_neighbors=self.ego_motion_line_distance_nbr_neighbors,
                min_line_neighbors=self.ego_motion_minimum_line_neighbor_rejection,
                line_distance_factor=self.ego_motion_line_distance_factor,
                max_line_distance=self.ego_motion_max_line_distance,
                line_max_dist_inlier=None,
                plane_nbr_neighbors=self.ego_motion_plane_distance_nbr_neighbors,
                plane_distance_factor1=self.ego_motion_plane_distance_factor1,
                plane_distance_factor2=self.ego_motion_plane_distance_factor2,
                max_plane_distance=self.ego_motion_max_plane_distance,
                max_neighbor_distance=self.max_dist_between_two_frames,
                incertitude_coef=self.incertitude_coef,
            )
        if step is MatchingStep.MAPPING:
            return MatchingParameters(
                step=step,
                icp_max_iter=self.mapping_icp_max_iter,
                lm_max_iter=self.mapping_lm_max_iter,
                line_nbr_neighbors=self.mapping_line_distance_nbr_neighbors,
                min_line_neighbors=self.mapping_minimum_line_neighbor_rejection,
                line_distance_factor=self.mapping_line_distance_factor,
                max_line_distance=self.mapping_max_line_distance,
                line_max_dist_inlier=self.mapping_line_max_dist_inlier,
                plane_nbr_neighbors=self.mapping_plane_distance_nbr_neighbors,
                plane_distance_factor1=self.mapping_plane_distance_factor1,
                plane_distance_factor2=self.mapping_plane_distance_factor2,
                max_plane_distance=self.mapping_max_plane_distance,
                max_neighbor_distance=self.max_distance_for_icp_matching,
                incertitude_coef=self.incertitude_coef,
            )
        raise ValueError(f"step must be a MatchingStep, got {step!r}")

    def to_dict(self) -> Dict[str, Any]:
        """Plain dictionary of all parameters (JSON serialisable)."""
        data = dataclasses.asdict(self)
        data["rolling_grid_nb_voxel"] = list(self.rolling_grid_nb_voxel)
        data["rolling_grid_pointcloud_nb_voxel"] = list(
            self.rolling_grid_pointcloud_nb_voxel
        )
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SlamConfig":
        """Build a configuration from a dictionary of parameters.

        Missing parameters keep their default value.

        Raises:
            ValueError: If the dictionary contains unknown parameter names
                or invalid values.
        """
        known = {f.name for f in dataclasses.fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ValueError(f"Unknown configuration parameters: {unknown}")
        return cls(**data)


def load_config(path: Union[str, Path]) -> SlamConfig:
    """Load a SlamConfig from a JSON file.

    Args:
        path: JSON file holding a flat object of parameter values.

    Returns:
        Validated SlamConfig.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the content is not a JSON object or is invalid.
    """
    path = Path(path)
    with open(path, "r") as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise ValueError(f"Configuration file {path} must hold a JSON object")
    return SlamConfig.from_dict(data)


def save_config(config: SlamConfig, path: Union[str, Path]) -> None:
    """Write a SlamConfig to a JSON file."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        json.dump(config.to_dict(), f, indent=2)


def _check_number(name: str, value: Any) -> None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise TypeError(f"{name} must be numeric, got {type(value)}")


def _check_int(name: str, value: Any, minimum: int) -> None:
    if isinstance(value, bool) or not isinstance(value, int):
        raise TypeError(f"{name} must be an int, got {type(value)}")
    if value < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got {value}")


def _check_positive(name: str, value: Any) -> None:
    _check_number(name, value)
    if not value > 0:
        raise ValueError(f"{name} must be positive, got {value}")


def _check_non_negative(name: str, value: Any) -> None:
    _check_number(name, value)
    if value < 0:
        raise ValueError(f"{name} must be non-negative, got {value}")


def _check_voxel_counts(name: str, value: Any) -> None:
    if len(value) != 3:
        raise ValueError(f"{name} must have 3 entries, got {value}")
    for count in value:
        _check_int(name, count, minimum=1)
