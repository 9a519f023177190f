"""Ego-motion: sweep-to-sweep registration.

Estimates t_relative, the pose mapping the current sweep into the previous
one, by matching current edges to lines of the previous edges and current
planars to planes of the previous planars. The prior follows a constant
velocity model (the previous t_relative).
"""

import logging
from typing import Optional

import numpy as np

from .config import MatchingStep, SlamConfig
from .correspondences import PrimitiveKind
from .registration import MatchingTarget, RegistrationResult, register
from .se3 import se3_identity, validate_pose
from .spatial_index import SpatialIndex
from .types import FrameKeypoints

logger = logging.getLogger(__name__)


class EgoMotionEstimator:
    """
    Sweep-to-sweep pose estimation.

    Attributes:
        config: Pipeline configuration.

    Example:
        >>> estimator = EgoMotionEstimator(SlamConfig())
        >>> result = estimator.estimate(keypoints, previous_keypoints, prior)
        >>> t_relative = result.pose
    """

    def __init__(self, config: SlamConfig):
        self.config = config

    def estimate(
        self,
        keypoints: FrameKeypoints,
        previous: FrameKeypoints,
        prior: Optional[np.ndarray] = None,
    ) -> RegistrationResult:
        """
        Register the keypoints of the current sweep onto the previous sweep.

        Args:
            keypoints: Keypoints of the current sweep.
            previous: Keypoints of the previous sweep (the reference).
            prior: Initial t_relative, identity when None.

        Returns:
            RegistrationResult whose pose is t_relative. When degraded the
            pose is the prior.
        """
        prior = se3_identity() if prior is None else validate_pose(prior, "prior")
        params = self.config.matching(MatchingStep.EGO_MOTION)

        targets = [
            MatchingTarget(
                kind=PrimitiveKind.LINE,
                points=keypoints.edges.points,
                times=keypoints.edges.time,
                reference=SpatialIndex(previous.edges.points, previous.edges.laser_id),
            ),
            MatchingTarget(
                kind=PrimitiveKind.PLANE,
                points=keypoints.planars.points,
                times=keypoints.planars.time,
                reference=SpatialIndex(previous.planars.points),
            ),
        ]

        deskew_start = se3_identity() if self.config.undistortion else None
        result = register(targets, prior, params, self.config, deskew_start=deskew_start)

        if not result.degraded:
            logger.debug(
                "Ego-motion: %d line + %d plane matches, %d ICP iterations, t_relative %s",
                result.n_line_matches,
                result.n_plane_matches,
                result.icp_iterations,
                np.array2string(result.pose, precision=4),
            )
        return result
