"""ICP + Levenberg-Marquardt registration loop.

Shared by the ego-motion and mapping estimators. Each outer (ICP)
iteration rebuilds point-to-primitive correspondences at the current pose
estimate, optionally deskewing the keypoints with the interpolated sweep
motion, then refines the pose with Levenberg-Marquardt on the whitened
residuals

    e_i = sqrt(w_i) L_i (R X_i + T - P_i),    L_iᵀ L_i = A_i

with the analytic Jacobian

    ∂e_i/∂θ_k = sqrt(w_i) L_i (∂R/∂θ_k) X_i,   ∂e_i/∂T = sqrt(w_i) L_i.

A registration that cannot build any correspondence, that finds too many
keypoints without neighbors within the step's bound (the sensor moved
farther than the bound allows), or whose normal equations are
near-singular, is degraded: the prior pose is returned and the pipeline
keeps going.
"""

import logging
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Sequence, Tuple

import numpy as np

from lidar_slam.coords.rotations import euler_rotation_jacobians, euler_to_rotation_matrix
from lidar_slam.estimators.nonlinear_least_squares import levenberg_marquardt

from .config import MatchingParameters, SlamConfig
from .correspondences import (
    CorrespondenceBuilder,
    CorrespondenceSet,
    PrimitiveKind,
    RejectionCause,
    RejectionHistogram,
)
from .interpolation import MotionInterpolator
from .se3 import validate_pose
from .spatial_index import SpatialIndex

logger = logging.getLogger(__name__)


@dataclass
class MatchingTarget:
    """Keypoints of one kind and the reference primitives they are matched to.

    Attributes:
        kind: Primitive fitted on the reference neighborhoods.
        points: Keypoints in the current sensor referential, shape (K, 3).
        times: Normalised acquisition time of each keypoint, shape (K,).
        reference: Index over the reference points.
        radius: Uncertainty radius of each keypoint (blobs only).
    """

    kind: PrimitiveKind
    points: np.ndarray
    times: np.ndarray
    reference: SpatialIndex
    radius: Optional[np.ndarray] = None


@dataclass
class RegistrationResult:
    """
    Outcome of one registration (ego-motion or mapping).

    Attributes:
        pose: Estimated pose [rx, ry, rz, tx, ty, tz]. Equal to the prior
            when ``degraded`` is True.
        degraded: Whether the estimate fell back to the prior.
        icp_iterations: Outer iterations run (0 when degraded).
        lm_iterations: LM iterations summed over the outer iterations.
        cost: Final LM cost (nan when degraded).
        n_line_matches / n_plane_matches / n_blob_matches: Correspondences
            of the last outer iteration.
        histogram: Rejection causes of the last outer iteration.
        converged: Whether the pose change fell below tolerance.
    """

    pose: np.ndarray
    degraded: bool = False
    icp_iterations: int = 0
    lm_iterations: int = 0
    cost: float = float("nan")
    n_line_matches: int = 0
    n_plane_matches: int = 0
    n_blob_matches: int = 0
    histogram: RejectionHistogram = field(default_factory=RejectionHistogram)
    converged: bool = False

    @classmethod
    def degraded_result(
        cls, prior: np.ndarray, histogram: Optional[RejectionHistogram] = None
    ) -> "RegistrationResult":
        """Fallback result holding the prior and sentinel diagnostics."""
        return cls(
            pose=np.array(prior, dtype=np.float64),
            degraded=True,
            histogram=histogram if histogram is not None else RejectionHistogram(),
        )

    @property
    def n_matches(self) -> int:
        return self.n_line_matches + self.n_plane_matches + self.n_blob_matches


def register(
    targets: Sequence[MatchingTarget],
    initial_pose: np.ndarray,
    params: MatchingParameters,
    config: SlamConfig,
    deskew_start: Optional[np.ndarray] = None,
) -> RegistrationResult:
    """
    Estimate the pose aligning keypoints onto their reference primitives.

    Args:
        targets: Keypoint sets with their reference indices.
        initial_pose: Starting estimate, also returned when degraded.
        params: Thresholds of the registration step.
        config: Pipeline configuration (solver settings).
        deskew_start: Sensor pose at the start of the sweep, in the same
            frame as the estimate. When given, keypoints are deskewed at
            every outer iteration by interpolating between this pose and
            the current estimate.

    Returns:
        RegistrationResult with the refined pose and diagnostics.
    """
    prior = validate_pose(initial_pose, "initial_pose").copy()
    if deskew_start is not None:
        deskew_start = validate_pose(deskew_start, "deskew_start")

    builder = CorrespondenceBuilder(params, config.robust_loss, config.robust_loss_scale)
    pose = prior.copy()
    lm_iterations = 0
    cost = float("nan")
    histogram = RejectionHistogram()
    correspondences = CorrespondenceSet.empty()
    converged = False
    iteration = 0

    for iteration in range(1, params.icp_max_iter + 1):
        histogram = RejectionHistogram()
        interpolator = None
        if deskew_start is not None:
            interpolator = MotionInterpolator(end_pose=pose, start_pose=deskew_start)

        sets = []
        for target in targets:
            points = target.points
            if interpolator is not None and len(points) > 0:
                points = interpolator.deskew(points, target.times)
            sets.append(
                builder.build(
                    target.kind,
                    points,
                    target.times,
                    pose,
                    target.reference,
                    histogram,
                    radius=target.radius,
                )
            )
        correspondences = CorrespondenceSet.concatenate(sets)

        if len(correspondences) == 0:
            logger.info(
                "%s: no correspondence at ICP iteration %d (%s), keeping the prior",
                params.step.value,
                iteration,
                histogram,
            )
            return RegistrationResult.degraded_result(prior, histogram)

        n_keypoints, n_too_far = _far_neighbor_counts(correspondences, histogram)
        if n_too_far > config.max_far_neighbor_ratio * n_keypoints:
            logger.info(
                "%s: %d of %d keypoints have no neighbor within %.3g m at ICP "
                "iteration %d, keeping the prior",
                params.step.value,
                n_too_far,
                n_keypoints,
                params.max_neighbor_distance,
                iteration,
            )
            return RegistrationResult.degraded_result(prior, histogram)

        residual_fn, jacobian_fn = _whitened_problem(correspondences)
        lm = levenberg_marquardt(
            residual_fn,
            jacobian_fn,
            pose,
            max_iter=params.lm_max_iter,
            mu0=config.lm_initial_damping,
            max_condition_number=config.lm_max_condition_number,
        )
        if lm.degenerate:
            logger.info(
                "%s: degenerate normal equations (condition number %.3g) with %d "
                "correspondences, keeping the prior",
                params.step.value,
                lm.condition_number,
                len(correspondences),
            )
            return RegistrationResult.degraded_result(prior, histogram)

        lm_iterations += lm.iterations
        cost = lm.cost
        change = float(np.linalg.norm(lm.x - pose))
        pose = lm.x
        logger.debug(
            "%s ICP iteration %d: %d correspondences, cost %.6g, pose change %.3g",
            params.step.value,
            iteration,
            len(correspondences),
            cost,
            change,
        )
        if change < config.icp_convergence_tolerance:
            converged = True
            break

    return RegistrationResult(
        pose=pose,
        degraded=False,
        icp_iterations=iteration,
        lm_iterations=lm_iterations,
        cost=cost,
        n_line_matches=correspondences.n_of(PrimitiveKind.LINE),
        n_plane_matches=correspondences.n_of(PrimitiveKind.PLANE),
        n_blob_matches=correspondences.n_of(PrimitiveKind.BLOB),
        histogram=histogram,
        converged=converged,
    )


def _far_neighbor_counts(
    correspondences: CorrespondenceSet, histogram: RejectionHistogram
) -> Tuple[int, int]:
    """Line and plane keypoints processed, and how many found no neighbor in bound.

    Blobs are left out: their NEIGHBORS_TOO_FAR also covers the blob
    uncertainty gate.
    """
    n_keypoints = 0
    n_too_far = 0
    for kind in (PrimitiveKind.LINE, PrimitiveKind.PLANE):
        n_keypoints += correspondences.n_of(kind) + histogram.count(kind)
        n_too_far += histogram.count(kind, RejectionCause.NEIGHBORS_TOO_FAR)
    return n_keypoints, n_too_far


def _whitened_problem(
    correspondences: CorrespondenceSet,
) -> Tuple[Callable[[np.ndarray], np.ndarray], Callable[[np.ndarray], np.ndarray]]:
    """Residual and Jacobian functions of a fixed correspondence set."""
    L = correspondences.whitening()
    X = correspondences.X
    P = correspondences.P
    M = len(X)

    def residual_fn(x: np.ndarray) -> np.ndarray:
        R = euler_to_rotation_matrix(x[0], x[1], x[2])
        r = X @ R.T + x[3:] - P
        return np.einsum("mij,mj->mi", L, r).reshape(-1)

    def jacobian_fn(x: np.ndarray) -> np.ndarray:
        J = np.empty((M, 3, 6))
        derivatives: List[np.ndarray] = list(euler_rotation_jacobians(x[0], x[1], x[2]))
        for k, dR in enumerate(derivatives):
            J[:, :, k] = np.einsum("mij,mj->mi", L, X @ dR.T)
        J[:, :, 3:] = L
        return J.reshape(3 * M, 6)

    return residual_fn, jacobian_fn
