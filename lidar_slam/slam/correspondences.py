"""Point-to-primitive correspondences for LiDAR registration.

Each keypoint X of the current sweep is matched to a geometric primitive
fitted on its nearest neighbors in a reference set (the previous sweep or
the rolling map). A correspondence is the triple (A, P, X) entering the
cost

    f(R, T) = Σ_i w_i (R X_i + T - P_i)ᵀ A_i (R X_i + T - P_i)

    Line  (edge keypoints):   A = (I - n nᵀ)ᵀ (I - n nᵀ), n = line direction
    Plane (planar keypoints): A = n nᵀ,                   n = plane normal
    Blob  (blob keypoints):   A ∝ (Σ + εI)⁻¹,              Σ = neighborhood covariance

with P the neighborhood mean. Neighborhoods are described by a PCA with
eigenvalues λ0 <= λ1 <= λ2; a neighborhood that does not look like the
expected primitive is rejected and the cause is counted in a
RejectionHistogram. All keypoints of a set are processed as one batch.
"""

from dataclasses import dataclass
from enum import Enum, IntEnum
from typing import Dict, Iterable, Optional, Tuple

import numpy as np

from lidar_slam.estimators.nonlinear_least_squares import compute_robust_weights

from .config import MatchingParameters, MatchingStep
from .se3 import se3_rotation
from .spatial_index import SpatialIndex

# Neighborhoods with a largest eigenvalue below this are a single point
DEGENERATE_EIGENVALUE = 1e-10

# Regularisation (m²) of the blob covariance before inversion
BLOB_REGULARIZATION = 1e-4

# Keypoints processed per chunk by the sample-consensus line selection
_CONSENSUS_CHUNK = 256


class PrimitiveKind(Enum):
    """Geometric primitive a keypoint is matched against."""

    LINE = "line"
    PLANE = "plane"
    BLOB = "blob"


class RejectionCause(IntEnum):
    """Reason a keypoint did not produce a correspondence."""

    REFERENCE_TOO_SMALL = 0
    NOT_ENOUGH_NEIGHBORS = 1
    NEIGHBORS_TOO_FAR = 2
    DEGENERATE_NEIGHBORHOOD = 3
    NOT_LINE_LIKE = 4
    NOT_PLANE_LIKE = 5
    PRIMITIVE_TOO_WIDE = 6


_KIND_CODES = {PrimitiveKind.LINE: 0, PrimitiveKind.PLANE: 1, PrimitiveKind.BLOB: 2}


class RejectionHistogram:
    """
    Rejection counts per primitive kind and per cause.

    Example:
        >>> hist = RejectionHistogram()
        >>> hist.add(PrimitiveKind.PLANE, np.array([2, 2, 5]))
        >>> hist.count(PrimitiveKind.PLANE, RejectionCause.NEIGHBORS_TOO_FAR)
        2
        >>> hist.dominant_cause()
        <RejectionCause.NEIGHBORS_TOO_FAR: 2>
    """

    def __init__(self):
        self.counts: Dict[PrimitiveKind, np.ndarray] = {
            kind: np.zeros(len(RejectionCause), dtype=np.int64) for kind in PrimitiveKind
        }

    def add(self, kind: PrimitiveKind, causes: np.ndarray) -> None:
        """Count rejection causes (negative entries mean accepted and are ignored)."""
        causes = np.asarray(causes, dtype=np.int64)
        causes = causes[causes >= 0]
        self.counts[kind] += np.bincount(causes, minlength=len(RejectionCause))

    def count(
        self,
        kind: Optional[PrimitiveKind] = None,
        cause: Optional[RejectionCause] = None,
    ) -> int:
        """Number of rejections, optionally restricted to a kind and/or cause."""
        kinds = list(PrimitiveKind) if kind is None else [kind]
        total = 0
        for k in kinds:
            total += int(self.counts[k].sum() if cause is None else self.counts[k][cause])
        return total

    def total(self) -> int:
        """Number of rejections of all kinds and causes."""
        return self.count()

    def dominant_cause(self, kind: Optional[PrimitiveKind] = None) -> Optional[RejectionCause]:
        """Most frequent rejection cause, or None when nothing was rejected."""
        kinds = list(PrimitiveKind) if kind is None else [kind]
        per_cause = np.sum([self.counts[k] for k in kinds], axis=0)
        if per_cause.sum() == 0:
            return None
        return RejectionCause(int(np.argmax(per_cause)))

    def as_dict(self) -> Dict[str, Dict[str, int]]:
        """Nested {kind: {cause: count}} dictionary."""
        return {
            kind.value: {cause.name: int(self.counts[kind][cause]) for cause in RejectionCause}
            for kind in PrimitiveKind
        }

    def __repr__(self) -> str:
        parts = []
        for kind in PrimitiveKind:
            nonzero = {
                cause.name: int(self.counts[kind][cause])
                for cause in RejectionCause
                if self.counts[kind][cause]
            }
            if nonzero:
                parts.append(f"{kind.value}={nonzero}")
        return f"RejectionHistogram({', '.join(parts)})"


@dataclass
class CorrespondenceSet:
    """
    Batch of accepted point-to-primitive correspondences.

    Attributes:
        A: Primitive matrices, shape (M, 3, 3), symmetric PSD.
        P: Primitive centers in the reference frame, shape (M, 3).
        X: Keypoints in the current referential, shape (M, 3).
        time: Normalised acquisition time of each keypoint, shape (M,).
        weight: Robust attenuation weight, shape (M,).
        kind: Primitive code of each row (0 line, 1 plane, 2 blob).
    """

    A: np.ndarray
    P: np.ndarray
    X: np.ndarray
    time: np.ndarray
    weight: np.ndarray
    kind: np.ndarray

    def __len__(self) -> int:
        return len(self.X)

    @classmethod
    def empty(cls) -> "CorrespondenceSet":
        return cls(
            A=np.zeros((0, 3, 3)),
            P=np.zeros((0, 3)),
            X=np.zeros((0, 3)),
            time=np.zeros(0),
            weight=np.zeros(0),
            kind=np.zeros(0, dtype=np.int8),
        )

    @classmethod
    def concatenate(cls, sets: Iterable["CorrespondenceSet"]) -> "CorrespondenceSet":
        """Stack several sets, preserving their order."""
        sets = list(sets)
        if not sets:
            return cls.empty()
        return cls(
            A=np.concatenate([s.A for s in sets]),
            P=np.concatenate([s.P for s in sets]),
            X=np.concatenate([s.X for s in sets]),
            time=np.concatenate([s.time for s in sets]),
            weight=np.concatenate([s.weight for s in sets]),
            kind=np.concatenate([s.kind for s in sets]),
        )

    def n_of(self, kind: PrimitiveKind) -> int:
        """Number of correspondences of one primitive kind."""
        return int(np.count_nonzero(self.kind == _KIND_CODES[kind]))

    def whitening(self) -> np.ndarray:
        """Matrices L with Lᵀ L = w A, shape (M, 3, 3)."""
        eigvals, eigvecs = np.linalg.eigh(self.A)
        root = np.sqrt(np.maximum(eigvals, 0.0)) * np.sqrt(self.weight)[:, None]
        return np.einsum("mij,mj,mkj->mik", eigvecs, root, eigvecs)

    def residual_norms(self, R: np.ndarray, t: np.ndarray) -> np.ndarray:
        """Unweighted residual sqrt((RX+T-P)ᵀ A (RX+T-P)) of each row."""
        return _mahalanobis(self.A, self.X @ R.T + t - self.P)


class CorrespondenceBuilder:
    """
    Match keypoints to line, plane and blob primitives of a reference set.

    Attributes:
        params: Thresholds of the registration step (ego-motion or mapping).
        robust_loss: Name of the robust loss used for attenuation weights.
        robust_loss_scale: Residual (m) at which attenuation starts.

    Example:
        >>> params = SlamConfig().matching(MatchingStep.EGO_MOTION)
        >>> builder = CorrespondenceBuilder(params)
        >>> hist = RejectionHistogram()
        >>> corr = builder.build(PrimitiveKind.PLANE, points, times, pose,
        ...                      SpatialIndex(reference), hist)
    """

    def __init__(
        self,
        params: MatchingParameters,
        robust_loss: str = "huber",
        robust_loss_scale: float = 0.05,
    ):
        self.params = params
        self.robust_loss = robust_loss
        self.robust_loss_scale = robust_loss_scale

    def build(
        self,
        kind: PrimitiveKind,
        points: np.ndarray,
        times: np.ndarray,
        pose: np.ndarray,
        reference: SpatialIndex,
        histogram: RejectionHistogram,
        radius: Optional[np.ndarray] = None,
    ) -> CorrespondenceSet:
        """
        Build correspondences of one primitive kind.

        Args:
            kind: Primitive to fit on the neighborhoods.
            points: Keypoints in the current referential, shape (K, 3).
            times: Normalised acquisition time of each keypoint, shape (K,).
            pose: Current estimate mapping keypoints into the reference frame.
            reference: Index over the reference primitives.
            histogram: Histogram receiving the rejection causes.
            radius: Uncertainty radius of each keypoint, used by blobs.

        Returns:
            CorrespondenceSet of the accepted keypoints, in keypoint order.
        """
        points = np.asarray(points, dtype=np.float64).reshape(-1, 3)
        times = np.asarray(times, dtype=np.float64).reshape(len(points))
        if len(points) == 0:
            return CorrespondenceSet.empty()

        R = se3_rotation(pose)
        t = np.asarray(pose, dtype=np.float64)[3:]
        queries = points @ R.T + t

        if kind is PrimitiveKind.LINE:
            A, P, causes = self.fit_lines(queries, reference)
        elif kind is PrimitiveKind.PLANE:
            A, P, causes = self.fit_planes(queries, reference)
        elif kind is PrimitiveKind.BLOB:
            if radius is not None:
                radius = np.asarray(radius, dtype=np.float64).reshape(len(points))
            A, P, causes = self.fit_blobs(queries, reference, radius)
        else:
            raise ValueError(f"Unknown primitive kind: {kind!r}")

        histogram.add(kind, causes)
        accepted = causes < 0
        A = A[accepted]
        P = P[accepted]

        residual = _mahalanobis(A, queries[accepted] - P)
        weight = compute_robust_weights(residual / self.robust_loss_scale, self.robust_loss)

        return CorrespondenceSet(
            A=A,
            P=P,
            X=points[accepted],
            time=times[accepted],
            weight=weight,
            kind=np.full(len(P), _KIND_CODES[kind], dtype=np.int8),
        )

    def fit_lines(
        self, queries: np.ndarray, reference: SpatialIndex
    ) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        """
        Fit a line on the neighborhood of each query point.

        Ego-motion keeps the closest neighbor of each distinct scan line of
        the previous sweep. Mapping keeps the inliers of the best line
        through a pair of neighbors (sample consensus).

        Args:
            queries: Keypoints in the reference frame, shape (K, 3).
            reference: Index over the reference edge points.

        Returns:
            Tuple (A, P, causes): A (K, 3, 3), P (K, 3) and causes (K,)
            holding a RejectionCause value or -1 when accepted.
        """
        p = self.params
        K = len(queries)
        causes = np.full(K, -1, dtype=np.int64)
        A = np.zeros((K, 3, 3))
        P = np.zeros((K, 3))

        if len(reference) < p.min_line_neighbors:
            causes[:] = RejectionCause.REFERENCE_TOO_SMALL
            return A, P, causes

        k = min(p.line_nbr_neighbors, len(reference))
        dist, idx = reference.query(queries, k)
        neighbors = reference.gather(idx)
        found = np.isfinite(dist)

        if p.step is MatchingStep.EGO_MOTION:
            keep = _one_per_scan_line(idx, found, reference.laser_id)
        else:
            keep = _consensus_line_inliers(neighbors, found, p.line_max_dist_inlier)

        n_kept = keep.sum(axis=1)
        farthest = np.where(keep, dist, 0.0).max(axis=1)
        mean, eigvals, eigvecs = _masked_pca(neighbors, keep)
        direction = eigvecs[:, :, 2]

        offsets = np.where(keep[..., None], neighbors - mean[:, None, :], 0.0)
        to_line = np.linalg.norm(np.cross(offsets, direction[:, None, :]), axis=2)
        spread = np.where(keep, to_line, 0.0).max(axis=1)

        _reject(causes, n_kept < p.min_line_neighbors, RejectionCause.NOT_ENOUGH_NEIGHBORS)
        _reject(causes, farthest > p.max_neighbor_distance, RejectionCause.NEIGHBORS_TOO_FAR)
        _reject(causes, eigvals[:, 2] <= DEGENERATE_EIGENVALUE, RejectionCause.DEGENERATE_NEIGHBORHOOD)
        _reject(
            causes,
            eigvals[:, 2] < p.line_distance_factor * eigvals[:, 1],
            RejectionCause.NOT_LINE_LIKE,
        )
        _reject(causes, spread > p.max_line_distance, RejectionCause.PRIMITIVE_TOO_WIDE)

        projector = np.eye(3)[None, :, :] - np.einsum("ki,kj->kij", direction, direction)
        A = np.einsum("kji,kjl->kil", projector, projector)
        return A, mean, causes

    def fit_planes(
        self, queries: np.ndarray, reference: SpatialIndex
    ) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        """
        Fit a plane on the k nearest neighbors of each query point.

        A neighborhood is planar when λ1 > factor1·λ0 and λ2 <= factor2·λ1:
        thin in one direction and not elongated in the other two.

        Returns:
            Tuple (A, P, causes) as in ``fit_lines``.
        """
        p = self.params
        K = len(queries)
        causes = np.full(K, -1, dtype=np.int64)
        A = np.zeros((K, 3, 3))
        P = np.zeros((K, 3))

        k = p.plane_nbr_neighbors
        if len(reference) < k:
            causes[:] = RejectionCause.REFERENCE_TOO_SMALL
            return A, P, causes

        dist, idx = reference.query(queries, k)
        neighbors = reference.gather(idx)
        keep = np.ones((K, k), dtype=bool)

        mean, eigvals, eigvecs = _masked_pca(neighbors, keep)
        normal = eigvecs[:, :, 0]
        to_plane = np.abs(np.einsum("kni,ki->kn", neighbors - mean[:, None, :], normal))

        _reject(causes, dist[:, -1] > p.max_neighbor_distance, RejectionCause.NEIGHBORS_TOO_FAR)
        _reject(causes, eigvals[:, 2] <= DEGENERATE_EIGENVALUE, RejectionCause.DEGENERATE_NEIGHBORHOOD)
        _reject(
            causes,
            (p.plane_distance_factor1 * eigvals[:, 0] > eigvals[:, 1])
            | (eigvals[:, 2] > p.plane_distance_factor2 * eigvals[:, 1]),
            RejectionCause.NOT_PLANE_LIKE,
        )
        _reject(causes, to_plane.max(axis=1) > p.max_plane_distance, RejectionCause.PRIMITIVE_TOO_WIDE)

        A = np.einsum("ki,kj->kij", normal, normal)
        return A, mean, causes

    def fit_blobs(
        self,
        queries: np.ndarray,
        reference: SpatialIndex,
        radius: Optional[np.ndarray] = None,
    ) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        """
        Fit a Gaussian blob on the k nearest neighbors of each query point.

        The query must lie within ``incertitude_coef`` times the combined
        uncertainty of the blob: the largest standard deviation of the
        reference neighborhood and the radius of the keypoint itself. A is
        the regularised information matrix scaled so that its largest
        eigenvalue is 1.

        Args:
            queries: Keypoints in the reference frame, shape (K, 3).
            reference: Index over the reference blob points.
            radius: Uncertainty radius of each keypoint, shape (K,).
                Zero when None.

        Returns:
            Tuple (A, P, causes) as in ``fit_lines``.
        """
        p = self.params
        K = len(queries)
        causes = np.full(K, -1, dtype=np.int64)
        A = np.zeros((K, 3, 3))
        P = np.zeros((K, 3))

        k = p.plane_nbr_neighbors
        if len(reference) < k:
            causes[:] = RejectionCause.REFERENCE_TOO_SMALL
            return A, P, causes

        dist, idx = reference.query(queries, k)
        neighbors = reference.gather(idx)
        mean, eigvals, eigvecs = _masked_pca(neighbors, np.ones((K, k), dtype=bool))
        if radius is None:
            radius = np.zeros(K)
        gate = p.incertitude_coef * np.hypot(np.sqrt(eigvals[:, 2]), radius)

        _reject(
            causes,
            (dist[:, -1] > p.max_neighbor_distance) | (dist[:, -1] > gate),
            RejectionCause.NEIGHBORS_TOO_FAR,
        )
        _reject(causes, eigvals[:, 2] <= DEGENERATE_EIGENVALUE, RejectionCause.DEGENERATE_NEIGHBORHOOD)

        regularized = eigvals + BLOB_REGULARIZATION
        scale = regularized[:, :1] / regularized
        A = np.einsum("kij,kj,klj->kil", eigvecs, scale, eigvecs)
        return A, mean, causes


def _reject(causes: np.ndarray, mask: np.ndarray, cause: RejectionCause) -> None:
    """Record a cause for rows that are not rejected yet (first gate wins)."""
    causes[(causes < 0) & mask] = cause


def _mahalanobis(A: np.ndarray, residual: np.ndarray) -> np.ndarray:
    """Row-wise sqrt(rᵀ A r)."""
    return np.sqrt(np.maximum(np.einsum("mi,mij,mj->m", residual, A, residual), 0.0))


def _masked_pca(
    neighbors: np.ndarray, keep: np.ndarray
) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Batched PCA of neighborhoods with a per-neighbor mask.

    Args:
        neighbors: Neighbor positions, shape (K, k, 3); masked rows may be nan.
        keep: Mask of neighbors to use, shape (K, k).

    Returns:
        Tuple (mean, eigvals, eigvecs): mean (K, 3), eigenvalues in
        ascending order (K, 3) clipped at 0, eigenvectors as columns (K, 3, 3).
    """
    w = keep.astype(np.float64)
    count = np.maximum(w.sum(axis=1), 1.0)
    values = np.where(keep[..., None], neighbors, 0.0)
    mean = values.sum(axis=1) / count[:, None]
    centered = (values - mean[:, None, :]) * w[..., None]
    cov = np.einsum("kni,knj->kij", centered, centered) / count[:, None, None]
    eigvals, eigvecs = np.linalg.eigh(cov)
    return mean, np.maximum(eigvals, 0.0), eigvecs


def _one_per_scan_line(
    idx: np.ndarray, found: np.ndarray, laser_id: Optional[np.ndarray]
) -> np.ndarray:
    """Keep the closest neighbor of each distinct scan line (rows sorted by distance)."""
    if laser_id is None:
        return found.copy()
    padded = np.concatenate([laser_id, [-1]])
    lines = padded[np.minimum(idx, len(laser_id))]
    same = lines[:, :, None] == lines[:, None, :]
    earlier = np.tril(np.ones((idx.shape[1], idx.shape[1]), dtype=bool), k=-1)
    duplicate = (same & earlier[None, :, :]).any(axis=2)
    return found & ~duplicate


def _consensus_line_inliers(
    neighbors: np.ndarray, found: np.ndarray, max_dist_inlier: float
) -> np.ndarray:
    """
    Inliers of the best line through a pair of neighbors.

    Every pair (a, b) of neighbors defines a candidate line; the pair with
    the most neighbors within ``max_dist_inlier`` wins (first pair on ties).
    """
    K, k, _ = neighbors.shape
    keep = np.zeros((K, k), dtype=bool)
    if k < 2:
        return found.copy()

    first, second = np.triu_indices(k, 1)
    values = np.where(found[..., None], neighbors, 0.0)

    for start in range(0, K, _CONSENSUS_CHUNK):
        stop = min(start + _CONSENSUS_CHUNK, K)
        nb = values[start:stop]
        ok = found[start:stop]

        anchor = nb[:, first]
        direction = nb[:, second] - anchor
        length = np.linalg.norm(direction, axis=2)
        pair_ok = ok[:, first] & ok[:, second] & (length > 1e-9)
        direction = direction / np.maximum(length, 1e-9)[..., None]

        offsets = nb[:, None, :, :] - anchor[:, :, None, :]
        distance = np.linalg.norm(np.cross(offsets, direction[:, :, None, :]), axis=3)
        inliers = (distance <= max_dist_inlier) & ok[:, None, :] & pair_ok[..., None]

        best = np.argmax(inliers.sum(axis=2), axis=1)
        keep[start:stop] = inliers[np.arange(stop - start), best]

    return keep
