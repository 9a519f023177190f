"""Keypoint extraction from scan-line geometry.

Every scan line of a sweep is walked in acquisition order. For each point
x_i with a full neighborhood of N points on each side, two measures are
computed:

    sin_angle[i]  sine of the angle between the left direction
                  x_i - mean(x_{i-N..i-1}) and the right direction
                  mean(x_{i+1..i+N}) - x_i. Close to 0 on a straight
                  (planar) run, close to 1 on a corner.
    depth_gap[i]  depth jump of the occlusion border next to x_i when x_i
                  sits on its near side, 0 otherwise.

A point is invalid when it is closer than ``min_distance_to_sensor``, lacks
a full neighborhood, lies on a surface nearly tangent to its beam, or sits
on the occluded (far) side of a depth discontinuity. Valid points are then
ranked: the sharpest become edges, the smoothest become planars, each
selection suppressing its ±N neighbors so that keypoints spread along the
line. Edges and planars of a line never overlap.
"""

import logging
from dataclasses import dataclass
from typing import List

import numpy as np

from .config import SlamConfig
from .types import Frame, FrameKeypoints, KeypointLabel, KeypointSet

logger = logging.getLogger(__name__)

# A depth jump is an occlusion when the 3D gap is this many times the
# spacing expected from the azimuth resolution
OCCLUSION_SPACING_FACTOR = 10.0

_EPS = 1e-12


@dataclass
class ScanLineFeatures:
    """Classification of the points of one scan line (local indices)."""

    valid: np.ndarray
    sin_angle: np.ndarray
    depth_gap: np.ndarray
    edges: np.ndarray
    planars: np.ndarray
    dense_planars: np.ndarray
    blobs: np.ndarray
    blob_radius: np.ndarray


class KeypointExtractor:
    """
    Extract edge, planar and blob keypoints from a Frame.

    The extractor holds no state between frames; two calls on the same
    Frame return identical keypoints.

    Attributes:
        config: Pipeline configuration (extraction parameters).

    Example:
        >>> extractor = KeypointExtractor(SlamConfig())
        >>> keypoints = extractor.extract(frame)
        >>> print(keypoints.counts())
    """

    def __init__(self, config: SlamConfig):
        self.config = config

    def extract(self, frame: Frame) -> FrameKeypoints:
        """
        Classify every point of a frame and select keypoints.

        Args:
            frame: Sweep with points ordered by acquisition inside each line.

        Returns:
            FrameKeypoints holding the keypoint sets and the per-point
            labels, sharpness and depth gaps.
        """
        n = len(frame)
        if n == 0:
            return FrameKeypoints.empty(0)

        labels = np.full(n, KeypointLabel.UNLABELED, dtype=np.int8)
        sin_angle = np.zeros(n)
        depth_gap = np.zeros(n)
        selected = {"edges": [], "planars": [], "dense_planars": [], "blobs": []}
        blob_radius: List[np.ndarray] = []

        for line in frame.scan_lines():
            features = self.process_scan_line(frame.points[line])

            sin_angle[line] = features.sin_angle
            depth_gap[line] = features.depth_gap
            labels[line[~features.valid]] = KeypointLabel.INVALID
            labels[line[features.edges]] = KeypointLabel.EDGE
            labels[line[features.planars]] = KeypointLabel.PLANAR

            selected["edges"].append(line[features.edges])
            selected["planars"].append(line[features.planars])
            selected["dense_planars"].append(line[features.dense_planars])
            selected["blobs"].append(line[features.blobs])
            blob_radius.append(features.blob_radius)

        relative_time = frame.relative_time()

        def make_set(indices: List[np.ndarray], radius=None) -> KeypointSet:
            index = np.concatenate(indices).astype(np.int64) if indices else np.zeros(0, np.int64)
            return KeypointSet(
                points=frame.points[index],
                laser_id=frame.laser_id[index],
                time=relative_time[index],
                index=index,
                radius=np.concatenate(radius) if radius else None,
            )

        keypoints = FrameKeypoints(
            edges=make_set(selected["edges"]),
            planars=make_set(selected["planars"]),
            blobs=make_set(selected["blobs"], blob_radius),
            dense_planars=make_set(selected["dense_planars"]),
            labels=labels,
            sin_angle=sin_angle,
            depth_gap=depth_gap,
        )
        logger.debug(
            "Extracted %d edges, %d planars, %d blobs from %d points",
            len(keypoints.edges),
            len(keypoints.planars),
            len(keypoints.blobs),
            n,
        )
        return keypoints

    def process_scan_line(self, points: np.ndarray) -> ScanLineFeatures:
        """
        Classify the points of a single scan line.

        Args:
            points: Points of one laser in acquisition order, shape (n, 3).

        Returns:
            ScanLineFeatures with validity, measures and selected indices
            (indices are local to ``points``).
        """
        cfg = self.config
        N = cfg.neighbor_width
        n = len(points)

        valid = np.zeros(n, dtype=bool)
        sin_angle = np.zeros(n)
        depth_gap = np.zeros(n)
        empty = np.zeros(0, dtype=np.int64)

        if n < 2 * N + 1:
            return ScanLineFeatures(
                valid, sin_angle, depth_gap, empty, empty, empty, empty, np.zeros(0)
            )

        depth = np.linalg.norm(points, axis=1)
        valid[N:n - N] = True
        valid &= depth >= cfg.min_distance_to_sensor

        center = np.arange(N, n - N)
        sin_angle[center] = _sharpness(points, N)

        # Beam tangency, measured with the shorter one-sided step so that a
        # point on an occlusion border is judged on its own surface
        step_left = points[center] - points[center - 1]
        step_right = points[center + 1] - points[center]
        use_left = np.linalg.norm(step_left, axis=1) <= np.linalg.norm(step_right, axis=1)
        step = np.where(use_left[:, None], step_left, step_right)
        beam_sin = _sin_between(points[center], step)
        valid[center[beam_sin < cfg.min_beam_surface_sin_angle]] = False

        # Occlusions: invalidate N points on the far side, mark the near side
        jump = depth[1:] - depth[:-1]
        gap = np.linalg.norm(points[1:] - points[:-1], axis=1)
        expected = np.minimum(depth[1:], depth[:-1]) * cfg.angle_resolution
        discontinuities = np.flatnonzero(
            (np.abs(jump) > cfg.edge_depth_gap_threshold)
            & (gap > OCCLUSION_SPACING_FACTOR * expected)
        )
        for j in discontinuities:
            if jump[j] > 0:
                valid[j + 1:j + 1 + N] = False
                depth_gap[j] = max(depth_gap[j], jump[j])
            else:
                valid[max(0, j + 1 - N):j + 1] = False
                depth_gap[j + 1] = max(depth_gap[j + 1], -jump[j])

        # Edges: sharpest first, ties broken by the occlusion depth gap
        edge_candidates = np.flatnonzero(
            valid
            & (
                (sin_angle > cfg.edge_sin_angle_threshold)
                | (depth_gap > cfg.edge_depth_gap_threshold)
            )
        )
        order = np.lexsort((-depth_gap[edge_candidates], -sin_angle[edge_candidates]))
        edges = _select_spread(
            edge_candidates[order], np.zeros(n, dtype=bool), cfg.max_edge_per_scan_line, N
        )
        is_edge = np.zeros(n, dtype=bool)
        is_edge[edges] = True

        # Planars: smoothest first, never an edge
        dense_planars = np.flatnonzero(
            valid & ~is_edge & (sin_angle < cfg.plane_sin_angle_threshold)
        )
        order = np.argsort(sin_angle[dense_planars], kind="stable")
        planars = _select_spread(
            dense_planars[order], is_edge.copy(), cfg.max_planar_per_scan_line, N
        )

        blobs, blob_radius = empty, np.zeros(0)
        if cfg.use_blob:
            blobs, blob_radius = self._select_blobs(points, valid, N)

        return ScanLineFeatures(
            valid=valid,
            sin_angle=sin_angle,
            depth_gap=depth_gap,
            edges=edges,
            planars=planars,
            dense_planars=dense_planars,
            blobs=blobs,
            blob_radius=blob_radius,
        )

    def _select_blobs(self, points: np.ndarray, valid: np.ndarray, N: int):
        """Points whose (2N+1)-window is close to isotropic."""
        n = len(points)
        windows = np.lib.stride_tricks.sliding_window_view(points, 2 * N + 1, axis=0)
        windows = np.swapaxes(windows, 1, 2)  # (n - 2N, 2N + 1, 3)
        centered = windows - windows.mean(axis=1, keepdims=True)
        cov = np.einsum("nki,nkj->nij", centered, centered) / (2 * N + 1)
        eigvals = np.linalg.eigvalsh(cov)

        sphericity = np.where(
            eigvals[:, 2] > _EPS, eigvals[:, 0] / np.maximum(eigvals[:, 2], _EPS), 0.0
        )
        center = np.arange(N, n - N)
        keep = valid[center] & (sphericity > self.config.sphericity_threshold)
        radius = np.sqrt(np.maximum(eigvals[keep, 2], 0.0))
        return center[keep], radius


def _sharpness(points: np.ndarray, N: int) -> np.ndarray:
    """sin_angle of points N..n-N-1 of a scan line."""
    n = len(points)
    csum = np.vstack([np.zeros((1, 3)), np.cumsum(points, axis=0)])
    center = np.arange(N, n - N)
    left_mean = (csum[center] - csum[center - N]) / N
    right_mean = (csum[center + N + 1] - csum[center + 1]) / N
    u_left = points[center] - left_mean
    u_right = right_mean - points[center]
    return _sin_between(u_left, u_right)


def _sin_between(a: np.ndarray, b: np.ndarray) -> np.ndarray:
    """Row-wise sine of the angle between two sets of vectors (0 if degenerate)."""
    norms = np.linalg.norm(a, axis=1) * np.linalg.norm(b, axis=1)
    cross = np.linalg.norm(np.cross(a, b), axis=1)
    return np.where(norms > _EPS, cross / np.maximum(norms, _EPS), 0.0)


def _select_spread(
    ranked: np.ndarray,
    blocked: np.ndarray,
    max_count: int,
    half_width: int,
) -> np.ndarray:
    """Greedy pick in rank order, each pick blocking its ±half_width neighbors."""
    picked = []
    for i in ranked:
        if len(picked) >= max_count:
            break
        if blocked[i]:
            continue
        picked.append(i)
        blocked[max(0, i - half_width):i + half_width + 1] = True
    return np.asarray(picked, dtype=np.int64)
