"""Unit tests for KeypointExtractor (edge / planar / blob classification).

Scan lines are built by intersecting the rays of one laser with simple
geometry: a flat wall, a concave corner and a wall partly hidden by a
closer panel (occlusion).
"""

import numpy as np
import pytest

from lidar_slam.slam import (
    Frame,
    KeypointExtractor,
    KeypointLabel,
    SlamConfig,
    create_room_scene,
    generate_sweep,
)

AZIMUTH_STEP = 0.00698132


def azimuths(half_width: float) -> np.ndarray:
    return np.arange(-half_width, half_width + 1e-9, AZIMUTH_STEP)


def flat_wall_line(distance: float = 10.0) -> np.ndarray:
    """Horizontal scan line of the wall x = distance."""
    a = azimuths(0.4)
    r = distance / np.cos(a)
    return np.column_stack([r * np.cos(a), r * np.sin(a), np.zeros_like(a)])


def corner_line() -> np.ndarray:
    """Scan line inside the corner {x + y <= 10, x - y <= 10} (apex at a = 0)."""
    a = azimuths(0.4)
    r = np.minimum(10.0 / (np.cos(a) + np.sin(a)), 10.0 / (np.cos(a) - np.sin(a)))
    return np.column_stack([r * np.cos(a), r * np.sin(a), np.zeros_like(a)])


def occluded_line():
    """Wall x = 10 partly hidden by a panel x = 5, |y| < 0.5."""
    a = azimuths(0.4)
    foreground = np.abs(5.0 * np.tan(a)) < 0.5
    r = np.where(foreground, 5.0 / np.cos(a), 10.0 / np.cos(a))
    points = np.column_stack([r * np.cos(a), r * np.sin(a), np.zeros_like(a)])
    return points, foreground


class TestScanLineMeasures:
    """Sharpness and validity on elementary geometry."""

    @pytest.fixture
    def extractor(self):
        return KeypointExtractor(SlamConfig())

    def test_flat_wall_is_planar(self, extractor):
        features = extractor.process_scan_line(flat_wall_line())
        N = extractor.config.neighbor_width

        assert np.all(features.sin_angle[N:-N] < 1e-6)
        assert len(features.edges) == 0
        assert len(features.planars) > 0
        assert not np.any(features.valid[:N])
        assert not np.any(features.valid[-N:])

    def test_planars_spread_along_line(self, extractor):
        features = extractor.process_scan_line(flat_wall_line())
        gaps = np.diff(np.sort(features.planars))

        assert np.all(gaps > extractor.config.neighbor_width)

    def test_corner_is_edge(self, extractor):
        points = corner_line()
        apex = int(np.argmax(np.linalg.norm(points, axis=1)))
        features = extractor.process_scan_line(points)

        assert len(features.edges) >= 1
        assert np.min(np.abs(features.edges - apex)) <= 1
        assert features.sin_angle[apex] > extractor.config.edge_sin_angle_threshold

    def test_edges_and_planars_disjoint(self, extractor):
        features = extractor.process_scan_line(corner_line())
        assert len(np.intersect1d(features.edges, features.planars)) == 0
        assert len(np.intersect1d(features.edges, features.dense_planars)) == 0

    def test_occlusion(self, extractor):
        points, foreground = occluded_line()
        features = extractor.process_scan_line(points)
        N = extractor.config.neighbor_width

        first = int(np.flatnonzero(foreground)[0])
        last = int(np.flatnonzero(foreground)[-1])

        # Occluded (far) side of each border is invalid
        assert not np.any(features.valid[first - N:first])
        assert not np.any(features.valid[last + 1:last + 1 + N])
        # Near side carries the depth jump
        assert features.depth_gap[first] > 4.9
        assert features.depth_gap[last] > 4.9
        # Keypoints are found on the panel next to both borders
        assert np.any(np.abs(features.edges - first) <= N)
        assert np.any(np.abs(features.edges - last) <= N)

    def test_too_close_points_invalid(self, extractor):
        features = extractor.process_scan_line(flat_wall_line(distance=2.0))
        assert not np.any(features.valid)
        assert len(features.edges) == 0
        assert len(features.planars) == 0

    def test_short_line(self, extractor):
        features = extractor.process_scan_line(flat_wall_line()[:5])
        assert not np.any(features.valid)

    def test_grazing_beam_invalid(self, extractor):
        """Wall y = 1 seen along the x axis: beam and surface are nearly parallel."""
        a = np.arange(0.06, 0.5, AZIMUTH_STEP)
        r = 1.0 / np.sin(a)
        points = np.column_stack([r * np.cos(a), r * np.sin(a), np.zeros_like(a)])

        features = extractor.process_scan_line(points)

        # Beam-surface sine equals sin(a) on this wall
        assert not np.any(features.valid[a < 0.15])
        assert np.any(features.valid[(a > 0.2) & (a < 0.3)])


class TestExtract:
    """Frame-level extraction."""

    @pytest.fixture(scope="class")
    def frame(self):
        return generate_sweep(create_room_scene(), np.zeros(6), azimuth_step_deg=0.8)

    def test_labels_match_sets(self, frame):
        keypoints = KeypointExtractor(SlamConfig()).extract(frame)

        assert np.all(keypoints.labels[keypoints.edges.index] == KeypointLabel.EDGE)
        assert np.all(keypoints.labels[keypoints.planars.index] == KeypointLabel.PLANAR)
        np.testing.assert_allclose(keypoints.edges.points, frame.points[keypoints.edges.index])
        assert keypoints.counts()["edges"] == len(keypoints.edges)
        assert len(np.intersect1d(keypoints.edges.index, keypoints.planars.index)) == 0

    def test_keypoint_times_are_normalised(self, frame):
        keypoints = KeypointExtractor(SlamConfig()).extract(frame)
        times = keypoints.planars.time

        assert np.all((times >= 0.0) & (times <= 1.0))
        np.testing.assert_allclose(
            times, frame.time[keypoints.planars.index] / frame.sweep_duration
        )

    def test_deterministic(self, frame):
        extractor = KeypointExtractor(SlamConfig())
        first = extractor.extract(frame)
        second = extractor.extract(frame)

        np.testing.assert_array_equal(first.edges.index, second.edges.index)
        np.testing.assert_array_equal(first.planars.index, second.planars.index)
        np.testing.assert_array_equal(first.labels, second.labels)

    def test_pillars_give_edges(self, frame):
        keypoints = KeypointExtractor(SlamConfig()).extract(frame)
        assert len(keypoints.edges) > 16
        assert len(keypoints.planars) > 200

    def test_per_line_caps(self, frame):
        config = SlamConfig(max_edge_per_scan_line=2, max_planar_per_scan_line=3)
        keypoints = KeypointExtractor(config).extract(frame)

        assert np.all(np.bincount(keypoints.edges.laser_id) <= 2)
        assert np.all(np.bincount(keypoints.planars.laser_id) <= 3)
        assert len(keypoints.dense_planars) > len(keypoints.planars)

    def test_all_points_too_close(self):
        points = np.tile(flat_wall_line(distance=2.0), (4, 1))
        laser_id = np.repeat(np.arange(4), len(points) // 4)
        keypoints = KeypointExtractor(SlamConfig()).extract(Frame(points=points, laser_id=laser_id))

        assert keypoints.counts() == {"edges": 0, "planars": 0, "blobs": 0, "dense_planars": 0}
        assert not np.any(keypoints.valid)

    def test_empty_frame(self):
        keypoints = KeypointExtractor(SlamConfig()).extract(
            Frame(points=np.zeros((0, 3)), laser_id=np.zeros(0, dtype=int))
        )
        assert len(keypoints.edges) == 0
        assert len(keypoints.labels) == 0

    def test_blobs_only_when_enabled(self, frame):
        assert len(KeypointExtractor(SlamConfig()).extract(frame).blobs) == 0

        config = SlamConfig(use_blob=True, sphericity_threshold=0.0)
        keypoints = KeypointExtractor(config).extract(frame)
        assert len(keypoints.blobs) > 0
        assert np.all(keypoints.blobs.radius >= 0.0)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
