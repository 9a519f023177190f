"""Unit tests for SpatialIndex and voxel_downsample."""

import numpy as np
import pytest

from lidar_slam.slam import SpatialIndex, voxel_downsample


class TestSpatialIndex:
    """Test suite for k-nearest-neighbor queries."""

    @pytest.fixture
    def reference(self):
        return np.array(
            [[0.0, 0.0, 0.0], [1.0, 0.0, 0.0], [2.0, 0.0, 0.0], [5.0, 5.0, 5.0]]
        )

    def test_sorted_by_distance(self, reference):
        index = SpatialIndex(reference)
        dist, idx = index.query(np.array([[0.9, 0.0, 0.0]]), k=3)

        assert idx.tolist() == [[1, 0, 2]]
        np.testing.assert_allclose(dist, [[0.1, 0.9, 1.1]])

    def test_k_equal_one_keeps_2d_shape(self, reference):
        dist, idx = SpatialIndex(reference).query(np.zeros((2, 3)), k=1)
        assert dist.shape == (2, 1)
        assert idx.shape == (2, 1)

    def test_padding_when_reference_too_small(self, reference):
        index = SpatialIndex(reference)
        dist, idx = index.query(np.zeros((1, 3)), k=6)

        assert np.all(np.isinf(dist[0, 4:]))
        assert np.all(idx[0, 4:] == len(index))
        gathered = index.gather(idx)
        assert gathered.shape == (1, 6, 3)
        assert np.all(np.isnan(gathered[0, 4:]))
        np.testing.assert_allclose(gathered[0, 0], [0.0, 0.0, 0.0])

    def test_empty_reference(self):
        index = SpatialIndex(np.zeros((0, 3)))
        dist, idx = index.query(np.ones((3, 3)), k=2)

        assert len(index) == 0
        assert np.all(np.isinf(dist))
        assert np.all(idx == 0)

    def test_laser_id_travels_with_points(self, reference):
        index = SpatialIndex(reference, laser_id=np.array([3, 3, 4, 5]))
        assert index.laser_id.tolist() == [3, 3, 4, 5]

    def test_invalid_inputs(self, reference):
        with pytest.raises(ValueError):
            SpatialIndex(np.zeros((4, 2)))
        with pytest.raises(ValueError):
            SpatialIndex(reference, laser_id=np.zeros(3, dtype=int))
        with pytest.raises(ValueError):
            SpatialIndex(reference).query(np.zeros((1, 3)), k=0)
        with pytest.raises(ValueError):
            SpatialIndex(reference).query(np.zeros(3), k=1)


class TestVoxelDownsample:
    """Test suite for centroid voxel downsampling."""

    def test_centroids(self):
        points = np.array([[0.1, 0.1, 0.1], [0.3, 0.3, 0.3], [1.5, 0.0, 0.0]])
        down = voxel_downsample(points, 1.0)

        np.testing.assert_allclose(down, [[0.2, 0.2, 0.2], [1.5, 0.0, 0.0]])

    def test_values_averaged(self):
        points = np.array([[0.1, 0.1, 0.1], [0.3, 0.3, 0.3], [1.5, 0.0, 0.0]])
        down, times = voxel_downsample(points, 1.0, values=np.array([0.0, 1.0, 0.25]))

        assert len(down) == 2
        np.testing.assert_allclose(times, [0.5, 0.25])

    def test_deterministic_order(self):
        rng = np.random.default_rng(0)
        points = rng.uniform(-5, 5, size=(500, 3))

        first = voxel_downsample(points, 0.7)
        second = voxel_downsample(points[::-1].copy(), 0.7)
        np.testing.assert_allclose(first, second, atol=1e-12)

    def test_empty(self):
        assert voxel_downsample(np.zeros((0, 3)), 0.5).shape == (0, 3)

    def test_invalid_voxel_size(self):
        with pytest.raises(ValueError):
            voxel_downsample(np.zeros((3, 3)), 0.0)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
