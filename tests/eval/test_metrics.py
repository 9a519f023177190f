"""Unit tests for lidar_slam.eval.metrics."""

import unittest

import numpy as np
from numpy.testing import assert_allclose

from lidar_slam.eval import (
    compute_error_stats,
    compute_position_errors,
    compute_relative_pose_errors,
)


class TestPositionErrors(unittest.TestCase):
    """Absolute position errors."""

    def test_errors_are_estimated_minus_truth(self):
        truth = np.array([[0.0, 0.0, 0.0], [1.0, 0.0, 0.0]])
        estimated = np.array([[0.1, 0.0, 0.0], [1.0, -0.2, 0.0]])

        assert_allclose(compute_position_errors(truth, estimated), [[0.1, 0, 0], [0, -0.2, 0]])

    def test_shape_mismatch(self):
        with self.assertRaises(ValueError):
            compute_position_errors(np.zeros((3, 3)), np.zeros((2, 3)))

    def test_stats(self):
        errors = np.array([[3.0, 4.0, 0.0], [0.0, 0.0, 1.0]])
        stats = compute_error_stats(errors)

        self.assertAlmostEqual(stats["mean"], 3.0)
        self.assertAlmostEqual(stats["max"], 5.0)
        self.assertAlmostEqual(stats["rmse"], np.sqrt(13.0))
        self.assertEqual(set(stats), {"mean", "median", "std", "rmse", "p90", "p95", "max"})


class TestRelativePoseErrors(unittest.TestCase):
    """Frame-to-frame drift."""

    def test_perfect_estimate(self):
        poses = np.array([[0, 0, 0.1 * k, 0.5 * k, 0.1 * k, 0] for k in range(5)], dtype=float)
        errors = compute_relative_pose_errors(poses, poses)

        self.assertEqual(errors.shape, (4, 2))
        assert_allclose(errors, 0.0, atol=1e-12)

    def test_constant_offset_has_no_drift(self):
        """A global shift of the whole trajectory does not change its steps."""
        truth = np.array([[0, 0, 0, k, 0, 0] for k in range(4)], dtype=float)
        estimated = truth + [0, 0, 0, 2.0, -1.0, 0.5]

        assert_allclose(compute_relative_pose_errors(truth, estimated), 0.0, atol=1e-12)

    def test_step_error(self):
        truth = np.array([[0, 0, 0, 0, 0, 0], [0, 0, 0, 1, 0, 0]], dtype=float)
        estimated = np.array([[0, 0, 0, 0, 0, 0], [0, 0, 0.05, 1.1, 0, 0]], dtype=float)
        errors = compute_relative_pose_errors(truth, estimated)

        self.assertAlmostEqual(errors[0, 1], 0.05)
        self.assertGreater(errors[0, 0], 0.09)

    def test_single_pose(self):
        self.assertEqual(compute_relative_pose_errors(np.zeros((1, 6)), np.zeros((1, 6))).shape, (0, 2))

    def test_invalid_shapes(self):
        with self.assertRaises(ValueError):
            compute_relative_pose_errors(np.zeros((3, 6)), np.zeros((2, 6)))
        with self.assertRaises(ValueError):
            compute_relative_pose_errors(np.zeros((3, 3)), np.zeros((3, 3)))


if __name__ == "__main__":
    unittest.main()
