"""
Unit tests for the Levenberg-Marquardt solver and robust weights.

Tests cover:
    - Convergence on a 2D range positioning problem
    - Exponential curve fitting from a poor initial guess
    - Degeneracy detection (rank-deficient Jacobian)
    - Robust loss weights
"""

import unittest

import numpy as np
from numpy.testing import assert_allclose

from lidar_slam.estimators.nonlinear_least_squares import (
    ROBUST_LOSSES,
    NonlinearLSResult,
    compute_robust_weights,
    levenberg_marquardt,
)


class TestLevenbergMarquardtRangePositioning(unittest.TestCase):
    """LM on residuals eᵢ(x) = ‖x - aᵢ‖ - rᵢ."""

    def setUp(self):
        self.anchors = np.array([[0, 0], [10, 0], [0, 10], [10, 10]], dtype=float)
        self.true_pos = np.array([3.0, 4.0])
        self.ranges = np.linalg.norm(self.anchors - self.true_pos, axis=1)

        def residual(x):
            return np.linalg.norm(self.anchors - x, axis=1) - self.ranges

        def jacobian(x):
            diff = x - self.anchors
            return diff / np.linalg.norm(diff, axis=1, keepdims=True)

        self.residual = residual
        self.jacobian = jacobian

    def test_exact_measurements_convergence(self):
        result = levenberg_marquardt(self.residual, self.jacobian, np.array([5.0, 5.0]), max_iter=50)

        self.assertIsInstance(result, NonlinearLSResult)
        assert_allclose(result.x, self.true_pos, atol=1e-6)
        self.assertTrue(result.converged)
        self.assertFalse(result.degenerate)
        self.assertLess(result.cost, 1e-12)
        self.assertTrue(np.isfinite(result.condition_number))

    def test_cost_never_increases(self):
        """Only accepted steps move the estimate, so the cost is at most the initial one."""
        x0 = np.array([9.0, 1.0])
        initial_cost = 0.5 * np.sum(self.residual(x0) ** 2)

        result = levenberg_marquardt(self.residual, self.jacobian, x0, max_iter=3)
        self.assertLessEqual(result.cost, initial_cost)

    def test_invalid_x0_shape(self):
        with self.assertRaises(ValueError):
            levenberg_marquardt(self.residual, self.jacobian, np.zeros((2, 1)))

    def test_wrong_jacobian_shape(self):
        with self.assertRaises(ValueError):
            levenberg_marquardt(self.residual, lambda x: np.zeros((3, 2)), np.array([5.0, 5.0]))


class TestLevenbergMarquardtCurveFit(unittest.TestCase):
    """Fit y = a·exp(b·t)."""

    def test_poor_initial_guess(self):
        t = np.linspace(0.0, 2.0, 10)
        y = 2.0 * np.exp(0.5 * t)

        def residual(x):
            return x[0] * np.exp(x[1] * t) - y

        def jacobian(x):
            return np.column_stack([np.exp(x[1] * t), x[0] * t * np.exp(x[1] * t)])

        result = levenberg_marquardt(residual, jacobian, np.array([1.0, 0.0]), max_iter=100)
        assert_allclose(result.x, [2.0, 0.5], atol=1e-6)


class TestDegeneracy(unittest.TestCase):
    """Near-singular normal equations are reported, not solved."""

    def test_rank_deficient_jacobian_returns_initial_estimate(self):
        # Only the sum x0 + x1 is observed
        def residual(x):
            return np.array([x[0] + x[1] - 1.0, 2.0 * (x[0] + x[1]) - 2.0])

        def jacobian(x):
            return np.array([[1.0, 1.0], [2.0, 2.0]])

        x0 = np.array([0.3, 0.1])
        result = levenberg_marquardt(residual, jacobian, x0)

        self.assertTrue(result.degenerate)
        self.assertFalse(result.converged)
        self.assertEqual(result.iterations, 0)
        assert_allclose(result.x, x0)
        self.assertFalse(np.isfinite(result.condition_number) and result.condition_number < 1e8)

    def test_condition_threshold(self):
        """A well-posed but badly scaled problem is degenerate under a tight threshold."""

        def residual(x):
            return np.array([x[0] - 1.0, 1e-3 * (x[1] - 1.0)])

        def jacobian(x):
            return np.diag([1.0, 1e-3])

        loose = levenberg_marquardt(residual, jacobian, np.zeros(2), max_condition_number=1e8)
        tight = levenberg_marquardt(residual, jacobian, np.zeros(2), max_condition_number=1e5)

        self.assertFalse(loose.degenerate)
        self.assertTrue(tight.degenerate)
        assert_allclose(tight.x, np.zeros(2))


class TestRobustWeights(unittest.TestCase):
    """IRLS weights of the robust losses."""

    def test_huber(self):
        u = np.array([0.0, 0.5, 1.0, 2.0, -4.0])
        assert_allclose(compute_robust_weights(u, "huber"), [1.0, 1.0, 1.0, 0.5, 0.25])

    def test_l2_is_uniform(self):
        assert_allclose(compute_robust_weights(np.array([0.0, 10.0]), "l2"), [1.0, 1.0])

    def test_all_losses_in_unit_interval(self):
        u = np.linspace(-5.0, 5.0, 41)
        for loss in ROBUST_LOSSES:
            w = compute_robust_weights(u, loss)
            self.assertTrue(np.all(w > 0.0), loss)
            self.assertTrue(np.all(w <= 1.0), loss)

    def test_unknown_loss(self):
        with self.assertRaises(ValueError):
            compute_robust_weights(np.zeros(3), "bisquare")


if __name__ == "__main__":
    unittest.main()
