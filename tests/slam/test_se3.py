"""Unit tests for lidar_slam.slam.se3 (SE(3) operations on 6-vector poses)."""

import numpy as np
import pytest

from lidar_slam.slam import (
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

POSES = [
    np.array([0.0, 0.0, 0.0, 0.0, 0.0, 0.0]),
    np.array([0.0, 0.0, np.pi / 2, 1.0, 0.0, 0.0]),
    np.array([0.1, -0.2, 0.3, 1.0, 2.0, -0.5]),
    np.array([-0.4, 0.3, -2.5, -3.0, 0.2, 4.0]),
]


class TestValidatePose:
    """Test suite for validate_pose."""

    def test_accepts_lists(self):
        pose = validate_pose([0, 0, 0, 1, 2, 3])
        assert pose.dtype == np.float64
        assert pose.shape == (6,)

    def test_wrong_shape(self):
        with pytest.raises(ValueError, match="shape"):
            validate_pose(np.zeros(3))

    def test_not_finite(self):
        with pytest.raises(ValueError, match="finite"):
            validate_pose(np.array([0, 0, 0, np.nan, 0, 0]))


class TestCompose:
    """Test suite for se3_compose."""

    def test_identity(self):
        for pose in POSES:
            np.testing.assert_allclose(se3_compose(se3_identity(), pose), pose, atol=1e-12)
            np.testing.assert_allclose(se3_compose(pose, se3_identity()), pose, atol=1e-12)

    def test_rotation_then_translation(self):
        p1 = np.array([0, 0, np.pi / 2, 1.0, 0.0, 0.0])
        p2 = np.array([0, 0, 0, 1.0, 0.0, 0.0])

        np.testing.assert_allclose(
            se3_compose(p1, p2), [0, 0, np.pi / 2, 1.0, 1.0, 0.0], atol=1e-12
        )

    def test_matches_homogeneous_matrices(self):
        p1, p2 = POSES[2], POSES[3]
        expected = se3_to_matrix(p1) @ se3_to_matrix(p2)

        np.testing.assert_allclose(se3_to_matrix(se3_compose(p1, p2)), expected, atol=1e-12)

    def test_apply_consistency(self):
        """Applying a composition equals applying both poses in turn."""
        points = np.array([[1.0, 2.0, 3.0], [-4.0, 0.5, 0.0]])
        p1, p2 = POSES[2], POSES[3]

        np.testing.assert_allclose(
            se3_apply(se3_compose(p1, p2), points),
            se3_apply(p1, se3_apply(p2, points)),
            atol=1e-12,
        )


class TestInverseAndRelative:
    """Test suite for se3_inverse and se3_relative."""

    @pytest.mark.parametrize("pose", POSES)
    def test_inverse_cancels(self, pose):
        np.testing.assert_allclose(
            se3_to_matrix(se3_compose(pose, se3_inverse(pose))), np.eye(4), atol=1e-12
        )

    def test_relative_recovers_increment(self):
        """previous ⊕ relative(previous, current) == current."""
        previous, current = POSES[2], POSES[3]
        relative = se3_relative(previous, current)

        np.testing.assert_allclose(
            se3_to_matrix(se3_compose(previous, relative)), se3_to_matrix(current), atol=1e-12
        )


class TestApply:
    """Test suite for se3_apply."""

    def test_single_point(self):
        pose = np.array([0, 0, np.pi / 2, 1.0, 0.0, 0.0])
        np.testing.assert_allclose(se3_apply(pose, [1.0, 0.0, 0.0]), [1.0, 1.0, 0.0], atol=1e-12)

    def test_shape_preserved(self):
        assert se3_apply(POSES[2], np.zeros((5, 3))).shape == (5, 3)
        assert se3_apply(POSES[2], np.zeros(3)).shape == (3,)

    def test_invalid_points(self):
        with pytest.raises(ValueError):
            se3_apply(POSES[2], np.zeros((5, 2)))


class TestConversions:
    """Test suite for matrix conversions and distances."""

    @pytest.mark.parametrize("pose", POSES)
    def test_matrix_round_trip(self, pose):
        np.testing.assert_allclose(se3_from_matrix(se3_to_matrix(pose)), pose, atol=1e-12)

    def test_from_rotation_translation(self):
        pose = POSES[2]
        rebuilt = se3_from_rotation_translation(se3_rotation(pose), pose[3:])
        np.testing.assert_allclose(rebuilt, pose, atol=1e-12)

    def test_invalid_matrix(self):
        with pytest.raises(ValueError):
            se3_from_matrix(np.eye(3))

    def test_distance(self):
        p1 = se3_identity()
        p2 = np.array([0.0, 0.0, 0.25, 3.0, 4.0, 0.0])

        translation, rotation = se3_distance(p1, p2)
        assert translation == pytest.approx(5.0)
        assert rotation == pytest.approx(0.25)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
