"""Unit tests for point-to-line / plane / blob correspondences."""

import numpy as np
import pytest

from lidar_slam.slam import (
    CorrespondenceBuilder,
    CorrespondenceSet,
    MatchingStep,
    PrimitiveKind,
    RejectionCause,
    RejectionHistogram,
    SlamConfig,
    SpatialIndex,
    se3_identity,
    se3_rotation,
)

EGO = SlamConfig().matching(MatchingStep.EGO_MOTION)
MAPPING = SlamConfig().matching(MatchingStep.MAPPING)


def line_reference(n: int = 30) -> np.ndarray:
    """Points on the x axis every 10 cm."""
    return np.column_stack([np.arange(n) * 0.1, np.zeros(n), np.zeros(n)])


def plane_reference() -> np.ndarray:
    """10 x 10 grid on the z = 0 plane, 10 cm spacing."""
    gx, gy = np.meshgrid(np.arange(10) * 0.1, np.arange(10) * 0.1)
    return np.column_stack([gx.ravel(), gy.ravel(), np.zeros(100)])


def blob_reference() -> np.ndarray:
    return np.array(
        [[0.2, 0.0, 0.0], [-0.2, 0.0, 0.0], [0.0, 0.1, 0.0], [0.0, -0.1, 0.0], [0.0, 0.0, 0.05]]
    )


class TestRejectionHistogram:
    """Counting and summarising rejection causes."""

    def test_add_ignores_accepted(self):
        hist = RejectionHistogram()
        hist.add(PrimitiveKind.PLANE, np.array([-1, 2, 2, 5, -1]))

        assert hist.count(PrimitiveKind.PLANE) == 3
        assert hist.count(PrimitiveKind.PLANE, RejectionCause.NEIGHBORS_TOO_FAR) == 2
        assert hist.count(PrimitiveKind.LINE) == 0
        assert hist.total() == 3

    def test_dominant_cause(self):
        hist = RejectionHistogram()
        assert hist.dominant_cause() is None

        hist.add(PrimitiveKind.LINE, np.array([4, 4, 4]))
        hist.add(PrimitiveKind.PLANE, np.array([5, 5]))
        assert hist.dominant_cause() is RejectionCause.NOT_LINE_LIKE
        assert hist.dominant_cause(PrimitiveKind.PLANE) is RejectionCause.NOT_PLANE_LIKE
        assert hist.dominant_cause(PrimitiveKind.BLOB) is None

    def test_as_dict(self):
        hist = RejectionHistogram()
        hist.add(PrimitiveKind.BLOB, np.array([2]))
        hist.add(PrimitiveKind.BLOB, np.array([2, 3]))

        summary = hist.as_dict()

        assert summary["blob"]["NEIGHBORS_TOO_FAR"] == 2
        assert summary["blob"]["DEGENERATE_NEIGHBORHOOD"] == 1
        assert set(summary) == {"line", "plane", "blob"}
        assert "NEIGHBORS_TOO_FAR" in repr(hist)

    def test_cause_order(self):
        assert [c.value for c in RejectionCause] == list(range(7))
        assert RejectionCause(0) is RejectionCause.REFERENCE_TOO_SMALL
        assert RejectionCause(6) is RejectionCause.PRIMITIVE_TOO_WIDE


class TestCorrespondenceSet:
    """Batch container helpers."""

    @pytest.fixture
    def corr(self):
        normal = np.array([0.0, 0.0, 1.0])
        return CorrespondenceSet(
            A=np.stack([np.outer(normal, normal), np.diag([0.0, 1.0, 1.0])]),
            P=np.zeros((2, 3)),
            X=np.array([[1.0, 2.0, 0.5], [3.0, 0.3, 0.4]]),
            time=np.array([0.1, 0.9]),
            weight=np.array([1.0, 0.25]),
            kind=np.array([1, 0], dtype=np.int8),
        )

    def test_whitening(self, corr):
        L = corr.whitening()
        LtL = np.einsum("mji,mjk->mik", L, L)
        np.testing.assert_allclose(LtL, corr.weight[:, None, None] * corr.A, atol=1e-12)

    def test_residual_norms(self, corr):
        norms = corr.residual_norms(np.eye(3), np.zeros(3))
        np.testing.assert_allclose(norms, [0.5, 0.5])

    def test_counts_and_concatenate(self, corr):
        merged = CorrespondenceSet.concatenate([corr, CorrespondenceSet.empty(), corr])

        assert len(merged) == 4
        assert merged.n_of(PrimitiveKind.PLANE) == 2
        assert merged.n_of(PrimitiveKind.LINE) == 2
        assert merged.n_of(PrimitiveKind.BLOB) == 0
        assert len(CorrespondenceSet.concatenate([])) == 0


class TestLines:
    """Point-to-line matching."""

    def test_mapping_accepts_perfect_line(self):
        builder = CorrespondenceBuilder(MAPPING)
        A, P, causes = builder.fit_lines(
            np.array([[1.55, 0.05, 0.0]]), SpatialIndex(line_reference())
        )

        assert causes.tolist() == [-1]
        assert P[0, 1] == pytest.approx(0.0, abs=1e-12)
        np.testing.assert_allclose(A[0], np.diag([0.0, 1.0, 1.0]), atol=1e-9)

    def test_consensus_drops_outlier(self):
        reference = np.vstack([line_reference(), [[1.5, 0.5, 0.0]]])
        builder = CorrespondenceBuilder(MAPPING)
        A, _, causes = builder.fit_lines(np.array([[1.5, 0.0, 0.0]]), SpatialIndex(reference))

        assert causes.tolist() == [-1]
        np.testing.assert_allclose(A[0], np.diag([0.0, 1.0, 1.0]), atol=1e-9)

    def test_ego_motion_needs_distinct_scan_lines(self):
        reference = line_reference()
        query = np.array([[1.55, 0.05, 0.0]])

        same_line = SpatialIndex(reference, laser_id=np.zeros(30, dtype=int))
        _, _, causes = CorrespondenceBuilder(EGO).fit_lines(query, same_line)
        assert causes.tolist() == [RejectionCause.NOT_ENOUGH_NEIGHBORS]

        distinct = SpatialIndex(reference, laser_id=np.arange(30))
        _, _, causes = CorrespondenceBuilder(EGO).fit_lines(query, distinct)
        assert causes.tolist() == [-1]

    def test_plane_is_not_a_line(self):
        builder = CorrespondenceBuilder(MAPPING)
        _, _, causes = builder.fit_lines(
            np.array([[0.45, 0.45, 0.0]]), SpatialIndex(plane_reference())
        )
        assert causes[0] >= 0

    def test_reference_too_small(self):
        builder = CorrespondenceBuilder(MAPPING)
        _, _, causes = builder.fit_lines(np.zeros((3, 3)), SpatialIndex(line_reference(4)))
        assert np.all(causes == RejectionCause.REFERENCE_TOO_SMALL)


class TestPlanes:
    """Point-to-plane matching."""

    def test_accepts_plane(self):
        builder = CorrespondenceBuilder(EGO)
        A, P, causes = builder.fit_planes(
            np.array([[0.45, 0.45, 0.03]]), SpatialIndex(plane_reference())
        )

        assert causes.tolist() == [-1]
        assert P[0, 2] == pytest.approx(0.0)
        np.testing.assert_allclose(A[0], np.diag([0.0, 0.0, 1.0]), atol=1e-9)

    def test_line_is_not_a_plane(self):
        builder = CorrespondenceBuilder(EGO)
        _, _, causes = builder.fit_planes(
            np.array([[1.55, 0.05, 0.0]]), SpatialIndex(line_reference())
        )
        assert causes.tolist() == [RejectionCause.NOT_PLANE_LIKE]

    def test_neighbors_too_far(self):
        builder = CorrespondenceBuilder(EGO)
        _, _, causes = builder.fit_planes(
            np.array([[0.45, 0.45, 5.0]]), SpatialIndex(plane_reference())
        )
        assert causes.tolist() == [RejectionCause.NEIGHBORS_TOO_FAR]

    def test_degenerate_neighborhood(self):
        builder = CorrespondenceBuilder(EGO)
        reference = np.tile([[1.0, 1.0, 1.0]], (5, 1))
        _, _, causes = builder.fit_planes(np.array([[1.0, 1.0, 1.1]]), SpatialIndex(reference))
        assert causes.tolist() == [RejectionCause.DEGENERATE_NEIGHBORHOOD]

    def test_reference_too_small(self):
        builder = CorrespondenceBuilder(EGO)
        _, _, causes = builder.fit_planes(np.zeros((2, 3)), SpatialIndex(plane_reference()[:4]))
        assert np.all(causes == RejectionCause.REFERENCE_TOO_SMALL)


class TestBlobs:
    """Point-to-blob matching."""

    def test_accepts_blob(self):
        builder = CorrespondenceBuilder(MAPPING)
        A, P, causes = builder.fit_blobs(np.zeros((1, 3)), SpatialIndex(blob_reference()))

        assert causes.tolist() == [-1]
        np.testing.assert_allclose(P[0], [0.0, 0.0, 0.01], atol=1e-12)
        np.testing.assert_allclose(
            A[0], np.diag([0.0005 / 0.0161, 0.0005 / 0.0041, 1.0]), atol=1e-9
        )

    def test_query_outside_blob(self):
        builder = CorrespondenceBuilder(MAPPING)
        _, _, causes = builder.fit_blobs(
            np.array([[0.0, 0.0, 1.0]]), SpatialIndex(blob_reference())
        )
        assert causes.tolist() == [RejectionCause.NEIGHBORS_TOO_FAR]

    def test_keypoint_radius_widens_gate(self):
        """0.447 m to the farthest neighbor: beyond 3 sigma of the blob alone."""
        builder = CorrespondenceBuilder(MAPPING)
        query = np.array([[0.0, 0.0, 0.4]])
        reference = SpatialIndex(blob_reference())

        _, _, sharp = builder.fit_blobs(query, reference)
        _, _, wide = builder.fit_blobs(query, reference, radius=np.array([0.2]))

        assert sharp.tolist() == [RejectionCause.NEIGHBORS_TOO_FAR]
        assert wide.tolist() == [-1]


class TestBuild:
    """Batch construction with pose, weights and histogram."""

    def test_pose_moves_queries_but_not_keypoints(self):
        builder = CorrespondenceBuilder(EGO)
        points = np.array([[-0.55, 0.45, 0.03]])
        pose = np.array([0.0, 0.0, 0.0, 1.0, 0.0, 0.0])
        hist = RejectionHistogram()

        corr = builder.build(
            PrimitiveKind.PLANE, points, np.array([0.4]), pose, SpatialIndex(plane_reference()), hist
        )

        assert len(corr) == 1
        assert hist.total() == 0
        np.testing.assert_allclose(corr.X, points)
        np.testing.assert_allclose(corr.time, [0.4])
        np.testing.assert_allclose(corr.residual_norms(se3_rotation(pose), pose[3:]), [0.03], atol=1e-9)
        assert corr.kind.tolist() == [1]

    def test_huber_weights(self):
        builder = CorrespondenceBuilder(EGO, robust_loss="huber", robust_loss_scale=0.05)
        points = np.array([[0.45, 0.45, 0.03], [0.35, 0.55, 0.1]])

        corr = builder.build(
            PrimitiveKind.PLANE,
            points,
            np.zeros(2),
            se3_identity(),
            SpatialIndex(plane_reference()),
            RejectionHistogram(),
        )

        np.testing.assert_allclose(corr.weight, [1.0, 0.5], atol=1e-9)

    def test_rejections_are_counted(self):
        hist = RejectionHistogram()
        corr = CorrespondenceBuilder(EGO).build(
            PrimitiveKind.PLANE,
            np.array([[0.45, 0.45, 0.03], [0.45, 0.45, 9.0]]),
            np.zeros(2),
            se3_identity(),
            SpatialIndex(plane_reference()),
            hist,
        )

        assert len(corr) == 1
        assert hist.count(PrimitiveKind.PLANE, RejectionCause.NEIGHBORS_TOO_FAR) == 1

    def test_empty_keypoints(self):
        corr = CorrespondenceBuilder(EGO).build(
            PrimitiveKind.LINE,
            np.zeros((0, 3)),
            np.zeros(0),
            se3_identity(),
            SpatialIndex(line_reference()),
            RejectionHistogram(),
        )
        assert len(corr) == 0

    def test_unknown_kind(self):
        with pytest.raises(ValueError):
            CorrespondenceBuilder(EGO).build(
                "plane",
                np.ones((1, 3)),
                np.zeros(1),
                se3_identity(),
                SpatialIndex(plane_reference()),
                RejectionHistogram(),
            )


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
