import numpy as np
import pytest

from consensus_pipeline.alignment.aligner import Aligner
from consensus_pipeline.configs.config import StapleConfig
from consensus_pipeline.data.volumes import BinaryVolume
from consensus_pipeline.errors import InvalidArgumentError, ShapeMismatchError
from consensus_pipeline.evaluation.staple import ConsensusEstimator, StapleResult


class TestDegenerateInputs:
    def test_all_zero(self):
        arrays = [np.zeros((1, 3, 3), dtype=np.uint8)] * 2

        result = ConsensusEstimator(arrays).solve()

        assert result.true_segmentation.max() == 0
        assert np.all(np.isfinite(result.p))
        assert np.all(np.isfinite(result.q))
        np.testing.assert_allclose(result.q, 1.0)

    def test_all_one(self):
        arrays = [np.ones((1, 3, 3), dtype=np.uint8)] * 2

        result = ConsensusEstimator(arrays).solve()

        assert result.true_segmentation.min() == 1
        np.testing.assert_array_equal(result.p, [1.0, 1.0])
        np.testing.assert_array_equal(result.q, [1.0, 1.0])
        np.testing.assert_array_equal(result.phi, np.ones((2, 2)))

    def test_complementary_pair(self):
        a = np.array([[[0, 1], [1, 0]]], dtype=np.uint8)
        b = 1 - a

        result = ConsensusEstimator([a, b]).solve()

        np.testing.assert_allclose(result.p, [0.5, 0.5])
        np.testing.assert_allclose(result.q, [0.5, 0.5])
        np.testing.assert_allclose(result.weights, 0.5)
        # A posterior of exactly 0.5 counts as positive
        np.testing.assert_array_equal(result.true_segmentation, np.ones((1, 2, 2)))

    def test_impossible_voxels_get_zero_weight(self):
        decisions = np.array([[True, False]])
        p = np.array([1.0, 1.0])
        q = np.array([1.0, 1.0])

        weights = ConsensusEstimator._expectation(decisions, p, q, 0.5)

        np.testing.assert_array_equal(weights, [0.0])


class TestResultShape:
    def test_matches_aligned_shape(self, rng):
        volumes = [
            BinaryVolume.from_array(rng.integers(0, 2, size=(2, 3, 4)).astype(np.uint8), positions=[0.0, 1.0])
            for _ in range(2)
        ]
        aligned = Aligner().align(volumes)

        result = ConsensusEstimator(aligned).solve()

        assert result.true_segmentation.shape == aligned.shape == (2, 3, 4)
        assert result.weights.shape == (2, 3, 4)
        assert result.p.shape == (2,)
        assert result.q.shape == (2,)
        assert result.phi.shape == (2, 2)

    def test_result_is_read_only(self):
        result = ConsensusEstimator([np.ones((1, 2, 2), dtype=np.uint8)] * 2).solve()
        with pytest.raises(ValueError):
            result.p[0] = 0.5
        with pytest.raises(ValueError):
            result.true_segmentation[0, 0, 0] = 0


class TestKnownSolutions:
    def test_two_rater_fixed_point(self):
        a = np.array([1, 1, 1, 0, 0, 0, 0, 0, 0, 0], dtype=np.uint8).reshape(1, 10, 1)
        b = np.array([1, 1, 1, 1, 0, 0, 0, 0, 0, 0], dtype=np.uint8).reshape(1, 10, 1)

        result = ConsensusEstimator([a, b], max_iterations=200).solve()

        assert result.prevalence == pytest.approx(0.35)
        np.testing.assert_allclose(result.p, [6 / 7, 1.0], atol=1e-3)
        np.testing.assert_allclose(result.q, [1.0, 12 / 13], atol=1e-3)
        assert result.converged

    def test_parameters_stay_in_unit_interval(self):
        a = np.array([1, 1, 1, 0, 0, 0, 0, 0, 0, 0], dtype=np.uint8).reshape(1, 10, 1)
        b = np.array([1, 1, 1, 1, 0, 0, 0, 0, 0, 0], dtype=np.uint8).reshape(1, 10, 1)

        # Zero tolerance runs every iteration, well past W saturating at 1
        result = ConsensusEstimator([a, b], max_iterations=500, tolerance=0.0).solve()

        assert result.iterations == 500
        assert np.isfinite(result.p).all()
        assert np.isfinite(result.q).all()
        assert np.isfinite(result.weights).all()
        assert ((result.p >= 0.0) & (result.p <= 1.0)).all()
        assert ((result.q >= 0.0) & (result.q <= 1.0)).all()
        np.testing.assert_allclose(result.q, [1.0, 12 / 13], atol=1e-3)
        np.testing.assert_array_equal(result.true_segmentation[0, :3, 0], [1, 1, 1])
        assert result.true_segmentation[0, 4:, 0].sum() == 0

    def test_five_raters_specificity(self, five_rater_arrays, expert, expected_sensitivity, expected_specificity):
        result = ConsensusEstimator(five_rater_arrays, max_iterations=50).solve()

        np.testing.assert_array_equal(result.true_segmentation, expert)
        np.testing.assert_allclose(result.p, expected_sensitivity, atol=0.02)
        np.testing.assert_allclose(result.q, expected_specificity, atol=0.02)

    def test_five_raters_after_reduction(self, five_rater_arrays, expert, expected_sensitivity):
        estimator = ConsensusEstimator(five_rater_arrays, max_iterations=50).remove_empty_indices()

        result = estimator.solve()

        # Columns 6, 8, 16 and 17 are negative for every rater
        assert estimator.working_shape == (1, 1, 16)
        assert result.true_segmentation.shape == (1, 1, 20)
        np.testing.assert_array_equal(result.true_segmentation, expert)
        np.testing.assert_allclose(result.p, expected_sensitivity, atol=0.02)
        # Fewer true negatives remain, so the generous raters score lower
        np.testing.assert_allclose(result.q, [1.0, 1.0, 1 / 3, 1.0, 1 / 3], atol=0.02)

    def test_multi_slice_agreement(self):
        rows = [
            [1] * 5 + [0] * 15,
            [0] * 8 + [1] * 5 + [0] * 7,
            [0] * 15 + [1] * 5,
        ]
        array = np.array(rows, dtype=np.uint8).reshape(3, 1, 20)
        volumes = [BinaryVolume.from_array(array, positions=[0.0, 5.0, 10.0]) for _ in range(2)]
        aligned = Aligner().align(volumes)

        result = ConsensusEstimator(aligned).solve()

        assert result.true_segmentation.shape == (3, 1, 20)
        np.testing.assert_array_equal(result.true_segmentation, array)
        np.testing.assert_allclose(result.p, [1.0, 1.0], atol=1e-6)
        np.testing.assert_allclose(result.q, [1.0, 1.0], atol=1e-6)
        np.testing.assert_array_equal(aligned.arrays[0], array)

    def test_estimated_prevalence(self, five_rater_arrays, expected_sensitivity):
        result = ConsensusEstimator(five_rater_arrays, estimate_prevalence=True, max_iterations=50).solve()

        assert result.prevalence == pytest.approx(0.5, abs=0.01)
        np.testing.assert_allclose(result.p, expected_sensitivity, atol=0.02)

    def test_fixed_prevalence(self, five_rater_arrays):
        result = ConsensusEstimator(five_rater_arrays, prevalence=0.4).solve()
        assert result.prevalence == 0.4

    def test_iteration_limit(self):
        a = np.array([1, 1, 1, 0, 0, 0, 0, 0, 0, 0], dtype=np.uint8).reshape(1, 10, 1)
        b = np.array([1, 1, 1, 1, 0, 0, 0, 0, 0, 0], dtype=np.uint8).reshape(1, 10, 1)

        result = ConsensusEstimator([a, b], max_iterations=2).solve()

        assert result.iterations == 2
        assert not result.converged


class TestEstimatorApi:
    def test_accepts_aligned_volumes_and_keeps_sources(self, five_rater_volumes):
        aligned = Aligner().align(five_rater_volumes)

        result = ConsensusEstimator(aligned).solve()

        assert result.sources == ("expert", "resident", "generous", "sparse", "noisy")
        assert result.n_raters == 5

    def test_reduced_aligned_volumes_restore_full_shape(self, five_rater_volumes, expert):
        aligned = Aligner().align(five_rater_volumes).remove_empty_indices()

        result = ConsensusEstimator(aligned).solve()

        assert result.true_segmentation.shape == (1, 1, 20)
        np.testing.assert_array_equal(result.true_segmentation, expert)

    def test_from_config(self, five_rater_arrays):
        config = StapleConfig(max_iterations=7, remove_empty_indices=True)

        estimator = ConsensusEstimator.from_config(five_rater_arrays, config)

        assert estimator.max_iterations == 7
        assert estimator.working_shape == (1, 1, 16)
        assert estimator.n_voxels == 16

    def test_decisions_matrix(self, five_rater_arrays):
        decisions = ConsensusEstimator(five_rater_arrays).decisions()
        assert decisions.shape == (20, 5)
        assert decisions.dtype == bool

    def test_accessors_before_solve(self, five_rater_arrays):
        estimator = ConsensusEstimator(five_rater_arrays)
        for name in ("result", "true_segmentation", "weights", "p", "q", "phi"):
            with pytest.raises(RuntimeError):
                getattr(estimator, name)

    def test_accessors_after_solve(self, five_rater_arrays):
        estimator = ConsensusEstimator(five_rater_arrays)
        result = estimator.solve()
        assert isinstance(result, StapleResult)
        assert estimator.result is result
        np.testing.assert_array_equal(estimator.p, result.sensitivity)
        np.testing.assert_array_equal(estimator.q, result.specificity)
        np.testing.assert_array_equal(estimator.phi[0], result.p)


class TestConstructionErrors:
    def test_single_rater(self):
        with pytest.raises(InvalidArgumentError):
            ConsensusEstimator([np.zeros((1, 2, 2), dtype=np.uint8)])

    def test_wrong_type(self):
        with pytest.raises(InvalidArgumentError):
            ConsensusEstimator(np.zeros((2, 1, 2, 2), dtype=np.uint8))

    def test_unequal_shapes(self):
        with pytest.raises(ShapeMismatchError):
            ConsensusEstimator([np.zeros((1, 3, 3), dtype=np.uint8), np.zeros((1, 3, 4), dtype=np.uint8)])

    def test_same_size_different_shape(self):
        with pytest.raises(ShapeMismatchError):
            ConsensusEstimator([np.zeros((1, 4, 3), dtype=np.uint8), np.zeros((1, 3, 4), dtype=np.uint8)])

    @pytest.mark.parametrize(
        "array",
        [
            np.full((1, 2, 2), 2, dtype=np.uint8),
            np.full((1, 2, 2), 0.5),
        ],
    )
    def test_non_binary(self, array):
        with pytest.raises(InvalidArgumentError):
            ConsensusEstimator([np.zeros((1, 2, 2), dtype=np.uint8), array])

    def test_empty_arrays(self):
        with pytest.raises(InvalidArgumentError):
            ConsensusEstimator([np.zeros((0, 2, 2), dtype=np.uint8)] * 2)

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"max_iterations": 0},
            {"max_iterations": 2.5},
            {"tolerance": -1.0},
            {"tolerance": None},
            {"tolerance": "1e-6"},
            {"initial_sensitivity": None},
            {"prevalence": "0.3"},
            {"initial_sensitivity": 1.0},
            {"initial_specificity": 0.0},
            {"prevalence": 1.5},
        ],
    )
    def test_invalid_options(self, kwargs):
        with pytest.raises(InvalidArgumentError):
            ConsensusEstimator([np.zeros((1, 2, 2), dtype=np.uint8)] * 2, **kwargs)


class TestAlignedConsensusLocation:
    """Voxel locations must survive align -> reduce -> solve -> restore."""

    @staticmethod
    def rater(array, origin, source):
        return BinaryVolume.from_array(
            np.asarray(array, dtype=np.uint8), positions=[0.0, 1.0], origin=origin, source=source
        )

    @pytest.fixture
    def offset_raters(self):
        # 3x4 slices; b sits one column right, c one row down
        a = np.zeros((2, 3, 4), dtype=np.uint8)
        a[0, 1, 1] = a[1, 2, 3] = 1
        a[0, 0, 0] = 1

        b = np.zeros((2, 3, 4), dtype=np.uint8)
        b[0, 1, 0] = b[1, 2, 2] = 1
        b[1, 2, 3] = 1

        c = np.zeros((2, 3, 4), dtype=np.uint8)
        c[0, 0, 1] = c[1, 1, 3] = 1

        return [
            self.rater(a, (0.0, 0.0, 0.0), "a"),
            self.rater(b, (1.0, 0.0, 0.0), "b"),
            self.rater(c, (0.0, 1.0, 0.0), "c"),
        ]

    def test_majority_voxels_land_on_master_grid(self, offset_raters):
        aligned = Aligner().align(offset_raters)
        reduced = aligned.remove_empty_indices()

        result = ConsensusEstimator(reduced, max_iterations=20).solve()

        assert aligned.shape == (2, 4, 5)
        # Row 3 and column 2 are empty for every rater
        assert reduced.shape == (2, 3, 4)
        assert result.true_segmentation.shape == (2, 4, 5)
        np.testing.assert_array_equal(np.argwhere(result.true_segmentation), [[0, 1, 1], [1, 2, 3]])
        assert result.weights[0, 1, 1] > 0.99
        assert result.weights[1, 2, 3] > 0.99
        assert result.weights[0, 0, 0] < 0.01
        assert result.weights[1, 2, 4] < 0.01

    def test_unreduced_run_agrees(self, offset_raters):
        aligned = Aligner().align(offset_raters)

        result = ConsensusEstimator(aligned, max_iterations=20).solve()

        np.testing.assert_array_equal(np.argwhere(result.true_segmentation), [[0, 1, 1], [1, 2, 3]])
        np.testing.assert_allclose(result.p, [1.0, 1.0, 1.0], atol=1e-3)
        assert result.q[2] == pytest.approx(1.0, abs=1e-3)
        assert result.q[0] < 1.0
        assert result.q[1] < 1.0
