"""
Tests for length-aware count normalization.
"""

import numpy as np
import pytest

from hostde.errors import InvalidLengthData
from hostde.stats.normalization import (
    CountNormalizer,
    NormalizationMethod,
    calc_norm_factors,
    length_factors,
)


@pytest.fixture
def counts_and_lengths():
    rng = np.random.RandomState(7)
    counts = rng.poisson(rng.uniform(200, 3000, size=(2000, 1)), size=(2000, 6)).astype(float)
    lengths = rng.uniform(800, 2500, size=(2000, 1)) * rng.uniform(0.9, 1.1, size=(2000, 6))
    return counts, lengths


class TestLengthFactors:

    def test_row_geometric_mean_is_one(self, counts_and_lengths):
        _, lengths = counts_and_lengths
        factors = length_factors(lengths)
        assert np.exp(np.log(factors).mean(axis=1)) == pytest.approx(np.ones(lengths.shape[0]))

    def test_constant_lengths_give_unit_factors(self):
        factors = length_factors(np.full((3, 4), 1234.0))
        np.testing.assert_allclose(factors, 1.0)

    def test_gene_without_positive_length_raises(self):
        lengths = np.array([[1000.0, 1100.0], [0.0, np.nan]])
        with pytest.raises(InvalidLengthData, match="no positive effective length"):
            length_factors(lengths)

    def test_isolated_zero_length_replaced(self):
        lengths = np.array([[1000.0, 0.0, 4000.0]])
        factors = length_factors(lengths)
        assert np.all(np.isfinite(factors))
        assert factors[0, 1] == pytest.approx(1.0)


class TestNormFactors:

    @pytest.mark.parametrize("method", ["TMM", "RLE", "upperquartile"])
    def test_geometric_mean_one(self, counts_and_lengths, method):
        counts, _ = counts_and_lengths
        factors = calc_norm_factors(counts, method)
        assert np.exp(np.mean(np.log(factors))) == pytest.approx(1.0)

    def test_none_is_all_ones(self, counts_and_lengths):
        counts, _ = counts_and_lengths
        np.testing.assert_array_equal(calc_norm_factors(counts, "none"), np.ones(6))

    def test_tmm_detects_composition_shift(self, counts_and_lengths):
        counts, _ = counts_and_lengths
        shifted = counts.copy()
        # A handful of genes soak up reads in the last sample, inflating its
        # library size; TMM scales it back down
        shifted[:50, -1] *= 20
        factors = calc_norm_factors(shifted, NormalizationMethod.TMM)
        assert factors[-1] < 0.8 * np.median(factors[:-1])

    def test_unknown_method_raises(self, counts_and_lengths):
        counts, _ = counts_and_lengths
        with pytest.raises(ValueError):
            calc_norm_factors(counts, "quantile")


class TestCountNormalizer:

    def test_scaling_gene_preserves_between_sample_differences(self, counts_and_lengths):
        counts, lengths = counts_and_lengths
        normalizer = CountNormalizer()
        before = normalizer.normalize(counts, lengths).log_expression

        scaled = counts.copy()
        scaled[17] *= 4.0
        after = normalizer.normalize(scaled, lengths).log_expression

        diff_before = before[17, :, None] - before[17, None, :]
        diff_after = after[17, :, None] - after[17, None, :]
        np.testing.assert_allclose(diff_after, diff_before, atol=0.01)
        assert np.mean(after[17] - before[17]) == pytest.approx(2.0, abs=0.01)

    def test_zero_counts_stay_at_prior_floor_when_gene_is_scaled(self, counts_and_lengths):
        counts, lengths = counts_and_lengths
        counts = counts.copy()
        counts[17] = [0, 0, 0, 40, 60, 50]
        normalizer = CountNormalizer()
        before = normalizer.normalize(counts, lengths)

        scaled = counts.copy()
        scaled[17] *= 4.0
        after = normalizer.normalize(scaled, lengths)

        np.testing.assert_allclose(after.log_offset[17], before.log_offset[17], atol=0.01)
        # Zeros are not scaled; positive counts move by log2((4c + 0.5) / (c + 0.5))
        np.testing.assert_allclose(after.log_expression[17, :3], before.log_expression[17, :3], atol=0.01)
        positive = np.array([40.0, 60.0, 50.0])
        np.testing.assert_allclose(
            after.log_expression[17, 3:] - before.log_expression[17, 3:],
            np.log2((4 * positive + 0.5) / (positive + 0.5)),
            atol=0.01,
        )
        gap_before = before.log_expression[17, 3] - before.log_expression[17, 0]
        gap_after = after.log_expression[17, 3] - after.log_expression[17, 0]
        assert gap_after - gap_before == pytest.approx(1.98, abs=0.02)

    def test_sequencing_depth_is_removed(self):
        rng = np.random.RandomState(3)
        base = rng.uniform(500, 5000, size=(1000, 1)).round()
        counts = np.hstack([base, base * 2, base * 3])
        lengths = np.full_like(counts, 1000.0)
        log_expr = CountNormalizer().normalize(counts, lengths).log_expression
        np.testing.assert_allclose(log_expr[:, 1], log_expr[:, 0], atol=0.01)
        np.testing.assert_allclose(log_expr[:, 2], log_expr[:, 0], atol=0.01)

    def test_length_change_moves_offset_not_counts(self):
        counts = np.full((200, 2), 1000.0)
        lengths = np.full((200, 2), 1000.0)
        lengths[0, 1] = 2000.0
        result = CountNormalizer(method="none").normalize(counts, lengths)
        # Longer effective length in sample 2 means more reads per molecule
        assert result.log_offset[0, 1] - result.log_offset[0, 0] == pytest.approx(1.0, abs=0.01)
        assert result.log_expression[0, 1] < result.log_expression[0, 0]

    def test_result_fields(self, counts_and_lengths):
        counts, lengths = counts_and_lengths
        result = CountNormalizer(method="RLE").normalize(counts, lengths)
        assert result.method == "RLE"
        assert result.log_expression.shape == counts.shape
        assert result.offsets == pytest.approx(np.exp2(result.log_offset))
        assert result.effective_library_sizes.shape == (6,)

    def test_zero_count_gene_raises(self, counts_and_lengths):
        counts, lengths = counts_and_lengths
        counts = counts.copy()
        counts[3] = 0
        with pytest.raises(ValueError, match="zero-count"):
            CountNormalizer().normalize(counts, lengths)

    def test_shape_mismatch_raises(self, counts_and_lengths):
        counts, lengths = counts_and_lengths
        with pytest.raises(InvalidLengthData, match="does not match"):
            CountNormalizer().normalize(counts, lengths[:, :5])

    def test_negative_counts_raise(self, counts_and_lengths):
        counts, lengths = counts_and_lengths
        counts = counts.copy()
        counts[0, 0] = -1
        with pytest.raises(ValueError, match="non-negative"):
            CountNormalizer().normalize(counts, lengths)
