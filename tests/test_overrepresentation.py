"""
Tests for the single-overlap Fisher exact test.
"""

import numpy as np
import pytest
from scipy.stats import fisher_exact

from hostde.errors import InvalidContingencyTable
from hostde.stats.overrepresentation import OverrepresentationAnalyzer, contingency_table


@pytest.fixture
def analyzer():
    return OverrepresentationAnalyzer()


class TestContingencyTable:

    def test_layout(self):
        table = contingency_table(q=3, k=10, m=8, t=100)
        np.testing.assert_array_equal(table, [[3, 7], [5, 85]])

    @pytest.mark.parametrize("q,k,m,t", [
        (5, 4, 10, 100),     # q > k
        (1, 120, 10, 100),   # k > t
        (1, 10, 101, 100),   # m > t
        (0, 60, 60, 100),    # union exceeds background
        (-1, 10, 10, 100),   # negative
    ])
    def test_invalid_counts_raise(self, q, k, m, t):
        with pytest.raises(InvalidContingencyTable):
            contingency_table(q, k, m, t)

    def test_non_integer_raises(self):
        with pytest.raises(InvalidContingencyTable, match="integer"):
            contingency_table(1.5, 10, 10, 100)

    def test_integral_floats_accepted(self):
        assert contingency_table(2.0, 10, 10, 100)[0, 0] == 2


class TestOverrepresentationAnalyzer:

    def test_matches_scipy_fisher(self, analyzer):
        result = analyzer.test(q=12, k=150, m=80, t=12000)
        _, p = fisher_exact([[12, 138], [68, 11782]])
        assert result.p_value == pytest.approx(p)
        assert result.odds_ratio > 1
        assert result.ci_low < result.odds_ratio < result.ci_high

    def test_zero_overlap_boundary(self, analyzer):
        result = analyzer.test(q=0, k=50, m=40, t=1000)
        assert result.odds_ratio == 0.0
        assert result.ci_low == 0.0
        assert np.isfinite(result.ci_high)
        assert 0 < result.p_value <= 1

    def test_full_overlap_boundary(self, analyzer):
        result = analyzer.test(q=40, k=50, m=40, t=1000)
        assert result.odds_ratio == np.inf
        assert result.ci_high == np.inf
        assert result.ci_low > 1
        assert result.p_value < 1e-10

    def test_transpose_invariance(self, analyzer):
        a = analyzer.test(q=7, k=60, m=25, t=900)
        b = analyzer.test(q=7, k=25, m=60, t=900)
        assert a.p_value == pytest.approx(b.p_value)
        assert a.odds_ratio == pytest.approx(b.odds_ratio)
        assert (a.ci_low, a.ci_high) == pytest.approx((b.ci_low, b.ci_high))

    def test_degenerate_identical_sets(self, analyzer):
        result = analyzer.test(q=200, k=200, m=200, t=200)
        assert result.odds_ratio == np.inf
        assert result.p_value == 1.0
        assert result.ci_low == 0.0
        assert result.ci_high == np.inf

    def test_empty_test_set(self, analyzer):
        result = analyzer.test(q=0, k=30, m=0, t=500)
        assert result.odds_ratio == 0.0
        assert result.p_value == 1.0
        assert np.isnan(result.percent_overlap)

    def test_no_nan_sentinels(self, analyzer):
        for q in range(0, 21, 5):
            result = analyzer.test(q=q, k=20, m=20, t=400)
            assert not np.isnan(result.odds_ratio)
            assert not np.isnan(result.ci_low)
            assert not np.isnan(result.ci_high)

    def test_percent_and_expected_overlap(self, analyzer):
        result = analyzer.test(q=5, k=100, m=20, t=1000)
        assert result.percent_overlap == pytest.approx(25.0)
        assert result.expected_overlap == pytest.approx(2.0)
        assert result.to_dict()['q'] == 5

    def test_invalid_confidence_level(self):
        with pytest.raises(ValueError, match="confidence_level"):
            OverrepresentationAnalyzer(confidence_level=1.0)
