"""
Overrepresentation test for one gene-set overlap.

Given a background universe of t genes, a reference set of k genes, a test
set of m genes and their overlap q (all counted within the background), the
2×2 table

                    in test      not in test
    in reference    q            k - q
    not in ref      m - q        t - k - m + q

is tested for association with Fisher's exact test (two-sided, hypergeometric
null with fixed margins). The effect size is the conditional maximum
likelihood odds ratio, i.e. the odds ratio that maximizes the noncentral
hypergeometric likelihood of q, with its exact conditional confidence
interval. Unlike the sample odds ratio (q·(t-k-m+q)) / ((k-q)·(m-q)) it is
well defined for tables with a zero cell.

Boundary conventions:
    - q = 0: odds ratio 0, lower CI bound 0.
    - q = min(k, m): odds ratio +∞, upper CI bound +∞.
    - Only one table is possible given the margins (for example an empty
      reference or test set, or q = k = m = t): p-value 1, CI (0, +∞). The
      odds ratio is 0 when q = 0 and +∞ otherwise.

Examples:
    >>> analyzer = OverrepresentationAnalyzer()
    >>> result = analyzer.test(q=12, k=150, m=80, t=12000)
    >>> print(f"OR={result.odds_ratio:.2f}, p={result.p_value:.2e}")
"""

from __future__ import annotations

import numbers
from dataclasses import dataclass

import numpy as np
from scipy.stats import fisher_exact
from scipy.stats.contingency import odds_ratio

from hostde.errors import InvalidContingencyTable

__all__ = ['OverrepresentationResult', 'OverrepresentationAnalyzer', 'contingency_table']


@dataclass(frozen=True)
class OverrepresentationResult:
    """
    Result of one overlap test.

    Attributes:
        q: Overlap size
        k: Reference set size
        m: Test set size
        t: Background size
        odds_ratio: Conditional MLE odds ratio
        p_value: Two-sided Fisher exact p-value
        ci_low: Lower conditional confidence bound
        ci_high: Upper conditional confidence bound
    """

    q: int
    k: int
    m: int
    t: int
    odds_ratio: float
    p_value: float
    ci_low: float
    ci_high: float

    @property
    def expected_overlap(self) -> float:
        return self.k * self.m / self.t if self.t > 0 else np.nan

    @property
    def percent_overlap(self) -> float:
        """Share of the test set found in the reference set (100·q/m)."""
        return 100.0 * self.q / self.m if self.m > 0 else np.nan

    def to_dict(self) -> dict:
        return {
            'q': self.q,
            'k': self.k,
            'm': self.m,
            't': self.t,
            'odds_ratio': self.odds_ratio,
            'p_value': self.p_value,
            'ci_low': self.ci_low,
            'ci_high': self.ci_high,
            'percent_overlap': self.percent_overlap,
        }


def _as_count(name: str, value) -> int:
    if isinstance(value, bool) or not isinstance(value, numbers.Integral):
        if isinstance(value, numbers.Real) and float(value).is_integer():
            value = int(value)
        else:
            raise InvalidContingencyTable(f"{name} must be an integer count, got {value!r}")
    value = int(value)
    if value < 0:
        raise InvalidContingencyTable(f"{name} must be non-negative, got {value}")
    return value


def contingency_table(q: int, k: int, m: int, t: int) -> np.ndarray:
    """
    Validate (q, k, m, t) and return the 2×2 table.

    Raises:
        InvalidContingencyTable: Unless 0 ≤ q ≤ min(k, m), k ≤ t, m ≤ t and
            k + m - q ≤ t.
    """
    q, k, m, t = (_as_count(n, v) for n, v in (('q', q), ('k', k), ('m', m), ('t', t)))
    if k > t or m > t:
        raise InvalidContingencyTable(f"set sizes exceed background: k={k}, m={m}, t={t}")
    if q > min(k, m):
        raise InvalidContingencyTable(f"overlap q={q} exceeds min(k={k}, m={m})")
    if k + m - q > t:
        raise InvalidContingencyTable(f"union of sets (k + m - q = {k + m - q}) exceeds background t={t}")
    return np.array([[q, k - q], [m - q, t - k - m + q]], dtype=np.int64)


class OverrepresentationAnalyzer:
    """Fisher exact test with conditional odds ratio and confidence interval."""

    def __init__(self, confidence_level: float = 0.95):
        if not 0 < confidence_level < 1:
            raise ValueError(f"confidence_level must be in (0, 1), got {confidence_level}")
        self.confidence_level = confidence_level

    def test(self, q: int, k: int, m: int, t: int) -> OverrepresentationResult:
        table = contingency_table(q, k, m, t)
        q, k, m, t = int(table[0, 0]), int(table[0].sum()), int(table[:, 0].sum()), int(table.sum())

        lowest = max(0, k + m - t)
        highest = min(k, m)

        if lowest == highest:
            # Margins admit a single table: nothing to test
            return OverrepresentationResult(
                q=q, k=k, m=m, t=t,
                odds_ratio=0.0 if q == 0 else np.inf,
                p_value=1.0,
                ci_low=0.0,
                ci_high=np.inf,
            )

        _, p_value = fisher_exact(table, alternative='two-sided')
        estimate = odds_ratio(table, kind='conditional')
        ci = estimate.confidence_interval(confidence_level=self.confidence_level)
        or_value, ci_low, ci_high = float(estimate.statistic), float(ci.low), float(ci.high)

        if q == 0:
            or_value, ci_low = 0.0, 0.0
        if q == highest:
            or_value, ci_high = np.inf, np.inf

        return OverrepresentationResult(
            q=q, k=k, m=m, t=t,
            odds_ratio=or_value,
            p_value=float(min(p_value, 1.0)),
            ci_low=ci_low,
            ci_high=ci_high,
        )
