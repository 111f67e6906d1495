"""
Multiple testing correction.

Benjamini-Hochberg step-up adjustment through statsmodels, preserving NaN
p-values in place so per-gene and per-cell failures do not shift the
adjusted values of their neighbours. NaN entries are excluded from the
family size.
"""

from __future__ import annotations

from typing import Literal

import numpy as np
from numpy.typing import NDArray
from statsmodels.stats.multitest import multipletests

__all__ = ['MultipleTestingCorrector', 'fdr_correction']

_METHOD_MAP = {"BH": "fdr_bh", "BY": "fdr_by", "bonferroni": "bonferroni"}


def fdr_correction(
    pvalues: NDArray[np.float64],
    method: Literal["BH", "BY", "bonferroni"] = "BH",
    alpha: float = 0.05,
) -> NDArray[np.float64]:
    """
    Apply multiple testing correction.

    Args:
        pvalues: Array of raw p-values, any shape. NaN entries stay NaN.
        method: Correction method:
            - "BH": Benjamini-Hochberg (controls FDR)
            - "BY": Benjamini-Yekutieli (controls FDR under dependence)
            - "bonferroni": Bonferroni (controls FWER)
        alpha: Significance threshold (does not affect adjusted values).

    Returns:
        Adjusted p-values with the input's shape, capped at 1.
    """
    pvalues = np.asarray(pvalues, dtype=np.float64)
    shape = pvalues.shape
    flat = pvalues.ravel()

    if np.any((flat < 0) | (flat > 1)):
        raise ValueError("p-values must lie in [0, 1]")

    valid_mask = ~np.isnan(flat)
    adj_pvals = np.full_like(flat, np.nan)

    if not np.any(valid_mask):
        return adj_pvals.reshape(shape)

    _, adj_pvals[valid_mask], _, _ = multipletests(
        flat[valid_mask],
        alpha=alpha,
        method=_METHOD_MAP.get(method, method),
    )

    return np.minimum(adj_pvals, 1.0).reshape(shape)


class MultipleTestingCorrector:
    """Stateless BH adjuster shared by the gene table and enrichment matrices."""

    def __init__(self, method: Literal["BH", "BY", "bonferroni"] = "BH"):
        if method not in _METHOD_MAP:
            raise ValueError(f"Unknown correction method '{method}'")
        self.method = method

    def adjust(self, pvalues: NDArray[np.float64]) -> NDArray[np.float64]:
        return fdr_correction(pvalues, method=self.method)
