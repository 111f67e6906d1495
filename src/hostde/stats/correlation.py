"""
Gene-covariate correlation screening.

Each gene's normalized log-expression is correlated (Pearson) with a
continuous sample covariate, typically a viral-load assay, over a sample
subset such as the infected samples only. When two independent assays of
the same covariate exist, a gene is flagged only if BOTH correlations
individually pass the threshold in the same direction:

    flag = (r1 > τ and r2 > τ) or (r1 < -τ and r2 < -τ)

This conjunctive gate is stricter than either assay alone and is not
replaced by an average of the two correlations.

Genes with no variance over the subset have an undefined correlation; they
get r = NaN, are never flagged, and are reported as failures.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Sequence

import numpy as np
import pandas as pd
from numpy.typing import NDArray
from scipy import stats

from hostde.errors import DegenerateGeneVariance, UnitFailure

logger = logging.getLogger(__name__)

__all__ = ['CorrelationScreen', 'CorrelationScreener']


@dataclass
class CorrelationScreen:
    """Per-gene correlations with one covariate.

    Attributes:
        covariate: Covariate name
        gene_ids: Gene identifiers
        r: Pearson correlation (NaN for constant genes)
        p_value: Two-sided p-value of r on n - 2 df
        n_samples: Number of samples used
        failures: Genes whose correlation is undefined
    """

    covariate: str
    gene_ids: list[str]
    r: NDArray[np.float64]
    p_value: NDArray[np.float64]
    n_samples: int
    failures: list[UnitFailure] = field(default_factory=list)

    def to_series(self) -> pd.Series:
        return pd.Series(self.r, index=pd.Index(self.gene_ids, name='gene_id'), name=f"r_{self.covariate}")


class CorrelationScreener:
    """
    Pearson screening of genes against continuous covariates.

    Examples:
        >>> screener = CorrelationScreener(threshold=0.6)
        >>> s1 = screener.correlate(log_expr[:, infected], load_a[infected], genes, "assay_a")
        >>> s2 = screener.correlate(log_expr[:, infected], load_b[infected], genes, "assay_b")
        >>> flags = screener.gate(s1.r, s2.r)
    """

    def __init__(self, threshold: float = 0.6):
        if not 0 <= threshold < 1:
            raise ValueError(f"threshold must be in [0, 1), got {threshold}")
        self.threshold = threshold

    def correlate(
        self,
        log_expr: NDArray[np.float64],
        covariate: NDArray[np.float64],
        gene_ids: Sequence[str] | None = None,
        name: str = "covariate",
    ) -> CorrelationScreen:
        """
        Correlate every gene (row) with the covariate over the given samples.

        Raises:
            ValueError: If shapes disagree, the covariate has missing values,
                fewer than three samples are given, or the covariate is constant.
        """
        log_expr = np.atleast_2d(np.asarray(log_expr, dtype=np.float64))
        covariate = np.asarray(covariate, dtype=np.float64)
        n_genes, n_samples = log_expr.shape

        if covariate.shape != (n_samples,):
            raise ValueError(f"Covariate has shape {covariate.shape}, expected ({n_samples},)")
        if not np.all(np.isfinite(covariate)):
            raise ValueError(f"Covariate '{name}' has missing or non-finite values")
        if n_samples < 3:
            raise ValueError(f"Need at least 3 samples to correlate, got {n_samples}")
        if gene_ids is None:
            gene_ids = [str(i) for i in range(n_genes)]

        x = covariate - covariate.mean()
        x_ss = float(x @ x)
        if x_ss == 0:
            raise ValueError(f"Covariate '{name}' is constant over the selected samples")

        centered = log_expr - log_expr.mean(axis=1, keepdims=True)
        y_ss = np.sum(centered * centered, axis=1)
        constant = y_ss <= 1e-24 * np.maximum(np.sum(log_expr * log_expr, axis=1), 1.0)

        with np.errstate(divide='ignore', invalid='ignore'):
            r = (centered @ x) / np.sqrt(y_ss * x_ss)
        r[constant] = np.nan
        r = np.clip(r, -1.0, 1.0)

        df = n_samples - 2
        with np.errstate(divide='ignore', invalid='ignore'):
            t_stat = r * np.sqrt(df / (1.0 - r * r))
        p_value = 2.0 * stats.t.sf(np.abs(t_stat), df)

        failures = [
            UnitFailure.from_exception(
                gene_ids[g],
                DegenerateGeneVariance(f"no variance across {n_samples} samples"),
                stage=f"correlation:{name}",
            )
            for g in np.flatnonzero(constant)
        ]
        if failures:
            logger.warning(f"{len(failures)} constant genes skipped when correlating with '{name}'")

        logger.info(f"Correlated {n_genes - len(failures)} genes with '{name}' over {n_samples} samples")

        return CorrelationScreen(
            covariate=name,
            gene_ids=[str(g) for g in gene_ids],
            r=r,
            p_value=p_value,
            n_samples=n_samples,
            failures=failures,
        )

    def gate(
        self,
        r1: NDArray[np.float64],
        r2: NDArray[np.float64],
        threshold: float | None = None,
    ) -> NDArray[np.bool_]:
        """Flag genes whose two correlations both exceed the threshold with the same sign."""
        tau = self.threshold if threshold is None else threshold
        r1 = np.asarray(r1, dtype=np.float64)
        r2 = np.asarray(r2, dtype=np.float64)
        if r1.shape != r2.shape:
            raise ValueError(f"Correlation arrays differ in shape: {r1.shape} vs {r2.shape}")
        # NaN comparisons are False, so undefined correlations never pass
        return ((r1 > tau) & (r2 > tau)) | ((r1 < -tau) & (r2 < -tau))
