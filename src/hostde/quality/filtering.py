"""
Expression-level gene filtering for count matrices.

Genes with too few reads to support a variance estimate are removed once,
before normalization and modelling. The rule follows edgeR's filterByExpr:

    CPM cutoff     = min_count / median(library size) × 1e6
    required n     = size of the smallest condition group, shrunk towards
                     large_n by min_prop when that group is large
    keep gene      = (#samples with CPM ≥ cutoff) ≥ required n
                     AND total count ≥ min_total_count

Scaling the CPM cutoff by the median library size means "min_count reads in
a typical sample", so the rule adapts to sequencing depth. All constants are
configuration.

Engineering Design:
    - Transform interface: input ExpressionSet -> filtered ExpressionSet
    - Group-aware: the smallest condition group sets the prevalence bar so
      condition-specific genes survive
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Set

import numpy as np
import pandas as pd

from hostde.core.expression import ExpressionSet
from hostde.core.transform import Transform

logger = logging.getLogger(__name__)

__all__ = ['ExpressionFilter', 'ExpressionFilterResult']

_TOL = 1e-14


@dataclass
class ExpressionFilterResult:
    """Results from expression filtering with full provenance."""
    passed_genes: Set[str]
    failed_genes: Set[str]
    cpm_cutoff: float
    min_sample_size: float
    keep_mask: np.ndarray = field(repr=False, default_factory=lambda: np.zeros(0, dtype=bool))
    parameters: Dict[str, Any] = field(default_factory=dict)

    @property
    def n_passed(self) -> int:
        return len(self.passed_genes)

    @property
    def n_failed(self) -> int:
        return len(self.failed_genes)

    @property
    def pass_rate(self) -> float:
        total = self.n_passed + self.n_failed
        return self.n_passed / total if total > 0 else 0.0


class ExpressionFilter(Transform):
    """
    Keep genes expressed above a depth-scaled cutoff in enough samples.

    Params:
        min_count: Reads-equivalent a gene needs in a typical-depth sample.
        min_total_count: Minimum total reads across all samples.
        large_n: Group size above which the prevalence requirement is relaxed.
        min_prop: Fraction of a large group that must pass the cutoff.
        group_col: Metadata column defining condition groups. None treats
            all samples as one group.

    Examples:
        >>> gene_filter = ExpressionFilter(min_count=10, group_col='condition')
        >>> filtered = gene_filter.apply(expression_set)
    """

    def __init__(
        self,
        min_count: float = 10.0,
        min_total_count: float = 15.0,
        large_n: int = 10,
        min_prop: float = 0.7,
        group_col: Optional[str] = None,
    ):
        super().__init__(
            name="ExpressionFilter",
            params={
                "min_count": min_count,
                "min_total_count": min_total_count,
                "large_n": large_n,
                "min_prop": min_prop,
                "group_col": group_col,
            }
        )
        self.min_count = min_count
        self.min_total_count = min_total_count
        self.large_n = large_n
        self.min_prop = min_prop
        self.group_col = group_col

    def _min_sample_size(self, es: ExpressionSet) -> float:
        if self.group_col is None:
            n_min = es.n_samples
        else:
            if self.group_col not in es.sample_metadata.columns:
                raise ValueError(f"Group column '{self.group_col}' not found in metadata")
            sizes = es.sample_metadata[self.group_col].value_counts()
            sizes = sizes[sizes > 0]
            n_min = int(sizes.min()) if len(sizes) > 0 else es.n_samples

        if n_min > self.large_n:
            return self.large_n + (n_min - self.large_n) * self.min_prop
        return float(n_min)

    def _compute_keep_mask(self, es: ExpressionSet) -> tuple[np.ndarray, float, float]:
        counts = es.counts
        library_sizes = counts.sum(axis=0).astype(np.float64)
        library_sizes[library_sizes == 0] = 1.0

        median_lib = float(np.median(library_sizes))
        cpm_cutoff = self.min_count / median_lib * 1e6
        cpm = counts / library_sizes[None, :] * 1e6

        min_samples = self._min_sample_size(es)

        keep_cpm = (cpm >= cpm_cutoff).sum(axis=1) >= (min_samples - _TOL)
        keep_total = counts.sum(axis=1) >= (self.min_total_count - _TOL)

        return keep_cpm & keep_total, cpm_cutoff, min_samples

    def apply(self, es: ExpressionSet) -> ExpressionSet:
        """Apply the expression filter, returning the retained genes."""
        result = self.get_passing_genes(es)
        return es.select_genes(result.keep_mask)

    def get_passing_genes(self, es: ExpressionSet) -> ExpressionFilterResult:
        """
        Compute the passing genes without subsetting.

        Returns:
            ExpressionFilterResult with passed/failed genes and the derived cutoffs
        """
        logger.info(f"Applying ExpressionFilter: min_count={self.min_count}, "
                    f"min_total_count={self.min_total_count}, large_n={self.large_n}, "
                    f"min_prop={self.min_prop}, group_col={self.group_col}")

        keep_mask, cpm_cutoff, min_samples = self._compute_keep_mask(es)
        gene_ids = es.gene_ids

        result = ExpressionFilterResult(
            passed_genes=set(gene_ids[keep_mask]),
            failed_genes=set(gene_ids[~keep_mask]),
            cpm_cutoff=float(cpm_cutoff),
            min_sample_size=float(min_samples),
            keep_mask=keep_mask,
            parameters=dict(self.params),
        )

        logger.info(f"Filtering complete: kept {result.n_passed}/{es.n_genes} genes "
                    f"({result.pass_rate * 100:.1f}%), CPM cutoff {cpm_cutoff:.3f} "
                    f"in >= {min_samples:.1f} samples")

        return result

    def validate(self, es: ExpressionSet) -> list[str]:
        errors = super().validate(es)
        if self.group_col is not None and self.group_col not in es.sample_metadata.columns:
            errors.append(f"Group column '{self.group_col}' not found in metadata")
        if self.group_col is not None and es.sample_metadata.get(self.group_col, pd.Series(dtype=object)).isna().any():
            errors.append(f"Group column '{self.group_col}' has missing values")
        return errors
