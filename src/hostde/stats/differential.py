"""
Gene-level result assembly: statistical calls and presentation highlights.

Two separate policies act on the moderated contrast results:

    Classification (statistical): UP / DOWN / NO from fixed FDR and
    log2 fold-change thresholds. This is the only call that feeds the
    enrichment analysis.

    Highlight (presentation): a stricter, independent cutoff that marks
    genes worth labelling in figures. It never changes a classification.

build_result_table joins the contrast statistics, FDR, both policies and any
covariate-correlation columns into one table indexed by gene id.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Mapping

import numpy as np
import pandas as pd
from numpy.typing import NDArray

from hostde.stats.empirical_bayes import ContrastResult

__all__ = [
    'Classification',
    'ClassificationPolicy',
    'HighlightPolicy',
    'classify',
    'highlight',
    'build_result_table',
]


class Classification(Enum):
    """Direction of a statistically supported expression change."""

    UP = "UP"
    DOWN = "DOWN"
    NO = "NO"


@dataclass(frozen=True)
class ClassificationPolicy:
    """FDR < fdr_threshold and |log2FC| >= lfc_threshold."""
    lfc_threshold: float = 1.0
    fdr_threshold: float = 0.05


@dataclass(frozen=True)
class HighlightPolicy:
    """Stricter presentation cutoff, optionally limited to the top_n genes by FDR."""
    lfc_threshold: float = 2.0
    fdr_threshold: float = 0.01
    top_n: int | None = None


def classify(
    effect: NDArray[np.float64],
    fdr: NDArray[np.float64],
    lfc_threshold: float = 1.0,
    fdr_threshold: float = 0.05,
) -> NDArray[np.object_]:
    """
    Call each gene UP, DOWN or NO.

    Genes with a missing effect or FDR are NO.
    """
    effect = np.asarray(effect, dtype=np.float64)
    fdr = np.asarray(fdr, dtype=np.float64)
    significant = np.nan_to_num(fdr, nan=1.0) < fdr_threshold
    large = np.nan_to_num(np.abs(effect), nan=0.0) >= lfc_threshold

    calls = np.full(effect.shape, Classification.NO.value, dtype=object)
    calls[significant & large & (effect > 0)] = Classification.UP.value
    calls[significant & large & (effect < 0)] = Classification.DOWN.value
    return calls


def highlight(
    effect: NDArray[np.float64],
    fdr: NDArray[np.float64],
    policy: HighlightPolicy = HighlightPolicy(),
) -> NDArray[np.bool_]:
    """Presentation-only flag; independent of classification."""
    effect = np.asarray(effect, dtype=np.float64)
    fdr_filled = np.nan_to_num(np.asarray(fdr, dtype=np.float64), nan=1.0)
    flags = (fdr_filled < policy.fdr_threshold) & (np.nan_to_num(np.abs(effect)) >= policy.lfc_threshold)

    if policy.top_n is not None and flags.sum() > policy.top_n:
        candidates = np.flatnonzero(flags)
        order = candidates[np.argsort(fdr_filled[candidates], kind='stable')]
        flags = np.zeros_like(flags)
        flags[order[:policy.top_n]] = True
    return flags


def build_result_table(
    contrast: ContrastResult,
    fdr: NDArray[np.float64],
    average_log_expression: NDArray[np.float64],
    classification: ClassificationPolicy = ClassificationPolicy(),
    highlight_policy: HighlightPolicy = HighlightPolicy(),
    correlations: Mapping[str, pd.Series] | None = None,
    correlated: pd.Series | None = None,
    symbols: pd.Series | None = None,
) -> pd.DataFrame:
    """
    Assemble the per-gene result table.

    Args:
        contrast: Moderated contrast results (defines row order)
        fdr: BH-adjusted p-values aligned with contrast.gene_ids
        average_log_expression: Mean log-expression aligned with contrast.gene_ids
        classification: Statistical call thresholds
        highlight_policy: Presentation thresholds
        correlations: Covariate name -> correlation Series indexed by gene id
        correlated: Conjunctive correlation gate indexed by gene id
        symbols: Gene symbol Series indexed by gene id

    Returns:
        DataFrame indexed by gene_id, sorted by p-value.
    """
    table = pd.DataFrame({
        'log2_fold_change': contrast.effect,
        'average_log_expression': average_log_expression,
        'std_error': contrast.std_error,
        't_statistic': contrast.t_statistic,
        'p_value': contrast.p_value,
        'fdr': fdr,
        'df_total': contrast.df_total,
    }, index=pd.Index(contrast.gene_ids, name='gene_id'))

    table['classification'] = classify(
        table['log2_fold_change'].to_numpy(),
        table['fdr'].to_numpy(),
        lfc_threshold=classification.lfc_threshold,
        fdr_threshold=classification.fdr_threshold,
    )
    table['highlight'] = highlight(
        table['log2_fold_change'].to_numpy(),
        table['fdr'].to_numpy(),
        highlight_policy,
    )

    if symbols is not None:
        table.insert(0, 'symbol', symbols.reindex(table.index))

    for name, series in (correlations or {}).items():
        table[f"r_{name}"] = series.reindex(table.index)
    if correlated is not None:
        table['correlated'] = correlated.reindex(table.index, fill_value=False).astype(bool)

    return table.sort_values('p_value', kind='stable')
