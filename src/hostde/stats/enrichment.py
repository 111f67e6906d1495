"""
Pairwise enrichment matrices between reference and test gene sets.

Every (reference set, test set) pair is an independent overrepresentation
test over a background universe. Each reference set has its own background
(the genes its source table measured, within the genes tested here). Sets
are intersected with the row's background before counting, so for each cell

    q = |test ∩ reference ∩ background|
    k = |reference ∩ background|
    m = |test ∩ background|
    t = |background|

Cells are evaluated on a worker pool into pre-sized matrices indexed by
(reference, test), then the p-value matrix is flattened, BH-adjusted as one
family and reshaped into the FDR matrix. A display mask marks cells with
FDR at or below the threshold. A cell that fails stays NaN and is reported.

Reference sets typically come from curated differential expression tables
(UP and DOWN genes of a published contrast, over that study's measured
genes); test sets come from this analysis' result table.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable, Mapping

import numpy as np
import pandas as pd

from hostde.errors import UnitFailure
from hostde.stats.multiple_testing import MultipleTestingCorrector
from hostde.stats.overrepresentation import OverrepresentationAnalyzer
from hostde.utils.parallel import run_indexed

logger = logging.getLogger(__name__)

__all__ = [
    'EnrichmentMatrices',
    'EnrichmentMatrixBuilder',
    'reference_sets_from_table',
    'result_gene_sets',
]


@dataclass
class EnrichmentMatrices:
    """
    Enrichment statistics for all (reference, test) pairs.

    All frames share the index (reference set names) and columns (test set
    names). background_size holds the universe size t of each reference row.
    """

    odds_ratio: pd.DataFrame
    p_value: pd.DataFrame
    ci_low: pd.DataFrame
    ci_high: pd.DataFrame
    fdr: pd.DataFrame
    mask: pd.DataFrame
    percent_overlap: pd.DataFrame
    overlap: pd.DataFrame
    background_size: pd.Series
    fdr_threshold: float
    failures: list[UnitFailure] = field(default_factory=list)

    def to_long(self) -> pd.DataFrame:
        """One row per (reference, test) cell."""
        refs = self.odds_ratio.index
        tests = self.odds_ratio.columns
        long = pd.DataFrame({
            'reference': np.repeat(refs.to_numpy(), len(tests)),
            'test': np.tile(tests.to_numpy(), len(refs)),
            'background_size': np.repeat(self.background_size.reindex(refs).to_numpy(), len(tests)),
        })
        for name, frame in (
            ('overlap', self.overlap),
            ('odds_ratio', self.odds_ratio),
            ('ci_low', self.ci_low),
            ('ci_high', self.ci_high),
            ('p_value', self.p_value),
            ('fdr', self.fdr),
            ('percent_overlap', self.percent_overlap),
            ('significant', self.mask),
        ):
            long[name] = frame.to_numpy().ravel()
        return long


class EnrichmentMatrixBuilder:
    """
    Run overrepresentation tests over all pairs of reference and test sets.

    `build` uses one background for every reference set. `build_stratified`
    takes groups of reference sets that each carry their own background (a
    curated table only measured some genes); the rows of all groups land in
    one matrix and are BH-adjusted together.

    Examples:
        >>> builder = EnrichmentMatrixBuilder(fdr_threshold=0.05, n_workers=4)
        >>> matrices = builder.build(reference_sets, test_sets, background)
        >>> matrices.odds_ratio.where(matrices.mask)
    """

    def __init__(
        self,
        fdr_threshold: float = 0.05,
        confidence_level: float = 0.95,
        n_workers: int = 1,
    ):
        self.fdr_threshold = fdr_threshold
        self.analyzer = OverrepresentationAnalyzer(confidence_level=confidence_level)
        self.corrector = MultipleTestingCorrector("BH")
        self.n_workers = n_workers

    def build(
        self,
        reference_sets: Mapping[str, Iterable[str]],
        test_sets: Mapping[str, Iterable[str]],
        background: Iterable[str],
    ) -> EnrichmentMatrices:
        return self.build_stratified([(reference_sets, background)], test_sets)

    def build_stratified(
        self,
        strata: Iterable[tuple[Mapping[str, Iterable[str]], Iterable[str]]],
        test_sets: Mapping[str, Iterable[str]],
    ) -> EnrichmentMatrices:
        """
        Enrichment matrices where each group of reference sets has its own background.

        Args:
            strata: (reference_sets, background) pairs. Every reference set
                of a pair, and every test set in its row, is intersected
                with that pair's background.
            test_sets: Test sets shared by all rows.

        Raises:
            ValueError: If a background is empty or a reference name repeats.
        """
        ref_names: list[str] = []
        refs: list[frozenset] = []
        backgrounds: list[frozenset] = []
        for reference_sets, background in strata:
            background = frozenset(background)
            if not background:
                raise ValueError(
                    f"Background universe is empty for reference set(s) {', '.join(reference_sets)}"
                )
            for name in reference_sets:
                if name in ref_names:
                    raise ValueError(f"Reference set '{name}' appears more than once")
                ref_names.append(name)
                refs.append(frozenset(reference_sets[name]) & background)
                backgrounds.append(background)

        test_names = list(test_sets)
        raw_tests = [frozenset(test_sets[name]) for name in test_names]
        n_ref, n_test = len(refs), len(raw_tests)
        sizes = np.array([len(bg) for bg in backgrounds], dtype=np.int64)

        shape = (n_ref, n_test)
        odds = np.full(shape, np.nan)
        pvals = np.full(shape, np.nan)
        ci_low = np.full(shape, np.nan)
        ci_high = np.full(shape, np.nan)
        overlap = np.zeros(shape, dtype=np.int64)
        pct = np.full(shape, np.nan)

        cell_ids = [f"{r}|{s}" for r in ref_names for s in test_names]

        def work(index: int) -> None:
            i, j = divmod(index, n_test)
            test = raw_tests[j] & backgrounds[i]
            q = len(refs[i] & test)
            overlap[i, j] = q
            result = self.analyzer.test(q, len(refs[i]), len(test), int(sizes[i]))
            odds[i, j] = result.odds_ratio
            pvals[i, j] = result.p_value
            ci_low[i, j] = result.ci_low
            ci_high[i, j] = result.ci_high
            pct[i, j] = result.percent_overlap

        failures = run_indexed(work, cell_ids, n_workers=self.n_workers, stage="enrichment")

        # One BH family over every cell of every stratum
        fdr = self.corrector.adjust(pvals)
        mask = np.nan_to_num(fdr, nan=np.inf) <= self.fdr_threshold

        ref_index = pd.Index(ref_names, name='reference')

        def frame(values: np.ndarray) -> pd.DataFrame:
            return pd.DataFrame(values, index=ref_index, columns=pd.Index(test_names, name='test'))

        logger.info(f"Enrichment: {n_ref} reference × {n_test} test sets over "
                    f"{len(set(backgrounds))} background(s); "
                    f"{int(mask.sum())} cells at FDR <= {self.fdr_threshold}")

        return EnrichmentMatrices(
            odds_ratio=frame(odds),
            p_value=frame(pvals),
            ci_low=frame(ci_low),
            ci_high=frame(ci_high),
            fdr=frame(fdr),
            mask=frame(mask),
            percent_overlap=frame(pct),
            overlap=frame(overlap),
            background_size=pd.Series(sizes, index=ref_index, name='background_size'),
            fdr_threshold=self.fdr_threshold,
            failures=failures,
        )


def reference_sets_from_table(
    table: pd.DataFrame,
    name: str,
    gene_col: str = 'gene_id',
    effect_col: str = 'log2FoldChange',
    significance_col: str = 'padj',
    lfc_threshold: float = 1.0,
    significance_threshold: float = 0.05,
) -> tuple[dict[str, set[str]], set[str]]:
    """
    Split a curated differential expression table into UP and DOWN sets.

    Returns:
        ({"<name>_UP": set, "<name>_DOWN": set}, background) where the
        background is every gene with a non-missing effect in the table.
    """
    for col in (gene_col, effect_col, significance_col):
        if col not in table.columns:
            raise ValueError(f"Reference table '{name}' has no column '{col}'")

    measured = table.dropna(subset=[gene_col, effect_col])
    genes = measured[gene_col].astype(str)
    effect = measured[effect_col].astype(float)
    significant = measured[significance_col].astype(float) <= significance_threshold

    up = set(genes[significant & (effect >= lfc_threshold)])
    down = set(genes[significant & (effect <= -lfc_threshold)])
    background = set(genes)

    logger.info(f"Reference '{name}': {len(up)} UP, {len(down)} DOWN of {len(background)} measured genes")
    return {f"{name}_UP": up, f"{name}_DOWN": down}, background


def result_gene_sets(
    result_table: pd.DataFrame,
    classification_col: str = 'classification',
    correlation_flag_col: str | None = 'correlated',
    correlation_score_col: str | None = None,
) -> dict[str, set[str]]:
    """
    Test sets from a gene result table: UP, DOWN and, when flagged,
    covariate-correlated genes split by direction.
    """
    if classification_col not in result_table.columns:
        raise ValueError(f"Result table has no column '{classification_col}'")

    genes = result_table.index.astype(str)
    labels = result_table[classification_col].astype(str).to_numpy()
    sets = {
        'UP': set(genes[labels == 'UP']),
        'DOWN': set(genes[labels == 'DOWN']),
    }

    if correlation_flag_col and correlation_flag_col in result_table.columns:
        flagged = result_table[correlation_flag_col].eq(True).to_numpy()
        if correlation_score_col and correlation_score_col in result_table.columns:
            score = result_table[correlation_score_col].to_numpy(dtype=float)
            sets['CORRELATED_POS'] = set(genes[flagged & (score > 0)])
            sets['CORRELATED_NEG'] = set(genes[flagged & (score < 0)])
        else:
            sets['CORRELATED'] = set(genes[flagged])

    return sets
