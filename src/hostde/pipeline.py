"""
End-to-end differential expression run.

Stages, in order:

    1. Expression filter (once, on raw counts)
    2. Count normalization with length-aware offsets
    3. Design matrix and explicit treatment-vs-baseline contrast
    4. Global estimation: mean-variance trend, precision weights, consensus
       block correlation (frozen before any per-gene refit starts)
    5. Per-gene weighted GLS refit
    6. Empirical Bayes moderated contrast and BH FDR
    7. UP/DOWN/NO classification and presentation highlights
    8. Covariate correlation screening on a sample subset (optional)

Structural problems (bad design, missing levels, unjoinable covariates under
the "fail" policy) raise and abort. Per-gene numerical failures are collected
in DifferentialExpressionResult.failures next to the completed results.

Examples:
    >>> from hostde.io import load_expression_set
    >>> from hostde.config import AnalysisConfig, ContrastConfig
    >>> es = load_expression_set("counts.tsv", "lengths.tsv", "samples.tsv")
    >>> config = AnalysisConfig(contrast=ContrastConfig("control", "infected"))
    >>> result = run_differential_expression(es, config)
    >>> result.table.query("classification == 'UP'").head()
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional

import numpy as np
import pandas as pd

from hostde.config import AnalysisConfig
from hostde.core.expression import ExpressionSet
from hostde.errors import InvalidDesign, MissingCovariateJoin, UnitFailure
from hostde.io.loaders import CovariateJoinSummary, join_covariates
from hostde.quality.filtering import ExpressionFilter, ExpressionFilterResult
from hostde.stats.blocked_fit import BlockedFit, BlockedLinearModelFitter, GlobalModelParameters
from hostde.stats.correlation import CorrelationScreen, CorrelationScreener
from hostde.stats.design_matrix import DesignMatrix, build_contrast, build_design_matrix
from hostde.stats.differential import ClassificationPolicy, HighlightPolicy, build_result_table
from hostde.stats.empirical_bayes import ContrastResult, EmpiricalBayesContrastTester
from hostde.stats.multiple_testing import MultipleTestingCorrector
from hostde.stats.normalization import CountNormalizer, NormalizationResult

logger = logging.getLogger(__name__)

__all__ = ['DifferentialExpressionResult', 'run_differential_expression']


@dataclass
class DifferentialExpressionResult:
    """Everything produced by one run."""

    table: pd.DataFrame
    filter_result: ExpressionFilterResult
    normalization: NormalizationResult
    design: DesignMatrix
    contrast_vector: np.ndarray
    global_parameters: GlobalModelParameters
    fit: BlockedFit
    contrast: ContrastResult
    correlation_screens: dict[str, CorrelationScreen] = field(default_factory=dict)
    covariate_join: Optional[CovariateJoinSummary] = None
    failures: list[UnitFailure] = field(default_factory=list)

    def summary(self) -> dict:
        """Run-level statistics for the JSON summary."""
        counts = self.table['classification'].value_counts()
        out = {
            'n_genes_input': self.filter_result.n_passed + self.filter_result.n_failed,
            'n_genes_filtered': self.filter_result.n_passed,
            'n_genes_tested': int(len(self.table)),
            'n_failures': len(self.failures),
            'cpm_cutoff': self.filter_result.cpm_cutoff,
            'normalization': self.normalization.method,
            'norm_factors': self.normalization.norm_factors.tolist(),
            'levels': self.design.levels,
            'contrast': self.contrast_vector.tolist(),
            'model': self.global_parameters.to_dict(),
            'prior_df': self.contrast.d0,
            'prior_variance': self.contrast.s0_sq,
            'n_up': int(counts.get('UP', 0)),
            'n_down': int(counts.get('DOWN', 0)),
            'n_highlighted': int(self.table['highlight'].sum()),
        }
        if self.correlation_screens:
            out['correlation'] = {
                name: {'n_samples': screen.n_samples, 'n_failures': len(screen.failures)}
                for name, screen in self.correlation_screens.items()
            }
            if 'correlated' in self.table.columns:
                out['correlation']['n_flagged'] = int(self.table['correlated'].sum())
        if self.covariate_join is not None:
            out['covariate_join'] = {
                'policy': self.covariate_join.policy,
                'n_matched': self.covariate_join.n_matched,
                'excluded': self.covariate_join.excluded,
            }
        return out


def _block_ids(metadata: pd.DataFrame, block_col: Optional[str]) -> Optional[np.ndarray]:
    if block_col is None:
        return None
    if block_col not in metadata.columns:
        raise InvalidDesign(f"Block column '{block_col}' not found in metadata")
    blocks = metadata[block_col]
    if blocks.isna().any():
        raise InvalidDesign(f"{int(blocks.isna().sum())} sample(s) have no '{block_col}' value")
    return blocks.astype(str).to_numpy()


def _screen_correlations(
    log_expr: np.ndarray,
    gene_ids: list[str],
    metadata: pd.DataFrame,
    config: AnalysisConfig,
    covariates: Optional[pd.DataFrame],
) -> tuple[dict[str, CorrelationScreen], Optional[pd.Series], Optional[CovariateJoinSummary]]:
    cfg = config.correlation
    columns = list(cfg.covariate_cols)

    # Only samples in the screening subset need covariate values
    subset_col = cfg.subset_col or config.model.condition_col
    in_subset = np.ones(len(metadata), dtype=bool)
    if cfg.subset_values:
        if subset_col not in metadata.columns:
            raise InvalidDesign(f"Subset column '{subset_col}' not found in metadata")
        in_subset = metadata[subset_col].astype(str).isin([str(v) for v in cfg.subset_values]).to_numpy()
    subset = metadata.loc[in_subset]

    join_summary = None
    if covariates is not None:
        subset, join_summary = join_covariates(
            subset, covariates, key=cfg.join_key, columns=columns, policy=cfg.missing_policy,
        )
        excluded = set(join_summary.excluded)
    else:
        missing_cols = [c for c in columns if c not in subset.columns]
        if missing_cols:
            raise MissingCovariateJoin(f"Covariate column(s) {missing_cols} not in metadata and no covariate table given")
        values = subset[columns].apply(pd.to_numeric, errors='coerce')
        unusable = subset.index[~np.isfinite(values.to_numpy(dtype=np.float64)).all(axis=1)]
        if len(unusable) and cfg.missing_policy == 'fail':
            raise MissingCovariateJoin(f"{len(unusable)} sample(s) lack covariate values: {unusable.tolist()[:10]}")
        if len(unusable):
            logger.warning(f"Excluding {len(unusable)} sample(s) without covariates "
                           f"from correlation screening: {unusable.tolist()[:10]}")
        excluded = set(unusable.astype(str))

    use = ~subset.index.astype(str).isin(excluded)
    expr = log_expr[:, in_subset][:, use]

    logger.info(f"Correlation screening on {int(use.sum())}/{len(metadata)} samples")

    screener = CorrelationScreener(threshold=cfg.threshold)
    screens = {}
    for col in columns:
        covariate = pd.to_numeric(subset[col], errors='coerce').to_numpy(dtype=np.float64)[use]
        screens[col] = screener.correlate(expr, covariate, gene_ids, name=col)

    flagged = None
    if len(columns) == 2:
        r1, r2 = (screens[c].r for c in columns)
        flagged = pd.Series(screener.gate(r1, r2), index=pd.Index(gene_ids))
    elif len(columns) == 1:
        r = screens[columns[0]].r
        flagged = pd.Series(np.nan_to_num(np.abs(r)) > cfg.threshold, index=pd.Index(gene_ids))

    return screens, flagged, join_summary


def run_differential_expression(
    expression_set: ExpressionSet,
    config: AnalysisConfig,
    covariates: Optional[pd.DataFrame] = None,
    symbols: Optional[pd.Series] = None,
) -> DifferentialExpressionResult:
    """
    Run the full differential expression analysis.

    Args:
        expression_set: Raw counts, effective lengths and sample metadata.
        config: Analysis configuration; contrast.baseline and
            contrast.treatment must be set.
        covariates: Assay table joined on config.correlation.join_key. When
            None, covariate columns are read from the sample metadata.
        symbols: Optional gene id -> symbol Series for the result table.

    Raises:
        InvalidDesign: On missing contrast levels or an unusable design.
        MissingCovariateJoin: Under the "fail" policy when a sample cannot be
            matched to covariate values.
    """
    if config.contrast.baseline is None or config.contrast.treatment is None:
        raise InvalidDesign("Both contrast.baseline and contrast.treatment must be configured")

    model_cfg = config.model
    metadata = expression_set.sample_metadata

    # Design first: a bad factor column invalidates the run before any work
    design = build_design_matrix(metadata, model_cfg.condition_col, model_cfg.levels)
    contrast_vector = build_contrast(design.levels, config.contrast.baseline, config.contrast.treatment)
    block_ids = _block_ids(metadata, model_cfg.block_col)

    gene_filter = ExpressionFilter(
        min_count=config.filter.min_count,
        min_total_count=config.filter.min_total_count,
        large_n=config.filter.large_n,
        min_prop=config.filter.min_prop,
        group_col=model_cfg.condition_col,
    )
    filter_result = gene_filter.get_passing_genes(expression_set)
    filtered = expression_set.select_genes(filter_result.keep_mask)
    if filtered.n_genes == 0:
        raise InvalidDesign("No genes passed the expression filter")
    gene_ids = [str(g) for g in filtered.gene_ids]

    normalizer = CountNormalizer(
        method=config.normalization.method,
        prior_count=config.normalization.prior_count,
    )
    normalization = normalizer.normalize(filtered.counts, filtered.lengths)
    log_expr = normalization.log_expression

    fitter = BlockedLinearModelFitter(
        span=model_cfg.span,
        refinement_passes=model_cfg.refinement_passes,
        trim=model_cfg.trim,
        n_workers=config.n_workers,
    )
    global_parameters = fitter.estimate_global_parameters(
        log_expr, design, block_ids, log_offset=normalization.log_offset, gene_ids=gene_ids,
    )
    fit = fitter.refit(log_expr, design, global_parameters, block_ids, gene_ids)
    failures = list(fit.failures)

    tester = EmpiricalBayesContrastTester()
    prior = tester.estimate_prior(fit)
    contrast = tester.contrast(fit, contrast_vector, prior=prior)
    fdr = MultipleTestingCorrector("BH").adjust(contrast.p_value)

    screens: dict[str, CorrelationScreen] = {}
    correlated = None
    join_summary = None
    if config.correlation.covariate_cols:
        screens, correlated, join_summary = _screen_correlations(
            log_expr[fit.row_index], fit.gene_ids, metadata, config, covariates,
        )
        for screen in screens.values():
            failures.extend(screen.failures)

    table = build_result_table(
        contrast,
        fdr,
        fit.average_log_expression,
        classification=ClassificationPolicy(
            lfc_threshold=config.classification.lfc_threshold,
            fdr_threshold=config.classification.fdr_threshold,
        ),
        highlight_policy=HighlightPolicy(
            lfc_threshold=config.highlight.lfc_threshold,
            fdr_threshold=config.highlight.fdr_threshold,
            top_n=config.highlight.top_n,
        ),
        correlations={name: screen.to_series() for name, screen in screens.items()} or None,
        correlated=correlated,
        symbols=symbols,
    )

    n_up = int((table['classification'] == 'UP').sum())
    n_down = int((table['classification'] == 'DOWN').sum())
    logger.info(f"{config.contrast.treatment} vs {config.contrast.baseline}: "
                f"{n_up} UP, {n_down} DOWN of {len(table)} genes "
                f"(FDR < {config.classification.fdr_threshold}, |log2FC| >= {config.classification.lfc_threshold})")

    return DifferentialExpressionResult(
        table=table,
        filter_result=filter_result,
        normalization=normalization,
        design=design,
        contrast_vector=contrast_vector,
        global_parameters=global_parameters,
        fit=fit,
        contrast=contrast,
        correlation_screens=screens,
        covariate_join=join_summary,
        failures=failures,
    )
