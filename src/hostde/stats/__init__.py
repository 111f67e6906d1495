"""
Statistical core for host-response differential expression.

Exports:
- Count normalization with effective-length offsets
- Cell-means design matrices and contrasts
- Blocked linear model fitting (mean-variance trend, consensus correlation)
- Empirical Bayes moderated contrasts
- Multiple testing correction
- Covariate correlation screening
- Fisher exact overrepresentation and enrichment matrices
"""

from .normalization import (
    NormalizationMethod,
    NormalizationResult,
    CountNormalizer,
    calc_norm_factors,
    length_factors,
)
from .design_matrix import (
    DesignMatrix,
    build_design_matrix,
    build_contrast,
    check_full_rank,
)
from .block_correlation import (
    BlockCorrelationEstimator,
    BlockCorrelationResult,
    consensus_correlation,
)
from .blocked_fit import (
    BlockedFit,
    BlockedLinearModelFitter,
    GlobalModelParameters,
    MeanVarianceTrend,
)
from .empirical_bayes import (
    ContrastResult,
    EmpiricalBayesContrastTester,
    EmpiricalBayesPrior,
    fit_f_dist,
    squeeze_var,
)
from .multiple_testing import MultipleTestingCorrector, fdr_correction
from .correlation import CorrelationScreen, CorrelationScreener
from .overrepresentation import OverrepresentationAnalyzer, OverrepresentationResult
from .enrichment import (
    EnrichmentMatrices,
    EnrichmentMatrixBuilder,
    reference_sets_from_table,
    result_gene_sets,
)
from .differential import (
    Classification,
    ClassificationPolicy,
    HighlightPolicy,
    build_result_table,
    classify,
    highlight,
)

__all__ = [
    "NormalizationMethod",
    "NormalizationResult",
    "CountNormalizer",
    "calc_norm_factors",
    "length_factors",
    "DesignMatrix",
    "build_design_matrix",
    "build_contrast",
    "check_full_rank",
    "BlockCorrelationEstimator",
    "BlockCorrelationResult",
    "consensus_correlation",
    "BlockedFit",
    "BlockedLinearModelFitter",
    "GlobalModelParameters",
    "MeanVarianceTrend",
    "ContrastResult",
    "EmpiricalBayesContrastTester",
    "EmpiricalBayesPrior",
    "fit_f_dist",
    "squeeze_var",
    "MultipleTestingCorrector",
    "fdr_correction",
    "CorrelationScreen",
    "CorrelationScreener",
    "OverrepresentationAnalyzer",
    "OverrepresentationResult",
    "EnrichmentMatrices",
    "EnrichmentMatrixBuilder",
    "reference_sets_from_table",
    "result_gene_sets",
    "Classification",
    "ClassificationPolicy",
    "HighlightPolicy",
    "build_result_table",
    "classify",
    "highlight",
]
