"""
Blocked linear model fitting with precision weights (voom + duplicateCorrelation).

Every gene is modelled as

    y_g = X β_g + ε_g,    Cov(ε_g) = σ²_g D_g C(ρ) D_g

with X the no-intercept condition design, D_g = diag(1/√w_g) built from the
mean-variance trend, and C(ρ) the compound-symmetric within-subject
correlation. Fitting runs in two explicit phases:

Phase 1, global estimation (once per run, before any per-gene refit):
    a. Ordinary least squares fit of every gene. A lowess curve of
       sqrt(residual sd) against the gene's average log-count gives the
       mean-variance trend; each observation's precision weight is
       trend(fitted log-count)⁻⁴.
    b. Consensus within-block correlation ρ from per-gene REML estimates
       on the weighted scale.
    c. Optional refinement passes: refit with ρ, re-estimate the trend and
       weights, then ρ again.
   The result is a frozen GlobalModelParameters.

Phase 2, per-gene refit: weighted GLS of each gene at the frozen ρ, via
Cholesky whitening of C(ρ). Genes are independent and run on a worker pool;
a gene whose residual variance vanishes is recorded as a failure and left out
of the fit.

References:
    - Law, Chen, Shi & Smyth (2014) Genome Biology 15:R29 (voom)
    - Smyth, Michaud & Scott (2005) Bioinformatics 21:2067-2075
"""

from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass, field

import numpy as np
import pandas as pd
from numpy.typing import NDArray
from scipy import linalg
from statsmodels.nonparametric.smoothers_lowess import lowess

from hostde.errors import DegenerateGeneVariance, InvalidDesign, UnitFailure
from hostde.stats.block_correlation import (
    BlockCorrelationEstimator,
    block_codes,
    compound_symmetric,
)
from hostde.stats.design_matrix import DesignMatrix, check_full_rank
from hostde.utils.parallel import run_indexed

logger = logging.getLogger(__name__)

__all__ = [
    'MeanVarianceTrend',
    'GlobalModelParameters',
    'BlockedFit',
    'BlockedLinearModelFitter',
    'fit_mean_variance_trend',
]

_EPS = 1e-12
_REL_VAR_TOL = 1e-12
_LOG2_MILLION = np.log2(1e6)


@dataclass(frozen=True)
class MeanVarianceTrend:
    """Piecewise-linear lowess curve of sqrt(sd) against log-count.

    Evaluation outside the observed range is clamped to the end values.
    """

    x: NDArray[np.float64] = field(repr=False)
    y: NDArray[np.float64] = field(repr=False)

    def __call__(self, values: NDArray[np.float64]) -> NDArray[np.float64]:
        out = np.interp(values, self.x, self.y, left=self.y[0], right=self.y[-1])
        return np.clip(out, _EPS, None)

    def weights(self, fitted_log_count: NDArray[np.float64]) -> NDArray[np.float64]:
        """Precision weights trend⁻⁴ (predicted sd is trend², weight its inverse square)."""
        return 1.0 / np.power(self(fitted_log_count), 4.0)


@dataclass(frozen=True)
class GlobalModelParameters:
    """Scalars and weights shared by every per-gene refit.

    Attributes:
        trend: Mean-variance trend from the final pass
        weights: Precision weights (genes × samples)
        correlation: Consensus within-block correlation (0 without blocks)
        gene_correlations: Per-gene REML estimates behind the consensus
        span: Lowess span used for the trend
        passes: Number of trend/correlation passes performed
    """

    trend: MeanVarianceTrend
    weights: NDArray[np.float64] = field(repr=False)
    correlation: float
    gene_correlations: NDArray[np.float64] = field(repr=False)
    span: float
    passes: int

    def to_dict(self) -> dict:
        return {
            'correlation': self.correlation,
            'n_gene_correlations': int(np.isfinite(self.gene_correlations).sum()),
            'span': self.span,
            'passes': self.passes,
            'weight_range': [float(np.min(self.weights)), float(np.max(self.weights))],
        }


@dataclass
class BlockedFit:
    """Per-gene GLS fits for the genes that fitted successfully.

    Attributes:
        gene_ids: Identifiers of fitted genes (input order)
        row_index: Row of each fitted gene in the input matrix
        coefficients: β (n_fitted, n_params), one column per level
        sigma2: Residual variances
        df_residual: Residual degrees of freedom
        cov_unscaled: (XᵀV⁻¹X)⁻¹ per gene (n_fitted, n_params, n_params)
        average_log_expression: Mean log-expression per gene
        levels: Coefficient names
        correlation: Within-block correlation used
        failures: Genes dropped by the refit
    """

    gene_ids: list[str]
    row_index: NDArray[np.int64]
    coefficients: NDArray[np.float64]
    sigma2: NDArray[np.float64]
    df_residual: NDArray[np.float64]
    cov_unscaled: NDArray[np.float64]
    average_log_expression: NDArray[np.float64]
    levels: list[str]
    correlation: float
    failures: list[UnitFailure] = field(default_factory=list)

    @property
    def n_genes(self) -> int:
        return len(self.gene_ids)

    def to_dataframe(self) -> pd.DataFrame:
        df = pd.DataFrame(
            self.coefficients,
            index=pd.Index(self.gene_ids, name='gene_id'),
            columns=[f"coef_{level}" for level in self.levels],
        )
        df['sigma2'] = self.sigma2
        df['df_residual'] = self.df_residual
        df['average_log_expression'] = self.average_log_expression
        return df


def fit_mean_variance_trend(
    average_log_count: NDArray[np.float64],
    sigma: NDArray[np.float64],
    span: float = 0.5,
) -> MeanVarianceTrend:
    """
    Lowess of sqrt(sigma) on average log-count (voom's trend).

    Genes with zero or non-finite sigma are ignored. With fewer than three
    usable genes the trend is flat at their median.
    """
    sx = np.asarray(average_log_count, dtype=np.float64)
    sy = np.sqrt(np.asarray(sigma, dtype=np.float64))
    ok = np.isfinite(sx) & np.isfinite(sy) & (sy > 0)

    if ok.sum() < 3:
        level = float(np.median(sy[ok])) if np.any(ok) else 1.0
        warnings.warn(
            f"Only {int(ok.sum())} genes with residual variance; using a flat trend",
            RuntimeWarning,
        )
        return MeanVarianceTrend(x=np.array([0.0, 1.0]), y=np.array([level, level]))

    smoothed = lowess(sy[ok], sx[ok], frac=span, it=3, return_sorted=True)
    x_sorted, y_sorted = smoothed[:, 0], smoothed[:, 1]

    # Interpolation needs strictly increasing abscissae
    x_unique, first = np.unique(x_sorted, return_index=True)
    y_unique = np.clip(y_sorted[first], _EPS, None)
    if x_unique.size < 2:
        x_unique = np.array([x_unique[0] - 1.0, x_unique[0] + 1.0])
        y_unique = np.array([y_unique[0], y_unique[0]])

    return MeanVarianceTrend(x=x_unique, y=y_unique)


def _whitener(blocks: NDArray[np.int64] | None, n_samples: int, rho: float) -> NDArray[np.float64]:
    """Lower Cholesky factor of C(ρ); identity without blocks."""
    if blocks is None or rho == 0.0:
        return np.eye(n_samples)
    return linalg.cholesky(compound_symmetric(blocks, rho), lower=True)


def _unweighted_fit(
    log_expr: NDArray[np.float64],
    X: NDArray[np.float64],
    L: NDArray[np.float64],
) -> tuple[NDArray[np.float64], NDArray[np.float64]]:
    """Fit all genes at once with common covariance C. Returns (fitted, sigma)."""
    n, p = X.shape
    Y_t = linalg.solve_triangular(L, log_expr.T, lower=True)
    X_t = linalg.solve_triangular(L, X, lower=True)
    beta, *_ = np.linalg.lstsq(X_t, Y_t, rcond=None)
    resid = Y_t - X_t @ beta
    sigma = np.sqrt(np.sum(resid * resid, axis=0) / (n - p))
    fitted = (X @ beta).T
    return fitted, sigma


class BlockedLinearModelFitter:
    """
    Two-phase blocked linear model fitter.

    Args:
        span: Lowess span for the mean-variance trend.
        refinement_passes: Extra trend/correlation passes after the first.
        trim: Trimming fraction for the consensus correlation.
        n_workers: Threads for per-gene work.

    Examples:
        >>> fitter = BlockedLinearModelFitter(n_workers=4)
        >>> fit = fitter.fit(norm.log_expression, design, metadata['subject'],
        ...                  log_offset=norm.log_offset, gene_ids=genes)
        >>> fit.correlation
    """

    def __init__(
        self,
        span: float = 0.5,
        refinement_passes: int = 1,
        trim: float = 0.15,
        n_workers: int = 1,
    ):
        if not 0 < span <= 1:
            raise ValueError(f"span must be in (0, 1], got {span}")
        if refinement_passes < 0:
            raise ValueError(f"refinement_passes must be >= 0, got {refinement_passes}")
        self.span = span
        self.refinement_passes = refinement_passes
        self.trim = trim
        self.n_workers = n_workers

    @staticmethod
    def _validate(
        log_expr: NDArray[np.float64],
        design: DesignMatrix | NDArray[np.float64],
        block_ids,
    ) -> tuple[NDArray[np.float64], NDArray[np.float64], NDArray[np.int64] | None]:
        log_expr = np.asarray(log_expr, dtype=np.float64)
        X = design.X if isinstance(design, DesignMatrix) else np.asarray(design, dtype=np.float64)

        if log_expr.ndim != 2:
            raise InvalidDesign(f"Expected 2D expression matrix, got {log_expr.ndim}D")
        if X.shape[0] != log_expr.shape[1]:
            raise InvalidDesign(
                f"Design has {X.shape[0]} rows but expression has {log_expr.shape[1]} samples"
            )
        if not np.all(np.isfinite(log_expr)):
            raise InvalidDesign("Expression matrix contains non-finite values")
        check_full_rank(X)

        blocks = None
        if block_ids is not None:
            blocks = block_codes(block_ids)
            if blocks.shape[0] != X.shape[0]:
                raise InvalidDesign(f"{blocks.shape[0]} block ids for {X.shape[0]} samples")
        return log_expr, X, blocks

    @staticmethod
    def _log_library(log_offset: NDArray[np.float64] | None, shape: tuple[int, int]) -> NDArray[np.float64]:
        """log2(offset + 1); a library of one million when offsets are absent."""
        if log_offset is None:
            return np.full(shape, np.log2(1e6 + 1.0))
        log_offset = np.asarray(log_offset, dtype=np.float64)
        if log_offset.shape != shape:
            raise InvalidDesign(f"log_offset shape {log_offset.shape} does not match {shape}")
        return np.log2(np.exp2(log_offset) + 1.0)

    def _trend_and_weights(
        self,
        log_expr: NDArray[np.float64],
        log_library: NDArray[np.float64],
        fitted: NDArray[np.float64],
        sigma: NDArray[np.float64],
    ) -> tuple[MeanVarianceTrend, NDArray[np.float64]]:
        average_log_count = log_expr.mean(axis=1) + log_library.mean(axis=1) - _LOG2_MILLION
        trend = fit_mean_variance_trend(average_log_count, sigma, self.span)
        fitted_log_count = fitted + log_library - _LOG2_MILLION
        return trend, trend.weights(fitted_log_count)

    def estimate_global_parameters(
        self,
        log_expr: NDArray[np.float64],
        design: DesignMatrix | NDArray[np.float64],
        block_ids=None,
        log_offset: NDArray[np.float64] | None = None,
        gene_ids=None,
    ) -> GlobalModelParameters:
        """
        Phase 1: mean-variance trend, precision weights and consensus correlation.

        Raises:
            InvalidDesign: On shape mismatch or a rank-deficient design.
        """
        log_expr, X, blocks = self._validate(log_expr, design, block_ids)
        n_genes, n_samples = log_expr.shape
        log_library = self._log_library(log_offset, log_expr.shape)
        estimator = BlockCorrelationEstimator(trim=self.trim, n_workers=self.n_workers)

        fitted, sigma = _unweighted_fit(log_expr, X, np.eye(n_samples))
        trend, weights = self._trend_and_weights(log_expr, log_library, fitted, sigma)

        rho = 0.0
        gene_rhos = np.full(n_genes, np.nan)
        passes = 1
        if blocks is not None:
            estimate = estimator.estimate(log_expr, X, weights, block_ids, gene_ids)
            rho, gene_rhos = estimate.consensus, estimate.gene_correlations

            for _ in range(self.refinement_passes):
                fitted, sigma = _unweighted_fit(log_expr, X, _whitener(blocks, n_samples, rho))
                trend, weights = self._trend_and_weights(log_expr, log_library, fitted, sigma)
                estimate = estimator.estimate(log_expr, X, weights, block_ids, gene_ids)
                rho, gene_rhos = estimate.consensus, estimate.gene_correlations
                passes += 1

        params = GlobalModelParameters(
            trend=trend,
            weights=weights,
            correlation=float(rho),
            gene_correlations=gene_rhos,
            span=self.span,
            passes=passes,
        )
        logger.info(f"Global parameters: correlation={params.correlation:.4f}, "
                    f"passes={passes}, weights {np.min(weights):.3g}-{np.max(weights):.3g}")
        return params

    def refit(
        self,
        log_expr: NDArray[np.float64],
        design: DesignMatrix | NDArray[np.float64],
        params: GlobalModelParameters,
        block_ids=None,
        gene_ids=None,
    ) -> BlockedFit:
        """
        Phase 2: per-gene weighted GLS at the frozen consensus correlation.

        Genes with vanishing residual variance are reported in
        ``BlockedFit.failures`` and omitted from the fit.
        """
        log_expr, X, blocks = self._validate(log_expr, design, block_ids)
        n_genes, n_samples = log_expr.shape
        n_params = X.shape[1]
        df = float(n_samples - n_params)

        if params.weights.shape != log_expr.shape:
            raise InvalidDesign(
                f"Weights shape {params.weights.shape} does not match expression {log_expr.shape}"
            )
        if gene_ids is None:
            gene_ids = [str(i) for i in range(n_genes)]
        gene_ids = [str(g) for g in gene_ids]

        L = _whitener(blocks, n_samples, params.correlation)

        coefficients = np.full((n_genes, n_params), np.nan)
        sigma2 = np.full(n_genes, np.nan)
        cov_unscaled = np.full((n_genes, n_params, n_params), np.nan)

        def work(g: int) -> None:
            y = log_expr[g]
            sqrt_w = np.sqrt(params.weights[g])
            y_t = linalg.solve_triangular(L, y * sqrt_w, lower=True)
            X_t = linalg.solve_triangular(L, X * sqrt_w[:, None], lower=True)

            beta, *_ = np.linalg.lstsq(X_t, y_t, rcond=None)
            resid = y_t - X_t @ beta
            s2 = float(resid @ resid) / df
            if s2 <= _REL_VAR_TOL * max(float(np.mean(y * y)), 1.0):
                raise DegenerateGeneVariance(f"residual variance {s2:.3g} is zero to working precision")

            coefficients[g] = beta
            sigma2[g] = s2
            cov_unscaled[g] = np.linalg.inv(X_t.T @ X_t)

        failures = run_indexed(work, gene_ids, n_workers=self.n_workers, stage="refit")
        ok = np.isfinite(sigma2)
        row_index = np.flatnonzero(ok)

        levels = list(design.levels) if isinstance(design, DesignMatrix) else [f"x{j}" for j in range(n_params)]
        fit = BlockedFit(
            gene_ids=[gene_ids[i] for i in row_index],
            row_index=row_index,
            coefficients=coefficients[ok],
            sigma2=sigma2[ok],
            df_residual=np.full(int(ok.sum()), df),
            cov_unscaled=cov_unscaled[ok],
            average_log_expression=log_expr[ok].mean(axis=1),
            levels=levels,
            correlation=params.correlation,
            failures=failures,
        )
        logger.info(f"Refit {fit.n_genes}/{n_genes} genes (df={df:g}, "
                    f"correlation={params.correlation:.4f}, {len(failures)} failures)")
        return fit

    def fit(
        self,
        log_expr: NDArray[np.float64],
        design: DesignMatrix | NDArray[np.float64],
        block_ids=None,
        log_offset: NDArray[np.float64] | None = None,
        gene_ids=None,
    ) -> BlockedFit:
        """Run both phases: global estimation, then the per-gene refit."""
        params = self.estimate_global_parameters(log_expr, design, block_ids, log_offset, gene_ids)
        return self.refit(log_expr, design, params, block_ids, gene_ids)
