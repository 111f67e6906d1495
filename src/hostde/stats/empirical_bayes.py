"""
Empirical Bayes variance moderation and moderated t-tests (limma eBayes).

Genes share information through a scaled inverse-chi-square prior on their
true residual variances:

    1/σ²_g ~ (1 / (d₀ s₀²)) χ²_{d₀}

The hyperparameters (d₀, s₀²) are estimated from all gene-wise
variances by matching moments of log s²_g (fitFDist). Each gene's variance
is then shrunk towards s₀²:

    s²_post = (d₀ s₀² + d s²) / (d₀ + d)

and the contrast is tested with a t-statistic on d₀ + d degrees of freedom:

    t = (cᵀβ) / (√s²_post × √(cᵀ Σ c))

where Σ is the unscaled coefficient covariance of the gene's GLS fit.

With few residual degrees of freedom per gene this gives much more stable
variance estimates than the gene-wise ones, which is what makes small
blocked RNA-seq designs testable at all.

References:
    - Smyth (2004) Statistical Applications in Genetics and Molecular
      Biology 3:Article3
    - Phipson et al. (2016) Annals of Applied Statistics 10:946-963
"""

from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass
from typing import TYPE_CHECKING

import numpy as np
import pandas as pd
from numpy.typing import NDArray
from scipy import stats as scipy_stats
from scipy.special import digamma, polygamma

if TYPE_CHECKING:
    from hostde.stats.blocked_fit import BlockedFit

logger = logging.getLogger(__name__)

__all__ = [
    'trigamma_inverse',
    'fit_f_dist',
    'squeeze_var',
    'ContrastResult',
    'EmpiricalBayesPrior',
    'EmpiricalBayesContrastTester',
]


def trigamma_inverse(x: float, tol: float = 1e-8, max_iter: int = 50) -> float:
    """
    Solve trigamma(y) = x for y.

    Follows limma's trigammaInverse: Newton iteration on 1/trigamma(y), which
    is convex and nearly linear, from the starting value y = 0.5 + 1/x.

    Args:
        x: Target trigamma value (must be positive)
        tol: Relative convergence tolerance
        max_iter: Maximum Newton iterations

    Returns:
        y such that trigamma(y) ≈ x. np.inf for non-positive x.
    """
    if x <= 0:
        return np.inf

    if x > 1e7:
        return 1.0 / np.sqrt(x)
    if x < 1e-6:
        return 1.0 / x

    y = 0.5 + 1.0 / x
    for _ in range(max_iter):
        tri = polygamma(1, y)
        dif = tri * (1.0 - tri / x) / polygamma(2, y)
        y = y + dif
        if -dif / y < tol:
            break
    else:
        warnings.warn("trigamma_inverse: iteration limit exceeded", RuntimeWarning)

    return float(y)


def fit_f_dist(
    sigma2: NDArray[np.float64],
    df: float | NDArray[np.float64],
) -> tuple[float, float]:
    """
    Estimate prior d₀ and s₀² by the method of moments (limma fitFDist).

    Algorithm:
        1. z = log(s²) - digamma(d/2) + log(d/2)
        2. evar = var(z) - mean(trigamma(d/2))
        3. d₀ = 2 × trigamma⁻¹(evar)
        4. s₀² = exp(mean(z) + digamma(d₀/2) - log(d₀/2))

    Args:
        sigma2: Gene-wise residual variances (n_genes,)
        df: Residual degrees of freedom, scalar or per gene

    Returns:
        (d0, s0_sq). d0 is np.inf when the observed spread of log variances
        is no larger than sampling noise alone would produce.
    """
    sigma2 = np.asarray(sigma2, dtype=np.float64)
    df_arr = np.broadcast_to(np.asarray(df, dtype=np.float64), sigma2.shape)

    valid_mask = np.isfinite(sigma2) & (sigma2 > 0) & np.isfinite(df_arr) & (df_arr > 0)
    s2 = sigma2[valid_mask]
    d = df_arr[valid_mask]

    if s2.size == 0:
        warnings.warn("No usable variances for the empirical Bayes prior", RuntimeWarning)
        return np.inf, 1.0
    if s2.size < 3:
        return np.inf, float(np.median(s2))

    # Guard against exact-zero-like variances dominating the log moments
    m = np.median(s2)
    s2 = np.maximum(s2, 1e-5 * m)

    d_half = d / 2.0
    e = np.log(s2) - digamma(d_half) + np.log(d_half)
    emean = float(np.mean(e))
    evar = float(np.var(e, ddof=1) - np.mean(polygamma(1, d_half)))

    if evar <= 0:
        return np.inf, float(np.exp(emean))

    d0 = 2.0 * trigamma_inverse(evar)
    if not np.isfinite(d0) or d0 > 1e10:
        return np.inf, float(np.exp(emean))

    s0_sq = float(np.exp(emean + digamma(d0 / 2.0) - np.log(d0 / 2.0)))
    return float(d0), s0_sq


def squeeze_var(
    sigma2: NDArray[np.float64],
    df: float | NDArray[np.float64],
    d0: float,
    s0_sq: float,
) -> tuple[NDArray[np.float64], NDArray[np.float64]]:
    """
    Shrink gene-wise variances towards the prior (limma squeezeVar).

    Returns:
        (s2_post, df_total) with df_total = d₀ + d. With d₀ = ∞ every
        posterior variance equals s₀² and df_total is ∞.
    """
    sigma2 = np.asarray(sigma2, dtype=np.float64)
    df_arr = np.broadcast_to(np.asarray(df, dtype=np.float64), sigma2.shape).astype(np.float64)

    if np.isinf(d0):
        return np.full_like(sigma2, s0_sq), np.full_like(sigma2, np.inf)

    s2_post = (d0 * s0_sq + df_arr * sigma2) / (d0 + df_arr)
    return s2_post, d0 + df_arr


@dataclass(frozen=True)
class ContrastResult:
    """Moderated contrast test for every successfully fitted gene.

    Attributes:
        gene_ids: Gene identifiers (fit order)
        effect: cᵀβ, the log2 fold change
        std_error: √s²_post × √(cᵀ Σ c)
        t_statistic: Moderated t
        p_value: Two-sided p-value on df_total degrees of freedom
        s2_post: Posterior variances
        df_total: d₀ + residual df
        d0: Prior degrees of freedom
        s0_sq: Prior variance
    """

    gene_ids: list[str]
    effect: NDArray[np.float64]
    std_error: NDArray[np.float64]
    t_statistic: NDArray[np.float64]
    p_value: NDArray[np.float64]
    s2_post: NDArray[np.float64]
    df_total: NDArray[np.float64]
    d0: float
    s0_sq: float

    def to_dataframe(self) -> pd.DataFrame:
        return pd.DataFrame({
            'effect': self.effect,
            'std_error': self.std_error,
            't_statistic': self.t_statistic,
            'p_value': self.p_value,
            's2_post': self.s2_post,
            'df_total': self.df_total,
        }, index=pd.Index(self.gene_ids, name='gene_id'))


@dataclass(frozen=True)
class EmpiricalBayesPrior:
    """Hyperparameters of the scaled inverse-chi-square variance prior."""

    d0: float
    s0_sq: float


class EmpiricalBayesContrastTester:
    """
    Test one contrast across all genes of a blocked fit.

    The tester holds no state between calls. Unless a prior is passed in,
    each call estimates it from the variances of the fit being tested. To
    test several contrasts of one fit under shared hyperparameters, estimate
    the prior once and pass it to every call.

    Examples:
        >>> tester = EmpiricalBayesContrastTester()
        >>> prior = tester.estimate_prior(fit)
        >>> result = tester.contrast(fit, build_contrast(levels, "control", "infected"), prior=prior)
        >>> result.to_dataframe().sort_values('p_value').head()
    """

    def estimate_prior(self, fit: BlockedFit) -> EmpiricalBayesPrior:
        d0, s0_sq = fit_f_dist(fit.sigma2, fit.df_residual)
        if np.isinf(d0):
            warnings.warn(
                "Gene-wise variances are no more dispersed than sampling noise; "
                "infinite prior df, all variances shrink to the prior",
                RuntimeWarning,
            )
        logger.info(f"Empirical Bayes prior: d0={d0:.3f}, s0²={s0_sq:.4g}")
        return EmpiricalBayesPrior(d0=float(d0), s0_sq=float(s0_sq))

    def contrast(
        self,
        fit: BlockedFit,
        contrast_vector: NDArray[np.float64],
        prior: EmpiricalBayesPrior | None = None,
    ) -> ContrastResult:
        """
        Moderated t-test of cᵀβ = 0 for every gene in the fit.

        Args:
            fit: Blocked fit to test
            contrast_vector: Contrast over the fit's coefficients
            prior: Hyperparameters to shrink towards. Estimated from this
                fit when omitted.

        Raises:
            ValueError: If the contrast length differs from the coefficient count.
        """
        c = np.asarray(contrast_vector, dtype=np.float64)
        if c.ndim != 1 or c.shape[0] != fit.coefficients.shape[1]:
            raise ValueError(
                f"Contrast length {c.shape} does not match {fit.coefficients.shape[1]} coefficients"
            )

        if prior is None:
            prior = self.estimate_prior(fit)

        effect = fit.coefficients @ c
        # cᵀ Σ_g c for every gene at once
        c_var = np.einsum('i,gij,j->g', c, fit.cov_unscaled, c)

        s2_post, df_total = squeeze_var(fit.sigma2, fit.df_residual, prior.d0, prior.s0_sq)
        std_error = np.sqrt(s2_post) * np.sqrt(c_var)

        with np.errstate(divide='ignore', invalid='ignore'):
            t_stat = effect / std_error

        # Infinite total df: the t distribution is the standard normal
        df_total = np.asarray(df_total, dtype=np.float64)
        finite_df = np.isfinite(df_total)
        p_value = 2.0 * scipy_stats.norm.sf(np.abs(t_stat))
        p_value[finite_df] = 2.0 * scipy_stats.t.sf(np.abs(t_stat[finite_df]), df_total[finite_df])

        return ContrastResult(
            gene_ids=list(fit.gene_ids),
            effect=effect,
            std_error=std_error,
            t_statistic=t_stat,
            p_value=p_value,
            s2_post=s2_post,
            df_total=df_total,
            d0=prior.d0,
            s0_sq=prior.s0_sq,
        )
