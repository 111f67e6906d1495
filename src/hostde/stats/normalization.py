"""
Count normalization with effective-length offsets.

Turns raw counts and effective lengths from transcript quantification into a
log-expression matrix suitable for linear modelling. Follows the tximport
"original counts and offset" recipe:

1. Length factor per gene and sample: effective length divided by the gene's
   geometric mean length across samples. Dividing counts by it removes
   differential isoform-length bias between samples.
2. Composition factor per sample: a robust ratio normalization (TMM by
   default) computed on the length-scaled counts. Multiplied by the column
   sum of the length-scaled counts it gives the effective library size.
3. Offset = length factor × effective library size (gene- and
   sample-specific library size). Log-expression is log-CPM against this
   offset: log2((count + 0.5) / (offset + 1) × 1e6).

The offset of a gene depends only on that gene's lengths and the
sample-level library sizes, so multiplying a gene's counts by a constant
leaves its offsets unchanged (up to the small library-size change) and
shifts its log-expression by the log of the constant wherever counts are
large relative to the prior count. Between-sample differences of such a
gene are preserved. Zero counts stay at the prior-count floor, so for a gene
with zeros in some samples the scaling widens the gap between its zero and
non-zero samples by up to the log of the constant.

References:
    - Soneson, Love & Robinson (2015) F1000Research 4:1521 (tximport)
    - Robinson & Oshlack (2010) Genome Biology 11:R25 (TMM)
    - Anders & Huber (2010) Genome Biology 11:R106 (median-of-ratios / RLE)
    - Law et al. (2014) Genome Biology 15:R29 (voom log-CPM)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum

import numpy as np
from numpy.typing import NDArray
from scipy.stats import rankdata

from hostde.errors import InvalidLengthData

logger = logging.getLogger(__name__)

__all__ = [
    'NormalizationMethod',
    'NormalizationResult',
    'CountNormalizer',
    'length_factors',
    'calc_norm_factors',
]


class NormalizationMethod(Enum):
    """Composition-bias normalization methods."""

    TMM = "TMM"              # trimmed mean of M-values (edgeR default)
    RLE = "RLE"              # median-of-ratios (DESeq)
    UPPERQUARTILE = "upperquartile"
    NONE = "none"


@dataclass(frozen=True)
class NormalizationResult:
    """Result of count normalization.

    Attributes:
        log_expression: log2-CPM against the offsets (genes × samples)
        log_offset: log2 of offset = length factor × effective library size
        length_factors: Per gene/sample length factor (row geometric mean 1)
        norm_factors: Per-sample composition factors (geometric mean 1)
        effective_library_sizes: norm_factors × column sums of length-scaled counts
        method: Composition normalization method used
        diagnostics: Additional diagnostic information
    """

    log_expression: NDArray[np.float64]
    log_offset: NDArray[np.float64]
    length_factors: NDArray[np.float64]
    norm_factors: NDArray[np.float64]
    effective_library_sizes: NDArray[np.float64]
    method: str
    diagnostics: dict = field(default_factory=dict)

    @property
    def offsets(self) -> NDArray[np.float64]:
        """Offsets on the count scale."""
        return np.exp2(self.log_offset)


def length_factors(lengths: NDArray[np.float64]) -> NDArray[np.float64]:
    """
    Scale effective lengths by each gene's geometric mean length.

    Non-positive or non-finite entries in an otherwise valid row are replaced
    by the geometric mean of that row's positive entries.

    Raises:
        InvalidLengthData: If any gene has no positive, finite length.
    """
    lengths = np.asarray(lengths, dtype=np.float64)
    if lengths.ndim != 2:
        raise InvalidLengthData(f"Expected 2D length matrix, got {lengths.ndim}D")

    valid = np.isfinite(lengths) & (lengths > 0)
    bad_rows = ~valid.any(axis=1)
    if np.any(bad_rows):
        raise InvalidLengthData(
            f"{int(bad_rows.sum())} gene(s) have no positive effective length "
            f"(first row index {int(np.argmax(bad_rows))})"
        )

    log_len = np.where(valid, np.log(np.where(valid, lengths, 1.0)), 0.0)
    row_log_mean = log_len.sum(axis=1) / valid.sum(axis=1)
    geo_mean = np.exp(row_log_mean)

    n_replaced = int((~valid).sum())
    if n_replaced:
        logger.warning(f"Replaced {n_replaced} non-positive effective lengths by the gene geometric mean")
        lengths = np.where(valid, lengths, geo_mean[:, None])

    return lengths / geo_mean[:, None]


def _upper_quartiles(counts: NDArray[np.float64], lib_size: NDArray[np.float64], p: float = 0.75) -> NDArray[np.float64]:
    return np.quantile(counts / lib_size[None, :], p, axis=0)


def _tmm_factor(
    obs: NDArray[np.float64],
    ref: NDArray[np.float64],
    lib_obs: float,
    lib_ref: float,
    logratio_trim: float = 0.3,
    sum_trim: float = 0.05,
    do_weighting: bool = True,
    a_cutoff: float = -1e10,
) -> float:
    with np.errstate(divide="ignore", invalid="ignore"):
        log_r = np.log2((obs / lib_obs) / (ref / lib_ref))
        abs_e = (np.log2(obs / lib_obs) + np.log2(ref / lib_ref)) / 2.0
        v = (lib_obs - obs) / lib_obs / obs + (lib_ref - ref) / lib_ref / ref

    fin = np.isfinite(log_r) & np.isfinite(abs_e) & (abs_e > a_cutoff)
    log_r, abs_e, v = log_r[fin], abs_e[fin], v[fin]

    if log_r.size == 0 or np.max(np.abs(log_r)) < 1e-6:
        return 1.0

    n = log_r.size
    lo_l = np.floor(n * logratio_trim) + 1
    hi_l = n + 1 - lo_l
    lo_s = np.floor(n * sum_trim) + 1
    hi_s = n + 1 - lo_s

    rank_r = rankdata(log_r)
    rank_e = rankdata(abs_e)
    keep = (rank_r >= lo_l) & (rank_r <= hi_l) & (rank_e >= lo_s) & (rank_e <= hi_s)
    if not np.any(keep):
        return 1.0

    if do_weighting:
        f = np.sum(log_r[keep] / v[keep]) / np.sum(1.0 / v[keep])
    else:
        f = np.mean(log_r[keep])

    if not np.isfinite(f):
        f = 0.0
    return float(2.0 ** f)


def calc_norm_factors(
    counts: NDArray[np.float64],
    method: NormalizationMethod | str = NormalizationMethod.TMM,
    lib_size: NDArray[np.float64] | None = None,
) -> NDArray[np.float64]:
    """
    Per-sample composition factors (edgeR calcNormFactors).

    Args:
        counts: Count-scale matrix (genes × samples). Length-scaled counts
            may be non-integer.
        method: TMM, RLE, upperquartile or none.
        lib_size: Column totals; defaults to column sums.

    Returns:
        Factors scaled to geometric mean 1.
    """
    method = NormalizationMethod(method)
    counts = np.asarray(counts, dtype=np.float64)
    n_samples = counts.shape[1]

    if lib_size is None:
        lib_size = counts.sum(axis=0)
    lib_size = np.asarray(lib_size, dtype=np.float64)

    if method is NormalizationMethod.NONE:
        return np.ones(n_samples)

    # All-zero rows carry no composition information
    counts = counts[counts.sum(axis=1) > 0]
    if counts.shape[0] == 0:
        return np.ones(n_samples)

    if method is NormalizationMethod.TMM:
        f75 = _upper_quartiles(counts, lib_size)
        if np.median(f75) < 1e-20:
            ref_col = int(np.argmax(np.sum(np.sqrt(counts), axis=0)))
        else:
            ref_col = int(np.argmin(np.abs(f75 - np.mean(f75))))
        factors = np.array([
            _tmm_factor(counts[:, j], counts[:, ref_col], lib_size[j], lib_size[ref_col])
            for j in range(n_samples)
        ])
    elif method is NormalizationMethod.RLE:
        with np.errstate(divide="ignore"):
            geo_means = np.exp(np.mean(np.log(counts), axis=1))
        usable = geo_means > 0
        if not np.any(usable):
            raise ValueError("RLE normalization needs at least one gene with all counts positive")
        ratios = counts[usable] / geo_means[usable, None]
        factors = np.median(ratios, axis=0) / lib_size
    else:
        f = np.quantile(counts, 0.75, axis=0)
        if np.min(f) == 0:
            logger.warning("One or more upper quartiles are zero")
        factors = f / lib_size

    if np.any(~np.isfinite(factors)) or np.any(factors <= 0):
        raise ValueError(f"{method.value} normalization produced non-positive factors: {factors}")

    return factors / np.exp(np.mean(np.log(factors)))


class CountNormalizer:
    """
    Convert raw counts + effective lengths into log-expression.

    Examples:
        >>> normalizer = CountNormalizer(method="TMM")
        >>> result = normalizer.normalize(es.counts, es.lengths)
        >>> log_expr = result.log_expression
    """

    def __init__(
        self,
        method: NormalizationMethod | str = NormalizationMethod.TMM,
        prior_count: float = 0.5,
    ):
        self.method = NormalizationMethod(method)
        self.prior_count = prior_count

    def normalize(
        self,
        counts: NDArray[np.float64],
        lengths: NDArray[np.float64],
    ) -> NormalizationResult:
        """
        Normalize counts with length-aware offsets.

        Raises:
            InvalidLengthData: If shapes differ or a gene has no positive length.
            ValueError: If counts are malformed or a gene has zero total count.
        """
        counts = np.asarray(counts, dtype=np.float64)
        lengths = np.asarray(lengths, dtype=np.float64)

        if counts.ndim != 2:
            raise ValueError(f"Expected 2D count matrix, got {counts.ndim}D")
        if lengths.shape != counts.shape:
            raise InvalidLengthData(
                f"lengths shape {lengths.shape} does not match counts shape {counts.shape}"
            )
        if np.any(counts < 0) or not np.all(np.isfinite(counts)):
            raise ValueError("counts must be finite and non-negative")

        zero_rows = counts.sum(axis=1) == 0
        if np.any(zero_rows):
            raise ValueError(
                f"{int(zero_rows.sum())} zero-count gene(s) reached normalization; "
                f"apply the expression filter first"
            )

        len_factors = length_factors(lengths)
        scaled_counts = counts / len_factors

        scaled_lib = scaled_counts.sum(axis=0)
        norm_factors = calc_norm_factors(scaled_counts, self.method, lib_size=scaled_lib)
        eff_lib = norm_factors * scaled_lib

        offsets = len_factors * eff_lib[None, :]
        log_offset = np.log2(offsets)
        log_expr = np.log2((counts + self.prior_count) / (offsets + 1.0) * 1e6)

        logger.info(f"Normalized {counts.shape[0]} genes × {counts.shape[1]} samples "
                    f"({self.method.value}); norm factors "
                    f"{np.min(norm_factors):.3f}-{np.max(norm_factors):.3f}")

        return NormalizationResult(
            log_expression=log_expr,
            log_offset=log_offset,
            length_factors=len_factors,
            norm_factors=norm_factors,
            effective_library_sizes=eff_lib,
            method=self.method.value,
            diagnostics={
                "column_sums": counts.sum(axis=0).tolist(),
                "scaled_column_sums": scaled_lib.tolist(),
                "prior_count": self.prior_count,
            },
        )
