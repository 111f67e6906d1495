"""
Cell-means design matrices and contrasts for differential expression.

The design has one indicator column per condition level and no intercept:

    X[i, j] = 1 if sample i has level j else 0

so each coefficient is the mean log-expression of one condition and a
contrast is a signed combination of level means. Column order is the
lexicographic order of level names, independent of sample order, so two runs
over the same metadata always produce identical coefficient layouts.

The comparison of interest is declared explicitly (baseline vs treatment
level) rather than inferred from label strings:

    c = [0, ..., +1 (treatment), ..., -1 (baseline), ..., 0]
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

import numpy as np
import pandas as pd
from numpy.typing import NDArray

from hostde.errors import InvalidDesign

__all__ = [
    'DesignMatrix',
    'build_design_matrix',
    'build_contrast',
    'check_full_rank',
]


@dataclass(frozen=True)
class DesignMatrix:
    """No-intercept indicator design.

    Attributes:
        X: Design matrix (n_samples, n_levels), exactly one 1 per row.
        levels: Level names in column order (sorted).
        sample_ids: Sample identifiers in row order.
        factor: Metadata column the levels came from.
    """

    X: NDArray[np.float64]
    levels: list[str]
    sample_ids: list[str]
    factor: str

    @property
    def n_params(self) -> int:
        return self.X.shape[1]

    @property
    def n_samples(self) -> int:
        return self.X.shape[0]

    @property
    def df_residual(self) -> int:
        return self.n_samples - self.n_params

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame(self.X, index=self.sample_ids, columns=self.levels)


def build_design_matrix(
    metadata: pd.DataFrame,
    factor_column: str,
    levels: Sequence[str] | None = None,
) -> DesignMatrix:
    """
    Encode a categorical metadata column as a no-intercept design.

    Args:
        metadata: Sample metadata, one row per sample (row order = sample order).
        factor_column: Column holding condition labels.
        levels: Declared levels. When given, any sample whose value is not one
            of them is unrecognized. When None, levels are the observed values.

    Returns:
        DesignMatrix with columns sorted lexicographically by level name.

    Raises:
        InvalidDesign: If the column is absent, a sample has a missing or
            unrecognized value, or fewer than two levels are used.
    """
    if factor_column not in metadata.columns:
        raise InvalidDesign(f"Factor column '{factor_column}' not found in metadata")

    values = metadata[factor_column]
    missing = values.isna()
    if missing.any():
        raise InvalidDesign(
            f"{int(missing.sum())} sample(s) have no '{factor_column}' value: "
            f"{list(metadata.index[missing.values])[:10]}"
        )

    values = values.astype(str)
    observed = set(values.unique())

    if levels is not None:
        declared = {str(level) for level in levels}
        unrecognized = values[~values.isin(declared)]
        if len(unrecognized) > 0:
            raise InvalidDesign(
                f"Unrecognized '{factor_column}' values {sorted(set(unrecognized))} "
                f"(declared levels: {sorted(declared)})"
            )
        ordered_levels = sorted(declared)
    else:
        ordered_levels = sorted(observed)

    if len(ordered_levels) < 2:
        raise InvalidDesign(f"Need at least 2 levels of '{factor_column}', got {ordered_levels}")

    level_index = {level: j for j, level in enumerate(ordered_levels)}
    X = np.zeros((len(values), len(ordered_levels)), dtype=np.float64)
    X[np.arange(len(values)), values.map(level_index).to_numpy(dtype=int)] = 1.0

    return DesignMatrix(
        X=X,
        levels=ordered_levels,
        sample_ids=[str(s) for s in metadata.index],
        factor=factor_column,
    )


def build_contrast(
    levels: Sequence[str],
    baseline: str,
    treatment: str,
) -> NDArray[np.float64]:
    """
    Contrast vector testing treatment - baseline.

    Raises:
        InvalidDesign: If either level is unknown or they are equal.
    """
    levels = list(levels)
    if baseline not in levels or treatment not in levels:
        raise InvalidDesign(
            f"Unknown level in contrast {treatment} vs {baseline}; levels are {levels}"
        )
    if baseline == treatment:
        raise InvalidDesign(f"Baseline and treatment are the same level: {baseline}")

    c = np.zeros(len(levels), dtype=np.float64)
    c[levels.index(treatment)] = 1.0
    c[levels.index(baseline)] = -1.0
    return c


def check_full_rank(X: NDArray[np.float64]) -> int:
    """
    Verify the design has full column rank and residual degrees of freedom.

    Returns:
        Residual degrees of freedom (n_samples - rank).

    Raises:
        InvalidDesign: If the design is rank-deficient or saturated.
    """
    X = np.asarray(X, dtype=np.float64)
    if X.ndim != 2:
        raise InvalidDesign(f"Design must be 2D, got shape {X.shape}")
    rank = int(np.linalg.matrix_rank(X))
    if rank < X.shape[1]:
        raise InvalidDesign(
            f"Design matrix is rank-deficient (rank {rank} < {X.shape[1]} columns)"
        )
    if X.shape[0] <= rank:
        raise InvalidDesign(
            f"No residual degrees of freedom ({X.shape[0]} samples, {rank} parameters)"
        )
    return X.shape[0] - rank
