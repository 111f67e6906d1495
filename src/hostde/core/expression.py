"""
Core data structure for RNA-seq count matrices.

ExpressionSet couples the raw count matrix produced by transcript
quantification with its effective-length matrix and the sample annotations
needed to model it (condition, subject/block, replicate, covariates).

Biological Context:
    Quantifiers such as salmon or kallisto report, per gene and sample:
    - an estimated read count (integer-valued after rounding)
    - an effective length (transcript length corrected for fragment size)

    Effective lengths differ between samples when isoform usage changes, so
    they must travel with the counts until offsets are computed. Rows are
    genes, columns are samples.

Engineering Design:
    - Immutable: subsetting returns new instances
    - Validated: constructor checks shapes, index alignment and value ranges
    - Shared: normalizer, filter and model read the same instance

Examples:
    >>> import numpy as np
    >>> import pandas as pd
    >>> from hostde.core.expression import ExpressionSet
    >>>
    >>> counts = np.array([[10, 20], [30, 40]])
    >>> lengths = np.full((2, 2), 1500.0)
    >>> samples = pd.Index(["S1", "S2"])
    >>> metadata = pd.DataFrame({'condition': ['control', 'infected']}, index=samples)
    >>> es = ExpressionSet(counts, lengths, pd.Index(["G1", "G2"]), samples, metadata)
    >>> infected = es.select_samples(es.sample_metadata['condition'] == 'infected')
"""

from __future__ import annotations

import numpy as np
import pandas as pd

__all__ = ['ExpressionSet']


class ExpressionSet:
    """
    Immutable container for counts + effective lengths + sample metadata.

    Attributes:
        counts: Raw counts (genes × samples), non-negative
        lengths: Effective lengths (genes × samples), same shape as counts
        gene_ids: Row identifiers
        sample_ids: Column identifiers
        sample_metadata: Sample annotations indexed by sample_ids

    Shape Invariants:
        - counts.shape == lengths.shape
        - counts.shape[0] == len(gene_ids)
        - counts.shape[1] == len(sample_ids)
        - sample_metadata.index equals sample_ids
    """

    def __init__(
        self,
        counts: np.ndarray,
        lengths: np.ndarray,
        gene_ids: pd.Index,
        sample_ids: pd.Index,
        sample_metadata: pd.DataFrame,
    ):
        """
        Initialize ExpressionSet with validation.

        Raises:
            TypeError: If inputs have the wrong container types
            ValueError: If shapes are inconsistent, indices don't match,
                or counts are negative/non-finite
        """
        if not isinstance(counts, np.ndarray):
            raise TypeError(f"counts must be np.ndarray, got {type(counts)}")
        if not isinstance(lengths, np.ndarray):
            raise TypeError(f"lengths must be np.ndarray, got {type(lengths)}")
        if not isinstance(gene_ids, pd.Index):
            raise TypeError(f"gene_ids must be pd.Index, got {type(gene_ids)}")
        if not isinstance(sample_ids, pd.Index):
            raise TypeError(f"sample_ids must be pd.Index, got {type(sample_ids)}")
        if not isinstance(sample_metadata, pd.DataFrame):
            raise TypeError(f"sample_metadata must be pd.DataFrame, got {type(sample_metadata)}")

        if counts.ndim != 2:
            raise ValueError(f"counts must be 2D, got shape {counts.shape}")
        if lengths.shape != counts.shape:
            raise ValueError(
                f"lengths shape {lengths.shape} must match counts shape {counts.shape}"
            )

        n_genes, n_samples = counts.shape
        if len(gene_ids) != n_genes:
            raise ValueError(
                f"gene_ids length ({len(gene_ids)}) must match count rows ({n_genes})"
            )
        if len(sample_ids) != n_samples:
            raise ValueError(
                f"sample_ids length ({len(sample_ids)}) must match count columns ({n_samples})"
            )
        if not gene_ids.is_unique:
            raise ValueError("gene_ids must be unique")
        if not sample_metadata.index.equals(sample_ids):
            raise ValueError(
                "sample_metadata.index must match sample_ids exactly. "
                f"Got {len(sample_metadata.index)} metadata rows for {len(sample_ids)} samples."
            )

        counts = counts.astype(np.float64, copy=False)
        if not np.all(np.isfinite(counts)):
            raise ValueError("counts contain NaN or infinite values")
        if np.any(counts < 0):
            raise ValueError("counts must be non-negative")

        self._counts = counts
        self._lengths = lengths.astype(np.float64, copy=False)
        self._gene_ids = gene_ids
        self._sample_ids = sample_ids
        self._sample_metadata = sample_metadata

    @classmethod
    def from_frames(
        cls,
        counts: pd.DataFrame,
        lengths: pd.DataFrame,
        sample_metadata: pd.DataFrame,
    ) -> ExpressionSet:
        """Build from aligned DataFrames (genes × samples).

        Lengths and metadata are reindexed to the count matrix so column
        order in the input files does not matter.
        """
        missing = counts.columns.difference(sample_metadata.index)
        if len(missing) > 0:
            raise ValueError(f"Samples missing from metadata: {list(missing)[:10]}")
        if not counts.index.equals(lengths.index) or set(counts.columns) != set(lengths.columns):
            raise ValueError("Count and length matrices must share gene and sample identifiers")

        lengths = lengths.loc[counts.index, counts.columns]
        return cls(
            counts=counts.to_numpy(dtype=np.float64),
            lengths=lengths.to_numpy(dtype=np.float64),
            gene_ids=pd.Index(counts.index.astype(str)),
            sample_ids=pd.Index(counts.columns.astype(str)),
            sample_metadata=sample_metadata.loc[counts.columns].set_axis(
                pd.Index(counts.columns.astype(str))
            ),
        )

    @property
    def counts(self) -> np.ndarray:
        """Raw counts (genes × samples)."""
        return self._counts

    @property
    def lengths(self) -> np.ndarray:
        """Effective lengths (genes × samples)."""
        return self._lengths

    @property
    def gene_ids(self) -> pd.Index:
        return self._gene_ids

    @property
    def sample_ids(self) -> pd.Index:
        return self._sample_ids

    @property
    def sample_metadata(self) -> pd.DataFrame:
        return self._sample_metadata

    @property
    def shape(self) -> tuple[int, int]:
        return self._counts.shape

    @property
    def n_genes(self) -> int:
        return self._counts.shape[0]

    @property
    def n_samples(self) -> int:
        return self._counts.shape[1]

    @property
    def library_sizes(self) -> np.ndarray:
        """Column sums of the raw counts."""
        return self._counts.sum(axis=0)

    def select_samples(self, mask: np.ndarray | pd.Series) -> ExpressionSet:
        """
        Subset by samples (columns), preserving metadata.

        Args:
            mask: Boolean array/Series; if Series, values are used and the
                index is ignored

        Raises:
            ValueError: If mask length doesn't match n_samples
        """
        if isinstance(mask, pd.Series):
            mask = mask.values
        mask = np.asarray(mask, dtype=bool)

        if len(mask) != self.n_samples:
            raise ValueError(
                f"mask length ({len(mask)}) must match n_samples ({self.n_samples})"
            )

        return ExpressionSet(
            counts=self._counts[:, mask],
            lengths=self._lengths[:, mask],
            gene_ids=self._gene_ids,
            sample_ids=self._sample_ids[mask],
            sample_metadata=self._sample_metadata.loc[self._sample_ids[mask]],
        )

    def select_genes(self, mask: np.ndarray | pd.Series) -> ExpressionSet:
        """
        Subset by genes (rows).

        Raises:
            ValueError: If mask length doesn't match n_genes
        """
        if isinstance(mask, pd.Series):
            mask = mask.values
        mask = np.asarray(mask, dtype=bool)

        if len(mask) != self.n_genes:
            raise ValueError(
                f"mask length ({len(mask)}) must match n_genes ({self.n_genes})"
            )

        return ExpressionSet(
            counts=self._counts[mask, :],
            lengths=self._lengths[mask, :],
            gene_ids=self._gene_ids[mask],
            sample_ids=self._sample_ids,
            sample_metadata=self._sample_metadata,
        )

    def with_metadata(self, sample_metadata: pd.DataFrame) -> ExpressionSet:
        """Return a copy carrying replacement sample metadata."""
        return ExpressionSet(
            counts=self._counts,
            lengths=self._lengths,
            gene_ids=self._gene_ids,
            sample_ids=self._sample_ids,
            sample_metadata=sample_metadata,
        )

    def counts_frame(self) -> pd.DataFrame:
        return pd.DataFrame(self._counts, index=self._gene_ids, columns=self._sample_ids)

    def __repr__(self) -> str:
        return (
            f"ExpressionSet({self.n_genes} genes × {self.n_samples} samples)\n"
            f"  Genes: {self.gene_ids[0]}...{self.gene_ids[-1]}\n"
            f"  Samples: {self.sample_ids[0]}...{self.sample_ids[-1]}\n"
            f"  Metadata columns: {list(self.sample_metadata.columns)}"
        )
