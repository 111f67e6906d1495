"""
Loaders for quantification matrices, sample metadata and annotation tables.

Inputs are plain delimited tables produced by external tools:

    counts / lengths    id column + one column per sample (transcript or gene
                        level, from a quantifier such as salmon or kallisto)
    metadata            one row per sample keyed by sample id
    covariates          assay table (e.g. viral load) joined to samples on a key
    tx2gene             transcript id -> gene id mapping
    annotation          gene id -> symbol mapping
    reference tables    curated differential expression results

Delimiters are detected from file content, so CSV and TSV both work.

Transcript-level matrices are summarized to genes the tximport way: counts
are summed, effective lengths are averaged with abundance weights (or count
weights when no abundance matrix is given).

The covariate join is a left join from samples to assay records. A sample
without a usable record is never silently defaulted: with policy "fail" the
join raises MissingCovariateJoin, with "exclude" the sample is kept for
modelling and reported so that correlation screening can leave it out.
"""

from __future__ import annotations

import csv
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Sequence

import numpy as np
import pandas as pd

from hostde.core.expression import ExpressionSet
from hostde.errors import MissingCovariateJoin

logger = logging.getLogger(__name__)

__all__ = [
    'sniff_delimiter',
    'load_table',
    'load_matrix',
    'load_metadata',
    'aggregate_transcripts',
    'annotate_symbols',
    'load_expression_set',
    'CovariateJoinSummary',
    'join_covariates',
]


def sniff_delimiter(path: Path, sample_size: int = 8192) -> str:
    """
    Detect the delimiter from file content ('\\t', ',' or ';').

    Raises:
        ValueError: If no delimiter can be determined.
    """
    with open(path, 'r', encoding='utf-8', errors='ignore') as f:
        sample = f.read(sample_size)

    try:
        return csv.Sniffer().sniff(sample, delimiters='\t,;').delimiter
    except csv.Error:
        pass

    first_line = sample.split('\n')[0]
    counts = {d: first_line.count(d) for d in ('\t', ',', ';')}
    best = max(counts, key=counts.get)
    if counts[best] == 0:
        raise ValueError(f"Cannot determine delimiter of {path}")
    return best


def load_table(path: Path | str) -> pd.DataFrame:
    """Read a delimited table with auto-detected delimiter."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Table not found: {path}")
    if not path.is_file():
        raise ValueError(f"Path is not a file: {path}")
    return pd.read_csv(path, sep=sniff_delimiter(path))


def load_matrix(path: Path | str, id_col: Optional[str] = None) -> pd.DataFrame:
    """
    Load a numeric feature × sample matrix.

    Args:
        path: Delimited file, first column (or id_col) holds feature ids.
        id_col: Identifier column name. Defaults to the first column.

    Raises:
        ValueError: On duplicate ids or non-numeric sample columns.
    """
    df = load_table(path)
    id_col = id_col or df.columns[0]
    if id_col not in df.columns:
        raise ValueError(f"Identifier column '{id_col}' not found in {path}")

    df = df.set_index(id_col)
    df.index = df.index.astype(str)
    df.columns = df.columns.astype(str)

    if df.index.duplicated().any():
        dupes = df.index[df.index.duplicated()].unique().tolist()
        raise ValueError(f"Duplicate identifiers in {path}: {dupes[:10]}")

    non_numeric = [c for c in df.columns if not pd.api.types.is_numeric_dtype(df[c])]
    if non_numeric:
        raise ValueError(f"Non-numeric sample columns in {path}: {non_numeric[:10]}")

    logger.info(f"Loaded {df.shape[0]} features × {df.shape[1]} samples from {path}")
    return df.astype(np.float64)


def load_metadata(path: Path | str, sample_col: str = 'sample_id') -> pd.DataFrame:
    """Load sample metadata indexed by sample id."""
    df = load_table(path)
    if sample_col not in df.columns:
        raise ValueError(f"Sample column '{sample_col}' not found in {path}")
    df[sample_col] = df[sample_col].astype(str)
    if df[sample_col].duplicated().any():
        raise ValueError(f"Duplicate sample ids in {path}")
    return df.set_index(sample_col)


def aggregate_transcripts(
    counts: pd.DataFrame,
    lengths: pd.DataFrame,
    tx2gene: pd.DataFrame,
    abundance: Optional[pd.DataFrame] = None,
    tx_col: str = 'transcript_id',
    gene_col: str = 'gene_id',
) -> tuple[pd.DataFrame, pd.DataFrame]:
    """
    Summarize transcript counts and effective lengths to genes.

    Counts are summed per gene. Gene length in each sample is the weighted
    mean of its transcripts' effective lengths, weighted by abundance (TPM)
    when given, otherwise by counts. Where all weights of a gene are zero in
    a sample, the gene's across-sample mean length is used.

    Transcripts absent from the mapping are dropped with a warning.

    Returns:
        (gene_counts, gene_lengths), genes × samples, sorted by gene id.
    """
    for col in (tx_col, gene_col):
        if col not in tx2gene.columns:
            raise ValueError(f"Mapping table has no column '{col}'")
    if not counts.index.equals(lengths.index) or not counts.columns.equals(lengths.columns):
        raise ValueError("Transcript counts and lengths must share ids and samples")

    mapping = tx2gene.drop_duplicates(tx_col).set_index(tx_col)[gene_col].astype(str)
    mapping.index = mapping.index.astype(str)
    genes = counts.index.to_series().map(mapping)
    unmapped = genes.isna()
    if unmapped.any():
        logger.warning(f"Dropping {int(unmapped.sum())} transcripts without a gene mapping")

    keep = ~unmapped.to_numpy()
    counts = counts.loc[keep]
    lengths = lengths.loc[keep]
    genes = genes[keep].to_numpy()

    if abundance is not None:
        weights = abundance.reindex(index=counts.index, columns=counts.columns)
        if weights.isna().any().any():
            raise ValueError("Abundance matrix does not cover every transcript and sample")
    else:
        weights = counts

    gene_counts = counts.groupby(genes).sum()
    weight_sum = weights.groupby(genes).sum()
    weighted_len = (lengths * weights).groupby(genes).sum()

    with np.errstate(divide='ignore', invalid='ignore'):
        gene_lengths = weighted_len / weight_sum
    fallback = lengths.groupby(genes).mean().mean(axis=1)
    gene_lengths = gene_lengths.apply(lambda col: col.fillna(fallback))

    gene_counts.index.name = gene_col
    gene_lengths.index.name = gene_col
    logger.info(f"Aggregated {int(keep.sum())} transcripts into {gene_counts.shape[0]} genes")
    return gene_counts.sort_index(), gene_lengths.sort_index()


def annotate_symbols(
    gene_ids: Sequence[str],
    annotation: pd.DataFrame,
    gene_col: str = 'gene_id',
    symbol_col: str = 'symbol',
) -> pd.Series:
    """Map gene ids to symbols; genes without a symbol keep their id."""
    for col in (gene_col, symbol_col):
        if col not in annotation.columns:
            raise ValueError(f"Annotation table has no column '{col}'")
    lookup = (
        annotation.dropna(subset=[symbol_col])
        .drop_duplicates(gene_col)
        .set_index(gene_col)[symbol_col]
    )
    lookup.index = lookup.index.astype(str)
    index = pd.Index([str(g) for g in gene_ids], name='gene_id')
    symbols = lookup.reindex(index)
    n_missing = int(symbols.isna().sum())
    if n_missing:
        logger.info(f"{n_missing}/{len(index)} genes have no symbol; using gene id")
    return symbols.fillna(pd.Series(index, index=index)).rename('symbol')


def load_expression_set(
    counts_path: Path | str,
    lengths_path: Path | str,
    metadata_path: Path | str,
    sample_col: str = 'sample_id',
    tx2gene_path: Path | str | None = None,
) -> ExpressionSet:
    """
    Load counts, lengths and metadata into an ExpressionSet.

    With a tx2gene table the matrices are transcript-level and are summarized
    to genes first. Metadata rows are aligned to the count matrix columns.

    Raises:
        ValueError: If a sample in the counts has no metadata row.
    """
    counts = load_matrix(counts_path)
    lengths = load_matrix(lengths_path)
    metadata = load_metadata(metadata_path, sample_col=sample_col)

    if tx2gene_path is not None:
        counts, lengths = aggregate_transcripts(counts, lengths, load_table(tx2gene_path))

    missing = counts.columns.difference(metadata.index)
    if len(missing) > 0:
        raise ValueError(f"{len(missing)} sample(s) have no metadata: {missing.tolist()[:10]}")

    lengths = lengths.reindex(index=counts.index, columns=counts.columns)
    return ExpressionSet.from_frames(counts, lengths, metadata.loc[counts.columns])


@dataclass
class CovariateJoinSummary:
    """Outcome of joining an assay table to samples."""
    n_samples: int
    n_matched: int
    columns: list[str]
    policy: str
    excluded: list[str] = field(default_factory=list)

    @property
    def match_rate(self) -> float:
        return self.n_matched / self.n_samples if self.n_samples else 0.0


def join_covariates(
    metadata: pd.DataFrame,
    covariates: pd.DataFrame,
    key: str,
    columns: Sequence[str],
    policy: str = 'fail',
    sample_key: Optional[str] = None,
) -> tuple[pd.DataFrame, CovariateJoinSummary]:
    """
    Left-join covariate columns onto sample metadata.

    Args:
        metadata: Sample metadata indexed by sample id.
        covariates: Assay table with a key column and covariate columns.
        key: Key column in the covariate table.
        columns: Covariate columns to attach.
        policy: "fail" raises on any sample without a finite value for every
            column; "exclude" keeps such samples and lists them in the summary.
        sample_key: Metadata column matched against ``key``. Defaults to the
            metadata index (sample id).

    Returns:
        (metadata with covariate columns, summary)

    Raises:
        MissingCovariateJoin: Under policy "fail" when any sample is unmatched.
    """
    if policy not in ('fail', 'exclude'):
        raise ValueError(f"Unknown missing covariate policy '{policy}'")
    missing_cols = [c for c in [key, *columns] if c not in covariates.columns]
    if missing_cols:
        raise ValueError(f"Covariate table lacks column(s): {missing_cols}")

    clashing = [c for c in columns if c in metadata.columns]
    if clashing:
        raise ValueError(f"Covariate column(s) already present in metadata: {clashing}")

    table = covariates.copy()
    table[key] = table[key].astype(str)
    if table[key].duplicated().any():
        dupes = table.loc[table[key].duplicated(), key].unique().tolist()
        raise ValueError(f"Covariate table has duplicate keys: {dupes[:10]}")
    table = table.set_index(key)[list(columns)].apply(pd.to_numeric, errors='coerce')

    lookup = metadata.index.astype(str) if sample_key is None else metadata[sample_key].astype(str)
    joined = table.reindex(pd.Index(lookup))
    joined.index = metadata.index

    usable = np.isfinite(joined.to_numpy(dtype=np.float64)).all(axis=1)
    unmatched = metadata.index[~usable].astype(str).tolist()

    if unmatched and policy == 'fail':
        raise MissingCovariateJoin(
            f"{len(unmatched)}/{len(metadata)} sample(s) have no covariate record "
            f"for {list(columns)}: {unmatched[:10]}"
        )
    if unmatched:
        logger.warning(f"Excluding {len(unmatched)} sample(s) without covariates "
                       f"from correlation screening: {unmatched[:10]}")

    summary = CovariateJoinSummary(
        n_samples=len(metadata),
        n_matched=int(usable.sum()),
        columns=list(columns),
        policy=policy,
        excluded=unmatched,
    )
    logger.info(f"Joined covariates {list(columns)}: {summary.n_matched}/{summary.n_samples} samples matched")
    return pd.concat([metadata, joined], axis=1), summary
