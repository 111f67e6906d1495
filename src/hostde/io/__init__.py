"""
I/O for quantification matrices, metadata, gene sets and analysis outputs.

Key Functions:
    - load_expression_set: counts + lengths + metadata -> ExpressionSet
    - aggregate_transcripts: transcript-level matrices -> gene level
    - join_covariates: attach assay covariates with an explicit missing policy
    - write_result_table / write_enrichment / write_run_summary: outputs

Examples:
    >>> from hostde.io import load_expression_set
    >>> es = load_expression_set("counts.tsv", "lengths.tsv", "samples.tsv")
    >>> print(es)
"""

from hostde.io.loaders import (
    CovariateJoinSummary,
    aggregate_transcripts,
    annotate_symbols,
    join_covariates,
    load_expression_set,
    load_matrix,
    load_metadata,
    load_table,
)
from hostde.io.writers import (
    write_enrichment,
    write_failures,
    write_result_table,
    write_run_summary,
)

__all__ = [
    'CovariateJoinSummary',
    'aggregate_transcripts',
    'annotate_symbols',
    'join_covariates',
    'load_expression_set',
    'load_matrix',
    'load_metadata',
    'load_table',
    'write_enrichment',
    'write_failures',
    'write_result_table',
    'write_run_summary',
]
