"""
Writers for analysis outputs.

Output files of one run, all under a single directory:

    {prefix}.results.csv          per-gene result table
    {prefix}.failures.csv         genes / cells that failed (may be empty)
    {prefix}.enrichment.csv       long-format enrichment table
    {prefix}.odds_ratio.csv       odds-ratio matrix (reference × test)
    {prefix}.fdr.csv              FDR matrix
    {prefix}.percent_overlap.csv  overlap percentages
    {prefix}.summary.json         parameters and global estimates

CSV files are plain pandas output, readable from R, Excel or Python.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

import numpy as np
import pandas as pd

from hostde.errors import UnitFailure, failures_to_dataframe
from hostde.stats.enrichment import EnrichmentMatrices

logger = logging.getLogger(__name__)

__all__ = [
    'write_result_table',
    'write_failures',
    'write_enrichment',
    'write_run_summary',
]


def _prepare(path: Path | str) -> Path:
    path = Path(path)
    if path.parent != Path('.') and not path.parent.exists():
        path.parent.mkdir(parents=True, exist_ok=True)
    return path


def write_result_table(table: pd.DataFrame, path: Path | str) -> Path:
    """Write the per-gene result table (gene id as first column)."""
    path = _prepare(path)
    table.to_csv(path)
    logger.info(f"Wrote {len(table)} gene results to {path}")
    return path


def write_failures(failures: list[UnitFailure], path: Path | str) -> Path:
    """Write the partial-failure list; an empty list still writes the header."""
    path = _prepare(path)
    failures_to_dataframe(failures).to_csv(path, index=False)
    if failures:
        logger.info(f"Wrote {len(failures)} failures to {path}")
    return path


def write_enrichment(matrices: EnrichmentMatrices, directory: Path | str, prefix: str) -> list[Path]:
    """Write the long enrichment table and the main matrices."""
    directory = Path(directory)
    directory.mkdir(parents=True, exist_ok=True)

    written = []
    long_path = directory / f"{prefix}.enrichment.csv"
    matrices.to_long().to_csv(long_path, index=False)
    written.append(long_path)

    for name in ('odds_ratio', 'p_value', 'fdr', 'percent_overlap', 'mask'):
        path = directory / f"{prefix}.{name}.csv"
        getattr(matrices, name).to_csv(path)
        written.append(path)

    logger.info(f"Wrote enrichment matrices ({matrices.odds_ratio.shape[0]} × "
                f"{matrices.odds_ratio.shape[1]}) to {directory}")
    return written


def _json_default(value: Any):
    if isinstance(value, (np.integer,)):
        return int(value)
    if isinstance(value, (np.floating,)):
        return float(value)
    if isinstance(value, np.ndarray):
        return value.tolist()
    if isinstance(value, Path):
        return str(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def write_run_summary(summary: dict, path: Path | str) -> Path:
    """Write run parameters and global estimates as JSON."""
    path = _prepare(path)
    with open(path, 'w') as f:
        json.dump(summary, f, indent=2, default=_json_default)
    logger.info(f"Wrote run summary to {path}")
    return path
