"""
Index-addressed worker pool for embarrassingly parallel per-unit work.

Per-gene refits, per-gene correlations and per-cell enrichment tests are
independent given already-finalized global parameters. Each unit is
identified by its integer position; the worker writes its result into
pre-sized output arrays owned by the caller, so completion order does not
matter and nothing is appended concurrently.

A unit that raises is recorded as a UnitFailure and the batch continues.

NumPy and SciPy release the GIL in their heavy kernels, so threads give a
useful speedup while sharing the read-only inputs without copies.

Examples:
    >>> out = np.full(len(genes), np.nan)
    >>> def work(i):
    ...     out[i] = expensive(genes[i])
    >>> failures = run_indexed(work, genes, n_workers=4, stage="refit")
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Callable, Sequence

from hostde.errors import UnitFailure

logger = logging.getLogger(__name__)

__all__ = ['run_indexed']


def run_indexed(
    process_unit: Callable[[int], None],
    unit_ids: Sequence,
    n_workers: int = 1,
    stage: str = "",
    chunk_size: int = 256,
) -> list[UnitFailure]:
    """
    Run ``process_unit(i)`` for every index in ``range(len(unit_ids))``.

    Args:
        process_unit: Callable writing unit i's result into caller-owned
            arrays. Its return value is ignored.
        unit_ids: Labels used when reporting failures.
        n_workers: Thread count. 1 runs sequentially in the calling thread.
        stage: Pipeline stage name attached to failures.
        chunk_size: Units per submitted task.

    Returns:
        Failures ordered by unit index.
    """
    n_units = len(unit_ids)
    if n_units == 0:
        return []

    def run_chunk(start: int, stop: int) -> list[tuple[int, UnitFailure]]:
        local: list[tuple[int, UnitFailure]] = []
        for i in range(start, stop):
            try:
                process_unit(i)
            except Exception as e:
                local.append((i, UnitFailure.from_exception(unit_ids[i], e, stage)))
        return local

    chunk_size = max(1, int(chunk_size))
    chunks = [(s, min(s + chunk_size, n_units)) for s in range(0, n_units, chunk_size)]
    collected: list[tuple[int, UnitFailure]] = []

    if n_workers <= 1 or len(chunks) == 1:
        for start, stop in chunks:
            collected.extend(run_chunk(start, stop))
    else:
        logger.debug(f"{stage}: {n_units} units in {len(chunks)} chunks on {n_workers} threads")
        with ThreadPoolExecutor(max_workers=n_workers) as executor:
            futures = {executor.submit(run_chunk, s, e): (s, e) for s, e in chunks}
            for future in as_completed(futures):
                collected.extend(future.result())

    collected.sort(key=lambda pair: pair[0])
    failures = [f for _, f in collected]

    if failures:
        logger.warning(f"{stage}: {len(failures)}/{n_units} units failed "
                       f"(first: {failures[0].unit_id}: {failures[0].message})")

    return failures
