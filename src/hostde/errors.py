"""
Error kinds and partial-failure records for the analysis pipeline.

Two classes of failure exist:

    Structural errors (malformed matrices, rank-deficient designs, missing
    factor levels, unjoinable covariates) invalidate every downstream gene.
    They are raised as exceptions and abort the run.

    Local numerical failures (one degenerate gene, one bad contingency cell)
    are caught by the worker that hit them and recorded as a UnitFailure.
    The batch continues and the failures are reported next to the results.

All exception kinds subclass ValueError so callers that already guard
input validation with ``except ValueError`` keep working.
"""

from __future__ import annotations

from dataclasses import dataclass

import pandas as pd

__all__ = [
    'HostDEError',
    'InvalidLengthData',
    'InvalidDesign',
    'DegenerateGeneVariance',
    'InvalidContingencyTable',
    'MissingCovariateJoin',
    'UnitFailure',
    'failures_to_dataframe',
]


class HostDEError(ValueError):
    """Base class for all analysis errors."""


class InvalidLengthData(HostDEError):
    """Effective-length matrix cannot be used for offsets."""


class InvalidDesign(HostDEError):
    """Design matrix or factor levels are unusable."""


class DegenerateGeneVariance(HostDEError):
    """A gene has zero residual variance after fitting."""


class InvalidContingencyTable(HostDEError):
    """Contingency counts violate 0 <= q <= min(k, m), k <= t, m <= t."""


class MissingCovariateJoin(HostDEError):
    """One or more samples failed to match a covariate record."""


@dataclass(frozen=True)
class UnitFailure:
    """A failed unit of work (one gene or one contingency cell).

    Attributes:
        unit_id: Gene identifier or "reference|test" cell label.
        kind: Exception class name (e.g. "DegenerateGeneVariance").
        message: Human-readable description.
        stage: Pipeline stage that produced the failure.
    """

    unit_id: str
    kind: str
    message: str
    stage: str = ""

    @classmethod
    def from_exception(cls, unit_id: str, exc: Exception, stage: str = "") -> UnitFailure:
        return cls(unit_id=str(unit_id), kind=type(exc).__name__, message=str(exc), stage=stage)

    def to_dict(self) -> dict:
        return {
            'unit_id': self.unit_id,
            'kind': self.kind,
            'message': self.message,
            'stage': self.stage,
        }


def failures_to_dataframe(failures: list[UnitFailure]) -> pd.DataFrame:
    """Tabulate failures, one row per failed unit."""
    return pd.DataFrame(
        [f.to_dict() for f in failures],
        columns=['unit_id', 'kind', 'message', 'stage'],
    )
