"""
hostde - Host transcriptional response to infection

Differential expression of RNA-seq quantifications with subject blocking,
empirical Bayes moderation and viral-load correlation screening, plus
enrichment matrices against curated reference gene sets.
"""

__version__ = "0.1.0"

from hostde.core.expression import ExpressionSet
from hostde.core.transform import Transform
from hostde.errors import HostDEError, UnitFailure

__all__ = [
    "ExpressionSet",
    "Transform",
    "HostDEError",
    "UnitFailure",
]
