"""
Core data structures for the host-response expression pipeline.

1. ExpressionSet: counts + effective lengths + sample metadata
2. Transform: abstract base class for immutable ExpressionSet transformations
"""

from hostde.core.expression import ExpressionSet
from hostde.core.transform import Transform

__all__ = [
    'ExpressionSet',
    'Transform',
]
