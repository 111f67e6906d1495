"""Quality control for count matrices."""

from hostde.quality.filtering import ExpressionFilter, ExpressionFilterResult

__all__ = [
    'ExpressionFilter',
    'ExpressionFilterResult',
]
