"""Utility modules shared across pipeline stages."""

from hostde.utils.parallel import run_indexed

__all__ = [
    'run_indexed',
]
