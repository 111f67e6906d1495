"""
Base transformation framework for immutable ExpressionSet operations.

Transformations are pure: they take an ExpressionSet and return a new one,
never modifying their input. Parameters are recorded on the instance so a
run summary can list exactly what was applied (e.g. the filter constants).

Examples:
    >>> from hostde.core.transform import Transform
    >>>
    >>> class DropSamples(Transform):
    ...     def __init__(self, sample_ids):
    ...         super().__init__(name="DropSamples", params={"sample_ids": list(sample_ids)})
    ...         self.sample_ids = set(sample_ids)
    ...
    ...     def apply(self, es):
    ...         return es.select_samples(~es.sample_ids.isin(self.sample_ids))
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, TYPE_CHECKING

if TYPE_CHECKING:
    from hostde.core.expression import ExpressionSet

__all__ = ['Transform']


class Transform(ABC):
    """
    Abstract base class for ExpressionSet transformations.

    Attributes:
        name: Human-readable transformation name
        params: Parameters used (JSON-serializable, for provenance)
        timestamp: Creation time of this instance
    """

    def __init__(self, name: str, params: dict[str, Any]) -> None:
        self.name = name
        self.params = params
        self.timestamp = datetime.now()

    @abstractmethod
    def apply(self, es: ExpressionSet) -> ExpressionSet:
        """
        Execute transformation and return a new ExpressionSet.

        Must never modify the input.

        Raises:
            ValueError: If transformation cannot be applied (check validate() first)
        """

    def validate(self, es: ExpressionSet) -> list[str]:
        """
        Check preconditions before applying transformation.

        Subclasses should override and call super().validate() first.

        Returns:
            List of error messages (empty list = valid)
        """
        errors: list[str] = []

        if es.counts.size == 0:
            errors.append("Cannot process empty matrix")

        return errors

    def __repr__(self) -> str:
        params_str = ", ".join(f"{k}={v}" for k, v in self.params.items())
        return f"{self.name}({params_str})"
