"""
Exception types raised by the forum sync cog.

Everything here derives from ForumSyncError so callers that only want to
isolate one mapping's failure from the rest of the process can catch a single
base class.
"""
from __future__ import annotations

from typing import List, Optional, Sequence


class ForumSyncError(Exception):
    """Base class for all forum sync errors."""


class ConfigurationError(ForumSyncError):
    """The mapping configuration is invalid. Raised at load, aborts startup."""

    def __init__(self, errors: Sequence[str], warnings: Optional[Sequence[str]] = None) -> None:
        self.errors: List[str] = list(errors)
        self.warnings: List[str] = list(warnings or [])
        super().__init__("Invalid configuration: " + ", ".join(self.errors))


class MappingError(ForumSyncError):
    """A mapping could not be added, removed or found."""


class CircuitOpenError(ForumSyncError):
    """The circuit breaker for a mapping is open and refused the call."""

    def __init__(self, mapping_id: str) -> None:
        self.mapping_id = mapping_id
        super().__init__(f"Circuit breaker is open for mapping {mapping_id}")


class OperationTimeoutError(ForumSyncError):
    """A breaker-wrapped operation did not finish within its hard timeout."""


class CounterpartMissingError(ForumSyncError):
    """The object on the other platform no longer exists."""


class CorrelationMissError(ForumSyncError):
    """An expected thread or comment correlation row was not found."""
