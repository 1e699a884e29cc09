"""Error taxonomy for planning, applying and autoscaling.

Structural errors (ConfigurationError, CycleDetected) abort a planning cycle
before any remote mutation. Remote and concurrency errors are isolated to a
single change and reported through an ApplyReport.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from strata.resource_model import ResourceId


class StrataError(Exception):
    """Base class for all strata errors."""


class ConfigurationError(StrataError):
    """Raised when declarations or engine configuration are invalid."""


class InvalidGraph(ConfigurationError):
    """Raised when declarations reference missing nodes or form a cycle."""

    def __init__(self, message: str, members: tuple[ResourceId, ...] = ()):
        super().__init__(message)
        self.members = members


class CycleDetected(StrataError):
    """Raised when the dependency graph contains a cycle."""

    def __init__(self, cycle: tuple[ResourceId, ...]):
        path = " -> ".join(str(node) for node in cycle)
        super().__init__(f"Dependency cycle detected: {path}")
        self.cycle = cycle


class RemoteError(StrataError):
    """Base class for errors reported by a control plane adapter."""


class TransientError(RemoteError):
    """Retryable remote failure (throttling, brief outage)."""

    def __init__(self, message: str, retry_after: float | None = None):
        super().__init__(message)
        self.retry_after = retry_after


class RemoteTimeout(TransientError):
    """Remote operation did not finish in time."""


class PermanentError(RemoteError):
    """Remote rejected the operation; retrying will not help."""


class ConcurrentModification(StrataError):
    """Observed state changed between plan and apply."""

    def __init__(self, identity: ResourceId, expected: int | None, actual: int | None):
        super().__init__(
            f"{identity} was modified concurrently "
            f"(expected generation {expected}, found {actual})"
        )
        self.identity = identity
        self.expected = expected
        self.actual = actual


class UnresolvedReference(StrataError):
    """A reference could not be resolved from observed state at apply time."""


__all__ = [
    "ConcurrentModification",
    "ConfigurationError",
    "CycleDetected",
    "InvalidGraph",
    "PermanentError",
    "RemoteError",
    "RemoteTimeout",
    "StrataError",
    "TransientError",
    "UnresolvedReference",
]
