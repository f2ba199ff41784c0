"""Domain exceptions raised by the KPSmart state and event log layers.

Lookups never raise: an unknown id, name, or key resolves to ``None``. The
classes below cover the failures a caller must react to.
"""

from __future__ import annotations


class StateError(Exception):
    """Base class for failures raised while mutating or rebuilding state."""


class ConflictError(StateError):
    """Raised when a mutation would duplicate the unique key of an active entity."""


class ReferentialIntegrityViolation(StateError):
    """Raised when a mutation references a missing entity or would orphan one."""


class MissingPriceError(ReferentialIntegrityViolation):
    """Raised when no customer price applies to a mail delivery."""


class UnknownEntityError(StateError):
    """Raised when an update or delete targets an entity the state does not hold."""


class ReplayFailure(StateError):
    """Raised when a log entry cannot be reapplied while rebuilding state."""


class EventStorageError(StateError):
    """Raised when the persistence store rejects an event log append."""


__all__ = [
    "StateError",
    "ConflictError",
    "ReferentialIntegrityViolation",
    "MissingPriceError",
    "UnknownEntityError",
    "ReplayFailure",
    "EventStorageError",
]
