"""Append-only event log for the KPSmart mail network.

The log is the single source of truth: every entity mutation is recorded as an
immutable :class:`LogEntry` carrying a gapless, strictly increasing event id.
Any state, live or historical, is derived by replaying a prefix of the log.

Appends are serialized through :attr:`EventLog.lock`. Reading entries that are
already appended needs no lock because entries never change after the append
returns.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from typing import Iterable, Iterator, List, Optional, Protocol

from . import log
from .constants import EntityType, EventOperation
from .entities import StorageEntity
from .exceptions import EventStorageError, ReplayFailure


@dataclass(frozen=True)
class LogEntry:
    """One immutable mutation record.

    ``entity`` holds the full new state for creates and updates and is
    ``None`` for deletes, which only reference ``entity_id``.
    """

    event_id: int
    timestamp: datetime
    operation: EventOperation
    entity_type: EntityType
    entity_id: int
    entity: Optional[StorageEntity] = None


class EventStore(Protocol):
    """Contract a persistence collaborator must satisfy to back the log."""

    def append(self, entry: LogEntry) -> None:
        ...

    def iter_entries(self) -> Iterable[LogEntry]:
        ...


class LogPrefix:
    """Restartable view over the first ``length`` entries of a log.

    Entries are only ever appended, so the indices below ``length`` keep
    pointing at the same entries while other threads append.
    """

    def __init__(self, entries: List[LogEntry], length: int) -> None:
        self._entries = entries
        self._length = length

    def __iter__(self) -> Iterator[LogEntry]:
        for index in range(self._length):
            yield self._entries[index]

    def __len__(self) -> int:
        return self._length


def _resolve_timestamp(candidate: Optional[datetime]) -> datetime:
    return candidate if candidate is not None else datetime.now(UTC)


class EventLog:
    """Ordered, append-only record of entity mutations."""

    def __init__(self, store: Optional[EventStore] = None) -> None:
        self.lock = threading.RLock()
        self._entries: List[LogEntry] = []
        self._store = store

    @classmethod
    def from_entries(cls, entries: Iterable[LogEntry], *, store: Optional[EventStore] = None) -> "EventLog":
        """Rebuild a log from previously persisted entries.

        The entries are loaded as-is; nothing is written back to ``store``,
        which only receives entries appended afterwards.

        Raises:
            ReplayFailure: If the entries are not numbered 1, 2, 3, ... in
                order.
        """

        event_log = cls()
        for expected_id, entry in enumerate(entries, start=1):
            if entry.event_id != expected_id:
                log.error(
                    "Event log is not gapless: expected event %d, found %d",
                    expected_id,
                    entry.event_id,
                )
                raise ReplayFailure(
                    f"Expected event {expected_id} but found event {entry.event_id}"
                )
            event_log._entries.append(entry)
        event_log._store = store
        log.info("Loaded event log with %d entries", len(event_log._entries))
        return event_log

    def append(
        self,
        operation: EventOperation,
        entity_type: EntityType,
        entity_id: int,
        entity: Optional[StorageEntity] = None,
        *,
        timestamp: Optional[datetime] = None,
    ) -> LogEntry:
        """Assign the next event id to a mutation and record it.

        The stored entity copy is stamped with the new event id as its
        ``relate_event_id``. When a store is attached the entry is written
        there first and only becomes visible in the log once the store
        accepted it.

        Raises:
            EventStorageError: If the attached store fails to persist the
                entry. The log is left unchanged.
        """

        with self.lock:
            event_id = len(self._entries) + 1
            if entity is not None:
                entity = replace(entity, relate_event_id=event_id)
            entry = LogEntry(
                event_id=event_id,
                timestamp=_resolve_timestamp(timestamp),
                operation=operation,
                entity_type=entity_type,
                entity_id=entity_id,
                entity=entity,
            )
            if self._store is not None:
                try:
                    self._store.append(entry)
                except Exception as exc:
                    log.error("Failed to persist event %d: %s", event_id, exc)
                    raise EventStorageError(f"Unable to persist event {event_id}") from exc
            self._entries.append(entry)

        log.debug(
            "Appended event %d: %s %s #%s",
            entry.event_id,
            operation.value,
            entity_type.value,
            entity_id,
        )
        return entry

    def entries_up_to(self, event_id: int) -> LogPrefix:
        """Return the entries with an id lower than or equal to ``event_id``.

        Raises:
            ValueError: If ``event_id`` is negative or beyond the last event.
        """

        with self.lock:
            length = len(self._entries)
        if event_id < 0 or event_id > length:
            raise ValueError(f"Event id {event_id} is outside the log (0..{length})")
        return LogPrefix(self._entries, event_id)

    def get_entry(self, event_id: int) -> Optional[LogEntry]:
        if 1 <= event_id <= len(self._entries):
            return self._entries[event_id - 1]
        return None

    def number_of_events(self) -> int:
        return len(self._entries)

    def last_event_id(self) -> int:
        """Return the id of the newest entry, or ``0`` for an empty log."""

        return len(self._entries)

    def __iter__(self) -> Iterator[LogEntry]:
        return iter(self.entries_up_to(self.number_of_events()))


__all__ = ["LogEntry", "EventStore", "LogPrefix", "EventLog"]
