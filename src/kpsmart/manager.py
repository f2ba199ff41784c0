"""Entity manager facade tying the event log, state, and reports together.

An :class:`EntityManager` is what callers hold on to: it owns one event log,
a state view derived from it, and a :class:`~kpsmart.reporting.Report` bound
to that state. The live manager carries a :class:`StateManipulator`; the
managers returned by :meth:`EntityManager.at_event_point` carry a read-only
snapshot instead.

The module also loads a manager from the configured workbook and writes it
back once a command succeeded.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from openpyxl.workbook import Workbook

from . import data_manager, log
from .constants import EXPECTED_SCHEMA_VERSION
from .event_log import EventLog, EventStore
from .exceptions import ReplayFailure
from .reporting import Report
from .state import ReadOnlyState, StateManipulator


@dataclass(frozen=True)
class EntityManager:
    """Bundle of an event log, a state view over it, and its reports.

    ``settings`` and ``workbook`` are only set when the manager was loaded
    from a workbook on disk.
    """

    event_log: EventLog
    state: ReadOnlyState
    reports: Report
    settings: Optional[data_manager.ConfigSettings] = None
    workbook: Optional[Workbook] = None

    @classmethod
    def create(cls, store: Optional[EventStore] = None) -> "EntityManager":
        """Return a live manager over a new, empty event log."""

        event_log = EventLog(store)
        state = StateManipulator(event_log)
        return cls(event_log=event_log, state=state, reports=Report(state))

    @classmethod
    def from_store(cls, store: EventStore, **extra) -> "EntityManager":
        """Replay every entry held by ``store`` into a live manager.

        New mutations are appended to the same store.

        Raises:
            ReplayFailure: If the stored entries are gapped or inconsistent.
        """

        event_log = EventLog.from_entries(store.iter_entries(), store=store)
        state = StateManipulator.rebuild(event_log)
        return cls(event_log=event_log, state=state, reports=Report(state), **extra)

    @property
    def read_only(self) -> bool:
        return not isinstance(self.state, StateManipulator)

    @property
    def manipulator(self) -> StateManipulator:
        """Return the live state.

        Raises:
            RuntimeError: If this manager is a historical snapshot.
        """

        if self.read_only:
            raise RuntimeError(f"Snapshot at event {self.state.event_id} is read-only")
        return self.state

    def at_event_point(self, event_id: int) -> "EntityManager":
        """Return a read-only manager reflecting the state right after ``event_id``.

        The snapshot is rebuilt from scratch by replaying the log, so repeated
        calls with the same id give identical results and the live state is
        left untouched.

        Raises:
            ValueError: If ``event_id`` is outside ``0..number_of_events()``.
            ReplayFailure: If the log prefix cannot be replayed.
        """

        try:
            snapshot = ReadOnlyState.replay(self.event_log, event_id)
        except ReplayFailure:
            log.error("Unable to build snapshot at event %d", event_id)
            raise
        log.info("Built read-only view at event %d of %d", event_id, self.event_log.number_of_events())
        return EntityManager(
            event_log=self.event_log,
            state=snapshot,
            reports=Report(snapshot),
            settings=self.settings,
        )


def ensure_schema_version(settings: data_manager.ConfigSettings, workbook: Optional[Workbook] = None) -> None:
    """Validate that the configuration and workbook match this code's schema.

    Args:
        settings (data_manager.ConfigSettings): Parsed configuration.
        workbook (Workbook | None): When given, its ``Metadata`` sheet must
            declare the same schema version.

    Raises:
        RuntimeError: If either schema version differs from
            ``EXPECTED_SCHEMA_VERSION``.
    """

    declared = {"config.ini": settings.schema_version}
    if workbook is not None:
        declared["workbook"] = data_manager.read_metadata(workbook).get("SchemaVersion", "")

    for source, version in declared.items():
        if version != EXPECTED_SCHEMA_VERSION:
            log.error(
                "Schema mismatch in %s: expected %s, found %s",
                source,
                EXPECTED_SCHEMA_VERSION,
                version,
            )
            raise RuntimeError(
                "Schema mismatch in %s: expected %s, found %s"
                % (source, EXPECTED_SCHEMA_VERSION, version)
            )

    log.debug("Schema version '%s' validated", settings.schema_version)


def load_entity_manager(config_path: Optional[Path] = None) -> EntityManager:
    """Load the configured workbook and replay it into a live manager.

    Args:
        config_path (Path | None): Optional explicit ``config.ini``. When
            omitted the file is searched upward from the working directory.

    Returns:
        EntityManager: Live manager whose appends go to the loaded workbook.

    Raises:
        FileNotFoundError: If the configuration file or workbook is missing.
        KeyError: When mandatory configuration options are missing.
        RuntimeError: If a schema version does not match.
        ReplayFailure: If the stored event log cannot be replayed.
    """

    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    workbook = data_manager.open_workbook(settings.data_file)
    ensure_schema_version(settings, workbook)

    store = data_manager.WorkbookEventStore(workbook)
    manager = EntityManager.from_store(store, settings=settings, workbook=workbook)
    log.info(
        "Loaded '%s' with %d events from '%s'",
        settings.network_name,
        manager.event_log.number_of_events(),
        settings.data_file,
    )
    return manager


def persist(manager: EntityManager) -> None:
    """Write the manager's workbook back to the configured data file.

    Raises:
        RuntimeError: If the manager was not loaded from a workbook.
    """

    if manager.workbook is None or manager.settings is None:
        raise RuntimeError("Entity manager is not backed by a workbook")
    data_manager.save_workbook(manager.workbook, destination=manager.settings.data_file)
    log.info("Persisted workbook '%s'", manager.settings.data_file)


def refresh(manager: EntityManager) -> EntityManager:
    """Reload the manager from disk, dropping events that were never saved.

    Raises:
        RuntimeError: If the manager was not loaded from a workbook.
        FileNotFoundError: If the workbook is gone.
    """

    if manager.settings is None:
        raise RuntimeError("Entity manager is not backed by a workbook")
    workbook = data_manager.refresh_workbook(manager.settings.data_file)
    store = data_manager.WorkbookEventStore(workbook)
    log.info("Reloaded workbook '%s'", manager.settings.data_file)
    return EntityManager.from_store(store, settings=manager.settings, workbook=workbook)
