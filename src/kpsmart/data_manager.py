"""Persistence and configuration collaborator for the KPSmart event log.

The core never touches storage directly. This module provides the pieces the
outer layers need to keep the event log on disk:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening and persisting the Excel file.
3. Event rows: converting :class:`~kpsmart.event_log.LogEntry` objects to and
   from ``EventLog`` sheet rows, and exposing the sheet as an event store.
"""


from __future__ import annotations

import configparser
import json
from dataclasses import dataclass, replace
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterable, Optional, Sequence

from openpyxl.workbook import Workbook
import openpyxl

from . import log
from .constants import EntityType, EventOperation, SheetName
from .entities import entity_from_record
from .event_log import LogEntry


CONFIG_FILE_NAME = "config.ini"
DEFAULT_RECENT_EVENTS = 10
EVENT_LOG_SHEET = SheetName.EVENT_LOG.value
METADATA_SHEET = SheetName.METADATA.value

EVENT_LOG_COLUMNS: tuple[str, ...] = (
    "EventID",
    "Timestamp",
    "Operation",
    "EntityType",
    "EntityID",
    "Payload",
)
METADATA_COLUMNS: tuple[str, ...] = ("Key", "Value")


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    network_name: str
    schema_version: str
    recent_events: int = DEFAULT_RECENT_EVENTS


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file.

    An explicit path is returned as-is. Otherwise the search walks from the
    current working directory up to the filesystem root and returns the first
    ``CONFIG_FILE_NAME`` it finds.

    Args:
        explicit_path (Path | None): Optional path to use instead of searching.

    Returns:
        Path: The explicit path or the discovered configuration file.

    Raises:
        FileNotFoundError: If no directory on the way up holds
            ``CONFIG_FILE_NAME``.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for directory in (current, *current.parents):
        candidate = directory / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` into a ``ConfigParser``.

    Sections are not validated here; :func:`parse_settings` does that.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path)
    return parser


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into :class:`ConfigSettings`.

    Relative ``DataFile`` entries are anchored at ``base_path`` (the current
    working directory when omitted). ``[Reporting] RecentEvents`` is optional
    and defaults to :data:`DEFAULT_RECENT_EVENTS`.

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Directory relative data files are resolved
            against.

    Returns:
        ConfigSettings: Immutable settings with an absolute data file path.

    Raises:
        KeyError: If a required section or option is missing.
        ValueError: If ``RecentEvents`` is not a non-negative integer.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        network_name = parser.get("System", "NetworkName")
        schema_version = parser.get("System", "SchemaVersion")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    recent_events = parser.getint("Reporting", "RecentEvents", fallback=DEFAULT_RECENT_EVENTS)
    if recent_events < 0:
        raise ValueError("RecentEvents must be zero or positive")

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    return ConfigSettings(
        data_file=data_file_path,
        network_name=network_name,
        schema_version=schema_version,
        recent_events=recent_events,
    )


def open_workbook(data_file: Path) -> Workbook:
    """Open the event log workbook.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    return openpyxl.load_workbook(data_file)


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Write ``workbook`` to ``destination``, creating parent folders."""

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    workbook.save(dest)


def refresh_workbook(data_file: Path) -> Workbook:
    """Reload the workbook from disk, discarding unsaved in-memory rows."""

    return open_workbook(data_file)


def read_metadata(workbook: Workbook) -> Dict[str, str]:
    """Return the ``Key``/``Value`` pairs stored on the ``Metadata`` sheet.

    Raises:
        KeyError: If the workbook has no ``Metadata`` sheet.
    """

    sheet = workbook[METADATA_SHEET]
    metadata: Dict[str, str] = {}
    for key, value in sheet.iter_rows(min_row=2, max_col=2, values_only=True):
        if key is not None:
            metadata[str(key)] = "" if value is None else str(value)
    return metadata


def serialize_entry(entry: LogEntry) -> list[object]:
    """Convert a log entry into the ``EventLog`` sheet column order.

    The entity travels as a JSON document in the ``Payload`` column. Deletes
    carry no entity and leave the payload empty.

    Args:
        entry (LogEntry): Entry to convert.

    Returns:
        list[object]: ``[EventID, Timestamp, Operation, EntityType, EntityID,
        Payload]``.
    """

    payload = None
    if entry.entity is not None:
        payload = json.dumps(entry.entity.to_record(), sort_keys=True)

    return [
        entry.event_id,
        entry.timestamp.isoformat(),
        entry.operation.value,
        entry.entity_type.value,
        entry.entity_id,
        payload,
    ]


def deserialize_entry(raw_row: Sequence[object]) -> LogEntry:
    """Convert a raw ``EventLog`` row back into a :class:`LogEntry`.

    The entity's ``relate_event_id`` is restored from the row's event id.

    Raises:
        ValueError: If a column holds a value that cannot be parsed.
    """

    event_id_raw, timestamp_raw, operation_raw, entity_type_raw, entity_id_raw, payload = raw_row[:6]

    event_id = int(event_id_raw)
    entity_type = EntityType(str(entity_type_raw))
    timestamp = (
        timestamp_raw
        if isinstance(timestamp_raw, datetime)
        else datetime.fromisoformat(str(timestamp_raw))
    )

    entity = None
    if payload not in (None, ""):
        try:
            record = json.loads(str(payload))
        except json.JSONDecodeError as exc:
            raise ValueError(f"Event {event_id} has an unreadable payload") from exc
        entity = replace(entity_from_record(entity_type, record), relate_event_id=event_id)

    return LogEntry(
        event_id=event_id,
        timestamp=timestamp,
        operation=EventOperation(str(operation_raw)),
        entity_type=entity_type,
        entity_id=int(entity_id_raw),
        entity=entity,
    )


def iter_entries(workbook: Workbook) -> Iterable[LogEntry]:
    """Stream log entries from the ``EventLog`` sheet in row order.

    The header row and fully empty rows are skipped.
    """

    sheet = workbook[EVENT_LOG_SHEET]
    for raw in sheet.iter_rows(min_row=2, max_col=len(EVENT_LOG_COLUMNS), values_only=True):
        if any(cell is not None for cell in raw):
            yield deserialize_entry(raw)


def append_entry(workbook: Workbook, entry: LogEntry) -> None:
    """Append one log entry to the ``EventLog`` sheet."""

    sheet = workbook[EVENT_LOG_SHEET]
    sheet.append(serialize_entry(entry))


class WorkbookEventStore:
    """Event store backed by the ``EventLog`` sheet of an open workbook.

    Appends only touch the in-memory workbook; callers decide when to write
    it to disk with :func:`save_workbook`.
    """

    def __init__(self, workbook: Workbook) -> None:
        self.workbook = workbook

    def append(self, entry: LogEntry) -> None:
        append_entry(self.workbook, entry)
        log.debug("Stored event %d in workbook", entry.event_id)

    def iter_entries(self) -> Iterable[LogEntry]:
        return iter_entries(self.workbook)

