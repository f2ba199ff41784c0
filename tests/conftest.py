"""Shared pytest fixtures and utilities for KPSmart tests."""

from __future__ import annotations

import sys
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path
from typing import Callable, Iterator

import pytest

# Ensure source packages are importable without installation.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"

if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from kpsmart import constants  # noqa: E402
from kpsmart.constants import Priority, TransportMeans  # noqa: E402
from kpsmart.entities import Carrier, CustomerPrice, Location, Route  # noqa: E402
from kpsmart.event_log import EventLog  # noqa: E402
from kpsmart.manager import EntityManager  # noqa: E402
from kpsmart.setup_workbook import create_master_workbook  # noqa: E402
from kpsmart.state import StateManipulator  # noqa: E402

DEFAULT_SCHEMA_VERSION = constants.EXPECTED_SCHEMA_VERSION
SUBMITTED = datetime(2024, 3, 4, 9, 30, tzinfo=UTC)
_CONFIG_TEMPLATE = (
    "[System]\n"
    "DataFile = {data_file}\n"
    "NetworkName = {network_name}\n"
    "SchemaVersion = {schema_version}\n\n"
    "[Reporting]\n"
    "RecentEvents = {recent_events}\n"
)


@dataclass(frozen=True)
class ConfigBundle:
    """Container bundling together config metadata for tests."""

    directory: Path
    config_path: Path
    workbook_path: Path
    schema_version: str
    network_name: str


@dataclass(frozen=True)
class Network:
    """The Wellington to Rome network most state and report tests start from."""

    state: StateManipulator
    wellington: Location
    rome: Location
    carrier: Carrier
    route: Route
    price: CustomerPrice


@pytest.fixture(scope="session", autouse=True)
def _restore_sys_path() -> Iterator[None]:
    """Ensure sys.path modifications are undone after the test session."""

    original = sys.path.copy()
    try:
        yield
    finally:
        sys.path[:] = original


@pytest.fixture
def workbook_factory(tmp_path: Path) -> Callable[..., Path]:
    """Factory that creates an empty event log workbook in a temp folder."""

    def _create_workbook(
        *,
        subdir: str | None = None,
        network_name: str = "Test Network",
        schema_version: str = DEFAULT_SCHEMA_VERSION,
        filename: str = "kpsmart_log.xlsx",
    ) -> Path:
        base_dir = tmp_path if subdir is None else tmp_path / subdir
        base_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = base_dir / filename
        create_master_workbook(
            workbook_path,
            network_name=network_name,
            schema_version=schema_version,
            overwrite=True,
        )
        return workbook_path

    return _create_workbook


@pytest.fixture
def workbook_path(workbook_factory: Callable[..., Path]) -> Path:
    """Return a fresh workbook ready for use in a test."""

    return workbook_factory(subdir=f"workbook_{uuid.uuid4().hex}")


@pytest.fixture
def config_factory(tmp_path: Path, workbook_factory: Callable[..., Path]) -> Callable[..., ConfigBundle]:
    """Provide a callable that creates config/workbook bundles on demand."""

    def _create_config(
        *,
        make_relative: bool = False,
        network_name: str = "Test Network",
        schema_version: str = DEFAULT_SCHEMA_VERSION,
        recent_events: int = 10,
    ) -> ConfigBundle:
        bundle_dir_name = f"bundle_{uuid.uuid4().hex}"
        bundle_dir = tmp_path / bundle_dir_name
        workbook_path = workbook_factory(subdir=bundle_dir_name, network_name=network_name)
        data_file_entry = workbook_path.name if make_relative else str(workbook_path)
        config_path = bundle_dir / "config.ini"
        config_path.write_text(
            _CONFIG_TEMPLATE.format(
                data_file=data_file_entry,
                network_name=network_name,
                schema_version=schema_version,
                recent_events=recent_events,
            )
        )
        return ConfigBundle(
            directory=bundle_dir,
            config_path=config_path,
            workbook_path=workbook_path,
            schema_version=schema_version,
            network_name=network_name,
        )

    return _create_config


@pytest.fixture
def config_file(config_factory: Callable[..., ConfigBundle]) -> Path:
    """Convenience fixture returning only the config path."""

    return config_factory().config_path


# ---------------------------------------------------------------------------
# Core fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def event_log() -> EventLog:
    """Return an empty in-memory event log."""

    return EventLog()


@pytest.fixture
def state(event_log: EventLog) -> StateManipulator:
    """Return a live state over the empty ``event_log`` fixture."""

    return StateManipulator(event_log)


@pytest.fixture
def network(state: StateManipulator) -> Network:
    """Build two locations, a carrier, an air route, and its customer price."""

    wellington = state.save_location(Location(name="Wellington"))
    rome = state.save_location(Location(name="Rome", international=True))
    carrier = state.save_carrier(Carrier(name="CarrierX"))
    route = state.save_route(
        Route(
            start_point=wellington,
            end_point=rome,
            transport_means=TransportMeans.AIR,
            carrier_id=carrier.id,
            carrier_weight_unit_cost=Decimal("2"),
            carrier_volume_unit_cost=Decimal("0"),
            frequency=24,
            duration=30,
        )
    )
    price = state.save_customer_price(
        CustomerPrice(
            start_location=wellington,
            end_location=rome,
            priority=Priority.INTERNATIONAL_AIR,
            price_per_unit_weight=Decimal("5"),
            price_per_unit_volume=Decimal("1"),
        )
    )
    return Network(state=state, wellington=wellington, rome=rome, carrier=carrier, route=route, price=price)


@pytest.fixture
def manager() -> EntityManager:
    """Return a live entity manager without persistence."""

    return EntityManager.create()
