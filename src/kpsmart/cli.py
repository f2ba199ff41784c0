"""Command-line entry points for the KPSmart mail network.

The module only wires argparse and translates command-line arguments into
state manipulator and report calls. Results are written through the package
logger. Read commands accept ``--at-event`` to look at the network as it was
right after a past event.
"""

from __future__ import annotations

import argparse
import math
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Mapping, MutableMapping, Optional, Sequence

from . import data_manager, log, manager as entity_manager
from .constants import DayOfWeek, EntityType, Priority, TransportMeans
from .entities import Carrier, CustomerPrice, DomesticCustomerPrice, Location, Route
from .exceptions import ReferentialIntegrityViolation, StateError, UnknownEntityError
from .manager import EntityManager


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[EntityManager, argparse.Namespace], int]
    mutates: bool = False


# Entity type -> (lookup method, delete method) on the state manipulator.
DELETE_ACTIONS: Mapping[EntityType, tuple[str, str]] = {
    EntityType.LOCATION: ("get_location_by_id", "delete_location"),
    EntityType.CARRIER: ("get_carrier", "delete_carrier"),
    EntityType.ROUTE: ("get_route_by_id", "delete_route"),
    EntityType.CUSTOMER_PRICE: ("get_customer_price_by_id", "delete_customer_price"),
    EntityType.DOMESTIC_CUSTOMER_PRICE: ("get_domestic_customer_price_by_id", "delete_domestic_customer_price"),
    EntityType.MAIL_DELIVERY: ("get_mail_delivery", "delete_mail_delivery"),
}


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="kpsmart-cli",
        description="Command-line tools for the KPSmart mail network.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (searched upward from the working directory by default).",
    )
    return parser


def configure_subcommands(
    parser: argparse.ArgumentParser,
) -> Mapping[str, CommandSpec]:
    """Wire all CLI sub-commands onto the supplied parser."""
    subparsers = parser.add_subparsers(dest="command", required=True, title="commands")
    write_specs = register_write_commands(subparsers)
    read_specs = register_read_commands(subparsers)
    return build_command_table([*write_specs.values(), *read_specs.values()])


def _simple_spec(
    name: str,
    help_text: str,
    add_arguments: Callable[[argparse.ArgumentParser], None],
    execute: Callable[[EntityManager, argparse.Namespace], int],
    *,
    mutates: bool,
) -> CommandSpec:
    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        add_arguments(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=execute, mutates=mutates)


def register_write_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare the commands that append events to the log."""
    specs = {
        "add-location": _simple_spec(
            "add-location", "Register a new location.", _location_arguments, run_add_location, mutates=True
        ),
        "add-carrier": _simple_spec(
            "add-carrier", "Register a new carrier.", _carrier_arguments, run_add_carrier, mutates=True
        ),
        "add-route": _simple_spec(
            "add-route", "Register a carrier route between two locations.", _route_arguments, run_add_route, mutates=True
        ),
        "add-price": _simple_spec(
            "add-price", "Set the customer price of a route and priority.", _price_arguments, run_add_price, mutates=True
        ),
        "add-domestic-price": _simple_spec(
            "add-domestic-price",
            "Set the customer price of domestic mail for a priority.",
            _domestic_price_arguments,
            run_add_domestic_price,
            mutates=True,
        ),
        "deliver": _simple_spec(
            "deliver", "Record a mail delivery over one or more routes.", _deliver_arguments, run_deliver, mutates=True
        ),
        "delete": _simple_spec("delete", "Delete an entity by id.", _delete_arguments, run_delete, mutates=True),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only report commands."""
    specs = {
        "revenue": _simple_spec(
            "revenue",
            "Display revenue and expenditure per route and priority.",
            _at_event_argument,
            run_revenue_report,
            mutates=False,
        ),
        "mail": _simple_spec(
            "mail", "Display the amount of mail per route.", _at_event_argument, run_mail_report, mutates=False
        ),
        "monthly": _simple_spec(
            "monthly", "Display monthly delivery summaries.", _at_event_argument, run_monthly_report, mutates=False
        ),
        "timeline": _simple_spec(
            "timeline",
            "Display running revenue and expenditure.",
            _timeline_arguments,
            run_timeline_report,
            mutates=False,
        ),
        "events": _simple_spec(
            "events", "Display the event log.", _at_event_argument, run_events_report, mutates=False
        ),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def _location_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--name", required=True)
    parser.add_argument("--international", action="store_true", help="Mark the location as overseas.")


def _carrier_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--name", required=True)


def _route_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--start", required=True, help="Name of the start location.")
    parser.add_argument("--end", required=True, help="Name of the end location.")
    parser.add_argument("--transport", choices=[member.value for member in TransportMeans], required=True)
    parser.add_argument("--carrier", required=True, help="Name of the carrier operating the route.")
    parser.add_argument("--weight-cost", required=True)
    parser.add_argument("--volume-cost", required=True)
    parser.add_argument("--day", choices=[member.value for member in DayOfWeek], default=DayOfWeek.MONDAY.value)
    parser.add_argument("--frequency", type=int, default=24, help="Hours between departures (0 = weekly).")
    parser.add_argument("--duration", type=int, default=0, help="Transit time in hours.")


def _price_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--start", required=True)
    parser.add_argument("--end", required=True)
    _rate_arguments(parser)


def _domestic_price_arguments(parser: argparse.ArgumentParser) -> None:
    _rate_arguments(parser)


def _rate_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--priority", choices=[member.value for member in Priority], required=True)
    parser.add_argument("--weight-price", required=True)
    parser.add_argument("--volume-price", required=True)


def _deliver_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--route",
        dest="routes",
        type=int,
        action="append",
        required=True,
        help="Route id of a leg; repeat in travel order for multi-leg journeys.",
    )
    parser.add_argument("--priority", choices=[member.value for member in Priority], required=True)
    parser.add_argument("--weight", required=True)
    parser.add_argument("--volume", required=True)
    parser.add_argument("--submitted", default=None, help="ISO 8601 submission time (defaults to now).")


def _delete_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--entity-type", choices=[member.value for member in EntityType], required=True)
    parser.add_argument("--id", dest="entity_id", type=int, required=True)


def _at_event_argument(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--at-event",
        type=int,
        default=None,
        help="Show the network as it was right after this event id (0 shows the live network).",
    )


def _timeline_arguments(parser: argparse.ArgumentParser) -> None:
    _at_event_argument(parser)
    parser.add_argument(
        "--last",
        type=int,
        default=None,
        help="Number of points to show (defaults to RecentEvents from config.ini).",
    )


def dispatch_command(
    manager: EntityManager,
    args: argparse.Namespace,
    command_table: Mapping[str, CommandSpec],
) -> int:
    """Dispatch the parsed arguments to the configured executor."""
    if not hasattr(args, "command") or args.command is None:
        raise KeyError("No command specified")
    spec = command_table.get(args.command)
    if spec is None:
        raise KeyError(f"Unknown command: {args.command}")
    return spec.execute(manager, args)


def build_command_table(
    specs: Iterable[CommandSpec],
) -> MutableMapping[str, CommandSpec]:
    """Build an index of command specifications keyed by command name."""
    table: Dict[str, CommandSpec] = {}
    for spec in specs:
        if spec.name in table:
            raise ValueError(f"Duplicate command name: {spec.name}")
        table[spec.name] = spec
    return table


def _require_carrier(manager: EntityManager, name: str) -> Carrier:
    carrier = manager.state.get_carrier_by_name(name)
    if carrier is None:
        log.warning("Referenced carrier '%s' does not exist", name)
        raise ReferentialIntegrityViolation(f"Unknown carrier: {name}")
    return carrier


def translate_route(manager: EntityManager, args: argparse.Namespace) -> Route:
    """Translate CLI args into a route; endpoints are resolved by name on save."""
    carrier = _require_carrier(manager, args.carrier)
    return Route(
        start_point=Location(name=args.start),
        end_point=Location(name=args.end),
        transport_means=TransportMeans(args.transport),
        carrier_id=carrier.id,
        carrier_weight_unit_cost=Decimal(args.weight_cost),
        carrier_volume_unit_cost=Decimal(args.volume_cost),
        day=DayOfWeek(args.day),
        frequency=args.frequency,
        duration=args.duration,
    )


def translate_price(args: argparse.Namespace) -> CustomerPrice:
    return CustomerPrice(
        start_location=Location(name=args.start),
        end_location=Location(name=args.end),
        priority=Priority(args.priority),
        price_per_unit_weight=Decimal(args.weight_price),
        price_per_unit_volume=Decimal(args.volume_price),
    )


def translate_domestic_price(args: argparse.Namespace) -> DomesticCustomerPrice:
    return DomesticCustomerPrice(
        priority=Priority(args.priority),
        price_per_unit_weight=Decimal(args.weight_price),
        price_per_unit_volume=Decimal(args.volume_price),
    )


def translate_delivery(args: argparse.Namespace) -> Mapping[str, Any]:
    """Translate CLI args into keyword arguments for ``create_mail_delivery``."""
    submitted = datetime.fromisoformat(args.submitted) if args.submitted else datetime.now(UTC)
    return {
        "route_ids": list(args.routes),
        "priority": Priority(args.priority),
        "weight": Decimal(args.weight),
        "volume": Decimal(args.volume),
        "submission_date": submitted,
    }


def run_add_location(manager: EntityManager, args: argparse.Namespace) -> int:
    location = manager.manipulator.save_location(Location(name=args.name, international=args.international))
    log.info("Location #%s '%s' added", location.id, location.name)
    return 0


def run_add_carrier(manager: EntityManager, args: argparse.Namespace) -> int:
    carrier = manager.manipulator.save_carrier(Carrier(name=args.name))
    log.info("Carrier #%s '%s' added", carrier.id, carrier.name)
    return 0


def run_add_route(manager: EntityManager, args: argparse.Namespace) -> int:
    route = manager.manipulator.save_route(translate_route(manager, args))
    log.info("Route #%s %s -> %s added", route.id, route.start_point.name, route.end_point.name)
    return 0


def run_add_price(manager: EntityManager, args: argparse.Namespace) -> int:
    price = manager.manipulator.save_customer_price(translate_price(args))
    log.info("Customer price #%s added", price.id)
    return 0


def run_add_domestic_price(manager: EntityManager, args: argparse.Namespace) -> int:
    price = manager.manipulator.save_domestic_customer_price(translate_domestic_price(args))
    log.info("Domestic price #%s added for %s", price.id, price.priority.value)
    return 0


def run_deliver(manager: EntityManager, args: argparse.Namespace) -> int:
    delivery = manager.manipulator.create_mail_delivery(**translate_delivery(args))
    log.info(
        "Mail delivery #%s %s -> %s recorded: cost %s, price %s, %d hours",
        delivery.id,
        delivery.origin.name,
        delivery.destination.name,
        delivery.cost,
        delivery.price,
        delivery.shipping_duration,
    )
    return 0


def run_delete(manager: EntityManager, args: argparse.Namespace) -> int:
    entity_type = EntityType(args.entity_type)
    lookup_name, delete_name = DELETE_ACTIONS[entity_type]
    state = manager.manipulator
    entity = getattr(state, lookup_name)(args.entity_id)
    if entity is None:
        log.warning("Attempted to delete unknown %s #%s", entity_type.value, args.entity_id)
        raise UnknownEntityError(f"Unknown {entity_type.value} #{args.entity_id}")
    getattr(state, delete_name)(entity)
    log.info("%s #%s deleted", entity_type.value, args.entity_id)
    return 0


def resolve_view(manager: EntityManager, args: argparse.Namespace) -> EntityManager:
    """Return the live manager or the snapshot requested with ``--at-event``.

    An event point of 0 selects the live view, the same as leaving the option out.
    """
    at_event = getattr(args, "at_event", None)
    if not at_event:
        return manager
    return manager.at_event_point(at_event)


def _format_hours(hours: float) -> str:
    return "no data" if math.isnan(hours) else f"{hours:.1f}h"


def run_revenue_report(manager: EntityManager, args: argparse.Namespace) -> int:
    reports = resolve_view(manager, args).reports
    for group in reports.get_all_revenue_expenditure():
        log.info(
            "%s -> %s [%s]: revenue %s, expenditure %s, average %s%s",
            group.start_point.name,
            group.end_point.name,
            group.priority.value,
            group.revenue,
            group.expenditure,
            _format_hours(group.average_delivery_time),
            " (critical)" if group.is_critical else "",
        )
    log.info(
        "Total revenue %s, total expenditure %s, average delivery time %s",
        reports.get_total_revenue(),
        reports.get_total_expenditure(),
        _format_hours(reports.get_average_delivery_time()),
    )
    if reports.has_critical_routes():
        log.warning("%d route groups cost more than they earn", len(reports.get_critical_routes()))
    return 0


def run_mail_report(manager: EntityManager, args: argparse.Namespace) -> int:
    for amount in resolve_view(manager, args).reports.get_amounts_of_mail_for_all_routes():
        log.info(
            "%s -> %s: %d items, weight %s, volume %s",
            amount.start_point.name,
            amount.end_point.name,
            amount.items,
            amount.total_weight,
            amount.total_volume,
        )
    return 0


def run_monthly_report(manager: EntityManager, args: argparse.Namespace) -> int:
    for month in resolve_view(manager, args).reports.get_monthly_summary():
        log.info(
            "%s: %d deliveries, revenue %s, expenditure %s, weight %s, volume %s",
            month.name,
            month.event_count,
            month.revenue,
            month.expenditure,
            month.weight,
            month.volume,
        )
    return 0


def run_timeline_report(manager: EntityManager, args: argparse.Namespace) -> int:
    last_n = args.last
    if last_n is None:
        last_n = data_manager.DEFAULT_RECENT_EVENTS
        if manager.settings is not None:
            last_n = manager.settings.recent_events
    for point in resolve_view(manager, args).reports.get_last_revenue_expenditure_over_time(last_n):
        log.info(
            "Event %d at %s: revenue %s, expenditure %s",
            point.event_id,
            point.date.isoformat(),
            point.revenue,
            point.expenditure,
        )
    return 0


def run_events_report(manager: EntityManager, args: argparse.Namespace) -> int:
    view = resolve_view(manager, args)
    for entry in view.state.iter_events():
        log.info(
            "#%d %s %s %s #%s",
            entry.event_id,
            entry.timestamp.isoformat(),
            entry.operation.value,
            entry.entity_type.value,
            entry.entity_id,
        )
    log.info("%d events", view.reports.get_number_of_events())
    return 0


def load_entity_manager(config_path: Optional[Path] = None) -> EntityManager:
    """Resolve the live entity manager for CLI operations."""
    return entity_manager.load_entity_manager(config_path)


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into exit codes."""
    if isinstance(error, StateError):
        log.error("%s", error)
        return 2
    if isinstance(error, FileNotFoundError):
        log.error("%s", error)
        return 3
    log.error("%s", error)
    return 1


def persist_workbook(manager: EntityManager) -> None:
    """Persist the workbook after a successful write command."""
    try:
        entity_manager.persist(manager)
    except PermissionError as error:
        raise RuntimeError(str(error)) from error


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    try:
        manager = load_entity_manager(getattr(args, "config", None))
        exit_code = dispatch_command(manager, args, command_table)
        if exit_code == 0 and command_table[args.command].mutates:
            persist_workbook(manager)
        return exit_code
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)
