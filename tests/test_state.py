"""Unit tests for the live state manipulator and its read-only snapshots."""

from __future__ import annotations

import threading
from dataclasses import replace
from datetime import UTC, datetime
from decimal import Decimal

import pytest

from conftest import SUBMITTED
from kpsmart.constants import EntityType, EventOperation, Priority, TransportMeans
from kpsmart.entities import Carrier, CustomerPrice, DomesticCustomerPrice, Location, MailDelivery, Route
from kpsmart.event_log import EventLog
from kpsmart.exceptions import (
    ConflictError,
    MissingPriceError,
    ReferentialIntegrityViolation,
    ReplayFailure,
    UnknownEntityError,
)
from kpsmart.state import ReadOnlyState, StateManipulator, require_nonnegative


def _deliver(network, *, weight="10", volume="2", submitted=SUBMITTED):
    return network.state.create_mail_delivery(
        [network.route.id],
        Priority.INTERNATIONAL_AIR,
        Decimal(weight),
        Decimal(volume),
        submitted,
    )


def test_save_assigns_ids_and_event_ids(state):
    """Creating an entity assigns an id and records one event."""

    location = state.save_location(Location(name="Wellington"))

    assert location.id == 1
    assert location.relate_event_id == 1
    assert state.event_id == 1
    assert state.get_location_for_name("Wellington") == location


def test_duplicate_location_name_conflicts(state):
    """Location names are unique among active locations."""

    state.save_location(Location(name="Wellington"))
    with pytest.raises(ConflictError):
        state.save_location(Location(name="Wellington", international=True))
    assert state.number_of_events() == 1


def test_location_cannot_be_changed(state):
    """Locations are immutable once created."""

    location = state.save_location(Location(name="Wellington"))
    with pytest.raises(ConflictError):
        state.save_location(replace(location, international=True))


def test_duplicate_customer_price_conflicts_and_new_key_succeeds(network):
    """A second price for the same triple is rejected; a new triple is stored."""

    state = network.state
    events_before = state.number_of_events()

    with pytest.raises(ConflictError):
        state.save_customer_price(
            CustomerPrice(
                start_location=network.wellington,
                end_location=network.rome,
                priority=Priority.INTERNATIONAL_AIR,
                price_per_unit_weight=Decimal("9"),
                price_per_unit_volume=Decimal("9"),
            )
        )
    assert state.number_of_events() == events_before

    surface = state.save_customer_price(
        CustomerPrice(
            start_location=network.wellington,
            end_location=network.rome,
            priority=Priority.INTERNATIONAL_SURFACE,
            price_per_unit_weight=Decimal("3"),
            price_per_unit_volume=Decimal("1"),
        )
    )
    assert state.get_customer_price(network.wellington, network.rome, Priority.INTERNATIONAL_SURFACE) == surface


def test_updating_price_keeps_its_id(network):
    """Saving a known id records an update instead of a create."""

    state = network.state
    updated = state.save_customer_price(replace(network.price, price_per_unit_weight=Decimal("6")))

    assert updated.id == network.price.id
    assert state.get_customer_price_by_id(updated.id).price_per_unit_weight == Decimal("6")
    last = list(state.iter_events())[-1]
    assert last.operation is EventOperation.UPDATE


def test_route_requires_known_locations_and_carrier(state):
    """Routes may only reference active locations and carriers."""

    wellington = state.save_location(Location(name="Wellington"))
    with pytest.raises(ReferentialIntegrityViolation):
        state.save_route(
            Route(
                start_point=wellington,
                end_point=Location(name="Nowhere"),
                transport_means=TransportMeans.LAND,
                carrier_id=1,
                carrier_weight_unit_cost=Decimal("1"),
                carrier_volume_unit_cost=Decimal("1"),
            )
        )

    auckland = state.save_location(Location(name="Auckland"))
    with pytest.raises(ReferentialIntegrityViolation):
        state.save_route(
            Route(
                start_point=wellington,
                end_point=auckland,
                transport_means=TransportMeans.LAND,
                carrier_id=42,
                carrier_weight_unit_cost=Decimal("1"),
                carrier_volume_unit_cost=Decimal("1"),
            )
        )
    assert state.get_all_routes() == []


def test_duplicate_route_key_conflicts(network):
    """Two active routes may not share start, end, means, and carrier."""

    with pytest.raises(ConflictError):
        network.state.save_route(replace(network.route, id=None, carrier_weight_unit_cost=Decimal("9")))


def test_negative_rates_are_rejected(network):
    """Costs and prices cannot be negative."""

    with pytest.raises(ValueError):
        network.state.save_route(replace(network.route, carrier_volume_unit_cost=Decimal("-1")))
    with pytest.raises(ValueError):
        require_nonnegative(Decimal("1"), Decimal("-0.01"))


def test_routes_for_priority_filter_by_transport(network):
    """Air priorities only see air routes."""

    state = network.state
    state.save_route(
        Route(
            start_point=network.wellington,
            end_point=network.rome,
            transport_means=TransportMeans.SEA,
            carrier_id=network.carrier.id,
            carrier_weight_unit_cost=Decimal("1"),
            carrier_volume_unit_cost=Decimal("1"),
        )
    )

    assert state.get_all_routes_for_priority(Priority.INTERNATIONAL_AIR) == [network.route]
    surface = state.get_routes_between(network.wellington, network.rome, Priority.INTERNATIONAL_SURFACE)
    assert [route.transport_means for route in surface] == [TransportMeans.SEA]
    assert len(state.get_routes_connected_to(network.rome)) == 2


def test_wellington_to_rome_delivery(network):
    """The delivery costs 20 to send and earns 52."""

    delivery = _deliver(network)

    assert delivery.cost == Decimal("20")
    assert delivery.price == Decimal("52")
    assert delivery.origin.name == "Wellington"
    assert delivery.destination.name == "Rome"
    assert delivery.shipping_duration == 45
    assert network.state.get_all_mail_deliveries() == [delivery]


def test_delivery_without_price_is_rejected(network):
    """A journey and priority without any price cannot be delivered."""

    with pytest.raises(MissingPriceError):
        network.state.create_mail_delivery(
            [network.route.id],
            Priority.DOMESTIC_AIR,
            Decimal("1"),
            Decimal("1"),
            SUBMITTED,
        )


def test_delivery_over_unknown_route_is_rejected(network):
    """Every leg must be an active route."""

    with pytest.raises(ReferentialIntegrityViolation):
        network.state.create_mail_delivery(
            [999],
            Priority.INTERNATIONAL_AIR,
            Decimal("1"),
            Decimal("1"),
            SUBMITTED,
        )


def test_domestic_journeys_fall_back_to_domestic_price(state):
    """Journeys inside the country without an exact price use the domestic price."""

    wellington = state.save_location(Location(name="Wellington"))
    auckland = state.save_location(Location(name="Auckland"))
    domestic = state.save_domestic_customer_price(
        DomesticCustomerPrice(
            priority=Priority.DOMESTIC_LAND,
            price_per_unit_weight=Decimal("1.5"),
            price_per_unit_volume=Decimal("0.5"),
        )
    )

    assert state.get_price(wellington, auckland, Priority.DOMESTIC_LAND) == domestic
    assert state.get_price(wellington, auckland, Priority.DOMESTIC_AIR) is None


def test_exact_customer_price_wins_over_domestic_price(state):
    """A price for the exact journey beats the priority-wide domestic price."""

    wellington = state.save_location(Location(name="Wellington"))
    auckland = state.save_location(Location(name="Auckland"))
    carrier = state.save_carrier(Carrier(name="CarrierX"))
    route = state.save_route(
        Route(
            start_point=wellington,
            end_point=auckland,
            transport_means=TransportMeans.LAND,
            carrier_id=carrier.id,
            carrier_weight_unit_cost=Decimal("1"),
            carrier_volume_unit_cost=Decimal("0"),
        )
    )
    exact = state.save_customer_price(
        CustomerPrice(
            start_location=wellington,
            end_location=auckland,
            priority=Priority.DOMESTIC_LAND,
            price_per_unit_weight=Decimal("7"),
            price_per_unit_volume=Decimal("0"),
        )
    )
    state.save_domestic_customer_price(
        DomesticCustomerPrice(
            priority=Priority.DOMESTIC_LAND,
            price_per_unit_weight=Decimal("1"),
            price_per_unit_volume=Decimal("0"),
        )
    )

    assert state.get_price(wellington, auckland, Priority.DOMESTIC_LAND) == exact
    delivery = state.create_mail_delivery(
        [route.id], Priority.DOMESTIC_LAND, Decimal("10"), Decimal("1"), SUBMITTED
    )
    assert delivery.price == Decimal("70")


def _forged_delivery(network, **overrides) -> MailDelivery:
    """A delivery whose derived figures were not computed from the network."""

    fields = dict(
        route_ids=(network.route.id,),
        priority=Priority.INTERNATIONAL_AIR,
        weight=Decimal("10"),
        volume=Decimal("2"),
        submission_date=SUBMITTED,
        origin=network.rome,
        destination=network.wellington,
        international=False,
        shipping_duration=-5,
        cost=Decimal("999"),
        price=Decimal("-1"),
    )
    fields.update(overrides)
    return MailDelivery(**fields)


def test_save_mail_delivery_recomputes_derived_figures(network):
    """Saving a delivery directly derives cost, price, and endpoints from the network."""

    stored = network.state.save_mail_delivery(_forged_delivery(network))

    assert stored.id == 1
    assert (stored.origin, stored.destination) == (network.wellington, network.rome)
    assert stored.cost == Decimal("20")
    assert stored.price == Decimal("52")
    assert stored.shipping_duration == 45
    assert stored.international is True


def test_save_mail_delivery_rejects_disconnected_legs(network):
    """Legs that do not meet end to start are refused before anything is logged."""

    state = network.state
    events_before = state.number_of_events()

    with pytest.raises(ValueError):
        state.save_mail_delivery(_forged_delivery(network, route_ids=(network.route.id, network.route.id)))
    assert state.number_of_events() == events_before
    assert state.get_all_mail_deliveries() == []


def test_save_mail_delivery_requires_a_price(network):
    """A journey without any price for the priority is refused."""

    state = network.state
    events_before = state.number_of_events()

    with pytest.raises(MissingPriceError):
        state.save_mail_delivery(_forged_delivery(network, priority=Priority.DOMESTIC_AIR))
    assert state.number_of_events() == events_before


def test_updating_delivery_reprices_it(network):
    """An update is priced from the entities in force at the time of the update."""

    state = network.state
    delivery = _deliver(network)

    updated = state.save_mail_delivery(replace(delivery, weight=Decimal("1"), cost=Decimal("0")))

    assert updated.id == delivery.id
    assert updated.cost == Decimal("2")
    assert updated.price == Decimal("7")
    assert list(state.iter_events())[-1].operation is EventOperation.UPDATE


def test_delivery_price_is_frozen_at_creation(network):
    """Later price changes leave recorded deliveries alone."""

    delivery = _deliver(network)
    network.state.save_customer_price(replace(network.price, price_per_unit_weight=Decimal("100")))

    assert network.state.get_mail_delivery(delivery.id).price == Decimal("52")


def test_soft_delete_hides_entity_but_keeps_history(network):
    """Deleted entities vanish from live lookups but stay in earlier snapshots."""

    state = network.state
    delivery = _deliver(network)
    before_delete = state.event_id

    state.delete_mail_delivery(delivery)

    assert state.get_all_mail_deliveries() == []
    assert state.get_mail_delivery(delivery.id) is None
    snapshot = state.at_event_point(before_delete)
    assert snapshot.get_all_mail_deliveries() == [delivery]


def test_delete_unknown_or_deleted_entity_fails(network):
    """Deleting twice, or deleting something never created, is an error."""

    state = network.state
    delivery = _deliver(network)
    state.delete_mail_delivery(delivery)

    with pytest.raises(UnknownEntityError):
        state.delete_mail_delivery(delivery)
    with pytest.raises(UnknownEntityError):
        state.delete_carrier(Carrier(id=77, name="Ghost"))


def test_update_of_deleted_entity_fails(network):
    """A deleted entity cannot be brought back by saving its id."""

    state = network.state
    state.delete_customer_price(network.price)
    with pytest.raises(UnknownEntityError):
        state.save_customer_price(network.price)


def test_delete_guards_against_orphans(network):
    """Locations and carriers in use by active routes cannot be deleted."""

    state = network.state
    with pytest.raises(ReferentialIntegrityViolation):
        state.delete_location(network.wellington)
    with pytest.raises(ReferentialIntegrityViolation):
        state.delete_carrier(network.carrier)

    state.delete_route(network.route)
    state.delete_carrier(network.carrier)
    assert state.get_all_carriers() == []


def test_snapshot_number_of_events_matches_event_point(network):
    """A snapshot at event e reports exactly e events."""

    _deliver(network)
    for event_id in range(network.state.number_of_events() + 1):
        snapshot = network.state.at_event_point(event_id)
        assert isinstance(snapshot, ReadOnlyState)
        assert not isinstance(snapshot, StateManipulator)
        assert snapshot.number_of_events() == event_id


def test_snapshots_are_prefix_consistent(network):
    """Building a later snapshot first does not change an earlier one."""

    _deliver(network)
    _deliver(network, weight="4")
    state = network.state

    direct = state.at_event_point(4)
    state.at_event_point(7)
    again = state.at_event_point(4)

    assert again.get_all_routes() == direct.get_all_routes()
    assert again.get_all_customer_prices() == direct.get_all_customer_prices() == []
    assert again.get_all_mail_deliveries() == direct.get_all_mail_deliveries() == []


def test_snapshot_is_independent_of_live_state(network):
    """Mutating the live state never leaks into an existing snapshot."""

    state = network.state
    snapshot = state.at_event_point(state.event_id)
    _deliver(network)

    assert snapshot.get_all_mail_deliveries() == []
    assert snapshot.event_id == 5


def test_at_event_point_rejects_ids_outside_log(network):
    """Event points beyond the log are invalid."""

    with pytest.raises(ValueError):
        network.state.at_event_point(network.state.number_of_events() + 1)


def test_rebuild_matches_live_state(network):
    """Replaying the whole log reproduces the live projection."""

    delivery = _deliver(network)
    rebuilt = StateManipulator.rebuild(EventLog.from_entries(network.state.iter_events()))

    assert rebuilt.get_all_mail_deliveries() == [delivery]
    assert rebuilt.get_all_routes() == network.state.get_all_routes()
    assert rebuilt.event_id == network.state.event_id


def test_replay_of_corrupt_log_fails(event_log):
    """A delete of something never created cannot be replayed."""

    event_log.append(EventOperation.DELETE, EntityType.CARRIER, 3)
    with pytest.raises(ReplayFailure):
        StateManipulator.rebuild(event_log)


def test_concurrent_mutations_keep_ids_unique(state):
    """Parallel writers never produce duplicate ids or lost events."""

    def worker(offset: int) -> None:
        for index in range(20):
            state.save_carrier(Carrier(name=f"Carrier {offset}-{index}"))

    threads = [threading.Thread(target=worker, args=(offset,)) for offset in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    carriers = state.get_all_carriers()
    assert len(carriers) == 80
    assert sorted(carrier.id for carrier in carriers) == list(range(1, 81))
    assert state.number_of_events() == 80


def test_mutations_accept_explicit_timestamps(state):
    """A pinned timestamp ends up on the recorded event."""

    moment = datetime(2023, 12, 31, 23, 59, tzinfo=UTC)
    state.save_carrier(Carrier(name="Timely"), timestamp=moment)
    assert list(state.iter_events())[0].timestamp == moment
