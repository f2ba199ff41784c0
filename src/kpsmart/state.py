"""State projection of the KPSmart event log.

:class:`ReadOnlyState` folds event log entries onto an empty projection and
answers lookups against it. :class:`StateManipulator` is the single owner of
the live projection: every mutation is validated, appended to the event log,
and applied while holding the log's write lock, so the projection never
observes a partially applied event.

Historical views are built by :meth:`StateManipulator.at_event_point`, which
replays a fixed prefix of the log into a brand new :class:`ReadOnlyState`.
Snapshots share no mutable structure with the live state.
"""

from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime
from decimal import Decimal
from typing import Callable, Dict, List, Optional, Sequence, TypeVar

from . import log
from .constants import EntityType, EventOperation, Priority, TransportMeans
from .entities import (
    Carrier,
    CustomerPrice,
    DomesticCustomerPrice,
    Location,
    MailDelivery,
    Price,
    Route,
    StorageEntity,
    validate_legs,
)
from .event_log import EventLog, LogEntry, LogPrefix
from .exceptions import (
    ConflictError,
    MissingPriceError,
    ReferentialIntegrityViolation,
    ReplayFailure,
    UnknownEntityError,
)


E = TypeVar("E", bound=StorageEntity)


class ReadOnlyState:
    """Point-in-time view over the entities recorded in an event log.

    Every lookup ignores soft-deleted entities and returns ``None`` or an
    empty list when nothing matches.
    """

    def __init__(self, event_log: EventLog, *, lock: Optional[threading.RLock] = None) -> None:
        self._log = event_log
        self._lock = lock if lock is not None else threading.RLock()
        self._event_id = 0
        self._entities: Dict[EntityType, Dict[int, StorageEntity]] = {
            entity_type: {} for entity_type in EntityType
        }

    @classmethod
    def replay(cls, event_log: EventLog, event_id: int) -> "ReadOnlyState":
        """Build a new view by replaying entries ``1..event_id`` of ``event_log``.

        Raises:
            ValueError: If ``event_id`` is outside the log.
            ReplayFailure: If an entry cannot be applied.
        """

        state = cls(event_log)
        state._apply_all(event_log.entries_up_to(event_id))
        state._event_id = event_id
        return state

    # ------------------------------------------------------------------
    # Projection maintenance
    # ------------------------------------------------------------------

    def _apply_all(self, entries: LogPrefix) -> None:
        for entry in entries:
            self._apply(entry)

    def _apply(self, entry: LogEntry) -> None:
        """Fold a single log entry onto the projection."""

        bucket = self._entities[entry.entity_type]
        current = bucket.get(entry.entity_id)

        if entry.operation is EventOperation.CREATE:
            if current is not None:
                raise self._replay_failure(entry, "entity already exists")
            bucket[entry.entity_id] = self._entry_entity(entry)
        elif entry.operation is EventOperation.UPDATE:
            if current is None:
                raise self._replay_failure(entry, "entity does not exist")
            bucket[entry.entity_id] = self._entry_entity(entry)
        elif entry.operation is EventOperation.DELETE:
            if current is None or current.disabled:
                raise self._replay_failure(entry, "entity is not active")
            bucket[entry.entity_id] = replace(current, disabled=True, relate_event_id=entry.event_id)
        else:
            raise self._replay_failure(entry, f"unsupported operation {entry.operation!r}")

        self._event_id = entry.event_id

    def _entry_entity(self, entry: LogEntry) -> StorageEntity:
        entity = entry.entity
        if entity is None or entity.id != entry.entity_id or entity.entity_type is not entry.entity_type:
            raise self._replay_failure(entry, "entry does not carry a matching entity")
        return entity

    @staticmethod
    def _replay_failure(entry: LogEntry, reason: str) -> ReplayFailure:
        log.error(
            "Cannot apply event %d (%s %s #%s): %s",
            entry.event_id,
            entry.operation,
            entry.entity_type,
            entry.entity_id,
            reason,
        )
        return ReplayFailure(f"Cannot apply event {entry.event_id}: {reason}")

    def _get(self, entity_type: EntityType, entity_id: Optional[int]) -> Optional[StorageEntity]:
        if entity_id is None:
            return None
        with self._lock:
            entity = self._entities[entity_type].get(entity_id)
        if entity is None or entity.disabled:
            return None
        return entity

    def _active(self, entity_type: EntityType) -> List[StorageEntity]:
        with self._lock:
            return [entity for entity in self._entities[entity_type].values() if not entity.disabled]

    # ------------------------------------------------------------------
    # Event log position
    # ------------------------------------------------------------------

    @property
    def event_id(self) -> int:
        """Id of the last event folded into this view (``0`` when empty)."""

        return self._event_id

    def number_of_events(self) -> int:
        """Return how many log events this view reflects."""

        return self._event_id

    def iter_events(self) -> LogPrefix:
        """Return the log entries this view was derived from."""

        return self._log.entries_up_to(self._event_id)

    # ------------------------------------------------------------------
    # Locations
    # ------------------------------------------------------------------

    def get_location_by_id(self, location_id: int) -> Optional[Location]:
        return self._get(EntityType.LOCATION, location_id)

    def get_location_for_name(self, name: str) -> Optional[Location]:
        """Return the active location called ``name``, or ``None``."""

        for location in self._active(EntityType.LOCATION):
            if location.name == name:
                return location
        return None

    def get_all_locations(self) -> List[Location]:
        """Return every location that has not been deleted."""

        return self._active(EntityType.LOCATION)

    # ------------------------------------------------------------------
    # Carriers
    # ------------------------------------------------------------------

    def get_carrier(self, carrier_id: int) -> Optional[Carrier]:
        """Return the active carrier with ``carrier_id``, or ``None``."""

        return self._get(EntityType.CARRIER, carrier_id)

    def get_carrier_by_name(self, name: str) -> Optional[Carrier]:
        for carrier in self._active(EntityType.CARRIER):
            if carrier.name == name:
                return carrier
        return None

    def get_all_carriers(self) -> List[Carrier]:
        """Return every carrier that has not been deleted."""

        return self._active(EntityType.CARRIER)

    # ------------------------------------------------------------------
    # Routes
    # ------------------------------------------------------------------

    def get_route_by_id(self, route_id: int) -> Optional[Route]:
        return self._get(EntityType.ROUTE, route_id)

    def get_route_by_key(
        self,
        start_point: Location,
        end_point: Location,
        transport_means: TransportMeans,
        carrier: Carrier,
    ) -> Optional[Route]:
        """Return the active route with this composite key, or ``None``.

        Locations are matched by name and the carrier by id.
        """

        key = (start_point.name, end_point.name, transport_means, carrier.id)
        for route in self._active(EntityType.ROUTE):
            if route.key == key:
                return route
        return None

    def get_all_routes(self) -> List[Route]:
        """Return every active route ordered by id."""

        return sorted(self._active(EntityType.ROUTE), key=lambda route: route.id)

    def get_all_routes_for_priority(self, priority: Priority) -> List[Route]:
        """Return the active routes whose transport means can carry ``priority``."""

        allowed = priority.transport_means
        return [route for route in self.get_all_routes() if route.transport_means in allowed]

    def get_routes_between(self, start_point: Location, end_point: Location, priority: Priority) -> List[Route]:
        """Return the direct routes from ``start_point`` to ``end_point`` usable for ``priority``."""

        return [
            route
            for route in self.get_all_routes_for_priority(priority)
            if route.start_point.name == start_point.name and route.end_point.name == end_point.name
        ]

    def get_routes_connected_to(self, location: Location) -> List[Route]:
        """Return the active routes that start or end at ``location``."""

        return [
            route
            for route in self.get_all_routes()
            if location.name in (route.start_point.name, route.end_point.name)
        ]

    # ------------------------------------------------------------------
    # Prices
    # ------------------------------------------------------------------

    def get_customer_price_by_id(self, price_id: int) -> Optional[CustomerPrice]:
        return self._get(EntityType.CUSTOMER_PRICE, price_id)

    def get_customer_price(self, start: Location, end: Location, priority: Priority) -> Optional[CustomerPrice]:
        """Return the active price of the ``(start, end, priority)`` triple, or ``None``."""

        key = (start.name, end.name, priority)
        for price in self._active(EntityType.CUSTOMER_PRICE):
            if price.key == key:
                return price
        return None

    def get_all_customer_prices(self) -> List[CustomerPrice]:
        return self._active(EntityType.CUSTOMER_PRICE)

    def get_domestic_customer_price_by_id(self, price_id: int) -> Optional[DomesticCustomerPrice]:
        return self._get(EntityType.DOMESTIC_CUSTOMER_PRICE, price_id)

    def get_domestic_customer_price(self, priority: Priority) -> Optional[DomesticCustomerPrice]:
        """Return the active domestic price of ``priority``, or ``None``."""

        for price in self._active(EntityType.DOMESTIC_CUSTOMER_PRICE):
            if price.priority is priority:
                return price
        return None

    def get_all_domestic_customer_prices(self) -> List[DomesticCustomerPrice]:
        return self._active(EntityType.DOMESTIC_CUSTOMER_PRICE)

    def get_price(self, start: Location, end: Location, priority: Priority) -> Optional[Price]:
        """Resolve the price a customer pays to send mail from ``start`` to ``end``.

        The customer price of the exact ``(start, end, priority)`` triple
        wins. Journeys that stay within the country and have no such price
        fall back to the domestic price of the priority.

        Args:
            start (Location): Origin of the first leg.
            end (Location): Destination of the last leg.
            priority (Priority): Service level paid for.

        Returns:
            Price | None: The applicable price, or ``None`` when neither kind
            is defined.
        """

        exact = self.get_customer_price(start, end, priority)
        if exact is not None:
            return exact
        if not start.international and not end.international:
            return self.get_domestic_customer_price(priority)
        return None

    # ------------------------------------------------------------------
    # Mail deliveries
    # ------------------------------------------------------------------

    def get_mail_delivery(self, delivery_id: int) -> Optional[MailDelivery]:
        """Return the active delivery with ``delivery_id``, or ``None``."""

        return self._get(EntityType.MAIL_DELIVERY, delivery_id)

    def get_all_mail_deliveries(self) -> List[MailDelivery]:
        """Return every delivery that has not been deleted, in creation order."""

        return self._active(EntityType.MAIL_DELIVERY)


def require_nonnegative(*amounts: Decimal) -> None:
    """Validate that rates and costs are zero or positive.

    Raises:
        ValueError: If any amount is negative.
    """

    for amount in amounts:
        if amount < Decimal("0"):
            log.error("Rate validation failed: %s", amount)
            raise ValueError("Rates must be zero or positive")


class StateManipulator(ReadOnlyState):
    """Live, mutable projection of an event log.

    The manipulator shares the log's write lock. Each mutation validates its
    input against the active entities, appends one entry, and applies it
    before releasing the lock. Validation failures raise before anything is
    appended.
    """

    def __init__(self, event_log: EventLog) -> None:
        super().__init__(event_log, lock=event_log.lock)

    @classmethod
    def rebuild(cls, event_log: EventLog) -> "StateManipulator":
        """Construct the live projection of an existing log.

        Raises:
            ReplayFailure: If the log cannot be replayed.
        """

        state = cls(event_log)
        with event_log.lock:
            state._apply_all(event_log.entries_up_to(event_log.number_of_events()))
        log.info("Rebuilt live state from %d events", state.event_id)
        return state

    def at_event_point(self, event_id: int) -> ReadOnlyState:
        """Return a read-only snapshot of the state right after ``event_id``.

        The replay works on a fixed prefix of the log and does not hold the
        write lock, so concurrent mutations continue unhindered. The live
        projection is never touched.

        Raises:
            ValueError: If ``event_id`` is outside ``0..number_of_events()``.
            ReplayFailure: If the log prefix cannot be replayed.
        """

        try:
            snapshot = ReadOnlyState.replay(self._log, event_id)
        except ReplayFailure:
            log.error("Time travel to event %d failed", event_id)
            raise
        log.debug("Built snapshot at event %d", event_id)
        return snapshot

    # ------------------------------------------------------------------
    # Generic mutation helpers
    # ------------------------------------------------------------------

    def _next_id(self, entity_type: EntityType) -> int:
        bucket = self._entities[entity_type]
        return max(bucket, default=0) + 1

    def _save(
        self,
        entity: E,
        prepare: Callable[[E, Optional[E]], E],
        *,
        timestamp: Optional[datetime],
    ) -> E:
        """Create or update ``entity`` after ``prepare`` validated it.

        ``prepare`` receives the candidate and the currently stored version
        (``None`` on create) and returns the entity to record.
        """

        entity_type = entity.entity_type
        with self._lock:
            existing = self._entities[entity_type].get(entity.id) if entity.id is not None else None
            if existing is not None and existing.disabled:
                log.warning("Attempted to update deleted %s #%s", entity_type.value, entity.id)
                raise UnknownEntityError(f"{entity_type.value} #{entity.id} has been deleted")

            prepared = replace(prepare(entity, existing), disabled=False)
            if existing is None:
                operation = EventOperation.CREATE
                if prepared.id is None:
                    prepared = replace(prepared, id=self._next_id(entity_type))
            else:
                operation = EventOperation.UPDATE

            entry = self._log.append(operation, entity_type, prepared.id, prepared, timestamp=timestamp)
            self._apply(entry)
            stored = self._entities[entity_type][prepared.id]

        log.info(
            "Recorded %s of %s #%s at event %d",
            operation.value,
            entity_type.value,
            stored.id,
            entry.event_id,
        )
        return stored

    def _delete(
        self,
        entity_type: EntityType,
        entity_id: Optional[int],
        guard: Optional[Callable[[StorageEntity], None]] = None,
        *,
        timestamp: Optional[datetime],
    ) -> StorageEntity:
        with self._lock:
            current = self._get(entity_type, entity_id)
            if current is None:
                log.warning("Attempted to delete unknown %s #%s", entity_type.value, entity_id)
                raise UnknownEntityError(f"Unknown {entity_type.value} #{entity_id}")
            if guard is not None:
                guard(current)
            entry = self._log.append(EventOperation.DELETE, entity_type, current.id, timestamp=timestamp)
            self._apply(entry)
            stored = self._entities[entity_type][current.id]

        log.info("Recorded DELETE of %s #%s at event %d", entity_type.value, current.id, entry.event_id)
        return stored

    @staticmethod
    def _reject_clash(entity: StorageEntity, clash: Optional[StorageEntity], description: str) -> None:
        if clash is not None and clash.id != entity.id:
            log.warning("Conflict on %s: already used by #%s", description, clash.id)
            raise ConflictError(f"{description} already exists")

    def _resolve_location(self, location: Location) -> Location:
        resolved = self.get_location_for_name(location.name)
        if resolved is None:
            log.warning("Referenced location '%s' does not exist", location.name)
            raise ReferentialIntegrityViolation(f"Unknown location: {location.name}")
        return resolved

    # ------------------------------------------------------------------
    # Locations
    # ------------------------------------------------------------------

    def save_location(self, location: Location, *, timestamp: Optional[datetime] = None) -> Location:
        """Create a location. Locations are immutable once created.

        Raises:
            ConflictError: If another active location has the same name, or
                the call tries to change an existing location.
        """

        def prepare(candidate: Location, existing: Optional[Location]) -> Location:
            if existing is not None:
                if (existing.name, existing.international) != (candidate.name, candidate.international):
                    log.warning("Attempted to modify immutable location '%s'", existing.name)
                    raise ConflictError(f"Location '{existing.name}' cannot be changed")
                return candidate
            self._reject_clash(candidate, self.get_location_for_name(candidate.name), f"Location '{candidate.name}'")
            return candidate

        return self._save(location, prepare, timestamp=timestamp)

    def delete_location(self, location: Location, *, timestamp: Optional[datetime] = None) -> Location:
        """Soft-delete a location that no active route or price uses.

        Raises:
            UnknownEntityError: If the location is not active.
            ReferentialIntegrityViolation: If a route or customer price still
                references it.
        """

        def guard(current: Location) -> None:
            if self.get_routes_connected_to(current):
                log.warning("Location '%s' is still used by active routes", current.name)
                raise ReferentialIntegrityViolation(f"Location '{current.name}' is used by active routes")
            for price in self.get_all_customer_prices():
                if current.name in (price.start_location.name, price.end_location.name):
                    log.warning("Location '%s' is still used by customer price #%s", current.name, price.id)
                    raise ReferentialIntegrityViolation(f"Location '{current.name}' is used by customer prices")

        return self._delete(EntityType.LOCATION, location.id, guard, timestamp=timestamp)

    # ------------------------------------------------------------------
    # Carriers
    # ------------------------------------------------------------------

    def save_carrier(self, carrier: Carrier, *, timestamp: Optional[datetime] = None) -> Carrier:
        """Create or rename a carrier.

        Raises:
            ConflictError: If another active carrier has the same name.
        """

        def prepare(candidate: Carrier, existing: Optional[Carrier]) -> Carrier:
            self._reject_clash(candidate, self.get_carrier_by_name(candidate.name), f"Carrier '{candidate.name}'")
            return candidate

        return self._save(carrier, prepare, timestamp=timestamp)

    def delete_carrier(self, carrier: Carrier, *, timestamp: Optional[datetime] = None) -> Carrier:
        """Soft-delete a carrier that operates no active route.

        Raises:
            UnknownEntityError: If the carrier is not active.
            ReferentialIntegrityViolation: If an active route still uses it.
        """

        def guard(current: Carrier) -> None:
            if any(route.carrier_id == current.id for route in self.get_all_routes()):
                log.warning("Carrier '%s' is still used by active routes", current.name)
                raise ReferentialIntegrityViolation(f"Carrier '{current.name}' is used by active routes")

        return self._delete(EntityType.CARRIER, carrier.id, guard, timestamp=timestamp)

    # ------------------------------------------------------------------
    # Routes
    # ------------------------------------------------------------------

    def save_route(self, route: Route, *, timestamp: Optional[datetime] = None) -> Route:
        """Create or update a route.

        The endpoints are replaced by the stored locations of the same name.

        Raises:
            ReferentialIntegrityViolation: If an endpoint or the carrier does
                not exist.
            ConflictError: If another active route has the same key.
            ValueError: If the endpoints coincide or a cost or schedule value
                is negative.
        """

        def prepare(candidate: Route, existing: Optional[Route]) -> Route:
            start_point = self._resolve_location(candidate.start_point)
            end_point = self._resolve_location(candidate.end_point)
            if start_point.name == end_point.name:
                raise ValueError("A route must connect two different locations")
            carrier = self.get_carrier(candidate.carrier_id)
            if carrier is None:
                log.warning("Referenced carrier #%s does not exist", candidate.carrier_id)
                raise ReferentialIntegrityViolation(f"Unknown carrier: #{candidate.carrier_id}")
            require_nonnegative(candidate.carrier_weight_unit_cost, candidate.carrier_volume_unit_cost)
            if candidate.frequency < 0 or candidate.duration < 0:
                raise ValueError("Route frequency and duration must be zero or positive")

            prepared = replace(candidate, start_point=start_point, end_point=end_point)
            clash = self.get_route_by_key(start_point, end_point, prepared.transport_means, carrier)
            self._reject_clash(prepared, clash, f"Route {start_point.name} -> {end_point.name} ({carrier.name})")
            return prepared

        return self._save(route, prepare, timestamp=timestamp)

    def delete_route(self, route: Route, *, timestamp: Optional[datetime] = None) -> Route:
        """Soft-delete a route. Recorded deliveries over it keep their figures.

        Raises:
            UnknownEntityError: If the route is not active.
        """

        return self._delete(EntityType.ROUTE, route.id, timestamp=timestamp)

    # ------------------------------------------------------------------
    # Prices
    # ------------------------------------------------------------------

    def save_customer_price(self, price: CustomerPrice, *, timestamp: Optional[datetime] = None) -> CustomerPrice:
        """Create or update the price of a ``(start, end, priority)`` triple.

        Raises:
            ReferentialIntegrityViolation: If either location does not exist.
            ConflictError: If another active price uses the same triple.
            ValueError: If a rate is negative.
        """

        def prepare(candidate: CustomerPrice, existing: Optional[CustomerPrice]) -> CustomerPrice:
            start = self._resolve_location(candidate.start_location)
            end = self._resolve_location(candidate.end_location)
            require_nonnegative(candidate.price_per_unit_weight, candidate.price_per_unit_volume)
            prepared = replace(candidate, start_location=start, end_location=end)
            clash = self.get_customer_price(start, end, prepared.priority)
            self._reject_clash(
                prepared,
                clash,
                f"Customer price {start.name} -> {end.name} ({prepared.priority.value})",
            )
            return prepared

        return self._save(price, prepare, timestamp=timestamp)

    def delete_customer_price(self, price: CustomerPrice, *, timestamp: Optional[datetime] = None) -> CustomerPrice:
        """Soft-delete a customer price.

        Raises:
            UnknownEntityError: If the price is not active.
        """

        return self._delete(EntityType.CUSTOMER_PRICE, price.id, timestamp=timestamp)

    def save_domestic_customer_price(
        self,
        price: DomesticCustomerPrice,
        *,
        timestamp: Optional[datetime] = None,
    ) -> DomesticCustomerPrice:
        """Create or update the domestic price of a priority.

        Raises:
            ConflictError: If the priority already has an active domestic price.
            ValueError: If a rate is negative.
        """

        def prepare(candidate: DomesticCustomerPrice, existing: Optional[DomesticCustomerPrice]) -> DomesticCustomerPrice:
            require_nonnegative(candidate.price_per_unit_weight, candidate.price_per_unit_volume)
            clash = self.get_domestic_customer_price(candidate.priority)
            self._reject_clash(candidate, clash, f"Domestic price ({candidate.priority.value})")
            return candidate

        return self._save(price, prepare, timestamp=timestamp)

    def delete_domestic_customer_price(
        self,
        price: DomesticCustomerPrice,
        *,
        timestamp: Optional[datetime] = None,
    ) -> DomesticCustomerPrice:
        return self._delete(EntityType.DOMESTIC_CUSTOMER_PRICE, price.id, timestamp=timestamp)

    # ------------------------------------------------------------------
    # Mail deliveries
    # ------------------------------------------------------------------

    def create_mail_delivery(
        self,
        route_ids: Sequence[int],
        priority: Priority,
        weight: Decimal,
        volume: Decimal,
        submission_date: datetime,
        *,
        timestamp: Optional[datetime] = None,
    ) -> MailDelivery:
        """Build a delivery from the current routes and prices and record it.

        Cost and price are computed from the entities in force right now and
        are never recomputed afterwards.

        Raises:
            ReferentialIntegrityViolation: If a route is unknown or deleted.
            MissingPriceError: If no customer price applies to the journey.
            ValueError: If the legs are empty or disconnected, or the weight
                or volume is not positive.
        """

        with self._lock:
            delivery = self._build_delivery(route_ids, priority, weight, volume, submission_date)
            return self._save(delivery, lambda candidate, existing: candidate, timestamp=timestamp)

    def save_mail_delivery(self, delivery: MailDelivery, *, timestamp: Optional[datetime] = None) -> MailDelivery:
        """Create or update a delivery from its route ids, priority, and parcel.

        Only ``route_ids``, ``priority``, ``weight``, ``volume``, and
        ``submission_date`` are taken from ``delivery``. Origin, destination,
        international flag, shipping duration, cost, and price are recomputed
        from the routes and prices in force when the call is made.

        Raises:
            ReferentialIntegrityViolation: If a route is unknown or deleted.
            MissingPriceError: If no customer price applies to the journey.
            UnknownEntityError: If the delivery was deleted.
            ValueError: If the legs are empty or disconnected, or the weight
                or volume is not positive.
        """

        def prepare(candidate: MailDelivery, existing: Optional[MailDelivery]) -> MailDelivery:
            rebuilt = self._build_delivery(
                candidate.route_ids,
                candidate.priority,
                candidate.weight,
                candidate.volume,
                candidate.submission_date,
            )
            if rebuilt != replace(candidate, id=None, disabled=False):
                log.info("Recomputed derived figures of mail delivery #%s", candidate.id)
            return replace(rebuilt, id=candidate.id)

        return self._save(delivery, prepare, timestamp=timestamp)

    def delete_mail_delivery(self, delivery: MailDelivery, *, timestamp: Optional[datetime] = None) -> MailDelivery:
        """Soft-delete a delivery; it stays visible in earlier snapshots."""

        return self._delete(EntityType.MAIL_DELIVERY, delivery.id, timestamp=timestamp)

    def _build_delivery(
        self,
        route_ids: Sequence[int],
        priority: Priority,
        weight: Decimal,
        volume: Decimal,
        submission_date: datetime,
    ) -> MailDelivery:
        routes = [self._require_route(route_id) for route_id in route_ids]
        validate_legs(routes)
        origin = routes[0].start_point
        destination = routes[-1].end_point
        price = self.get_price(origin, destination, priority)
        if price is None:
            log.warning(
                "No customer price for %s -> %s (%s)",
                origin.name,
                destination.name,
                priority.value,
            )
            raise MissingPriceError(
                f"No price for {origin.name} -> {destination.name} ({priority.value})"
            )
        return MailDelivery.build(
            routes,
            price,
            priority=priority,
            weight=weight,
            volume=volume,
            submission_date=submission_date,
        )

    def _require_route(self, route_id: int) -> Route:
        route = self.get_route_by_id(route_id)
        if route is None:
            log.warning("Referenced route #%s does not exist", route_id)
            raise ReferentialIntegrityViolation(f"Unknown route: #{route_id}")
        return route


__all__ = ["ReadOnlyState", "StateManipulator", "require_nonnegative"]
