"""Entity model for the KPSmart mail network.

Every entity is an immutable dataclass. Mutations never happen in place: the
state manipulator produces a new versioned copy via :func:`dataclasses.replace`
and records it in the event log. Each class declares the explicit field list
used when the entity is serialized into an event log row, so persistence does
not depend on any storage engine.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, ClassVar, Dict, Mapping, Optional, Sequence

from .constants import HOURS_PER_WEEK, DayOfWeek, EntityType, Priority, TransportMeans


def _to_decimal(raw: Any) -> Decimal:
    """Coerce persisted numeric values into :class:`~decimal.Decimal`."""

    if isinstance(raw, Decimal):
        return raw
    return Decimal(str(raw))


@dataclass(frozen=True, kw_only=True)
class StorageEntity:
    """Fields shared by every persisted entity.

    ``relate_event_id`` points at the event log entry that created or last
    mutated the entity. It is stamped by the event log, so it is neither part
    of the serialized record nor of entity equality.
    """

    id: Optional[int] = None
    disabled: bool = False
    relate_event_id: Optional[int] = field(default=None, compare=False)

    entity_type: ClassVar[EntityType]
    RECORD_FIELDS: ClassVar[tuple[str, ...]] = ("id", "disabled")

    def to_record(self) -> Dict[str, Any]:
        return {"id": self.id, "disabled": self.disabled}

    @staticmethod
    def _base_kwargs(record: Mapping[str, Any]) -> Dict[str, Any]:
        raw_id = record.get("id")
        return {
            "id": int(raw_id) if raw_id is not None else None,
            "disabled": bool(record.get("disabled", False)),
        }


@dataclass(frozen=True, kw_only=True)
class Location(StorageEntity):
    """A place mail is sent from or to, identified by its unique name."""

    name: str
    international: bool = False

    entity_type: ClassVar[EntityType] = EntityType.LOCATION
    RECORD_FIELDS: ClassVar[tuple[str, ...]] = ("id", "disabled", "name", "international")

    def to_record(self) -> Dict[str, Any]:
        record = super().to_record()
        record.update({"name": self.name, "international": self.international})
        return record

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> "Location":
        return cls(
            **cls._base_kwargs(record),
            name=str(record["name"]),
            international=bool(record["international"]),
        )


@dataclass(frozen=True, kw_only=True)
class Carrier(StorageEntity):
    """A company that transports mail over one or more routes."""

    name: str

    entity_type: ClassVar[EntityType] = EntityType.CARRIER
    RECORD_FIELDS: ClassVar[tuple[str, ...]] = ("id", "disabled", "name")

    def to_record(self) -> Dict[str, Any]:
        record = super().to_record()
        record["name"] = self.name
        return record

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> "Carrier":
        return cls(**cls._base_kwargs(record), name=str(record["name"]))


@dataclass(frozen=True, kw_only=True)
class Route(StorageEntity):
    """A scheduled carrier service between two locations.

    Departures are anchored to midnight of ``day`` each week and repeat every
    ``frequency`` hours; a frequency of zero means the route departs once a
    week. ``duration`` is the transit time in hours.
    """

    start_point: Location
    end_point: Location
    transport_means: TransportMeans
    carrier_id: int
    carrier_weight_unit_cost: Decimal
    carrier_volume_unit_cost: Decimal
    day: DayOfWeek = DayOfWeek.MONDAY
    frequency: int = 24
    duration: int = 0

    entity_type: ClassVar[EntityType] = EntityType.ROUTE
    RECORD_FIELDS: ClassVar[tuple[str, ...]] = (
        "id",
        "disabled",
        "start_point",
        "end_point",
        "transport_means",
        "carrier_id",
        "carrier_weight_unit_cost",
        "carrier_volume_unit_cost",
        "day",
        "frequency",
        "duration",
    )

    @property
    def key(self) -> tuple[str, str, TransportMeans, int]:
        """Return the composite unique key of the route."""

        return (self.start_point.name, self.end_point.name, self.transport_means, self.carrier_id)

    def is_international(self) -> bool:
        return self.start_point.international or self.end_point.international

    def cost(self, weight: Decimal, volume: Decimal) -> Decimal:
        """Return what the carrier charges to move ``weight`` and ``volume``."""

        return weight * self.carrier_weight_unit_cost + volume * self.carrier_volume_unit_cost

    def departure_after(self, moment: datetime) -> datetime:
        """Return the first scheduled departure at or after ``moment``."""

        interval = self.frequency or HOURS_PER_WEEK
        midnight = moment.replace(hour=0, minute=0, second=0, microsecond=0)
        anchor = midnight - timedelta(days=(moment.weekday() - self.day.weekday) % 7)
        elapsed_hours = (moment - anchor) / timedelta(hours=1)
        steps = math.ceil(elapsed_hours / interval)
        return anchor + timedelta(hours=steps * interval)

    def arrival_after(self, moment: datetime) -> datetime:
        """Return when mail handed over at ``moment`` reaches the end point."""

        return self.departure_after(moment) + timedelta(hours=self.duration)

    def to_record(self) -> Dict[str, Any]:
        record = super().to_record()
        record.update(
            {
                "start_point": self.start_point.to_record(),
                "end_point": self.end_point.to_record(),
                "transport_means": self.transport_means.value,
                "carrier_id": self.carrier_id,
                "carrier_weight_unit_cost": str(self.carrier_weight_unit_cost),
                "carrier_volume_unit_cost": str(self.carrier_volume_unit_cost),
                "day": self.day.value,
                "frequency": self.frequency,
                "duration": self.duration,
            }
        )
        return record

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> "Route":
        return cls(
            **cls._base_kwargs(record),
            start_point=Location.from_record(record["start_point"]),
            end_point=Location.from_record(record["end_point"]),
            transport_means=TransportMeans(record["transport_means"]),
            carrier_id=int(record["carrier_id"]),
            carrier_weight_unit_cost=_to_decimal(record["carrier_weight_unit_cost"]),
            carrier_volume_unit_cost=_to_decimal(record["carrier_volume_unit_cost"]),
            day=DayOfWeek(record["day"]),
            frequency=int(record["frequency"]),
            duration=int(record["duration"]),
        )


@dataclass(frozen=True, kw_only=True)
class Price(StorageEntity):
    """Per-unit rates charged to customers."""

    price_per_unit_weight: Decimal
    price_per_unit_volume: Decimal

    def cost(self, weight: Decimal, volume: Decimal) -> Decimal:
        """Return the customer price of sending ``weight`` and ``volume``."""

        return weight * self.price_per_unit_weight + volume * self.price_per_unit_volume

    def to_record(self) -> Dict[str, Any]:
        record = super().to_record()
        record.update(
            {
                "price_per_unit_weight": str(self.price_per_unit_weight),
                "price_per_unit_volume": str(self.price_per_unit_volume),
            }
        )
        return record

    @classmethod
    def _price_kwargs(cls, record: Mapping[str, Any]) -> Dict[str, Any]:
        kwargs = cls._base_kwargs(record)
        kwargs["price_per_unit_weight"] = _to_decimal(record["price_per_unit_weight"])
        kwargs["price_per_unit_volume"] = _to_decimal(record["price_per_unit_volume"])
        return kwargs


@dataclass(frozen=True, kw_only=True)
class CustomerPrice(Price):
    """Rates for one ``(start, end, priority)`` combination."""

    start_location: Location
    end_location: Location
    priority: Priority

    entity_type: ClassVar[EntityType] = EntityType.CUSTOMER_PRICE
    RECORD_FIELDS: ClassVar[tuple[str, ...]] = (
        "id",
        "disabled",
        "start_location",
        "end_location",
        "priority",
        "price_per_unit_weight",
        "price_per_unit_volume",
    )

    @property
    def key(self) -> tuple[str, str, Priority]:
        return (self.start_location.name, self.end_location.name, self.priority)

    def to_record(self) -> Dict[str, Any]:
        record = super().to_record()
        record.update(
            {
                "start_location": self.start_location.to_record(),
                "end_location": self.end_location.to_record(),
                "priority": self.priority.value,
            }
        )
        return record

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> "CustomerPrice":
        return cls(
            **cls._price_kwargs(record),
            start_location=Location.from_record(record["start_location"]),
            end_location=Location.from_record(record["end_location"]),
            priority=Priority(record["priority"]),
        )


@dataclass(frozen=True, kw_only=True)
class DomesticCustomerPrice(Price):
    """Rates applied to every journey that stays within the country."""

    priority: Priority

    entity_type: ClassVar[EntityType] = EntityType.DOMESTIC_CUSTOMER_PRICE
    RECORD_FIELDS: ClassVar[tuple[str, ...]] = (
        "id",
        "disabled",
        "priority",
        "price_per_unit_weight",
        "price_per_unit_volume",
    )

    def to_record(self) -> Dict[str, Any]:
        record = super().to_record()
        record["priority"] = self.priority.value
        return record

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> "DomesticCustomerPrice":
        return cls(**cls._price_kwargs(record), priority=Priority(record["priority"]))


@dataclass(frozen=True, kw_only=True)
class MailDelivery(StorageEntity):
    """A customer shipment travelling over one or more route legs.

    The derived fields (origin, destination, international flag, shipping
    duration, cost, and price) are computed once by :meth:`build` from the
    routes and price in force at that moment and stay frozen afterwards.
    """

    route_ids: tuple[int, ...]
    priority: Priority
    weight: Decimal
    volume: Decimal
    submission_date: datetime
    origin: Location
    destination: Location
    international: bool
    shipping_duration: int
    cost: Decimal
    price: Decimal

    entity_type: ClassVar[EntityType] = EntityType.MAIL_DELIVERY
    RECORD_FIELDS: ClassVar[tuple[str, ...]] = (
        "id",
        "disabled",
        "route_ids",
        "priority",
        "weight",
        "volume",
        "submission_date",
        "origin",
        "destination",
        "international",
        "shipping_duration",
        "cost",
        "price",
    )

    @classmethod
    def build(
        cls,
        routes: Sequence[Route],
        price: Price,
        *,
        priority: Priority,
        weight: Decimal,
        volume: Decimal,
        submission_date: datetime,
    ) -> "MailDelivery":
        """Create a delivery and compute its derived fields.

        Args:
            routes (Sequence[Route]): Legs in travel order. Each leg must start
                where the previous one ended.
            price (Price): Customer price resolved for the journey.
            priority (Priority): Service level paid for.
            weight (Decimal): Strictly positive weight.
            volume (Decimal): Strictly positive volume.
            submission_date (datetime): When the mail was handed in.

        Returns:
            MailDelivery: New delivery without an id.

        Raises:
            ValueError: If no legs are given, the legs are not contiguous, or
                the weight or volume is not positive.
        """

        validate_legs(routes)
        if weight <= Decimal("0") or volume <= Decimal("0"):
            raise ValueError("Weight and volume must be greater than zero")

        return cls(
            route_ids=tuple(route.id for route in routes),
            priority=priority,
            weight=weight,
            volume=volume,
            submission_date=submission_date,
            origin=routes[0].start_point,
            destination=routes[-1].end_point,
            international=all(route.is_international() for route in routes),
            shipping_duration=calculate_shipping_duration(routes, submission_date),
            cost=sum((route.cost(weight, volume) for route in routes), Decimal("0")),
            price=price.cost(weight, volume),
        )

    def is_international(self) -> bool:
        return self.international

    def to_record(self) -> Dict[str, Any]:
        record = super().to_record()
        record.update(
            {
                "route_ids": list(self.route_ids),
                "priority": self.priority.value,
                "weight": str(self.weight),
                "volume": str(self.volume),
                "submission_date": self.submission_date.isoformat(),
                "origin": self.origin.to_record(),
                "destination": self.destination.to_record(),
                "international": self.international,
                "shipping_duration": self.shipping_duration,
                "cost": str(self.cost),
                "price": str(self.price),
            }
        )
        return record

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> "MailDelivery":
        return cls(
            **cls._base_kwargs(record),
            route_ids=tuple(int(route_id) for route_id in record["route_ids"]),
            priority=Priority(record["priority"]),
            weight=_to_decimal(record["weight"]),
            volume=_to_decimal(record["volume"]),
            submission_date=datetime.fromisoformat(record["submission_date"]),
            origin=Location.from_record(record["origin"]),
            destination=Location.from_record(record["destination"]),
            international=bool(record["international"]),
            shipping_duration=int(record["shipping_duration"]),
            cost=_to_decimal(record["cost"]),
            price=_to_decimal(record["price"]),
        )


ENTITY_CLASSES: Mapping[EntityType, type] = {
    EntityType.LOCATION: Location,
    EntityType.CARRIER: Carrier,
    EntityType.ROUTE: Route,
    EntityType.CUSTOMER_PRICE: CustomerPrice,
    EntityType.DOMESTIC_CUSTOMER_PRICE: DomesticCustomerPrice,
    EntityType.MAIL_DELIVERY: MailDelivery,
}


def entity_from_record(entity_type: EntityType, record: Mapping[str, Any]) -> StorageEntity:
    """Rebuild an entity of ``entity_type`` from its serialized record."""

    return ENTITY_CLASSES[entity_type].from_record(record)


def validate_legs(routes: Sequence[Route]) -> None:
    """Ensure a journey has at least one leg and its legs connect end to start.

    Raises:
        ValueError: If ``routes`` is empty or two consecutive legs do not meet.
    """

    if not routes:
        raise ValueError("A mail delivery needs at least one route")
    for previous, following in zip(routes, routes[1:]):
        if previous.end_point.name != following.start_point.name:
            raise ValueError(
                f"Route {following.id} does not start where route {previous.id} ends"
            )


def calculate_shipping_duration(routes: Sequence[Route], submission_date: datetime) -> int:
    """Return the whole hours between submission and arrival at the final stop.

    Mail waits at each stop for the next scheduled departure of the following
    leg, so the total includes waiting time as well as transit time. Partial
    hours are rounded up.
    """

    moment = submission_date
    for route in routes:
        moment = route.arrival_after(moment)
    return math.ceil((moment - submission_date) / timedelta(hours=1))


__all__ = [
    "StorageEntity",
    "Location",
    "Carrier",
    "Route",
    "Price",
    "CustomerPrice",
    "DomesticCustomerPrice",
    "MailDelivery",
    "ENTITY_CLASSES",
    "entity_from_record",
    "validate_legs",
    "calculate_shipping_duration",
]
