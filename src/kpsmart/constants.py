"""Enumerations shared across the KPSmart mail network modules.

Centralises domain constants so that the entity model, the event log, the
state manipulator, and the reporting layer agree on a single spelling for
every identifier that is persisted or compared.
"""

from __future__ import annotations

from enum import Enum


# Central schema version expected by all layers when validating workbooks.
EXPECTED_SCHEMA_VERSION = "1.0.0"

# Hours in one week, used as the departure interval of weekly routes.
HOURS_PER_WEEK = 7 * 24


class TransportMeans(str, Enum):
    """Enumerate the ways a carrier moves mail along a route."""

    AIR = "Air"
    LAND = "Land"
    SEA = "Sea"


class Priority(str, Enum):
    """Enumerate the service levels a customer can pay for."""

    DOMESTIC_AIR = "Domestic Air"
    DOMESTIC_LAND = "Domestic Land"
    INTERNATIONAL_AIR = "International Air"
    INTERNATIONAL_SURFACE = "International Surface"

    @property
    def is_international(self) -> bool:
        return self in (Priority.INTERNATIONAL_AIR, Priority.INTERNATIONAL_SURFACE)

    @property
    def transport_means(self) -> frozenset[TransportMeans]:
        """Return the transport means allowed to carry mail of this priority."""

        if self in (Priority.DOMESTIC_AIR, Priority.INTERNATIONAL_AIR):
            return frozenset({TransportMeans.AIR})
        return frozenset({TransportMeans.LAND, TransportMeans.SEA})


class DayOfWeek(str, Enum):
    """Enumerate the weekdays a route schedule can be anchored to."""

    MONDAY = "Monday"
    TUESDAY = "Tuesday"
    WEDNESDAY = "Wednesday"
    THURSDAY = "Thursday"
    FRIDAY = "Friday"
    SATURDAY = "Saturday"
    SUNDAY = "Sunday"

    @property
    def weekday(self) -> int:
        """Return the index used by :meth:`datetime.datetime.weekday`."""

        return list(DayOfWeek).index(self)


class EventOperation(str, Enum):
    """Enumerate the mutation kinds recorded in the event log."""

    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class EntityType(str, Enum):
    """Enumerate the entity types an event log entry can target."""

    LOCATION = "Location"
    CARRIER = "Carrier"
    ROUTE = "Route"
    CUSTOMER_PRICE = "CustomerPrice"
    DOMESTIC_CUSTOMER_PRICE = "DomesticCustomerPrice"
    MAIL_DELIVERY = "MailDelivery"


class SheetName(str, Enum):
    """Enumerate the workbook sheet names managed by the data layer."""

    EVENT_LOG = "EventLog"
    METADATA = "Metadata"


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "HOURS_PER_WEEK",
    "TransportMeans",
    "Priority",
    "DayOfWeek",
    "EventOperation",
    "EntityType",
    "SheetName",
]
