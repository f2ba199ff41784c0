"""Report engine for the KPSmart mail network.

A :class:`Report` is a pure function of a :class:`~kpsmart.state.ReadOnlyState`:
it scans the non-deleted mail deliveries of that state (live or historical)
and aggregates financial and volumetric figures. It has no way to mutate the
state it reads.

Groupings are driven by deliveries only. A route or location pair without
mail never produces a zero row. Averages over an empty set are ``NaN``
(:data:`NO_DATA`) so that consumers can show "no data" instead of zero.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Callable, Dict, Iterable, List, Sequence, Tuple

from . import log
from .constants import EntityType, EventOperation, Priority
from .entities import Location, MailDelivery
from .state import ReadOnlyState


NO_DATA = float("nan")
DOMESTIC_SLICE = "Domestic"
INTERNATIONAL_SLICE = "International"
_ZERO = Decimal("0")
_PRIORITY_ORDER = {priority: index for index, priority in enumerate(Priority)}


@dataclass(frozen=True)
class AmountOfMail:
    """Totals of the mail sent between one ``(start, end)`` pair."""

    start_point: Location
    end_point: Location
    items: int
    total_weight: Decimal
    total_volume: Decimal


@dataclass(frozen=True)
class DeliveryRevenueExpenditure:
    """Money made and spent on one ``(start, end, priority)`` triple.

    ``average_delivery_time`` is the mean shipping duration in hours.
    """

    start_point: Location
    end_point: Location
    priority: Priority
    revenue: Decimal
    expenditure: Decimal
    average_delivery_time: float

    @property
    def is_critical(self) -> bool:
        """Whether the triple costs more than it earns."""

        return self.expenditure > self.revenue


@dataclass(frozen=True)
class RevenueExpenditure:
    """Running revenue and expenditure right after ``event_id``."""

    revenue: Decimal
    expenditure: Decimal
    date: datetime
    event_id: int


@dataclass(frozen=True)
class GraphSummary:
    """A donut chart slice; ``y`` is the sum of the values of earlier slices."""

    name: str
    value: Decimal
    y: Decimal


@dataclass(frozen=True)
class MonthSummary:
    """Aggregates of the deliveries submitted during one calendar month."""

    name: str
    revenue: Decimal
    expenditure: Decimal
    event_count: int
    weight: Decimal
    volume: Decimal


def _mean(values: Sequence[float]) -> float:
    if not values:
        return NO_DATA
    return sum(values) / len(values)


def _stack(values: Iterable[Tuple[str, Decimal]]) -> List[GraphSummary]:
    """Turn ``(name, value)`` pairs into slices with cumulative offsets."""

    slices: List[GraphSummary] = []
    offset = _ZERO
    for name, value in values:
        slices.append(GraphSummary(name=name, value=value, y=offset))
        offset += value
    return slices


class Report:
    """Aggregate statistics computed from a single state view."""

    def __init__(self, state: ReadOnlyState) -> None:
        self._state = state

    @property
    def state(self) -> ReadOnlyState:
        return self._state

    def _deliveries(self) -> List[MailDelivery]:
        return self._state.get_all_mail_deliveries()

    # ------------------------------------------------------------------
    # Route level breakdowns
    # ------------------------------------------------------------------

    def get_amounts_of_mail_for_all_routes(self) -> List[AmountOfMail]:
        """Return item count, weight, and volume per ``(origin, destination)``.

        Pairs are taken from each delivery's overall journey, not its legs,
        and are sorted by location names.
        """

        groups: Dict[Tuple[str, str], List[MailDelivery]] = defaultdict(list)
        for delivery in self._deliveries():
            groups[(delivery.origin.name, delivery.destination.name)].append(delivery)

        amounts = []
        for key in sorted(groups):
            deliveries = groups[key]
            amounts.append(
                AmountOfMail(
                    start_point=deliveries[0].origin,
                    end_point=deliveries[0].destination,
                    items=len(deliveries),
                    total_weight=sum((delivery.weight for delivery in deliveries), _ZERO),
                    total_volume=sum((delivery.volume for delivery in deliveries), _ZERO),
                )
            )
        log.debug("Computed mail amounts for %d location pairs", len(amounts))
        return amounts

    def get_all_revenue_expenditure(self) -> List[DeliveryRevenueExpenditure]:
        """Return revenue, expenditure, and mean delivery time per triple."""

        groups: Dict[Tuple[str, str, Priority], List[MailDelivery]] = defaultdict(list)
        for delivery in self._deliveries():
            groups[(delivery.origin.name, delivery.destination.name, delivery.priority)].append(delivery)

        ordered = sorted(groups, key=lambda key: (key[0], key[1], _PRIORITY_ORDER[key[2]]))
        results = []
        for key in ordered:
            deliveries = groups[key]
            results.append(
                DeliveryRevenueExpenditure(
                    start_point=deliveries[0].origin,
                    end_point=deliveries[0].destination,
                    priority=key[2],
                    revenue=sum((delivery.price for delivery in deliveries), _ZERO),
                    expenditure=sum((delivery.cost for delivery in deliveries), _ZERO),
                    average_delivery_time=_mean([delivery.shipping_duration for delivery in deliveries]),
                )
            )
        log.debug("Computed revenue and expenditure for %d groups", len(results))
        return results

    def get_critical_routes(self) -> List[DeliveryRevenueExpenditure]:
        """Return the triples whose expenditure exceeds their revenue."""

        return [group for group in self.get_all_revenue_expenditure() if group.is_critical]

    def has_critical_routes(self) -> bool:
        return bool(self.get_critical_routes())

    # ------------------------------------------------------------------
    # Totals
    # ------------------------------------------------------------------

    def get_total_revenue(self) -> Decimal:
        return sum((delivery.price for delivery in self._deliveries()), _ZERO)

    def get_total_expenditure(self) -> Decimal:
        return sum((delivery.cost for delivery in self._deliveries()), _ZERO)

    def get_average_delivery_time(self) -> float:
        """Return the mean shipping duration in hours, or :data:`NO_DATA`."""

        return _mean([delivery.shipping_duration for delivery in self._deliveries()])

    def get_number_of_events(self) -> int:
        return self._state.number_of_events()

    # ------------------------------------------------------------------
    # Time series
    # ------------------------------------------------------------------

    def get_revenue_expenditure_over_time(self) -> List[RevenueExpenditure]:
        """Return the running totals after every event touching a delivery.

        Creating a delivery adds its price and cost, updating it swaps the
        old figures for the new ones, and deleting it removes them. Points are
        in log order, which is chronological.
        """

        revenue = _ZERO
        expenditure = _ZERO
        current: Dict[int, MailDelivery] = {}
        points: List[RevenueExpenditure] = []

        for entry in self._state.iter_events():
            if entry.entity_type is not EntityType.MAIL_DELIVERY:
                continue
            previous = current.pop(entry.entity_id, None)
            if previous is not None:
                revenue -= previous.price
                expenditure -= previous.cost
            if entry.operation is not EventOperation.DELETE:
                delivery = entry.entity
                current[entry.entity_id] = delivery
                revenue += delivery.price
                expenditure += delivery.cost
            points.append(
                RevenueExpenditure(
                    revenue=revenue,
                    expenditure=expenditure,
                    date=entry.timestamp,
                    event_id=entry.event_id,
                )
            )
        return points

    def get_last_revenue_expenditure_over_time(self, last_n: int) -> List[RevenueExpenditure]:
        """Return at most ``last_n`` of the newest time series points, oldest first."""

        if last_n <= 0:
            return []
        return self.get_revenue_expenditure_over_time()[-last_n:]

    def get_monthly_summary(self) -> List[MonthSummary]:
        """Bucket deliveries by the calendar month they were submitted in."""

        buckets: Dict[Tuple[int, int], List[MailDelivery]] = defaultdict(list)
        for delivery in self._deliveries():
            submitted = delivery.submission_date
            buckets[(submitted.year, submitted.month)].append(delivery)

        summaries = []
        for year, month in sorted(buckets):
            deliveries = buckets[(year, month)]
            summaries.append(
                MonthSummary(
                    name=datetime(year, month, 1).strftime("%B %Y"),
                    revenue=sum((delivery.price for delivery in deliveries), _ZERO),
                    expenditure=sum((delivery.cost for delivery in deliveries), _ZERO),
                    event_count=len(deliveries),
                    weight=sum((delivery.weight for delivery in deliveries), _ZERO),
                    volume=sum((delivery.volume for delivery in deliveries), _ZERO),
                )
            )
        return summaries

    # ------------------------------------------------------------------
    # Donut charts
    # ------------------------------------------------------------------

    def get_revenue_by_domestic_international(self) -> List[GraphSummary]:
        return self._split_domestic_international(lambda delivery: delivery.price)

    def get_expenditure_by_domestic_international(self) -> List[GraphSummary]:
        return self._split_domestic_international(lambda delivery: delivery.cost)

    def get_revenue_by_route(self) -> List[GraphSummary]:
        return self._split_by_route(lambda delivery: delivery.price)

    def get_expenditure_by_route(self) -> List[GraphSummary]:
        return self._split_by_route(lambda delivery: delivery.cost)

    def _split_domestic_international(self, amount: Callable[[MailDelivery], Decimal]) -> List[GraphSummary]:
        """Inner ring: always exactly two slices, domestic first."""

        domestic = _ZERO
        international = _ZERO
        for delivery in self._deliveries():
            if delivery.is_international():
                international += amount(delivery)
            else:
                domestic += amount(delivery)
        return _stack([(DOMESTIC_SLICE, domestic), (INTERNATIONAL_SLICE, international)])

    def _split_by_route(self, amount: Callable[[MailDelivery], Decimal]) -> List[GraphSummary]:
        """Outer ring: one slice per ``(origin, destination)`` pair.

        Pairs whose endpoints are both domestic come first, then pairs
        touching an overseas location, each group ordered by name.
        """

        totals: Dict[Tuple[str, str], Decimal] = defaultdict(lambda: _ZERO)
        overseas: Dict[Tuple[str, str], bool] = {}
        for delivery in self._deliveries():
            pair = (delivery.origin.name, delivery.destination.name)
            totals[pair] += amount(delivery)
            overseas[pair] = delivery.origin.international or delivery.destination.international
        ordered = sorted(totals, key=lambda pair: (overseas[pair], pair))
        return _stack((f"{origin} - {destination}", totals[(origin, destination)]) for origin, destination in ordered)


__all__ = [
    "NO_DATA",
    "DOMESTIC_SLICE",
    "INTERNATIONAL_SLICE",
    "AmountOfMail",
    "DeliveryRevenueExpenditure",
    "RevenueExpenditure",
    "GraphSummary",
    "MonthSummary",
    "Report",
]
