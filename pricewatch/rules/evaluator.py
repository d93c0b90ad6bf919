"""
Filter evaluation: decide whether a price break satisfies a filter.
"""

from dataclasses import dataclass, field
from datetime import time
from enum import Enum
from typing import Optional

from pricewatch.database.models import FlightFilter
from pricewatch.pricing.aggregator import AggregatedQuote
from pricewatch.providers.base import Quote

__all__ = [
    "FilterEvaluator",
    "MatchKind",
    "MatchResult",
    "ConstraintDifference",
    "parse_time_window",
]

# max_stops option -> highest stop count it allows (None = unlimited)
_STOP_LIMITS = {"nonstop": 0, "1-stop": 1, "2+": None, "any": None}


class MatchKind(str, Enum):
    NO_MATCH = "no_match"
    EXACT_MATCH = "exact_match"
    FLEXIBLE_MATCH = "flexible_match"


@dataclass(frozen=True)
class ConstraintDifference:
    """A flexible constraint the quote does not meet exactly."""

    constraint: str
    expected: str
    actual: str

    def describe(self) -> str:
        return f"{self.constraint}: wanted {self.expected}, found {self.actual}"


@dataclass(frozen=True)
class MatchResult:
    """Outcome of evaluating one filter against one aggregated quote."""

    kind: MatchKind
    price: Optional[float] = None
    target_price: Optional[float] = None
    differences: tuple[ConstraintDifference, ...] = field(default_factory=tuple)
    reason: Optional[str] = None

    @property
    def is_match(self) -> bool:
        return self.kind != MatchKind.NO_MATCH

    @property
    def drop_amount(self) -> float:
        if self.price is None or self.target_price is None:
            return 0.0
        return round(self.target_price - self.price, 2)

    @property
    def drop_percentage(self) -> float:
        if not self.target_price or self.price is None:
            return 0.0
        return round(self.drop_amount / self.target_price * 100, 2)


def parse_time_window(window: str) -> tuple[time, time]:
    """
    Parse an "HH:MM-HH:MM" window.

    Raises:
        ValueError: If the window is malformed
    """
    start, _, end = window.partition("-")
    if not end:
        raise ValueError(f"Invalid time window: {window}")
    return time.fromisoformat(start.strip()), time.fromisoformat(end.strip())


def _in_window(value: time, window: tuple[time, time]) -> bool:
    start, end = window
    if start <= end:
        return start <= value <= end
    # Window wraps past midnight, e.g. 22:00-06:00
    return value >= start or value <= end


class FilterEvaluator:
    """
    Pure evaluation of a filter against the current best price.

    A quote at or under the target price is an exact match when every
    constraint holds, a flexible match when only constraints the user
    marked flexible (airline, stops, times, dates) differ, and no match
    otherwise. Route and cabin class are never flexible.
    """

    def evaluate(
        self, flight_filter: FlightFilter, aggregated: AggregatedQuote
    ) -> MatchResult:
        target = flight_filter.target_price

        if not aggregated.has_data:
            return MatchResult(MatchKind.NO_MATCH, target_price=target, reason="no data")

        price = aggregated.price
        if aggregated.currency.upper() != flight_filter.currency.upper():
            return self._no_match(price, target, "currency mismatch")
        if price > target:
            return self._no_match(price, target, f"price {price:.2f} above target {target:.2f}")

        violation, differences = self._check_constraints(flight_filter, aggregated.quote)
        if violation is not None:
            return self._no_match(price, target, violation)

        if differences:
            return MatchResult(
                MatchKind.FLEXIBLE_MATCH,
                price=price,
                target_price=target,
                differences=tuple(differences),
            )
        return MatchResult(MatchKind.EXACT_MATCH, price=price, target_price=target)

    def admits(self, flight_filter: FlightFilter, quote: Quote) -> bool:
        """True if the quote meets every constraint, allowing flexible ones to differ."""
        violation, _ = self._check_constraints(flight_filter, quote)
        return violation is None

    def _check_constraints(
        self, flight_filter: FlightFilter, quote: Quote
    ) -> tuple[Optional[str], list[ConstraintDifference]]:
        # Route
        if quote.origin not in flight_filter.origins:
            return f"origin {quote.origin} not requested", []
        if quote.destination not in flight_filter.destinations:
            return f"destination {quote.destination} not requested", []

        # Cabin
        if quote.cabin_class and quote.cabin_class != flight_filter.cabin_class:
            return f"cabin {quote.cabin_class} not requested", []

        differences: list[ConstraintDifference] = []
        checks = (
            self._check_dates,
            self._check_stops,
            self._check_airline,
            self._check_times,
        )
        for check in checks:
            constraint, difference = check(flight_filter, quote)
            if difference is None:
                continue
            if not flight_filter.is_flexible(constraint) or difference is _HARD_VIOLATION:
                return f"{constraint} constraint not met", []
            differences.append(difference)
        return None, differences

    def _no_match(self, price: Optional[float], target: float, reason: str) -> MatchResult:
        return MatchResult(MatchKind.NO_MATCH, price=price, target_price=target, reason=reason)

    def _check_dates(self, f: FlightFilter, quote):
        if quote.departure_date is None or quote.departure_date in f.departure_dates:
            return "dates", None
        offset = min(abs((quote.departure_date - d).days) for d in f.departure_dates)
        if offset > f.date_flexibility:
            return "dates", _HARD_VIOLATION
        return "dates", ConstraintDifference(
            "dates",
            ", ".join(d.isoformat() for d in sorted(f.departure_dates)),
            f"{quote.departure_date.isoformat()} ({offset} day(s) off)",
        )

    def _check_stops(self, f: FlightFilter, quote):
        limit = _STOP_LIMITS.get(f.max_stops)
        if limit is None or quote.stops is None or quote.stops <= limit:
            return "stops", None
        return "stops", ConstraintDifference("stops", f.max_stops, f"{quote.stops} stop(s)")

    def _check_airline(self, f: FlightFilter, quote):
        if not f.airline_preferences or not quote.airline:
            return "airline", None
        if quote.airline in f.airline_preferences:
            return "airline", None
        return "airline", ConstraintDifference(
            "airline", ", ".join(f.airline_preferences), quote.airline
        )

    def _check_times(self, f: FlightFilter, quote):
        if not f.preferred_departure_times or not quote.departure_time:
            return "times", None
        departure = time.fromisoformat(quote.departure_time)
        windows = [parse_time_window(w) for w in f.preferred_departure_times]
        if any(_in_window(departure, w) for w in windows):
            return "times", None
        return "times", ConstraintDifference(
            "times", ", ".join(f.preferred_departure_times), quote.departure_time
        )


# Sentinel: constraint missed by more than its flexibility allows
_HARD_VIOLATION = ConstraintDifference("hard", "", "")
