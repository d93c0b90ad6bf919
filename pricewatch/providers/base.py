"""
Provider capability interface and quote types.
"""

import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any, Optional

from pricewatch.database.models import FlightFilter
from pricewatch.errors import ProviderError


@dataclass(frozen=True)
class Quote:
    """One provider's price observation. Never modified once created."""

    provider: str
    price: float
    currency: str
    observed_at: datetime
    origin: str
    destination: str
    departure_date: Optional[date] = None
    cabin_class: Optional[str] = None
    stops: Optional[int] = None
    airline: Optional[str] = None
    departure_time: Optional[str] = None  # "HH:MM", local to origin
    raw_ref: Optional[str] = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex)


@dataclass(frozen=True)
class SearchRequest:
    """What to ask every provider for on one filter check."""

    origins: tuple[str, ...]
    destinations: tuple[str, ...]
    date_from: date
    date_to: date
    cabin_class: str = "economy"
    adults: int = 1
    children: int = 0
    infants: int = 0
    currency: str = "USD"
    return_date: Optional[date] = None

    @classmethod
    def from_filter(cls, flight_filter: FlightFilter) -> "SearchRequest":
        """
        Build the provider query for a filter.

        The date window widens by `date_flexibility` days on each side when
        the user marked dates as flexible.
        """
        dates = sorted(flight_filter.departure_dates)
        date_from, date_to = dates[0], dates[-1]
        if flight_filter.is_flexible("dates"):
            slack = timedelta(days=flight_filter.date_flexibility)
            date_from, date_to = date_from - slack, date_to + slack
        return cls(
            origins=tuple(flight_filter.origins),
            destinations=tuple(flight_filter.destinations),
            date_from=date_from,
            date_to=date_to,
            cabin_class=flight_filter.cabin_class,
            adults=flight_filter.passengers.adults,
            children=flight_filter.passengers.children,
            infants=flight_filter.passengers.infants,
            currency=flight_filter.currency,
            return_date=(
                min(flight_filter.return_dates) if flight_filter.return_dates else None
            ),
        )

    @property
    def route_pairs(self) -> list[tuple[str, str]]:
        return [(o, d) for o in self.origins for d in self.destinations if o != d]


@dataclass
class ProviderResult:
    """Quotes (or the error) one provider produced for one request."""

    provider: str
    quotes: list[Quote] = field(default_factory=list)
    error: Optional[ProviderError] = None
    latency: Optional[float] = None
    # False when the call was refused locally and never reached the provider
    attempted: bool = True

    @property
    def ok(self) -> bool:
        return self.error is None


class QuoteProvider(ABC):
    """Capability interface every vendor adapter implements."""

    name: str = "provider"
    timeout: float = 30.0

    @abstractmethod
    def fetch_quotes(self, request: SearchRequest) -> list[Quote]:
        """
        Fetch current quotes for a search.

        Args:
            request: Route, date window and cabin to search

        Returns:
            Normalized quotes (possibly empty)

        Raises:
            ProviderError: On timeout, rate limiting or unusable responses
        """
        pass

    def request_cost(self, request: SearchRequest) -> int:
        """Number of upstream requests one fetch_quotes call makes."""
        return 1

    def describe(self) -> dict[str, Any]:
        return {"name": self.name, "timeout": self.timeout}
