"""
Data models for the pricewatch service.
"""

import re
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Optional


class AlertStatus(str, Enum):
    """Lifecycle states of a flight alert."""

    ACTIVE = "active"
    TRIGGERED = "triggered"
    PAUSED = "paused"
    EXPIRED = "expired"


class MonitorFrequency(str, Enum):
    """How often a filter is re-checked."""

    REAL_TIME = "real-time"
    HOURLY = "hourly"
    DAILY = "daily"
    WEEKLY = "weekly"


class NotificationStatus(str, Enum):
    """Outcome of a single delivery attempt."""

    SENT = "sent"
    FAILED = "failed"
    PERMANENT_FAILURE = "permanent_failure"
    SKIPPED = "skipped"


TRIP_TYPES = ("one-way", "round-trip", "multi-city")
CABIN_CLASSES = ("economy", "premium-economy", "business", "first")
MAX_STOPS_OPTIONS = ("nonstop", "1-stop", "2+", "any")
FLEXIBLE_CONSTRAINTS = ("airline", "stops", "times", "dates")

URGENT_WINDOW_DAYS = 30

_TIME_WINDOW = re.compile(r"^([01]\d|2[0-3]):[0-5]\d-([01]\d|2[0-3]):[0-5]\d$")


@dataclass
class Passengers:
    """Passenger counts for a search."""

    adults: int = 1
    children: int = 0
    infants: int = 0

    @property
    def total(self) -> int:
        return self.adults + self.children + self.infants


@dataclass
class FlightFilter:
    """User-owned search and monitoring criteria."""

    user_id: int
    name: str
    origins: list[str]
    destinations: list[str]
    departure_dates: list[date]
    target_price: float
    trip_type: str = "one-way"
    return_dates: list[date] = field(default_factory=list)
    date_flexibility: int = 3
    cabin_class: str = "economy"
    passengers: Passengers = field(default_factory=Passengers)
    max_stops: str = "any"
    airline_preferences: list[str] = field(default_factory=list)
    preferred_departure_times: list[str] = field(default_factory=list)  # "HH:MM-HH:MM"
    currency: str = "USD"
    monitor_frequency: MonitorFrequency = MonitorFrequency.DAILY
    flexibility: dict[str, bool] = field(default_factory=dict)
    notification_channels: dict[str, str] = field(default_factory=dict)
    is_active: bool = True
    id: Optional[int] = None
    last_checked: Optional[datetime] = None
    next_check_at: Optional[datetime] = None

    @property
    def route_description(self) -> str:
        return f"{', '.join(self.origins)} -> {', '.join(self.destinations)}"

    @property
    def passenger_count(self) -> int:
        return self.passengers.total

    def is_flexible(self, constraint: str) -> bool:
        """Whether the user allowed the given constraint to differ."""
        return bool(self.flexibility.get(constraint, False))

    def is_urgent(self, today: date) -> bool:
        """Earliest departure falls within the urgent window."""
        if not self.departure_dates:
            return False
        earliest = min(self.departure_dates)
        return earliest - today <= timedelta(days=URGENT_WINDOW_DAYS)

    def validate(self) -> list[str]:
        """Return a list of validation problems (empty when valid)."""
        problems = []
        if not self.name or len(self.name) < 3:
            problems.append("name must be at least 3 characters")
        if not self.origins:
            problems.append("at least one origin airport is required")
        if not self.destinations:
            problems.append("at least one destination airport is required")
        if not self.departure_dates:
            problems.append("at least one departure date is required")
        if self.trip_type not in TRIP_TYPES:
            problems.append(f"invalid trip type: {self.trip_type}")
        if self.cabin_class not in CABIN_CLASSES:
            problems.append(f"invalid cabin class: {self.cabin_class}")
        if self.max_stops not in MAX_STOPS_OPTIONS:
            problems.append(f"invalid max stops option: {self.max_stops}")
        if not 1 <= self.date_flexibility <= 30:
            problems.append("date flexibility must be between 1 and 30 days")
        if self.passengers.adults < 1:
            problems.append("must have at least one adult")
        if self.passengers.total > 9:
            problems.append("cannot exceed 9 passengers")
        if self.target_price <= 0:
            problems.append("target price must be positive")
        unknown = set(self.flexibility) - set(FLEXIBLE_CONSTRAINTS)
        if unknown:
            problems.append(f"unknown flexibility options: {sorted(unknown)}")
        for window in self.preferred_departure_times:
            if not _TIME_WINDOW.match(window):
                problems.append(f"invalid departure time window: {window}")
        return problems


@dataclass
class FlightAlert:
    """Stateful record of whether a filter's price break has fired."""

    filter_id: int
    target_price: float
    status: AlertStatus = AlertStatus.ACTIVE
    current_price: Optional[float] = None
    last_triggered_price: Optional[float] = None
    last_quote_id: Optional[str] = None
    quality_score: Optional[float] = None
    triggered_at: Optional[datetime] = None
    version: int = 0
    id: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass
class AlertTransition:
    """Append-only record of one alert status change."""

    alert_id: int
    from_status: AlertStatus
    to_status: AlertStatus
    reason: str
    created_at: datetime
    price: Optional[float] = None
    quote_id: Optional[str] = None
    id: Optional[int] = None


@dataclass
class NotificationRecord:
    """Append-only record of one delivery attempt."""

    alert_id: int
    quote_id: str
    channel: str
    status: NotificationStatus
    created_at: datetime
    destination: Optional[str] = None
    attempt: int = 1
    error: Optional[str] = None
    id: Optional[int] = None


@dataclass
class PriceHistoryEntry:
    """A provider price observation kept for trend analysis."""

    route: str
    departure_date: Optional[date]
    provider: str
    price: float
    currency: str
    observed_at: datetime
    cabin_class: Optional[str] = None
    id: Optional[int] = None
