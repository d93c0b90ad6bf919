"""
Pytest configuration and shared fixtures.
"""

import threading
import time
from datetime import date, datetime, timedelta
from typing import Optional

import pytest

from pricewatch.config import SchedulerConfig
from pricewatch.database.connection import Database
from pricewatch.database.models import FlightFilter, MonitorFrequency
from pricewatch.database.repository import (
    AlertRepository,
    FilterRepository,
    JobRunRepository,
    NotificationRepository,
    PriceHistoryRepository,
)
from pricewatch.errors import ProviderError
from pricewatch.notifiers.base import AlertNotification, Notifier, NotificationResult
from pricewatch.providers.base import Quote, QuoteProvider, SearchRequest

NOW = datetime(2026, 10, 1, 12, 0, 0)


class FakeClock:
    """Deterministic, manually advanced clock."""

    def __init__(self, start: datetime = NOW):
        self.now = start
        self._lock = threading.Lock()

    def __call__(self) -> datetime:
        with self._lock:
            return self.now

    def advance(self, **kwargs) -> datetime:
        with self._lock:
            self.now += timedelta(**kwargs)
            return self.now


class FakeProvider(QuoteProvider):
    """Provider returning canned quotes, raising, or stalling."""

    def __init__(
        self,
        name: str,
        quotes: Optional[list[Quote]] = None,
        error: Optional[ProviderError] = None,
        delay: float = 0.0,
        timeout: float = 5.0,
    ):
        self.name = name
        self.quotes = quotes or []
        self.error = error
        self.delay = delay
        self.timeout = timeout
        self.calls: list[SearchRequest] = []

    def fetch_quotes(self, request: SearchRequest) -> list[Quote]:
        self.calls.append(request)
        if self.delay:
            time.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return list(self.quotes)


class FakeNotifier(Notifier):
    """Notifier that replays scripted results and records every call."""

    def __init__(self, channel: str, results: Optional[list[NotificationResult]] = None):
        self.channel = channel
        self.results = list(results or [])
        self.sent: list[tuple[str, AlertNotification]] = []

    def send(self, destination: str, notification: AlertNotification) -> NotificationResult:
        self.sent.append((destination, notification))
        if self.results:
            return self.results.pop(0)
        return NotificationResult(success=True, channel=self.channel)


def make_quote(
    provider: str = "alpha",
    price: float = 385.0,
    currency: str = "USD",
    origin: str = "JFK",
    destination: str = "LAX",
    departure_date: Optional[date] = date(2026, 12, 1),
    **kwargs,
) -> Quote:
    kwargs.setdefault("observed_at", NOW)
    kwargs.setdefault("cabin_class", "economy")
    return Quote(
        provider=provider,
        price=price,
        currency=currency,
        origin=origin,
        destination=destination,
        departure_date=departure_date,
        **kwargs,
    )


def make_filter(**overrides) -> FlightFilter:
    values = dict(
        user_id=1,
        name="NYC to LA",
        origins=["JFK"],
        destinations=["LAX"],
        departure_dates=[date(2026, 12, 1)],
        target_price=400.0,
        monitor_frequency=MonitorFrequency.HOURLY,
        notification_channels={"email": "traveler@example.com"},
    )
    values.update(overrides)
    return FlightFilter(**values)


@pytest.fixture
def clock():
    """Clock fixed at NOW until advanced."""
    return FakeClock()


@pytest.fixture
def db():
    """Initialized in-memory database."""
    database = Database(":memory:")
    database.initialize()
    yield database
    database.close()


@pytest.fixture
def filter_repo(db):
    return FilterRepository(db)


@pytest.fixture
def alert_repo(db):
    return AlertRepository(db)


@pytest.fixture
def notification_repo(db):
    return NotificationRepository(db)


@pytest.fixture
def price_history_repo(db):
    return PriceHistoryRepository(db)


@pytest.fixture
def job_repo(db):
    return JobRunRepository(db)


@pytest.fixture
def quote_factory():
    """Build quotes with sensible defaults."""
    return make_quote


@pytest.fixture
def filter_factory():
    """Build (unsaved) flight filters with sensible defaults."""
    return make_filter


@pytest.fixture
def saved_filter(filter_repo):
    """A persisted filter: JFK -> LAX on 2026-12-01, target 400 USD."""
    return filter_repo.create(make_filter())


@pytest.fixture
def scheduler_config():
    """Scheduler config with jitter off for exact timing assertions."""
    return SchedulerConfig(
        tick_seconds=0.01,
        max_workers=4,
        max_in_flight=4,
        jitter=False,
        outage_threshold=2,
        max_backoff_multiplier=8,
    )


@pytest.fixture
def fake_provider():
    return FakeProvider


@pytest.fixture
def fake_notifier():
    return FakeNotifier
