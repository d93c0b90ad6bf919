"""
Base notifier classes.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Optional

from pricewatch.config import DeliveryConfig
from pricewatch.database.models import FlightAlert, FlightFilter
from pricewatch.pricing.aggregator import AggregatedQuote
from pricewatch.rules.evaluator import MatchKind, MatchResult

URGENT_DROP_PERCENT = 15.0
SIGNIFICANT_DROP_PERCENT = 8.0
MINOR_DROP_PERCENT = 3.0
URGENT_BOOKING_DAYS = 30


class Urgency(str, Enum):
    """How loudly a deal is announced."""

    URGENT = "urgent"
    SIGNIFICANT = "significant"
    MINOR = "minor"


@dataclass
class AlertNotification:
    """Channel-independent content of a price-break notification."""

    alert_id: int
    quote_id: str
    filter_name: str
    route: str
    price: float
    target_price: float
    currency: str
    provider: str
    match_kind: MatchKind
    triggered_at: datetime
    departure_date: Optional[date] = None
    airline: Optional[str] = None
    stops: Optional[int] = None
    quality_score: Optional[float] = None
    differences: list[str] = field(default_factory=list)

    @classmethod
    def build(
        cls,
        flight_filter: FlightFilter,
        alert: FlightAlert,
        match: MatchResult,
        aggregated: AggregatedQuote,
    ) -> "AlertNotification":
        quote = aggregated.quote
        return cls(
            alert_id=alert.id,
            quote_id=quote.id,
            filter_name=flight_filter.name,
            route=f"{quote.origin} -> {quote.destination}",
            price=aggregated.price,
            target_price=flight_filter.target_price,
            currency=aggregated.currency,
            provider=quote.provider,
            match_kind=match.kind,
            triggered_at=alert.triggered_at or aggregated.computed_at,
            departure_date=quote.departure_date,
            airline=quote.airline,
            stops=quote.stops,
            quality_score=alert.quality_score,
            differences=[d.describe() for d in match.differences],
        )

    @property
    def savings(self) -> float:
        return round(self.target_price - self.price, 2)

    @property
    def savings_percentage(self) -> float:
        if self.target_price <= 0:
            return 0.0
        return round(self.savings / self.target_price * 100, 1)

    @property
    def urgency(self) -> Urgency:
        drop = self.savings_percentage
        if drop >= URGENT_DROP_PERCENT:
            return Urgency.URGENT
        if self.departure_date is not None and drop >= MINOR_DROP_PERCENT:
            days_out = (self.departure_date - self.triggered_at.date()).days
            if days_out <= URGENT_BOOKING_DAYS:
                return Urgency.URGENT
        if drop >= SIGNIFICANT_DROP_PERCENT:
            return Urgency.SIGNIFICANT
        return Urgency.MINOR

    @property
    def title(self) -> str:
        return f"Price drop: {self.route} now {self.price:.2f} {self.currency}"

    @property
    def message(self) -> str:
        """One-paragraph summary used by every channel."""
        text = (
            f"{self.filter_name}: {self.route} is {self.price:.2f} {self.currency} "
            f"via {self.provider}, {self.savings:.2f} under your target of "
            f"{self.target_price:.2f}."
        )
        if self.match_kind == MatchKind.FLEXIBLE_MATCH and self.differences:
            text += " Differs from your filter on " + "; ".join(self.differences) + "."
        return text


@dataclass
class NotificationResult:
    """Result of a notification attempt."""

    success: bool
    channel: str
    error: Optional[str] = None
    permanent: bool = False


class Notifier(ABC):
    """Abstract base class for notifiers."""

    channel: str = ""

    @abstractmethod
    def send(self, destination: str, notification: AlertNotification) -> NotificationResult:
        """
        Send one notification to one destination.

        Args:
            destination: Channel-specific address (email, phone, token, endpoint)
            notification: Content to deliver

        Returns:
            NotificationResult; `permanent` is set when a retry cannot help
        """
        pass

    def failure(self, error: str, permanent: bool = False) -> NotificationResult:
        return NotificationResult(
            success=False, channel=self.channel, error=error, permanent=permanent
        )


class NotifierFactory:
    """Factory for creating notifier instances."""

    @staticmethod
    def create(channel: str, config: DeliveryConfig) -> Notifier:
        """
        Create the notifier for one channel.

        Raises:
            ValueError: If the channel is unknown
        """
        if channel == "email":
            from .email import EmailNotifier

            return EmailNotifier(
                smtp_host=config.email.smtp_host,
                smtp_port=config.email.smtp_port,
                smtp_user=config.email.smtp_user,
                smtp_password=config.email.smtp_password,
                from_address=config.email.from_address,
            )

        elif channel == "sms":
            from .webhook import SmsNotifier

            return SmsNotifier(
                url=config.sms.url,
                api_key=config.sms.api_key,
                timeout=config.sms.timeout_seconds,
            )

        elif channel == "push":
            from .webhook import PushNotifier

            return PushNotifier(
                url=config.push.url,
                api_key=config.push.api_key,
                timeout=config.push.timeout_seconds,
            )

        elif channel == "browser":
            from .webhook import BrowserNotifier

            return BrowserNotifier(
                url=config.browser.url,
                api_key=config.browser.api_key,
                timeout=config.browser.timeout_seconds,
            )

        else:
            raise ValueError(f"Unknown notification channel: {channel}")

    @staticmethod
    def create_configured(config: DeliveryConfig) -> dict[str, Notifier]:
        """Notifiers for every channel that has enough configuration to send."""
        notifiers = {}
        if config.email.smtp_host and config.email.from_address:
            notifiers["email"] = NotifierFactory.create("email", config)
        for channel in ("sms", "push", "browser"):
            if getattr(config, channel).url:
                notifiers[channel] = NotifierFactory.create(channel, config)
        return notifiers
