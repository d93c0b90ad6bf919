"""
One complete filter check: fetch, aggregate, evaluate, transition, deliver.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, Optional

from pricewatch.alerts.state_machine import AlertStateMachine
from pricewatch.database.models import FlightFilter, PriceHistoryEntry
from pricewatch.database.repository import PriceHistoryRepository
from pricewatch.delivery.dispatcher import DeliveryDispatcher, DeliveryOutcome
from pricewatch.notifiers.base import AlertNotification
from pricewatch.pricing.aggregator import AggregatedQuote, QuoteAggregator
from pricewatch.providers.base import Quote, SearchRequest
from pricewatch.providers.gateway import ProviderGateway
from pricewatch.rules.evaluator import FilterEvaluator, MatchResult

logger = logging.getLogger(__name__)


class CheckStatus(str, Enum):
    CHECKED = "checked"
    TRIGGERED = "triggered"
    NO_DATA = "no_data"
    ERROR = "error"


@dataclass
class CheckOutcome:
    """Structured result of checking one filter."""

    filter_id: int
    status: CheckStatus
    price: Optional[float] = None
    match: Optional[MatchResult] = None
    aggregated: Optional[AggregatedQuote] = None
    alert_id: Optional[int] = None
    deliveries: list[DeliveryOutcome] = field(default_factory=list)
    provider_errors: list[str] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def has_data(self) -> bool:
        return self.aggregated is not None and self.aggregated.has_data


class PriceMonitor:
    """Runs filter checks end to end."""

    def __init__(
        self,
        gateway: ProviderGateway,
        aggregator: QuoteAggregator,
        evaluator: FilterEvaluator,
        state_machine: AlertStateMachine,
        dispatcher: DeliveryDispatcher,
        price_history: Optional[PriceHistoryRepository] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.gateway = gateway
        self.aggregator = aggregator
        self.evaluator = evaluator
        self.state_machine = state_machine
        self.dispatcher = dispatcher
        self.price_history = price_history
        self.clock = clock

    def check_filter(self, flight_filter: FlightFilter) -> CheckOutcome:
        """
        Check one filter. Never raises.

        Returns:
            CheckOutcome with status triggered, checked, no_data or error
        """
        try:
            return self._check(flight_filter)
        except Exception as e:
            logger.exception(f"Error checking filter {flight_filter.id}")
            return CheckOutcome(flight_filter.id, CheckStatus.ERROR, error=str(e))

    def _check(self, flight_filter: FlightFilter) -> CheckOutcome:
        request = SearchRequest.from_filter(flight_filter)
        fetched = self.gateway.fetch(request)
        provider_errors = [str(e) for e in fetched.errors]

        aggregated = self.aggregator.aggregate(
            fetched.quotes,
            flight_filter.currency,
            fetched.latencies,
            accept=lambda quote: self.evaluator.admits(flight_filter, quote),
        )
        self._record_history(fetched.quotes, flight_filter.currency)

        alert = self.state_machine.ensure_alert(flight_filter)
        match = self.evaluator.evaluate(flight_filter, aggregated)

        outcome = CheckOutcome(
            filter_id=flight_filter.id,
            status=CheckStatus.CHECKED if aggregated.has_data else CheckStatus.NO_DATA,
            price=aggregated.price,
            match=match,
            aggregated=aggregated,
            alert_id=alert.id,
            provider_errors=provider_errors,
        )
        if not aggregated.has_data:
            logger.info(
                f"Filter {flight_filter.id}: no data this cycle "
                f"({len(provider_errors)} provider errors)"
            )
            return outcome

        transition = self.state_machine.apply_evaluation(alert.id, match, aggregated)
        if not transition.success:
            outcome.status = CheckStatus.ERROR
            outcome.error = transition.error
            return outcome

        if transition.triggered:
            outcome.status = CheckStatus.TRIGGERED
            notification = AlertNotification.build(
                flight_filter, transition.alert, match, aggregated
            )
            outcome.deliveries = self.dispatcher.deliver(
                transition.alert, notification, flight_filter.notification_channels
            )
            logger.info(
                f"Filter {flight_filter.id}: triggered at {aggregated.price:.2f} "
                f"{aggregated.currency} ({match.kind.value}), "
                f"{sum(d.delivered for d in outcome.deliveries)}/"
                f"{len(outcome.deliveries)} channels delivered"
            )
        else:
            logger.debug(
                f"Filter {flight_filter.id}: {aggregated.price:.2f} "
                f"{aggregated.currency}, {match.kind.value}"
            )
        return outcome

    def _record_history(self, quotes: list[Quote], currency: str) -> None:
        if self.price_history is None:
            return
        converter = self.aggregator.converter
        entries = [
            PriceHistoryEntry(
                route=f"{q.origin}-{q.destination}",
                departure_date=q.departure_date,
                provider=q.provider,
                price=converter.convert(q.price, q.currency, currency),
                currency=currency.upper(),
                cabin_class=q.cabin_class,
                observed_at=q.observed_at,
            )
            for q in quotes
            if q.price and q.price > 0 and converter.supports(q.currency)
        ]
        self.price_history.record_many(entries)
