"""
Alert lifecycle: the only code path that changes an alert's status.
"""

import logging
import sqlite3
import threading
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Callable, Optional

from pricewatch.database.models import (
    AlertStatus,
    AlertTransition,
    FlightAlert,
    FlightFilter,
)
from pricewatch.database.repository import AlertRepository
from pricewatch.errors import InvalidTransitionError, StateTransitionError
from pricewatch.pricing.aggregator import AggregatedQuote
from pricewatch.providers.reliability import ReliabilityTracker
from pricewatch.rules.evaluator import MatchKind, MatchResult

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: dict[AlertStatus, frozenset[AlertStatus]] = {
    AlertStatus.ACTIVE: frozenset(
        {AlertStatus.TRIGGERED, AlertStatus.PAUSED, AlertStatus.EXPIRED}
    ),
    AlertStatus.TRIGGERED: frozenset(
        {AlertStatus.ACTIVE, AlertStatus.PAUSED, AlertStatus.EXPIRED}
    ),
    AlertStatus.PAUSED: frozenset({AlertStatus.ACTIVE, AlertStatus.EXPIRED}),
    AlertStatus.EXPIRED: frozenset(),
}

HIGH_RELIABILITY = 0.8


def quality_score(match: MatchResult, reliability: Optional[float]) -> float:
    """
    Score how good a triggered deal is, between 0.5 and 1.0.

    Bigger drops below target, exact matches and quotes from reliable
    providers score higher.
    """
    score = 0.5
    score += min(max(match.drop_percentage, 0.0) / 100, 0.3)
    if match.kind == MatchKind.EXACT_MATCH:
        score += 0.1
    if reliability is not None and reliability >= HIGH_RELIABILITY:
        score += 0.1
    return round(min(score, 1.0), 2)


@dataclass
class TransitionOutcome:
    """Result of asking the state machine to act on an alert."""

    success: bool
    alert: Optional[FlightAlert] = None
    from_status: Optional[AlertStatus] = None
    to_status: Optional[AlertStatus] = None
    error: Optional[str] = None

    @property
    def transitioned(self) -> bool:
        return self.success and self.to_status is not None

    @property
    def triggered(self) -> bool:
        return self.transitioned and self.to_status == AlertStatus.TRIGGERED


class AlertStateMachine:
    """
    Applies evaluation results and user actions to alerts.

    Writers are serialized per alert id with an in-process lock; the
    repository's version check catches writers outside this process (the
    user-facing controller). A failed write leaves both the stored row
    and the caller's alert object untouched and is reported in the
    returned outcome, never raised.
    """

    def __init__(
        self,
        alerts: AlertRepository,
        reliability: Optional[ReliabilityTracker] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.alerts = alerts
        self.reliability = reliability or ReliabilityTracker()
        self.clock = clock
        self._locks: dict[int, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _lock_for(self, alert_id: int) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(alert_id)
            if lock is None:
                lock = self._locks[alert_id] = threading.Lock()
            return lock

    def ensure_alert(self, flight_filter: FlightFilter) -> FlightAlert:
        """
        Return the filter's current alert, creating an active one only if the
        filter never had one.

        Expiry is terminal: an expired alert is returned as is and no
        replacement is created, so the filter stays disarmed.
        """
        existing = self.alerts.get_latest_for_filter(flight_filter.id)
        if existing is not None:
            return existing
        alert = FlightAlert(
            filter_id=flight_filter.id, target_price=flight_filter.target_price
        )
        try:
            return self.alerts.create(alert, self.clock())
        except sqlite3.IntegrityError:
            # Another worker created it first
            existing = self.alerts.get_latest_for_filter(flight_filter.id)
            if existing is None:
                raise
            return existing

    def apply_evaluation(
        self, alert_id: int, match: MatchResult, aggregated: AggregatedQuote
    ) -> TransitionOutcome:
        """
        Fire `active -> triggered` when the match warrants it.

        Only a match on an active alert whose price is strictly below the
        last triggering price (if any) fires. Anything else is a
        successful no-op.
        """
        with self._lock_for(alert_id):
            alert = self.alerts.get_by_id(alert_id)
            if alert is None:
                return TransitionOutcome(False, error=f"Alert {alert_id} not found")

            if alert.status != AlertStatus.ACTIVE or not match.is_match:
                return TransitionOutcome(True, alert=alert)
            if not aggregated.has_data:
                return TransitionOutcome(True, alert=alert)

            price = aggregated.price
            if alert.last_triggered_price is not None and price >= alert.last_triggered_price:
                logger.debug(
                    f"Alert {alert_id}: {price:.2f} is not below last trigger "
                    f"{alert.last_triggered_price:.2f}"
                )
                return TransitionOutcome(True, alert=alert)

            now = self.clock()
            score = quality_score(match, self.reliability.score(aggregated.provider))
            updated = replace(
                alert,
                status=AlertStatus.TRIGGERED,
                current_price=price,
                last_triggered_price=price,
                last_quote_id=aggregated.quote.id,
                quality_score=score,
                triggered_at=now,
                updated_at=now,
            )
            reason = (
                f"{match.kind.value} at {price:.2f} {aggregated.currency} "
                f"via {aggregated.provider}"
            )
            return self._commit(alert, updated, reason, price, aggregated.quote.id)

    def pause(self, alert_id: int, expected_version: Optional[int] = None) -> TransitionOutcome:
        return self._transition(alert_id, AlertStatus.PAUSED, "paused by user", expected_version)

    def resume(self, alert_id: int, expected_version: Optional[int] = None) -> TransitionOutcome:
        return self._transition(
            alert_id,
            AlertStatus.ACTIVE,
            "resumed by user",
            expected_version,
            allowed_from=(AlertStatus.PAUSED,),
        )

    def reset(self, alert_id: int, expected_version: Optional[int] = None) -> TransitionOutcome:
        """Re-arm a triggered alert. The last triggering price still applies."""
        return self._transition(
            alert_id,
            AlertStatus.ACTIVE,
            "reset by user",
            expected_version,
            allowed_from=(AlertStatus.TRIGGERED,),
        )

    def expire(
        self,
        alert_id: int,
        expected_version: Optional[int] = None,
        reason: str = "expired by user",
    ) -> TransitionOutcome:
        return self._transition(alert_id, AlertStatus.EXPIRED, reason, expected_version)

    def expire_stale(self, now: datetime, ttl: timedelta) -> list[TransitionOutcome]:
        """Expire triggered alerts that nobody re-armed within `ttl`."""
        outcomes = []
        for alert in self.alerts.list_triggered_before(now - ttl):
            outcomes.append(self.expire(alert.id, reason="trigger timed out"))
        return outcomes

    def _transition(
        self,
        alert_id: int,
        to_status: AlertStatus,
        reason: str,
        expected_version: Optional[int],
        allowed_from: Optional[tuple[AlertStatus, ...]] = None,
    ) -> TransitionOutcome:
        with self._lock_for(alert_id):
            alert = self.alerts.get_by_id(alert_id)
            if alert is None:
                return TransitionOutcome(False, error=f"Alert {alert_id} not found")

            if expected_version is not None and alert.version != expected_version:
                return self._failed(
                    alert,
                    to_status,
                    StateTransitionError(
                        f"Alert {alert_id} is at version {alert.version}, "
                        f"expected {expected_version}"
                    ),
                )

            legal = to_status in ALLOWED_TRANSITIONS[alert.status]
            if allowed_from is not None:
                legal = legal and alert.status in allowed_from
            if not legal:
                return self._failed(
                    alert,
                    to_status,
                    InvalidTransitionError(
                        f"Alert {alert_id} cannot go from {alert.status.value} "
                        f"to {to_status.value}"
                    ),
                )

            updated = replace(alert, status=to_status, updated_at=self.clock())
            return self._commit(alert, updated, reason)

    def _commit(
        self,
        alert: FlightAlert,
        updated: FlightAlert,
        reason: str,
        price: Optional[float] = None,
        quote_id: Optional[str] = None,
    ) -> TransitionOutcome:
        transition = AlertTransition(
            alert_id=alert.id,
            from_status=alert.status,
            to_status=updated.status,
            reason=reason,
            created_at=updated.updated_at,
            price=price,
            quote_id=quote_id,
        )
        try:
            self.alerts.save_transition(updated, alert.version, transition)
        except StateTransitionError as e:
            return self._failed(alert, updated.status, e)
        except sqlite3.Error as e:
            return self._failed(
                alert, updated.status, StateTransitionError(f"Persistence failed: {e}")
            )

        updated.version = alert.version + 1
        logger.info(
            f"Alert {alert.id}: {alert.status.value} -> {updated.status.value} ({reason})"
        )
        return TransitionOutcome(
            True, alert=updated, from_status=alert.status, to_status=updated.status
        )

    def _failed(
        self, alert: FlightAlert, to_status: AlertStatus, error: StateTransitionError
    ) -> TransitionOutcome:
        logger.warning(f"Alert {alert.id}: transition to {to_status.value} failed: {error}")
        return TransitionOutcome(False, alert=alert, from_status=alert.status, error=str(error))
