"""
Fan a triggered alert out to its notification channels.
"""

import logging
import sqlite3
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from pricewatch.database.models import (
    FlightAlert,
    NotificationRecord,
    NotificationStatus,
)
from pricewatch.database.repository import NotificationRepository
from pricewatch.errors import PermanentDeliveryError, TransientDeliveryError
from pricewatch.notifiers.base import AlertNotification, Notifier, NotificationResult

logger = logging.getLogger(__name__)

LOCK_STRIPES = 64
DAILY_CAP_REASON = "daily notification limit reached"


@dataclass
class DeliveryOutcome:
    """Final result of delivering one trigger on one channel."""

    channel: str
    status: NotificationStatus
    attempts: int = 0
    error: Optional[str] = None

    @property
    def delivered(self) -> bool:
        return self.status == NotificationStatus.SENT


class DeliveryDispatcher:
    """
    Delivers notifications at most once per (alert, quote, channel).

    Channels are delivered concurrently and independently: a failure, a
    retry backoff or an exception on one never delays or stops the others.
    Transient failures are retried with exponential backoff; permanent
    ones are recorded once. Every attempt is appended to the notification
    history. A key is claimed under a striped lock before sending, and the
    lock is released while the notifier runs and while backing off.
    """

    def __init__(
        self,
        notifiers: dict[str, Notifier],
        history: NotificationRepository,
        max_retries: int = 3,
        retry_delay: float = 5.0,
        max_notifications_per_day: int = 0,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = datetime.now,
    ):
        """
        Args:
            notifiers: channel name -> notifier
            history: Notification history repository
            max_retries: Retries after the first failed attempt
            retry_delay: Delay before the first retry, doubled for each next one
            max_notifications_per_day: Distinct triggers delivered per alert in
                24 hours before further ones are skipped (0 for no cap)
            sleep: Backoff sleep, injectable for tests
            clock: Time source for history rows
        """
        self.notifiers = notifiers
        self.history = history
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.max_notifications_per_day = max_notifications_per_day
        self.sleep = sleep
        self.clock = clock
        self._locks = [threading.Lock() for _ in range(LOCK_STRIPES)]
        self._sending: set[tuple] = set()

    def deliver(
        self,
        alert: FlightAlert,
        notification: AlertNotification,
        channels: dict[str, str],
    ) -> list[DeliveryOutcome]:
        """
        Deliver one trigger to every configured channel.

        Args:
            alert: The triggered alert
            notification: Content built from the triggering quote
            channels: channel name -> destination

        Returns:
            One DeliveryOutcome per channel, in the order given
        """
        if not channels:
            return []
        if self._over_daily_cap(alert, notification):
            return [
                self._skip(alert, notification, channel, destination, DAILY_CAP_REASON)
                for channel, destination in channels.items()
            ]

        with ThreadPoolExecutor(
            max_workers=len(channels), thread_name_prefix="delivery"
        ) as executor:
            futures = [
                (channel, executor.submit(
                    self._deliver_channel, alert, notification, channel, destination
                ))
                for channel, destination in channels.items()
            ]
            outcomes = []
            for channel, future in futures:
                try:
                    outcome = future.result()
                except Exception as e:
                    logger.exception(f"Alert {alert.id}: {channel} delivery crashed")
                    outcome = DeliveryOutcome(channel, NotificationStatus.FAILED, error=str(e))
                outcomes.append(outcome)
        return outcomes

    def _over_daily_cap(self, alert: FlightAlert, notification: AlertNotification) -> bool:
        if not self.max_notifications_per_day:
            return False
        delivered = self.history.count_triggers_notified_since(
            alert.id, self.clock() - timedelta(hours=24), exclude_quote_id=notification.quote_id
        )
        if delivered < self.max_notifications_per_day:
            return False
        logger.warning(
            f"Alert {alert.id}: {delivered} triggers already delivered in 24h, "
            f"skipping quote {notification.quote_id}"
        )
        return True

    def _lock_for(self, key: tuple) -> threading.Lock:
        return self._locks[hash(key) % LOCK_STRIPES]

    def _deliver_channel(
        self,
        alert: FlightAlert,
        notification: AlertNotification,
        channel: str,
        destination: str,
    ) -> DeliveryOutcome:
        key = (alert.id, notification.quote_id, channel)

        with self._lock_for(key):
            if key in self._sending or self.history.has_sent(*key):
                logger.info(f"Alert {alert.id}: {channel} already sent for this quote")
                return self._skip(alert, notification, channel, destination, "already sent")
            self._sending.add(key)

        try:
            notifier = self.notifiers.get(channel)
            if notifier is None:
                error = f"Channel {channel} is not configured"
                self._record(alert, notification, channel, destination,
                             NotificationStatus.PERMANENT_FAILURE, 1, error)
                return DeliveryOutcome(
                    channel, NotificationStatus.PERMANENT_FAILURE, attempts=1, error=error
                )
            return self._attempt(alert, notification, notifier, channel, destination)
        finally:
            with self._lock_for(key):
                self._sending.discard(key)

    def _skip(
        self,
        alert: FlightAlert,
        notification: AlertNotification,
        channel: str,
        destination: str,
        reason: str,
    ) -> DeliveryOutcome:
        self._record(alert, notification, channel, destination,
                     NotificationStatus.SKIPPED, 0, reason)
        return DeliveryOutcome(channel, NotificationStatus.SKIPPED, error=reason)

    def _attempt(
        self,
        alert: FlightAlert,
        notification: AlertNotification,
        notifier: Notifier,
        channel: str,
        destination: str,
    ) -> DeliveryOutcome:
        result = None
        for attempt in range(1, self.max_retries + 2):
            try:
                result = notifier.send(destination, notification)
            except PermanentDeliveryError as e:
                result = NotificationResult(
                    success=False, channel=channel, error=str(e), permanent=True
                )
            except TransientDeliveryError as e:
                result = NotificationResult(success=False, channel=channel, error=str(e))
            except Exception as e:
                logger.exception(f"Alert {alert.id}: {channel} notifier raised")
                result = NotificationResult(success=False, channel=channel, error=str(e))

            if result.success:
                try:
                    self._record(alert, notification, channel, destination,
                                 NotificationStatus.SENT, attempt)
                except sqlite3.IntegrityError:
                    logger.warning(
                        f"Alert {alert.id}: {channel} sent row already exists for "
                        f"quote {notification.quote_id}"
                    )
                    return DeliveryOutcome(channel, NotificationStatus.SKIPPED, attempts=attempt)
                logger.info(f"Alert {alert.id}: delivered via {channel}")
                return DeliveryOutcome(channel, NotificationStatus.SENT, attempts=attempt)

            if result.permanent:
                self._record(alert, notification, channel, destination,
                             NotificationStatus.PERMANENT_FAILURE, attempt, result.error)
                logger.error(f"Alert {alert.id}: {channel} failed permanently: {result.error}")
                return DeliveryOutcome(
                    channel, NotificationStatus.PERMANENT_FAILURE, attempts=attempt,
                    error=result.error,
                )

            self._record(alert, notification, channel, destination,
                         NotificationStatus.FAILED, attempt, result.error)
            if attempt <= self.max_retries:
                delay = self.retry_delay * 2 ** (attempt - 1)
                logger.warning(
                    f"Alert {alert.id}: {channel} attempt {attempt} failed "
                    f"({result.error}), retrying in {delay:.1f}s"
                )
                self.sleep(delay)

        logger.error(f"Alert {alert.id}: {channel} gave up after {attempt} attempts")
        return DeliveryOutcome(
            channel, NotificationStatus.FAILED, attempts=attempt, error=result.error
        )

    def _record(
        self,
        alert: FlightAlert,
        notification: AlertNotification,
        channel: str,
        destination: str,
        status: NotificationStatus,
        attempt: int,
        error: Optional[str] = None,
    ) -> None:
        self.history.append(
            NotificationRecord(
                alert_id=alert.id,
                quote_id=notification.quote_id,
                channel=channel,
                status=status,
                created_at=self.clock(),
                destination=destination,
                attempt=attempt,
                error=error,
            )
        )
