"""
Retention cleanup for price history and stale triggered alerts.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Optional

from pricewatch.alerts.state_machine import AlertStateMachine
from pricewatch.config import MaintenanceConfig
from pricewatch.database.repository import JobRunRepository, PriceHistoryRepository

logger = logging.getLogger(__name__)


@dataclass
class CleanupReport:
    history_removed: int = 0
    alerts_expired: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.errors


class HistoryCleaner:
    """Deletes old price history and expires alerts nobody re-armed."""

    def __init__(
        self,
        price_history: PriceHistoryRepository,
        state_machine: AlertStateMachine,
        config: MaintenanceConfig,
        jobs: Optional[JobRunRepository] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.price_history = price_history
        self.state_machine = state_machine
        self.config = config
        self.jobs = jobs
        self.clock = clock

    def cleanup(self, now: Optional[datetime] = None) -> CleanupReport:
        now = now or self.clock()
        report = CleanupReport()

        cutoff = now - timedelta(days=self.config.price_history_days)
        try:
            report.history_removed = self.price_history.delete_older_than(cutoff)
        except Exception as e:
            logger.exception("Price history cleanup failed")
            report.errors.append(f"history: {e}")

        ttl = timedelta(hours=self.config.triggered_alert_ttl_hours)
        for outcome in self.state_machine.expire_stale(now, ttl):
            if outcome.success:
                report.alerts_expired += 1
            else:
                report.errors.append(f"alert: {outcome.error}")

        logger.info(
            f"Cleanup removed {report.history_removed} price records, "
            f"expired {report.alerts_expired} alerts"
        )
        if self.jobs is not None:
            self.jobs.record(
                "cleanup",
                now,
                report.success,
                {
                    "history_removed": report.history_removed,
                    "alerts_expired": report.alerts_expired,
                    "errors": report.errors,
                },
            )
        return report
