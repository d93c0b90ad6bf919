"""
Operator status: monitoring, analysis and cleanup summaries.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

import requests

from pricewatch.database.repository import (
    AlertRepository,
    FilterRepository,
    JobRunRepository,
)
from pricewatch.scheduler import SchedulerState

logger = logging.getLogger(__name__)

DEGRADED_ERROR_RATE = 0.1
UNHEALTHY_ERROR_RATE = 0.5

HEALTH_COLORS = {
    "healthy": 0x2ECC71,
    "degraded": 0xFFA500,
    "unhealthy": 0xFF0000,
}


class StatusReporter:
    """Builds the status dictionaries consumed by dashboards and the CLI."""

    def __init__(
        self,
        state: SchedulerState,
        filters: FilterRepository,
        alerts: AlertRepository,
        jobs: JobRunRepository,
        tick_seconds: float = 60.0,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.state = state
        self.filters = filters
        self.alerts = alerts
        self.jobs = jobs
        self.tick_seconds = tick_seconds
        self.clock = clock

    def _last_run(self) -> dict[str, Any]:
        """Loop state from memory, or from the last persisted cycle when this
        process has not polled (e.g. the CLI reading a running daemon's database)."""
        snapshot = self.state.snapshot()
        if snapshot["last_run_at"] is not None:
            cycle = self.state.last_cycle
            snapshot["error_rate"] = cycle.error_rate if cycle else 0.0
            return snapshot

        latest = self.jobs.latest("monitoring")
        if latest is None:
            snapshot["error_rate"] = 0.0
            return snapshot
        summary = latest["summary"]
        completed = sum(
            summary.get(key, 0) for key in ("checked", "triggered", "no_data", "errors")
        )
        snapshot.update(
            last_run_at=latest["finished_at"],
            last_cycle=summary,
            backoff_multiplier=summary.get("backoff_multiplier", 1),
            error_rate=summary.get("errors", 0) / completed if completed else 0.0,
        )
        return snapshot

    def system_health(self) -> str:
        """
        Classify the poll loop as healthy, degraded or unhealthy.

        Based on how long ago the last cycle finished (relative to the
        current, possibly backed-off, tick) and the last cycle's error rate.
        """
        run = self._last_run()
        last_run_at = run["last_run_at"]
        if last_run_at is None:
            return "healthy" if run["is_running"] else "unhealthy"

        expected = timedelta(seconds=self.tick_seconds * run["backoff_multiplier"])
        age = self.clock() - last_run_at
        error_rate = run["error_rate"]

        if age > expected * 3 or error_rate > UNHEALTHY_ERROR_RATE:
            return "unhealthy"
        if (
            age > expected * 2
            or error_rate > DEGRADED_ERROR_RATE
            or run["backoff_multiplier"] > 1
        ):
            return "degraded"
        return "healthy"

    def monitoring_status(self) -> dict[str, Any]:
        run = self._last_run()
        errors = self.state.recent_errors()
        return {
            "is_running": run["is_running"],
            "last_run_at": run["last_run_at"],
            "in_flight": run["in_flight"],
            "backoff_multiplier": run["backoff_multiplier"],
            "last_cycle": run["last_cycle"],
            "recent_errors": {
                "count": len(errors),
                "latest": [
                    {"at": e.at, "filter_id": e.filter_id, "message": e.message}
                    for e in errors[-5:]
                ],
            },
            "active_filters": self.filters.count_active(),
            "alerts": self.alerts.count_by_status(),
            "system_health": self.system_health(),
        }

    def analysis_status(self) -> dict[str, Any]:
        latest = self.jobs.latest("analysis")
        if latest is None:
            return {"last_run_at": None, "routes": []}
        return {
            "last_run_at": latest["finished_at"],
            "days": latest["summary"].get("days"),
            "routes": latest["summary"].get("routes", []),
        }

    def cleanup_status(self) -> dict[str, Any]:
        latest = self.jobs.latest("cleanup")
        if latest is None:
            return {"last_run_at": None, "history_removed": 0, "alerts_expired": 0}
        return {
            "last_run_at": latest["finished_at"],
            "success": latest["success"],
            "history_removed": latest["summary"].get("history_removed", 0),
            "alerts_expired": latest["summary"].get("alerts_expired", 0),
            "errors": latest["summary"].get("errors", []),
        }

    def send_status_report(self, webhook_url: Optional[str]) -> Optional[int]:
        """
        Post a status embed to a webhook.

        Returns:
            HTTP status code, or None if no webhook is configured
        """
        if not webhook_url:
            logger.warning("No status webhook configured")
            return None

        status = self.monitoring_status()
        health = status["system_health"]
        alerts = status["alerts"]
        cycle = status["last_cycle"] or {}
        last_run = status["last_run_at"]

        payload = {
            "embeds": [{
                "title": "Pricewatch Status",
                "description": f"System is {health}.",
                "color": HEALTH_COLORS[health],
                "fields": [
                    {"name": "Active filters", "value": str(status["active_filters"]), "inline": True},
                    {"name": "In flight", "value": str(status["in_flight"]), "inline": True},
                    {"name": "Backoff", "value": f"x{status['backoff_multiplier']}", "inline": True},
                    {
                        "name": "Alerts",
                        "value": ", ".join(f"{k}: {v}" for k, v in alerts.items()),
                        "inline": False,
                    },
                    {
                        "name": "Last cycle",
                        "value": (
                            f"{cycle.get('triggered', 0)} triggered, "
                            f"{cycle.get('no_data', 0)} no data, "
                            f"{cycle.get('errors', 0)} errors"
                            if cycle
                            else "None"
                        ),
                        "inline": False,
                    },
                    {
                        "name": "Last run",
                        "value": last_run.strftime("%Y-%m-%d %H:%M:%S") if last_run else "Never",
                        "inline": True,
                    },
                ],
                "timestamp": self.clock().isoformat(),
            }]
        }

        response = requests.post(webhook_url, json=payload, timeout=10)
        logger.info(f"Status report sent (status: {response.status_code})")
        return response.status_code
