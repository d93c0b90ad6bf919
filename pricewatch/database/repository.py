"""
Repository classes for persistence of filters, alerts and their history.
"""

import json
from datetime import date, datetime
from typing import Any, Optional

from pricewatch.errors import VersionConflictError
from .connection import Database
from .models import (
    AlertStatus,
    AlertTransition,
    FlightAlert,
    FlightFilter,
    MonitorFrequency,
    NotificationRecord,
    NotificationStatus,
    Passengers,
    PriceHistoryEntry,
)


def _ts(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class FilterRepository:
    """Read/write access to flight filters."""

    def __init__(self, db: Database):
        self.db = db

    def create(self, flight_filter: FlightFilter) -> FlightFilter:
        """
        Create a new filter.

        Raises:
            ValueError: If the filter fails validation
        """
        problems = flight_filter.validate()
        if problems:
            raise ValueError("; ".join(problems))

        with self.db.transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO flight_filters (
                    user_id, name, trip_type, origins, destinations,
                    departure_dates, return_dates, date_flexibility, cabin_class,
                    passengers, max_stops, airline_preferences,
                    preferred_departure_times, target_price, currency,
                    monitor_frequency, flexibility, notification_channels,
                    is_active, last_checked, next_check_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                self._to_params(flight_filter),
            )
            flight_filter.id = cursor.lastrowid
        return flight_filter

    def update(self, flight_filter: FlightFilter) -> None:
        """Update every column of an existing filter."""
        with self.db.transaction() as conn:
            conn.execute(
                """
                UPDATE flight_filters SET
                    user_id = ?, name = ?, trip_type = ?, origins = ?,
                    destinations = ?, departure_dates = ?, return_dates = ?,
                    date_flexibility = ?, cabin_class = ?, passengers = ?,
                    max_stops = ?, airline_preferences = ?,
                    preferred_departure_times = ?, target_price = ?, currency = ?,
                    monitor_frequency = ?, flexibility = ?,
                    notification_channels = ?, is_active = ?, last_checked = ?,
                    next_check_at = ?
                WHERE id = ?
                """,
                (*self._to_params(flight_filter), flight_filter.id),
            )

    def get_by_id(self, filter_id: int) -> Optional[FlightFilter]:
        """Get filter by ID."""
        with self.db.transaction() as conn:
            row = conn.execute(
                "SELECT * FROM flight_filters WHERE id = ?", (filter_id,)
            ).fetchone()
        if row is None:
            return None
        return self._row_to_filter(row)

    def list_all(self) -> list[FlightFilter]:
        """List all filters."""
        with self.db.transaction() as conn:
            rows = conn.execute("SELECT * FROM flight_filters ORDER BY id").fetchall()
        return [self._row_to_filter(row) for row in rows]

    def list_active(self) -> list[FlightFilter]:
        """List filters that are being monitored."""
        with self.db.transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM flight_filters WHERE is_active = 1 ORDER BY id"
            ).fetchall()
        return [self._row_to_filter(row) for row in rows]

    def list_due(self, now: datetime) -> list[FlightFilter]:
        """List active filters never checked or scheduled at or before `now`."""
        with self.db.transaction() as conn:
            rows = conn.execute(
                """
                SELECT * FROM flight_filters
                WHERE is_active = 1
                  AND (next_check_at IS NULL OR next_check_at <= ?)
                ORDER BY id
                """,
                (now.isoformat(),),
            ).fetchall()
        return [self._row_to_filter(row) for row in rows]

    def count_active(self) -> int:
        with self.db.transaction() as conn:
            row = conn.execute(
                "SELECT COUNT(*) FROM flight_filters WHERE is_active = 1"
            ).fetchone()
        return row[0]

    def set_active(self, filter_id: int, active: bool) -> None:
        """Activate or deactivate a filter."""
        with self.db.transaction() as conn:
            conn.execute(
                "UPDATE flight_filters SET is_active = ? WHERE id = ?",
                (1 if active else 0, filter_id),
            )

    def mark_checked(
        self, filter_id: int, checked_at: datetime, next_check_at: datetime
    ) -> None:
        """Record a completed check and when the next one is due."""
        with self.db.transaction() as conn:
            conn.execute(
                """
                UPDATE flight_filters
                SET last_checked = ?, next_check_at = ?
                WHERE id = ?
                """,
                (checked_at.isoformat(), next_check_at.isoformat(), filter_id),
            )

    def delete(self, filter_id: int) -> None:
        """Delete a filter and, by cascade, its alerts."""
        with self.db.transaction() as conn:
            conn.execute("DELETE FROM flight_filters WHERE id = ?", (filter_id,))

    def _to_params(self, f: FlightFilter) -> tuple:
        return (
            f.user_id,
            f.name,
            f.trip_type,
            json.dumps(f.origins),
            json.dumps(f.destinations),
            json.dumps([d.isoformat() for d in f.departure_dates]),
            json.dumps([d.isoformat() for d in f.return_dates]),
            f.date_flexibility,
            f.cabin_class,
            json.dumps(
                {
                    "adults": f.passengers.adults,
                    "children": f.passengers.children,
                    "infants": f.passengers.infants,
                }
            ),
            f.max_stops,
            json.dumps(f.airline_preferences),
            json.dumps(f.preferred_departure_times),
            f.target_price,
            f.currency,
            MonitorFrequency(f.monitor_frequency).value,
            json.dumps(f.flexibility),
            json.dumps(f.notification_channels),
            1 if f.is_active else 0,
            _ts(f.last_checked),
            _ts(f.next_check_at),
        )

    def _row_to_filter(self, row) -> FlightFilter:
        """Convert database row to FlightFilter."""
        return FlightFilter(
            id=row["id"],
            user_id=row["user_id"],
            name=row["name"],
            trip_type=row["trip_type"],
            origins=json.loads(row["origins"]),
            destinations=json.loads(row["destinations"]),
            departure_dates=[
                date.fromisoformat(d) for d in json.loads(row["departure_dates"])
            ],
            return_dates=[date.fromisoformat(d) for d in json.loads(row["return_dates"])],
            date_flexibility=row["date_flexibility"],
            cabin_class=row["cabin_class"],
            passengers=Passengers(**json.loads(row["passengers"])),
            max_stops=row["max_stops"],
            airline_preferences=json.loads(row["airline_preferences"]),
            preferred_departure_times=json.loads(row["preferred_departure_times"]),
            target_price=row["target_price"],
            currency=row["currency"],
            monitor_frequency=MonitorFrequency(row["monitor_frequency"]),
            flexibility=json.loads(row["flexibility"]),
            notification_channels=json.loads(row["notification_channels"]),
            is_active=bool(row["is_active"]),
            last_checked=_parse_ts(row["last_checked"]),
            next_check_at=_parse_ts(row["next_check_at"]),
        )


class AlertRepository:
    """Persistence of alerts and their transition log."""

    OPEN_STATUSES = (AlertStatus.ACTIVE, AlertStatus.TRIGGERED, AlertStatus.PAUSED)

    def __init__(self, db: Database):
        self.db = db

    def create(self, alert: FlightAlert, now: datetime) -> FlightAlert:
        """
        Create a new alert.

        Raises:
            sqlite3.IntegrityError: If the filter already has an active alert
        """
        alert.created_at = alert.updated_at = now
        with self.db.transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO flight_alerts (
                    filter_id, status, target_price, current_price,
                    last_triggered_price, last_quote_id, quality_score,
                    triggered_at, version, created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    alert.filter_id,
                    AlertStatus(alert.status).value,
                    alert.target_price,
                    alert.current_price,
                    alert.last_triggered_price,
                    alert.last_quote_id,
                    alert.quality_score,
                    _ts(alert.triggered_at),
                    alert.version,
                    now.isoformat(),
                    now.isoformat(),
                ),
            )
            alert.id = cursor.lastrowid
        return alert

    def get_by_id(self, alert_id: int) -> Optional[FlightAlert]:
        """Get alert by ID."""
        with self.db.transaction() as conn:
            row = conn.execute(
                "SELECT * FROM flight_alerts WHERE id = ?", (alert_id,)
            ).fetchone()
        if row is None:
            return None
        return self._row_to_alert(row)

    def get_open_for_filter(self, filter_id: int) -> Optional[FlightAlert]:
        """Most recent alert for a filter that has not expired."""
        placeholders = ", ".join("?" for _ in self.OPEN_STATUSES)
        with self.db.transaction() as conn:
            row = conn.execute(
                f"""
                SELECT * FROM flight_alerts
                WHERE filter_id = ? AND status IN ({placeholders})
                ORDER BY id DESC
                LIMIT 1
                """,
                (filter_id, *(s.value for s in self.OPEN_STATUSES)),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_alert(row)

    def get_latest_for_filter(self, filter_id: int) -> Optional[FlightAlert]:
        """Most recent alert for a filter, whatever its status."""
        with self.db.transaction() as conn:
            row = conn.execute(
                "SELECT * FROM flight_alerts WHERE filter_id = ? ORDER BY id DESC LIMIT 1",
                (filter_id,),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_alert(row)

    def list_for_filter(self, filter_id: int) -> list[FlightAlert]:
        with self.db.transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM flight_alerts WHERE filter_id = ? ORDER BY id",
                (filter_id,),
            ).fetchall()
        return [self._row_to_alert(row) for row in rows]

    def list_all(self) -> list[FlightAlert]:
        with self.db.transaction() as conn:
            rows = conn.execute("SELECT * FROM flight_alerts ORDER BY id").fetchall()
        return [self._row_to_alert(row) for row in rows]

    def list_by_status(self, status: AlertStatus) -> list[FlightAlert]:
        with self.db.transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM flight_alerts WHERE status = ? ORDER BY id",
                (AlertStatus(status).value,),
            ).fetchall()
        return [self._row_to_alert(row) for row in rows]

    def list_triggered_before(self, cutoff: datetime) -> list[FlightAlert]:
        """Triggered alerts that have not been re-armed since `cutoff`."""
        with self.db.transaction() as conn:
            rows = conn.execute(
                """
                SELECT * FROM flight_alerts
                WHERE status = ? AND triggered_at IS NOT NULL AND triggered_at < ?
                ORDER BY id
                """,
                (AlertStatus.TRIGGERED.value, cutoff.isoformat()),
            ).fetchall()
        return [self._row_to_alert(row) for row in rows]

    def count_by_status(self) -> dict[str, int]:
        with self.db.transaction() as conn:
            rows = conn.execute(
                "SELECT status, COUNT(*) AS n FROM flight_alerts GROUP BY status"
            ).fetchall()
        counts = {status.value: 0 for status in AlertStatus}
        counts.update({row["status"]: row["n"] for row in rows})
        return counts

    def save_transition(
        self,
        alert: FlightAlert,
        expected_version: int,
        transition: AlertTransition,
    ) -> None:
        """
        Persist the alert's new state and its transition record atomically.

        The row is only updated if its version still equals
        `expected_version`; the stored version is then incremented.

        Raises:
            VersionConflictError: If the row was changed concurrently
        """
        with self.db.transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE flight_alerts SET
                    status = ?, current_price = ?, last_triggered_price = ?,
                    last_quote_id = ?, quality_score = ?, triggered_at = ?,
                    updated_at = ?, version = version + 1
                WHERE id = ? AND version = ?
                """,
                (
                    AlertStatus(alert.status).value,
                    alert.current_price,
                    alert.last_triggered_price,
                    alert.last_quote_id,
                    alert.quality_score,
                    _ts(alert.triggered_at),
                    _ts(alert.updated_at),
                    alert.id,
                    expected_version,
                ),
            )
            if cursor.rowcount != 1:
                raise VersionConflictError(
                    f"Alert {alert.id} changed since version {expected_version}"
                )
            conn.execute(
                """
                INSERT INTO alert_transitions
                (alert_id, from_status, to_status, price, quote_id, reason, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    transition.alert_id,
                    AlertStatus(transition.from_status).value,
                    AlertStatus(transition.to_status).value,
                    transition.price,
                    transition.quote_id,
                    transition.reason,
                    transition.created_at.isoformat(),
                ),
            )

    def list_transitions(self, alert_id: int) -> list[AlertTransition]:
        with self.db.transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM alert_transitions WHERE alert_id = ? ORDER BY id",
                (alert_id,),
            ).fetchall()
        return [
            AlertTransition(
                id=row["id"],
                alert_id=row["alert_id"],
                from_status=AlertStatus(row["from_status"]),
                to_status=AlertStatus(row["to_status"]),
                price=row["price"],
                quote_id=row["quote_id"],
                reason=row["reason"],
                created_at=datetime.fromisoformat(row["created_at"]),
            )
            for row in rows
        ]

    def delete(self, alert_id: int) -> None:
        with self.db.transaction() as conn:
            conn.execute("DELETE FROM flight_alerts WHERE id = ?", (alert_id,))

    def _row_to_alert(self, row) -> FlightAlert:
        """Convert database row to FlightAlert."""
        return FlightAlert(
            id=row["id"],
            filter_id=row["filter_id"],
            status=AlertStatus(row["status"]),
            target_price=row["target_price"],
            current_price=row["current_price"],
            last_triggered_price=row["last_triggered_price"],
            last_quote_id=row["last_quote_id"],
            quality_score=row["quality_score"],
            triggered_at=_parse_ts(row["triggered_at"]),
            version=row["version"],
            created_at=_parse_ts(row["created_at"]),
            updated_at=_parse_ts(row["updated_at"]),
        )


class NotificationRepository:
    """Append-only notification history."""

    def __init__(self, db: Database):
        self.db = db

    def append(self, record: NotificationRecord) -> NotificationRecord:
        """
        Append a delivery attempt.

        The stored timestamp never goes backwards for an alert, so the
        history stays monotonic even if callers' clocks disagree.

        Raises:
            sqlite3.IntegrityError: If a second "sent" row is written for the
                same (alert, quote, channel)
        """
        with self.db.transaction() as conn:
            row = conn.execute(
                "SELECT MAX(created_at) FROM notification_history WHERE alert_id = ?",
                (record.alert_id,),
            ).fetchone()
            latest = _parse_ts(row[0])
            if latest and latest > record.created_at:
                record.created_at = latest
            cursor = conn.execute(
                """
                INSERT INTO notification_history
                (alert_id, quote_id, channel, destination, status, attempt, error, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.alert_id,
                    record.quote_id,
                    record.channel,
                    record.destination,
                    NotificationStatus(record.status).value,
                    record.attempt,
                    record.error,
                    record.created_at.isoformat(),
                ),
            )
            record.id = cursor.lastrowid
        return record

    def has_sent(self, alert_id: int, quote_id: str, channel: str) -> bool:
        """Check whether this trigger was already delivered on this channel."""
        with self.db.transaction() as conn:
            row = conn.execute(
                """
                SELECT 1 FROM notification_history
                WHERE alert_id = ? AND quote_id = ? AND channel = ? AND status = ?
                LIMIT 1
                """,
                (alert_id, quote_id, channel, NotificationStatus.SENT.value),
            ).fetchone()
        return row is not None

    def count_triggers_notified_since(
        self, alert_id: int, since: datetime, exclude_quote_id: Optional[str] = None
    ) -> int:
        """Count distinct triggering quotes delivered on any channel since `since`."""
        with self.db.transaction() as conn:
            row = conn.execute(
                """
                SELECT COUNT(DISTINCT quote_id) FROM notification_history
                WHERE alert_id = ? AND status = ? AND created_at >= ? AND quote_id != ?
                """,
                (
                    alert_id,
                    NotificationStatus.SENT.value,
                    since.isoformat(),
                    exclude_quote_id or "",
                ),
            ).fetchone()
        return row[0]

    def list_for_alert(self, alert_id: int) -> list[NotificationRecord]:
        with self.db.transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM notification_history WHERE alert_id = ? ORDER BY id",
                (alert_id,),
            ).fetchall()
        return [
            NotificationRecord(
                id=row["id"],
                alert_id=row["alert_id"],
                quote_id=row["quote_id"],
                channel=row["channel"],
                destination=row["destination"],
                status=NotificationStatus(row["status"]),
                attempt=row["attempt"],
                error=row["error"],
                created_at=datetime.fromisoformat(row["created_at"]),
            )
            for row in rows
        ]


class PriceHistoryRepository:
    """Stored price observations for trend analysis."""

    def __init__(self, db: Database):
        self.db = db

    def record_many(self, entries: list[PriceHistoryEntry]) -> None:
        if not entries:
            return
        with self.db.transaction() as conn:
            conn.executemany(
                """
                INSERT INTO price_history
                (route, departure_date, provider, price, currency, cabin_class, observed_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        e.route,
                        e.departure_date.isoformat() if e.departure_date else None,
                        e.provider,
                        e.price,
                        e.currency,
                        e.cabin_class,
                        e.observed_at.isoformat(),
                    )
                    for e in entries
                ],
            )

    def routes_since(self, since: datetime) -> list[str]:
        with self.db.transaction() as conn:
            rows = conn.execute(
                """
                SELECT DISTINCT route FROM price_history
                WHERE observed_at >= ?
                ORDER BY route
                """,
                (since.isoformat(),),
            ).fetchall()
        return [row["route"] for row in rows]

    def prices_for_route(self, route: str, since: datetime) -> list[PriceHistoryEntry]:
        """Observations for a route since `since`, oldest first."""
        with self.db.transaction() as conn:
            rows = conn.execute(
                """
                SELECT * FROM price_history
                WHERE route = ? AND observed_at >= ?
                ORDER BY observed_at, id
                """,
                (route, since.isoformat()),
            ).fetchall()
        return [
            PriceHistoryEntry(
                id=row["id"],
                route=row["route"],
                departure_date=(
                    date.fromisoformat(row["departure_date"])
                    if row["departure_date"]
                    else None
                ),
                provider=row["provider"],
                price=row["price"],
                currency=row["currency"],
                cabin_class=row["cabin_class"],
                observed_at=datetime.fromisoformat(row["observed_at"]),
            )
            for row in rows
        ]

    def count_since(self, since: datetime) -> int:
        with self.db.transaction() as conn:
            row = conn.execute(
                "SELECT COUNT(*) FROM price_history WHERE observed_at >= ?",
                (since.isoformat(),),
            ).fetchone()
        return row[0]

    def delete_older_than(self, cutoff: datetime) -> int:
        """Delete observations older than `cutoff`. Returns rows removed."""
        with self.db.transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM price_history WHERE observed_at < ?",
                (cutoff.isoformat(),),
            )
        return cursor.rowcount


class JobRunRepository:
    """Last-run bookkeeping for background jobs (analysis, cleanup, polling)."""

    def __init__(self, db: Database):
        self.db = db

    def record(
        self, job: str, finished_at: datetime, success: bool, summary: dict[str, Any]
    ) -> None:
        with self.db.transaction() as conn:
            conn.execute(
                """
                INSERT INTO job_runs (job, finished_at, success, summary)
                VALUES (?, ?, ?, ?)
                """,
                (job, finished_at.isoformat(), 1 if success else 0, json.dumps(summary)),
            )

    def latest(self, job: str) -> Optional[dict[str, Any]]:
        with self.db.transaction() as conn:
            row = conn.execute(
                """
                SELECT * FROM job_runs WHERE job = ?
                ORDER BY finished_at DESC, id DESC
                LIMIT 1
                """,
                (job,),
            ).fetchone()
        if row is None:
            return None
        return {
            "finished_at": datetime.fromisoformat(row["finished_at"]),
            "success": bool(row["success"]),
            "summary": json.loads(row["summary"]),
        }
