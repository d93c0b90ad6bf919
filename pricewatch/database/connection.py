"""
SQLite database connection and schema management.
"""

import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional


class Database:
    """SQLite database connection manager shared by worker threads."""

    def __init__(self, db_path: str, timeout: float = 10.0):
        """
        Initialize database connection.

        Args:
            db_path: Path to SQLite database file, or ":memory:" for in-memory DB.
            timeout: Seconds to wait on a locked database before failing.
        """
        self.db_path = db_path
        self.timeout = timeout
        self._connection: Optional[sqlite3.Connection] = None
        self._lock = threading.RLock()
        self._connect()

    def _connect(self) -> None:
        """Establish database connection."""
        if self.db_path != ":memory:":
            # Ensure parent directory exists
            path = Path(self.db_path)
            path.parent.mkdir(parents=True, exist_ok=True)

        # Statements are serialized through self._lock, so the connection
        # may be used from the scheduler's worker threads.
        self._connection = sqlite3.connect(
            self.db_path, timeout=self.timeout, check_same_thread=False
        )
        self._connection.row_factory = sqlite3.Row
        # Enable foreign keys
        self._connection.execute("PRAGMA foreign_keys = ON")

    @property
    def connection(self) -> sqlite3.Connection:
        """Get the database connection."""
        if self._connection is None:
            raise sqlite3.ProgrammingError("Database connection is closed")
        return self._connection

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """
        Run a block of statements atomically.

        Commits on success and rolls back if the block raises. Nested use
        from the same thread joins the outer transaction.
        """
        with self._lock:
            conn = self.connection
            if conn.in_transaction:
                yield conn
                return
            try:
                yield conn
                conn.commit()
            except BaseException:
                conn.rollback()
                raise

    def initialize(self) -> None:
        """Create database schema if it doesn't exist."""
        with self.transaction() as conn:
            cursor = conn.cursor()

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS flight_filters (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id INTEGER NOT NULL,
                    name TEXT NOT NULL,
                    trip_type TEXT NOT NULL,
                    origins TEXT NOT NULL,
                    destinations TEXT NOT NULL,
                    departure_dates TEXT NOT NULL,
                    return_dates TEXT NOT NULL DEFAULT '[]',
                    date_flexibility INTEGER NOT NULL DEFAULT 3,
                    cabin_class TEXT NOT NULL,
                    passengers TEXT NOT NULL,
                    max_stops TEXT NOT NULL,
                    airline_preferences TEXT NOT NULL DEFAULT '[]',
                    preferred_departure_times TEXT NOT NULL DEFAULT '[]',
                    target_price REAL NOT NULL,
                    currency TEXT NOT NULL,
                    monitor_frequency TEXT NOT NULL,
                    flexibility TEXT NOT NULL DEFAULT '{}',
                    notification_channels TEXT NOT NULL DEFAULT '{}',
                    is_active INTEGER NOT NULL DEFAULT 1,
                    last_checked TIMESTAMP,
                    next_check_at TIMESTAMP
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS flight_alerts (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    filter_id INTEGER NOT NULL,
                    status TEXT NOT NULL,
                    target_price REAL NOT NULL,
                    current_price REAL,
                    last_triggered_price REAL,
                    last_quote_id TEXT,
                    quality_score REAL,
                    triggered_at TIMESTAMP,
                    version INTEGER NOT NULL DEFAULT 0,
                    created_at TIMESTAMP NOT NULL,
                    updated_at TIMESTAMP NOT NULL,
                    FOREIGN KEY (filter_id) REFERENCES flight_filters(id) ON DELETE CASCADE
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS alert_transitions (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    alert_id INTEGER NOT NULL,
                    from_status TEXT NOT NULL,
                    to_status TEXT NOT NULL,
                    price REAL,
                    quote_id TEXT,
                    reason TEXT NOT NULL,
                    created_at TIMESTAMP NOT NULL,
                    FOREIGN KEY (alert_id) REFERENCES flight_alerts(id) ON DELETE CASCADE
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS notification_history (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    alert_id INTEGER NOT NULL,
                    quote_id TEXT NOT NULL,
                    channel TEXT NOT NULL,
                    destination TEXT,
                    status TEXT NOT NULL,
                    attempt INTEGER NOT NULL DEFAULT 1,
                    error TEXT,
                    created_at TIMESTAMP NOT NULL,
                    FOREIGN KEY (alert_id) REFERENCES flight_alerts(id) ON DELETE CASCADE
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS price_history (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    route TEXT NOT NULL,
                    departure_date TEXT,
                    provider TEXT NOT NULL,
                    price REAL NOT NULL,
                    currency TEXT NOT NULL,
                    cabin_class TEXT,
                    observed_at TIMESTAMP NOT NULL
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS job_runs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    job TEXT NOT NULL,
                    finished_at TIMESTAMP NOT NULL,
                    success INTEGER NOT NULL,
                    summary TEXT NOT NULL DEFAULT '{}'
                )
            """)

            # At most one armed alert per filter
            cursor.execute("""
                CREATE UNIQUE INDEX IF NOT EXISTS idx_alerts_one_active
                ON flight_alerts(filter_id) WHERE status = 'active'
            """)
            # A trigger is delivered at most once per channel
            cursor.execute("""
                CREATE UNIQUE INDEX IF NOT EXISTS idx_notifications_sent_once
                ON notification_history(alert_id, quote_id, channel)
                WHERE status = 'sent'
            """)

            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_filters_due
                ON flight_filters(is_active, next_check_at)
            """)
            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_alerts_filter ON flight_alerts(filter_id)
            """)
            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_transitions_alert
                ON alert_transitions(alert_id)
            """)
            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_notifications_alert
                ON notification_history(alert_id)
            """)
            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_price_history_route
                ON price_history(route, observed_at)
            """)
            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_job_runs_job ON job_runs(job, finished_at)
            """)

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None
