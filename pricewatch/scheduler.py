"""
Poll loop: pick due filters and check them with bounded concurrency.
"""

import logging
import random
import threading
from collections import deque
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from pricewatch.config import SchedulerConfig
from pricewatch.database.models import FlightFilter, MonitorFrequency
from pricewatch.database.repository import FilterRepository, JobRunRepository
from pricewatch.monitor import CheckOutcome, CheckStatus, PriceMonitor

logger = logging.getLogger(__name__)

MAX_RECENT_ERRORS = 50
# How often a blocked submission re-checks for a stop request
SUBMIT_POLL_SECONDS = 0.5


@dataclass
class CycleReport:
    """Counts for one poll cycle."""

    started_at: datetime
    finished_at: Optional[datetime] = None
    due: int = 0
    checked: int = 0
    triggered: int = 0
    no_data: int = 0
    errors: int = 0
    skipped: int = 0
    had_data: bool = False
    backoff_multiplier: int = 1

    @property
    def completed(self) -> int:
        return self.checked + self.triggered + self.no_data + self.errors

    @property
    def all_failed(self) -> bool:
        """At least one check ran and none produced an aggregate."""
        return self.completed > 0 and not self.had_data

    @property
    def error_rate(self) -> float:
        return self.errors / self.completed if self.completed else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "due": self.due,
            "checked": self.checked,
            "triggered": self.triggered,
            "no_data": self.no_data,
            "errors": self.errors,
            "skipped": self.skipped,
            "backoff_multiplier": self.backoff_multiplier,
        }


@dataclass
class RecentError:
    at: datetime
    filter_id: Optional[int]
    message: str


class SchedulerState:
    """
    Observable lifecycle and counters of one scheduler.

    Created by the caller and passed in, so tests and the status surface
    can hold the same instance.
    """

    def __init__(self, clock: Callable[[], datetime] = datetime.now):
        self.clock = clock
        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self.is_running = False
        self.started_at: Optional[datetime] = None
        self.last_run_at: Optional[datetime] = None
        self.last_cycle: Optional[CycleReport] = None
        self.in_flight = 0
        self.backoff_multiplier = 1
        self.outage_cycles = 0
        self._errors: deque[RecentError] = deque(maxlen=MAX_RECENT_ERRORS)

    def start(self) -> None:
        with self._lock:
            self._stop_event.clear()
            self.is_running = True
            self.started_at = self.clock()
        logger.info("Scheduler started")

    def stop(self) -> None:
        """Ask the loop to stop; checks already submitted still finish."""
        with self._lock:
            self.is_running = False
            self._stop_event.set()
        logger.info("Scheduler stop requested")

    def restart(self) -> None:
        self.stop()
        self.start()

    @property
    def stop_requested(self) -> bool:
        return self._stop_event.is_set()

    def wait(self, seconds: float) -> bool:
        """Sleep up to `seconds`; returns True if stop was requested."""
        return self._stop_event.wait(seconds)

    def check_started(self) -> None:
        with self._lock:
            self.in_flight += 1

    def check_finished(self) -> None:
        with self._lock:
            self.in_flight -= 1

    def record_error(self, filter_id: Optional[int], message: str) -> None:
        with self._lock:
            self._errors.append(RecentError(self.clock(), filter_id, message))

    def recent_errors(self) -> list[RecentError]:
        with self._lock:
            return list(self._errors)

    def record_cycle(self, report: CycleReport) -> None:
        with self._lock:
            self.last_cycle = report
            self.last_run_at = report.finished_at

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            return {
                "is_running": self.is_running,
                "started_at": self.started_at,
                "last_run_at": self.last_run_at,
                "in_flight": self.in_flight,
                "backoff_multiplier": self.backoff_multiplier,
                "outage_cycles": self.outage_cycles,
                "last_cycle": self.last_cycle.to_dict() if self.last_cycle else None,
                "recent_errors": len(self._errors),
            }


@dataclass
class PeriodicJob:
    """Background job run between poll cycles at a fixed interval."""

    name: str
    interval: timedelta
    run: Callable[[], Any]
    next_run_at: Optional[datetime] = None


class PollScheduler:
    """Decides which filters are due and runs their checks."""

    def __init__(
        self,
        monitor: PriceMonitor,
        filters: FilterRepository,
        config: SchedulerConfig,
        state: Optional[SchedulerState] = None,
        jobs: Optional[JobRunRepository] = None,
        clock: Callable[[], datetime] = datetime.now,
        rng: Optional[random.Random] = None,
    ):
        self.monitor = monitor
        self.filters = filters
        self.config = config
        self.state = state or SchedulerState(clock)
        self.jobs = jobs
        self.clock = clock
        self.rng = rng or random.Random()
        self._in_flight = threading.Semaphore(config.max_in_flight)
        self._periodic: list[PeriodicJob] = []

    def due_filters(self, now: datetime) -> list[FlightFilter]:
        """Active filters due at `now`, urgent first, then least recently checked."""
        today = now.date()
        return sorted(
            self.filters.list_due(now),
            key=lambda f: (not f.is_urgent(today), f.last_checked or datetime.min),
        )

    def base_interval(self, flight_filter: FlightFilter) -> timedelta:
        c = self.config
        return {
            MonitorFrequency.REAL_TIME: timedelta(minutes=c.real_time_minutes),
            MonitorFrequency.HOURLY: timedelta(minutes=c.hourly_minutes),
            MonitorFrequency.DAILY: timedelta(hours=c.daily_hours),
            MonitorFrequency.WEEKLY: timedelta(days=c.weekly_days),
        }[MonitorFrequency(flight_filter.monitor_frequency)]

    def next_interval(
        self, flight_filter: FlightFilter, outcome: CheckOutcome, now: datetime
    ) -> timedelta:
        """Delay until the filter's next check, given how this one went."""
        c = self.config
        if outcome.status == CheckStatus.ERROR:
            # Retry on the next tick
            interval = timedelta(seconds=c.tick_seconds)
        elif outcome.status == CheckStatus.NO_DATA:
            interval = timedelta(minutes=c.no_data_retry_minutes)
        else:
            interval = self.base_interval(flight_filter)
            if flight_filter.is_urgent(now.date()):
                interval = min(interval, timedelta(minutes=c.urgent_cap_minutes))
            if outcome.status == CheckStatus.TRIGGERED:
                interval = min(interval, timedelta(minutes=c.after_trigger_cap_minutes))

        interval *= self.state.backoff_multiplier
        if c.jitter:
            interval *= 1 + self.rng.uniform(0.1, 0.3)
        return interval

    def run_cycle(self) -> CycleReport:
        """
        Check every due filter once.

        Checks run on a bounded pool; a global semaphore caps how many are
        in flight. A stop request halts submission, and the cycle then
        waits for the checks already submitted.
        """
        now = self.clock()
        due = self.due_filters(now)
        report = CycleReport(started_at=now, due=len(due))
        multiplier = self.state.backoff_multiplier

        futures = []
        with ThreadPoolExecutor(
            max_workers=self.config.max_workers, thread_name_prefix="pricewatch-check"
        ) as executor:
            for index, flight_filter in enumerate(due):
                if not self._acquire_slot():
                    report.skipped = len(due) - index
                    logger.info(f"Stop requested, skipping {report.skipped} due filters")
                    break
                self.state.check_started()
                futures.append(executor.submit(self._run_check, flight_filter))

            for future in as_completed(futures):
                self._tally(report, future.result())

        report.finished_at = self.clock()
        self._update_backoff(report)
        report.backoff_multiplier = self.state.backoff_multiplier
        self.state.record_cycle(report)

        logger.info(
            f"Cycle done: {report.completed}/{report.due} checked, "
            f"{report.triggered} triggered, {report.no_data} no data, "
            f"{report.errors} errors (backoff x{multiplier})"
        )
        if self.jobs is not None:
            try:
                self.jobs.record(
                    "monitoring", report.finished_at, report.errors == 0, report.to_dict()
                )
            except Exception as e:
                logger.error(f"Failed to record monitoring run: {e}")
        return report

    def _acquire_slot(self) -> bool:
        while not self.state.stop_requested:
            if self._in_flight.acquire(timeout=SUBMIT_POLL_SECONDS):
                if self.state.stop_requested:
                    self._in_flight.release()
                    return False
                return True
        return False

    def _run_check(self, flight_filter: FlightFilter) -> CheckOutcome:
        try:
            outcome = self.monitor.check_filter(flight_filter)
            if outcome.status == CheckStatus.ERROR:
                self.state.record_error(flight_filter.id, outcome.error or "unknown error")
            try:
                now = self.clock()
                self.filters.mark_checked(
                    flight_filter.id, now, now + self.next_interval(flight_filter, outcome, now)
                )
            except Exception as e:
                logger.exception(f"Failed to reschedule filter {flight_filter.id}")
                self.state.record_error(flight_filter.id, f"reschedule failed: {e}")
            return outcome
        finally:
            self.state.check_finished()
            self._in_flight.release()

    def _tally(self, report: CycleReport, outcome: CheckOutcome) -> None:
        if outcome.has_data:
            report.had_data = True
        if outcome.status == CheckStatus.TRIGGERED:
            report.triggered += 1
        elif outcome.status == CheckStatus.NO_DATA:
            report.no_data += 1
        elif outcome.status == CheckStatus.ERROR:
            report.errors += 1
        else:
            report.checked += 1

    def _update_backoff(self, report: CycleReport) -> None:
        state = self.state
        if report.had_data:
            if state.backoff_multiplier > 1:
                logger.info("Providers recovered, restoring normal polling")
            state.outage_cycles = 0
            state.backoff_multiplier = 1
        elif report.all_failed:
            state.outage_cycles += 1
            if state.outage_cycles >= self.config.outage_threshold:
                state.backoff_multiplier = min(
                    state.backoff_multiplier * 2, self.config.max_backoff_multiplier
                )
                logger.warning(
                    f"No provider data for {state.outage_cycles} cycles, "
                    f"backing off x{state.backoff_multiplier}"
                )

    def run_once(self) -> CycleReport:
        """Single cycle for cron-style use."""
        return self.run_cycle()

    def run_forever(self) -> None:
        """Run cycles until stop() is called."""
        self.state.start()
        try:
            while not self.state.stop_requested:
                try:
                    self.run_cycle()
                except Exception as e:
                    logger.exception("Poll cycle failed")
                    self.state.record_error(None, f"cycle failed: {e}")
                self.run_periodic_jobs()
                if self.state.wait(self.config.tick_seconds * self.state.backoff_multiplier):
                    break
        finally:
            self.state.is_running = False
            logger.info("Scheduler stopped")

    def add_periodic_job(
        self, name: str, interval: timedelta, run: Callable[[], Any]
    ) -> None:
        """Run `run` between cycles every `interval`; `name` is its job_runs key."""
        self._periodic.append(PeriodicJob(name, interval, run))

    def run_periodic_jobs(self) -> list[str]:
        """
        Run every periodic job that is due.

        A job's first due time comes from its last recorded run, so a
        restart does not repeat a job that ran recently. A failing job is
        logged and retried after its interval.

        Returns:
            Names of the jobs that ran
        """
        now = self.clock()
        ran = []
        for job in self._periodic:
            if job.next_run_at is None:
                latest = self.jobs.latest(job.name) if self.jobs else None
                job.next_run_at = latest["finished_at"] + job.interval if latest else now
            if now < job.next_run_at:
                continue
            try:
                job.run()
            except Exception as e:
                logger.exception(f"Periodic job {job.name} failed")
                self.state.record_error(None, f"{job.name} failed: {e}")
            job.next_run_at = now + job.interval
            ran.append(job.name)
        return ran

    def stop(self) -> None:
        self.state.stop()
