"""
Main application entry point.
"""

import logging
import random
import signal
import time
from datetime import datetime, timedelta
from typing import Callable, Optional

from dotenv import load_dotenv

from pricewatch.alerts.state_machine import AlertStateMachine
from pricewatch.analysis.cleanup import HistoryCleaner
from pricewatch.analysis.trends import PriceTrendAnalyzer
from pricewatch.config import AppConfig
from pricewatch.database.connection import Database
from pricewatch.database.repository import (
    AlertRepository,
    FilterRepository,
    JobRunRepository,
    NotificationRepository,
    PriceHistoryRepository,
)
from pricewatch.delivery.dispatcher import DeliveryDispatcher
from pricewatch.monitor import PriceMonitor
from pricewatch.notifiers.base import Notifier, NotifierFactory
from pricewatch.pricing.aggregator import QuoteAggregator
from pricewatch.pricing.currency import CurrencyConverter
from pricewatch.providers.base import QuoteProvider
from pricewatch.providers.factory import build_providers, rate_limits_for
from pricewatch.providers.gateway import ProviderGateway
from pricewatch.providers.rate_budget import RateBudget
from pricewatch.providers.reliability import ReliabilityTracker
from pricewatch.rules.evaluator import FilterEvaluator
from pricewatch.scheduler import PollScheduler, SchedulerState
from pricewatch.status import StatusReporter

logger = logging.getLogger(__name__)


class PricewatchApp:
    """Wires the monitoring core together from configuration."""

    def __init__(
        self,
        config: AppConfig,
        db: Optional[Database] = None,
        providers: Optional[list[QuoteProvider]] = None,
        notifiers: Optional[dict[str, Notifier]] = None,
        clock: Callable[[], datetime] = datetime.now,
        sleep: Callable[[float], None] = time.sleep,
        rng: Optional[random.Random] = None,
    ):
        """
        Initialize the app.

        Args:
            config: Application configuration
            db: Database to use instead of the configured path
            providers: Provider adapters to use instead of the configured ones
            notifiers: Channel notifiers to use instead of the configured ones
            clock: Source of "now" for every component
            sleep: Used between delivery retries
            rng: Randomness for schedule jitter
        """
        self.config = config

        if db is None:
            db = Database(config.database.path, timeout=config.database.timeout_seconds)
            db.initialize()
        self.db = db

        # Initialize repositories
        self.filter_repo = FilterRepository(db)
        self.alert_repo = AlertRepository(db)
        self.notification_repo = NotificationRepository(db)
        self.price_history_repo = PriceHistoryRepository(db)
        self.job_repo = JobRunRepository(db)

        # Providers
        self.reliability = ReliabilityTracker()
        self.rate_budget = RateBudget(rate_limits_for(config.providers))
        if providers is None:
            providers = build_providers(config.providers)
        self.gateway = ProviderGateway(
            providers,
            rate_budget=self.rate_budget,
            reliability=self.reliability,
            max_workers=config.scheduler.provider_pool_size,
        )

        # Pricing, rules and alerts
        self.aggregator = QuoteAggregator(
            CurrencyConverter(config.currency.rates, base=config.currency.base),
            reliability=self.reliability,
            clock=clock,
            min_price=config.validation.min_price,
            max_price=config.validation.max_price,
            outlier_ratio=config.validation.outlier_ratio,
        )
        self.evaluator = FilterEvaluator()
        self.state_machine = AlertStateMachine(
            self.alert_repo, reliability=self.reliability, clock=clock
        )

        # Delivery
        if notifiers is None:
            notifiers = NotifierFactory.create_configured(config.delivery)
        self.dispatcher = DeliveryDispatcher(
            notifiers,
            self.notification_repo,
            max_retries=config.delivery.max_retries,
            retry_delay=config.delivery.retry_delay_seconds,
            max_notifications_per_day=config.delivery.max_notifications_per_day,
            sleep=sleep,
            clock=clock,
        )

        # Poll loop
        self.monitor = PriceMonitor(
            self.gateway,
            self.aggregator,
            self.evaluator,
            self.state_machine,
            self.dispatcher,
            price_history=self.price_history_repo,
            clock=clock,
        )
        self.state = SchedulerState(clock)
        self.scheduler = PollScheduler(
            self.monitor,
            self.filter_repo,
            config.scheduler,
            state=self.state,
            jobs=self.job_repo,
            clock=clock,
            rng=rng,
        )

        # Maintenance and status
        self.analyzer = PriceTrendAnalyzer(self.price_history_repo, jobs=self.job_repo, clock=clock)
        self.cleaner = HistoryCleaner(
            self.price_history_repo,
            self.state_machine,
            config.maintenance,
            jobs=self.job_repo,
            clock=clock,
        )
        maintenance = config.maintenance
        if maintenance.cleanup_interval_hours > 0:
            self.scheduler.add_periodic_job(
                "cleanup", timedelta(hours=maintenance.cleanup_interval_hours),
                self.cleaner.cleanup,
            )
        if maintenance.analysis_interval_hours > 0:
            self.scheduler.add_periodic_job(
                "analysis", timedelta(hours=maintenance.analysis_interval_hours),
                lambda: self.analyzer.analyze(maintenance.analysis_window_days),
            )
        self.status = StatusReporter(
            self.state,
            self.filter_repo,
            self.alert_repo,
            self.job_repo,
            tick_seconds=config.scheduler.tick_seconds,
            clock=clock,
        )

    def run_check(self):
        """Run one poll cycle over every due filter."""
        return self.scheduler.run_once()

    def run_forever(self) -> None:
        """Poll until interrupted, draining in-flight checks on shutdown."""

        def _request_stop(signum, frame):
            logger.info(f"Received signal {signum}, draining")
            self.scheduler.stop()

        signal.signal(signal.SIGTERM, _request_stop)
        signal.signal(signal.SIGINT, _request_stop)
        self.scheduler.run_forever()

    def close(self) -> None:
        self.gateway.close()
        self.db.close()


def setup_logging(level: str = "INFO", debug: bool = False) -> None:
    log_level = logging.DEBUG if debug else getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


def main():
    """Service entry point: run the poll loop."""
    import argparse

    load_dotenv()

    parser = argparse.ArgumentParser(description="Pricewatch flight price monitor")
    parser.add_argument(
        "--config", default="config.yaml", help="Path to config file"
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug mode")
    parser.add_argument(
        "--once", action="store_true", help="Run a single poll cycle and exit"
    )

    args = parser.parse_args()

    # Load config
    from pricewatch.config import load_config

    config = load_config(args.config)
    setup_logging(config.advanced.log_level, args.debug)

    app = PricewatchApp(config)
    try:
        if args.once:
            report = app.run_check()
            logger.info(f"Cycle finished: {report.to_dict()}")
        else:
            app.run_forever()
    finally:
        app.close()


if __name__ == "__main__":
    main()
