"""
Price trend analysis over recorded price history.
"""

import logging
import statistics
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from pricewatch.database.repository import JobRunRepository, PriceHistoryRepository

logger = logging.getLogger(__name__)

# Least-squares slope (price per observation) beyond which a route is trending
TREND_SLOPE_THRESHOLD = 0.1
ANOMALY_Z_SCORE = 2.0
MIN_ANOMALY_SAMPLES = 5
RECENT_DROP_DAYS = 7


@dataclass
class RouteTrend:
    """Summary statistics for one route over the analysis window."""

    route: str
    count: int
    average: float
    median: float
    minimum: float
    maximum: float
    volatility: float
    trend: str
    recent_drops: int
    anomalies: int


def linear_slope(values: list[float]) -> Optional[float]:
    """Least-squares slope of values against their index, None if undefined."""
    n = len(values)
    if n < 3:
        return None
    sum_x = n * (n - 1) / 2
    sum_x2 = (n - 1) * n * (2 * n - 1) / 6
    sum_y = sum(values)
    sum_xy = sum(i * v for i, v in enumerate(values))
    denominator = n * sum_x2 - sum_x * sum_x
    if denominator == 0:
        return None
    return (n * sum_xy - sum_x * sum_y) / denominator


def classify_trend(values: list[float]) -> str:
    slope = linear_slope(values)
    if slope is None:
        return "unknown"
    if slope > TREND_SLOPE_THRESHOLD:
        return "increasing"
    if slope < -TREND_SLOPE_THRESHOLD:
        return "decreasing"
    return "stable"


def volatility_percent(values: list[float]) -> float:
    """Population standard deviation as a percentage of the mean."""
    if len(values) < 2:
        return 0.0
    mean = statistics.fmean(values)
    if mean == 0:
        return 0.0
    return round(statistics.pstdev(values) / mean * 100, 2)


def count_anomalies(values: list[float]) -> int:
    if len(values) < MIN_ANOMALY_SAMPLES:
        return 0
    mean = statistics.fmean(values)
    stdev = statistics.pstdev(values)
    if stdev == 0:
        return 0
    return sum(1 for v in values if abs(v - mean) / stdev > ANOMALY_Z_SCORE)


class PriceTrendAnalyzer:
    """Computes per-route trends from price history."""

    def __init__(
        self,
        price_history: PriceHistoryRepository,
        jobs: Optional[JobRunRepository] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.price_history = price_history
        self.jobs = jobs
        self.clock = clock

    def analyze(self, days: int = 30) -> list[RouteTrend]:
        """
        Analyze every route observed in the last `days` days.

        Args:
            days: Size of the analysis window

        Returns:
            One RouteTrend per route, sorted by route
        """
        now = self.clock()
        since = now - timedelta(days=days)
        recent_since = now - timedelta(days=RECENT_DROP_DAYS)

        trends = []
        for route in self.price_history.routes_since(since):
            entries = self.price_history.prices_for_route(route, since)
            if not entries:
                continue
            values = [e.price for e in entries]
            recent_drops = sum(
                1
                for previous, current in zip(entries, entries[1:])
                if current.observed_at >= recent_since and current.price < previous.price
            )
            trends.append(
                RouteTrend(
                    route=route,
                    count=len(values),
                    average=round(statistics.fmean(values), 2),
                    median=round(statistics.median(values), 2),
                    minimum=min(values),
                    maximum=max(values),
                    volatility=volatility_percent(values),
                    trend=classify_trend(values),
                    recent_drops=recent_drops,
                    anomalies=count_anomalies(values),
                )
            )

        logger.info(f"Analyzed {len(trends)} routes over {days} days")
        if self.jobs is not None:
            self.jobs.record(
                "analysis",
                self.clock(),
                True,
                {"days": days, "routes": [asdict(t) for t in trends]},
            )
        return trends
