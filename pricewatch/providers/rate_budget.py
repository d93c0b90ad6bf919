"""In-process sliding window rate budget shared by all poll workers."""

import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Optional


@dataclass
class RateLimits:
    """Request allowances for one provider."""

    requests_per_minute: int = 50
    requests_per_hour: int = 1000
    burst_limit: int = 10
    burst_window: float = 10.0


class RateBudget:
    """Per-provider sliding window limiter (burst, per-minute and per-hour)."""

    def __init__(
        self,
        limits: Optional[dict[str, RateLimits]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._limits = dict(limits or {})
        self._clock = clock
        self._lock = threading.Lock()
        self._calls: dict[str, deque[float]] = {}

    def set_limits(self, provider: str, limits: RateLimits) -> None:
        with self._lock:
            self._limits[provider] = limits

    def try_acquire(self, provider: str, cost: int = 1) -> bool:
        """
        Take `cost` request slots for `provider` at once.

        Returns:
            False (taking nothing) when any window lacks room for all of them
        """
        limits = self._limits.get(provider)
        if limits is None:
            return True

        with self._lock:
            now = self._clock()
            calls = self._calls.setdefault(provider, deque())
            # Drop entries older than the widest window
            while calls and calls[0] <= now - 3600:
                calls.popleft()

            if len(calls) + cost > limits.requests_per_hour:
                return False
            if self._count_since(calls, now - 60) + cost > limits.requests_per_minute:
                return False
            if self._count_since(calls, now - limits.burst_window) + cost > limits.burst_limit:
                return False

            calls.extend([now] * cost)
            return True

    def usage(self) -> dict[str, dict[str, int]]:
        """Current consumption per provider, for the status surface."""
        with self._lock:
            now = self._clock()
            report = {}
            for provider, limits in self._limits.items():
                calls = self._calls.get(provider, deque())
                report[provider] = {
                    "last_minute": self._count_since(calls, now - 60),
                    "last_hour": self._count_since(calls, now - 3600),
                    "requests_per_minute": limits.requests_per_minute,
                    "requests_per_hour": limits.requests_per_hour,
                }
            return report

    @staticmethod
    def _count_since(calls: deque, cutoff: float) -> int:
        count = 0
        for ts in reversed(calls):
            if ts <= cutoff:
                break
            count += 1
        return count
