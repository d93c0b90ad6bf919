"""Per-provider delivery reliability and latency tracking."""

import threading
from dataclasses import dataclass
from typing import Optional


@dataclass
class _Stats:
    attempts: int = 0
    successes: int = 0
    total_latency: float = 0.0
    timed_calls: int = 0


class ReliabilityTracker:
    """Counts successful quote deliveries per provider across poll cycles."""

    # Below this many attempts a provider's ratio is not trusted
    MIN_ATTEMPTS = 5

    def __init__(self):
        self._lock = threading.Lock()
        self._stats: dict[str, _Stats] = {}

    def record(self, provider: str, success: bool, latency: Optional[float] = None) -> None:
        with self._lock:
            stats = self._stats.setdefault(provider, _Stats())
            stats.attempts += 1
            if success:
                stats.successes += 1
            if latency is not None:
                stats.total_latency += latency
                stats.timed_calls += 1

    def score(self, provider: str) -> Optional[float]:
        """Success ratio in [0, 1], or None while there is too little data."""
        with self._lock:
            stats = self._stats.get(provider)
            if stats is None or stats.attempts < self.MIN_ATTEMPTS:
                return None
            return stats.successes / stats.attempts

    def average_latency(self, provider: str) -> Optional[float]:
        with self._lock:
            stats = self._stats.get(provider)
            if stats is None or stats.timed_calls == 0:
                return None
            return stats.total_latency / stats.timed_calls

    def snapshot(self) -> dict[str, dict[str, float]]:
        with self._lock:
            return {
                name: {
                    "attempts": s.attempts,
                    "successes": s.successes,
                    "success_ratio": s.successes / s.attempts if s.attempts else 0.0,
                }
                for name, s in self._stats.items()
            }
