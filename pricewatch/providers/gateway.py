"""
Provider gateway: fan a search out to every provider in parallel.
"""

import logging
import time
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from typing import Optional

from pricewatch.errors import ProviderError, ProviderRateLimited, ProviderTimeout
from .base import ProviderResult, Quote, QuoteProvider, SearchRequest
from .rate_budget import RateBudget
from .reliability import ReliabilityTracker

logger = logging.getLogger(__name__)

# Extra time allowed on top of a provider's own HTTP timeout before the
# gateway stops waiting for it.
TIMEOUT_GRACE_SECONDS = 0.5


@dataclass
class GatewayResult:
    """Joined outcome of one fan-out."""

    results: list[ProviderResult] = field(default_factory=list)

    @property
    def quotes(self) -> list[Quote]:
        return [q for r in self.results for q in r.quotes]

    @property
    def latencies(self) -> dict[str, float]:
        return {r.provider: r.latency for r in self.results if r.latency is not None}

    @property
    def any_succeeded(self) -> bool:
        return any(r.ok for r in self.results)

    @property
    def errors(self) -> list[ProviderError]:
        return [r.error for r in self.results if r.error is not None]


class ProviderGateway:
    """Uniform, failure-isolated access to all configured quote providers."""

    def __init__(
        self,
        providers: list[QuoteProvider],
        rate_budget: Optional[RateBudget] = None,
        reliability: Optional[ReliabilityTracker] = None,
        max_workers: int = 16,
    ):
        """
        Args:
            providers: Vendor adapters to query
            rate_budget: Shared per-provider request budget
            reliability: Tracker updated with every call's outcome
            max_workers: Threads shared by all concurrent fan-outs
        """
        self.providers = list(providers)
        self.rate_budget = rate_budget or RateBudget()
        self.reliability = reliability or ReliabilityTracker()
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="provider"
        )

    def fetch(self, request: SearchRequest) -> GatewayResult:
        """
        Query every provider concurrently and join the results.

        Never raises: a provider that errors, times out or has no budget left
        contributes an empty result carrying its error. Each call's outcome
        is recorded for reliability exactly once, here; a worker that
        finishes after its timeout is ignored. Quotes for routes the request
        did not ask for are dropped.
        """
        started = time.monotonic()
        futures: list[tuple[QuoteProvider, Future]] = [
            (provider, self._executor.submit(self._call, provider, request))
            for provider in self.providers
        ]

        gateway_result = GatewayResult()
        for provider, future in futures:
            remaining = provider.timeout + TIMEOUT_GRACE_SECONDS - (time.monotonic() - started)
            try:
                result = future.result(timeout=max(remaining, 0))
            except FutureTimeout:
                future.cancel()
                result = ProviderResult(
                    provider=provider.name,
                    error=ProviderTimeout(provider.name, f"No result within {provider.timeout}s"),
                )
            except Exception as e:
                # _call already converts errors; this guards against executor failures
                logger.exception(f"Unexpected failure calling {provider.name}")
                result = ProviderResult(
                    provider=provider.name, error=ProviderError(provider.name, str(e))
                )

            self._record(result)
            if result.error is not None:
                logger.warning(f"Provider {provider.name} failed: {result.error}")
            else:
                result.quotes = self._requested_routes(request, result)
            gateway_result.results.append(result)

        logger.debug(
            f"Fetched {len(gateway_result.quotes)} quotes from "
            f"{sum(r.ok for r in gateway_result.results)}/{len(self.providers)} providers"
        )
        return gateway_result

    def _call(self, provider: QuoteProvider, request: SearchRequest) -> ProviderResult:
        cost = provider.request_cost(request)
        if not self.rate_budget.try_acquire(provider.name, cost):
            return ProviderResult(
                provider=provider.name,
                error=ProviderRateLimited(
                    provider.name, f"Local rate budget exhausted ({cost} request(s) needed)"
                ),
                attempted=False,
            )

        started = time.monotonic()
        try:
            quotes = provider.fetch_quotes(request)
        except ProviderError as e:
            return ProviderResult(
                provider=provider.name, error=e, latency=time.monotonic() - started
            )
        except Exception as e:
            return ProviderResult(
                provider=provider.name,
                error=ProviderError(provider.name, f"Unexpected error: {e}"),
                latency=time.monotonic() - started,
            )

        return ProviderResult(
            provider=provider.name, quotes=quotes, latency=time.monotonic() - started
        )

    def _record(self, result: ProviderResult) -> None:
        if not result.attempted:
            return
        if result.ok:
            self.reliability.record(result.provider, success=True, latency=result.latency)
        else:
            self.reliability.record(result.provider, success=False)

    def _requested_routes(self, request: SearchRequest, result: ProviderResult) -> list[Quote]:
        pairs = set(request.route_pairs)
        kept = [q for q in result.quotes if (q.origin, q.destination) in pairs]
        if len(kept) < len(result.quotes):
            logger.info(
                f"Dropped {len(result.quotes) - len(kept)} quote(s) from "
                f"{result.provider} for routes outside the request"
            )
        return kept

    def close(self) -> None:
        """Stop accepting calls; in-flight HTTP requests end on their own timeouts."""
        self._executor.shutdown(wait=False)
