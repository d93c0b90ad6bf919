"""
Merge multi-provider quotes into one canonical best price.
"""

import logging
import statistics
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from pricewatch.providers.base import Quote
from pricewatch.providers.reliability import ReliabilityTracker
from .currency import CurrencyConverter

logger = logging.getLogger(__name__)

OUTLIER_MIN_QUOTES = 3


@dataclass(frozen=True)
class AggregatedQuote:
    """Cross-provider best price for one route/date window at one point in time."""

    currency: str
    computed_at: datetime
    price: Optional[float] = None
    quote: Optional[Quote] = None
    spread: float = 0.0
    provider_count: int = 0
    quote_count: int = 0

    @property
    def has_data(self) -> bool:
        return self.quote is not None

    @property
    def provider(self) -> Optional[str]:
        return self.quote.provider if self.quote else None

    @classmethod
    def no_data(cls, currency: str, computed_at: datetime) -> "AggregatedQuote":
        """Marker for a cycle where no provider returned a usable quote."""
        return cls(currency=currency, computed_at=computed_at)


class QuoteAggregator:
    """Selects the minimum sane price across providers."""

    def __init__(
        self,
        converter: CurrencyConverter,
        reliability: Optional[ReliabilityTracker] = None,
        clock: Callable[[], datetime] = datetime.now,
        min_price: Optional[float] = None,
        max_price: Optional[float] = None,
        outlier_ratio: float = 0.0,
    ):
        """
        Args:
            converter: Rate snapshot used to compare prices
            reliability: Provider track record used to break ties
            clock: Time source for `computed_at`
            min_price: Quotes cheaper than this (in the base currency) are discarded
            max_price: Quotes dearer than this (in the base currency) are discarded
            outlier_ratio: Quotes below this fraction of the poll's median
                price are discarded once a poll has at least
                OUTLIER_MIN_QUOTES quotes (0 disables)
        """
        self.converter = converter
        self.reliability = reliability or ReliabilityTracker()
        self.clock = clock
        self.min_price = min_price
        self.max_price = max_price
        self.outlier_ratio = outlier_ratio

    def aggregate(
        self,
        quotes: list[Quote],
        currency: str,
        latencies: Optional[dict[str, float]] = None,
        accept: Optional[Callable[[Quote], bool]] = None,
    ) -> AggregatedQuote:
        """
        Aggregate one poll's quotes into the canonical best price.

        Quotes with a non-positive price, a currency outside the conversion
        snapshot, a price outside the configured bounds, or a price far
        below the rest of the poll are discarded. Equal prices are broken by
        provider reliability, then by response latency, then by name.

        Args:
            quotes: Every quote fetched this poll
            currency: Currency to compare prices in
            latencies: provider name -> response time of this poll
            accept: Optional constraint check. When any quote passes it, the
                best price is chosen among passing quotes only

        Returns:
            The best quote, or the no-data marker when nothing usable came back
        """
        now = self.clock()
        currency = currency.upper()
        latencies = latencies or {}

        sane: list[tuple[float, Quote]] = []
        for quote in quotes:
            if quote.price is None or quote.price <= 0:
                logger.debug(f"Discarding non-positive price from {quote.provider}")
                continue
            if not self.converter.supports(quote.currency):
                logger.debug(
                    f"Discarding {quote.currency} quote from {quote.provider}: no rate"
                )
                continue
            if not self._within_bounds(quote):
                continue
            price = self.converter.convert(quote.price, quote.currency, currency)
            sane.append((price, quote))

        sane = self._drop_outliers(sane)
        if not sane:
            return AggregatedQuote.no_data(currency, now)

        candidates = sane
        if accept is not None:
            candidates = [pair for pair in sane if accept(pair[1])] or sane

        best_price, best_quote = min(
            candidates, key=lambda pair: self._rank(pair[0], pair[1], latencies)
        )
        prices = [price for price, _ in sane]

        return AggregatedQuote(
            currency=currency,
            computed_at=now,
            price=best_price,
            quote=best_quote,
            spread=round(max(prices) - min(prices), 2),
            provider_count=len({q.provider for _, q in sane}),
            quote_count=len(sane),
        )

    def _within_bounds(self, quote: Quote) -> bool:
        base_price = self.converter.convert(quote.price, quote.currency, self.converter.base)
        if self.min_price is not None and base_price < self.min_price:
            logger.info(
                f"Discarding suspiciously low {base_price:.2f} {self.converter.base} "
                f"quote from {quote.provider}"
            )
            return False
        if self.max_price is not None and base_price > self.max_price:
            logger.info(
                f"Discarding {base_price:.2f} {self.converter.base} quote from "
                f"{quote.provider}: above ceiling {self.max_price:.2f}"
            )
            return False
        return True

    def _drop_outliers(self, sane: list[tuple[float, Quote]]) -> list[tuple[float, Quote]]:
        if not self.outlier_ratio or len(sane) < OUTLIER_MIN_QUOTES:
            return sane
        floor = statistics.median(price for price, _ in sane) * self.outlier_ratio
        kept = []
        for price, quote in sane:
            if price < floor:
                logger.warning(
                    f"Discarding outlier {price:.2f} from {quote.provider} "
                    f"(below {floor:.2f})"
                )
                continue
            kept.append((price, quote))
        return kept

    def _rank(self, price: float, quote: Quote, latencies: dict[str, float]) -> tuple:
        reliability = self.reliability.score(quote.provider)
        latency = latencies.get(quote.provider)
        if latency is None:
            latency = self.reliability.average_latency(quote.provider)
        return (
            price,
            # Known reliability sorts before unknown, higher before lower
            -(reliability if reliability is not None else -1.0),
            latency if latency is not None else float("inf"),
            quote.provider,
        )
