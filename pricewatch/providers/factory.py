"""
Build provider adapters from configuration.
"""

from pricewatch.config import ProviderConfig
from .base import QuoteProvider
from .http import JsonQuoteProvider, SkyscannerProvider
from .rate_budget import RateLimits


def create_provider(config: ProviderConfig) -> QuoteProvider:
    """
    Create a provider adapter.

    Raises:
        ValueError: If provider type is unknown
    """
    if config.type == "skyscanner":
        return SkyscannerProvider(
            name=config.name,
            base_url=config.base_url,
            api_key=config.api_key,
            timeout=config.timeout_seconds,
        )
    elif config.type == "json":
        return JsonQuoteProvider(
            name=config.name,
            base_url=config.base_url,
            api_key=config.api_key,
            timeout=config.timeout_seconds,
            path=config.path,
        )
    else:
        raise ValueError(f"Unknown provider type: {config.type}")


def build_providers(configs: list[ProviderConfig]) -> list[QuoteProvider]:
    """Create adapters for every enabled provider."""
    return [create_provider(c) for c in configs if c.enabled]


def rate_limits_for(configs: list[ProviderConfig]) -> dict[str, RateLimits]:
    return {
        c.name: RateLimits(
            requests_per_minute=c.requests_per_minute,
            requests_per_hour=c.requests_per_hour,
            burst_limit=c.burst_limit,
        )
        for c in configs
        if c.enabled
    }
