"""
Provider tests.
Tests for the gateway fan-out, vendor adapters, rate budget and reliability.
"""

import pytest
import time
from unittest.mock import Mock
from datetime import date, datetime

import requests

from pricewatch.config import ProviderConfig
from pricewatch.errors import (
    MalformedResponse,
    ProviderRateLimited,
    ProviderTimeout,
    ProviderUnavailable,
)
from pricewatch.providers.base import SearchRequest
from pricewatch.providers.factory import build_providers, create_provider, rate_limits_for
from pricewatch.providers.gateway import ProviderGateway
from pricewatch.providers.http import JsonQuoteProvider, SkyscannerProvider
from pricewatch.providers.rate_budget import RateBudget, RateLimits
from pricewatch.providers.reliability import ReliabilityTracker


@pytest.fixture
def search_request():
    return SearchRequest(
        origins=("JFK",),
        destinations=("LAX",),
        date_from=date(2026, 12, 1),
        date_to=date(2026, 12, 1),
    )


def _response(status_code=200, payload=None, text=""):
    response = Mock()
    response.status_code = status_code
    response.ok = 200 <= status_code < 300
    response.text = text
    if isinstance(payload, Exception):
        response.json.side_effect = payload
    else:
        response.json.return_value = payload
    return response


class TestSearchRequest:
    """Test building provider queries from filters."""

    def test_from_filter(self, filter_factory):
        """Should copy route, cabin and passengers from the filter."""
        request = SearchRequest.from_filter(
            filter_factory(origins=["JFK", "EWR"], departure_dates=[date(2026, 12, 3), date(2026, 12, 1)])
        )
        assert request.origins == ("JFK", "EWR")
        assert request.date_from == date(2026, 12, 1)
        assert request.date_to == date(2026, 12, 3)
        assert request.route_pairs == [("JFK", "LAX"), ("EWR", "LAX")]

    def test_flexible_dates_widen_window(self, filter_factory):
        """Should widen the window by the flexibility when dates are flexible."""
        request = SearchRequest.from_filter(
            filter_factory(date_flexibility=2, flexibility={"dates": True})
        )
        assert request.date_from == date(2026, 11, 29)
        assert request.date_to == date(2026, 12, 3)


class TestProviderGateway:
    """Test parallel, failure-isolated fan-out."""

    def test_collects_quotes_from_all_providers(self, fake_provider, quote_factory, search_request):
        """Should merge quotes from every provider."""
        gateway = ProviderGateway([
            fake_provider("alpha", [quote_factory("alpha", 400.0)]),
            fake_provider("beta", [quote_factory("beta", 420.0)]),
        ])
        result = gateway.fetch(search_request)
        gateway.close()

        assert sorted(q.provider for q in result.quotes) == ["alpha", "beta"]
        assert result.any_succeeded is True
        assert result.errors == []
        assert set(result.latencies) == {"alpha", "beta"}

    def test_provider_error_is_isolated(self, fake_provider, quote_factory, search_request):
        """Should keep other providers' quotes when one fails."""
        gateway = ProviderGateway([
            fake_provider("alpha", error=MalformedResponse("alpha", "bad payload")),
            fake_provider("beta", [quote_factory("beta", 420.0)]),
        ])
        result = gateway.fetch(search_request)
        gateway.close()

        assert [q.provider for q in result.quotes] == ["beta"]
        assert len(result.errors) == 1
        assert isinstance(result.errors[0], MalformedResponse)

    def test_slow_provider_times_out(self, fake_provider, quote_factory, search_request):
        """Should stop waiting for a provider after its timeout."""
        gateway = ProviderGateway([
            fake_provider("alpha", [quote_factory("alpha", 300.0)], delay=2.0, timeout=0.1),
            fake_provider("beta", [quote_factory("beta", 420.0)]),
        ])
        result = gateway.fetch(search_request)
        gateway.close()

        assert [q.price for q in result.quotes] == [420.0]
        assert isinstance(result.errors[0], ProviderTimeout)

    def test_unexpected_exception_does_not_raise(self, fake_provider, search_request):
        """Should convert arbitrary exceptions into provider errors."""
        provider = fake_provider("alpha")
        provider.fetch_quotes = Mock(side_effect=RuntimeError("kaboom"))
        gateway = ProviderGateway([provider])
        result = gateway.fetch(search_request)
        gateway.close()

        assert result.quotes == []
        assert result.any_succeeded is False
        assert "kaboom" in str(result.errors[0])

    def test_rate_budget_exhausted_skips_call(self, fake_provider, quote_factory, search_request):
        """Should not call a provider with no budget left."""
        provider = fake_provider("alpha", [quote_factory("alpha")])
        budget = RateBudget({"alpha": RateLimits(requests_per_minute=1, burst_limit=1)})
        gateway = ProviderGateway([provider], rate_budget=budget)

        first = gateway.fetch(search_request)
        second = gateway.fetch(search_request)
        gateway.close()

        assert len(first.quotes) == 1
        assert second.quotes == []
        assert isinstance(second.errors[0], ProviderRateLimited)
        assert len(provider.calls) == 1

    def test_records_reliability(self, fake_provider, quote_factory, search_request):
        """Should record each call's outcome."""
        reliability = ReliabilityTracker()
        gateway = ProviderGateway(
            [
                fake_provider("alpha", [quote_factory("alpha")]),
                fake_provider("beta", error=ProviderUnavailable("beta", "down")),
            ],
            reliability=reliability,
        )
        for _ in range(5):
            gateway.fetch(search_request)
        gateway.close()

        assert reliability.score("alpha") == 1.0
        assert reliability.score("beta") == 0.0

    def test_budget_charged_per_upstream_request(self, quote_factory):
        """Should charge one slot per route pair and refuse what does not fit."""
        session = Mock(spec=requests.Session)
        session.get.return_value = _response(payload={"quotes": []})
        provider = JsonQuoteProvider(
            name="alpha", base_url="https://fares.example.com", session=session
        )
        request = SearchRequest(
            origins=("JFK", "EWR"),
            destinations=("LAX", "SFO"),
            date_from=date(2026, 12, 1),
            date_to=date(2026, 12, 1),
        )
        budget = RateBudget({"alpha": RateLimits(requests_per_minute=6, burst_limit=10)})
        gateway = ProviderGateway([provider], rate_budget=budget)

        first = gateway.fetch(request)
        second = gateway.fetch(request)
        gateway.close()

        assert first.errors == []
        assert isinstance(second.errors[0], ProviderRateLimited)
        assert session.get.call_count == 4
        assert budget.usage()["alpha"]["last_minute"] == 4

    def test_timeout_recorded_once(self, fake_provider, quote_factory, search_request):
        """Should count a timed-out call once even after the worker finishes."""
        reliability = ReliabilityTracker()
        slow = fake_provider("slow", [quote_factory("slow")], delay=1.0, timeout=0.05)
        gateway = ProviderGateway([slow], reliability=reliability)

        result = gateway.fetch(search_request)
        time.sleep(1.2)
        gateway.close()

        assert isinstance(result.errors[0], ProviderTimeout)
        assert reliability.snapshot()["slow"]["attempts"] == 1
        assert reliability.snapshot()["slow"]["successes"] == 0

    def test_drops_quotes_for_unrequested_routes(
        self, fake_provider, quote_factory, search_request
    ):
        """Should keep only quotes for the route pairs that were asked for."""
        provider = fake_provider(
            "alpha",
            [quote_factory("alpha", 300.0, origin="EWR"), quote_factory("alpha", 385.0)],
        )
        gateway = ProviderGateway([provider])

        result = gateway.fetch(search_request)
        gateway.close()

        assert [q.price for q in result.quotes] == [385.0]


class TestJsonQuoteProvider:
    """Test the flat JSON feed adapter."""

    @pytest.fixture
    def session(self):
        return Mock(spec=requests.Session)

    @pytest.fixture
    def provider(self, session):
        return JsonQuoteProvider(
            name="feed",
            base_url="https://fares.example.com/api/",
            api_key="secret",
            timeout=5,
            session=session,
            clock=lambda: datetime(2026, 10, 1, 12, 0),
        )

    def test_parses_quotes(self, provider, session, search_request):
        """Should normalize each quote in the payload."""
        session.get.return_value = _response(payload={
            "quotes": [{
                "id": 17,
                "price": "385.00",
                "currency": "usd",
                "origin": "JFK",
                "destination": "LAX",
                "departure_date": "2026-12-01",
                "departure_time": "08:15:00",
                "cabin_class": "economy",
                "stops": 0,
                "airline": "DL",
            }]
        })

        quotes = provider.fetch_quotes(search_request)

        assert len(quotes) == 1
        quote = quotes[0]
        assert quote.provider == "feed"
        assert quote.price == 385.0
        assert quote.currency == "USD"
        assert quote.departure_date == date(2026, 12, 1)
        assert quote.stops == 0
        assert quote.departure_time == "08:15"
        assert quote.raw_ref == "17"
        url = session.get.call_args.args[0]
        assert url == "https://fares.example.com/api/quotes"
        params = session.get.call_args.kwargs["params"]
        assert params["origin"] == "JFK"
        assert params["api_key"] == "secret"
        assert session.get.call_args.kwargs["timeout"] == 5

    @pytest.mark.parametrize(
        "status, error",
        [(429, ProviderRateLimited), (401, ProviderUnavailable), (503, ProviderUnavailable)],
    )
    def test_http_errors(self, provider, session, search_request, status, error):
        """Should map HTTP failures to provider errors."""
        session.get.return_value = _response(status_code=status, text="nope")
        with pytest.raises(error):
            provider.fetch_quotes(search_request)

    def test_timeout(self, provider, session, search_request):
        """Should raise ProviderTimeout when requests times out."""
        session.get.side_effect = requests.exceptions.Timeout()
        with pytest.raises(ProviderTimeout):
            provider.fetch_quotes(search_request)

    def test_connection_error(self, provider, session, search_request):
        """Should raise ProviderUnavailable on connection failures."""
        session.get.side_effect = requests.exceptions.ConnectionError("refused")
        with pytest.raises(ProviderUnavailable):
            provider.fetch_quotes(search_request)

    def test_invalid_json(self, provider, session, search_request):
        """Should raise MalformedResponse for non-JSON bodies."""
        session.get.return_value = _response(payload=ValueError("not json"))
        with pytest.raises(MalformedResponse):
            provider.fetch_quotes(search_request)

    def test_unexpected_shape(self, provider, session, search_request):
        """Should raise MalformedResponse when fields are missing."""
        session.get.return_value = _response(payload={"quotes": [{"price": 100}]})
        with pytest.raises(MalformedResponse):
            provider.fetch_quotes(search_request)


class TestSkyscannerProvider:
    """Test the Skyscanner browse-quotes adapter."""

    def test_parses_browse_quotes(self, search_request):
        """Should resolve places and carriers into normalized quotes."""
        session = Mock(spec=requests.Session)
        session.get.return_value = _response(payload={
            "Quotes": [
                {
                    "QuoteId": 1,
                    "MinPrice": 412,
                    "Direct": True,
                    "OutboundLeg": {
                        "CarrierIds": [881],
                        "OriginId": 60987,
                        "DestinationId": 65633,
                        "DepartureDate": "2026-12-01T07:30:00",
                    },
                },
                {
                    "QuoteId": 2,
                    "MinPrice": 300,
                    "OutboundLeg": {
                        "CarrierIds": [],
                        "OriginId": 1,
                        "DestinationId": 65633,
                        "DepartureDate": "2026-12-01T00:00:00",
                    },
                },
            ],
            "Places": [
                {"PlaceId": 60987, "IataCode": "JFK"},
                {"PlaceId": 65633, "IataCode": "LAX"},
            ],
            "Carriers": [{"CarrierId": 881, "Code": "DL", "Name": "Delta"}],
            "Currencies": [{"Code": "USD"}],
        })
        provider = SkyscannerProvider(
            name="skyscanner", base_url="https://sky.example.com", session=session
        )

        quotes = provider.fetch_quotes(search_request)

        # Second quote has an unknown origin place and is skipped
        assert len(quotes) == 1
        quote = quotes[0]
        assert (quote.origin, quote.destination) == ("JFK", "LAX")
        assert quote.price == 412.0
        assert quote.airline == "DL"
        assert quote.stops == 0
        assert quote.departure_time == "07:30"

    @pytest.mark.parametrize(
        "departure, expected",
        [("2026-12-01T00:00:00", "00:00"), ("2026-12-01T23:05:00", "23:05"), ("2026-12-01", None)],
    )
    def test_departure_time(self, search_request, departure, expected):
        """Should keep midnight departures and leave date-only legs without a time."""
        session = Mock(spec=requests.Session)
        session.get.return_value = _response(payload={
            "Quotes": [
                {
                    "QuoteId": 7,
                    "MinPrice": 380,
                    "OutboundLeg": {
                        "CarrierIds": [],
                        "OriginId": 60987,
                        "DestinationId": 65633,
                        "DepartureDate": departure,
                    },
                },
            ],
            "Places": [
                {"PlaceId": 60987, "IataCode": "JFK"},
                {"PlaceId": 65633, "IataCode": "LAX"},
            ],
        })
        provider = SkyscannerProvider(
            name="skyscanner", base_url="https://sky.example.com", session=session
        )

        quote = provider.fetch_quotes(search_request)[0]

        assert quote.departure_time == expected


class TestRateBudget:
    """Test the sliding window limiter."""

    def test_unknown_provider_unlimited(self):
        """Should not limit providers without configured limits."""
        budget = RateBudget()
        assert all(budget.try_acquire("anything") for _ in range(100))

    def test_burst_window_slides(self):
        """Should allow requests again once the burst window passes."""
        now = [0.0]
        budget = RateBudget(
            {"alpha": RateLimits(burst_limit=2, burst_window=10.0)}, clock=lambda: now[0]
        )
        assert budget.try_acquire("alpha")
        assert budget.try_acquire("alpha")
        assert not budget.try_acquire("alpha")

        now[0] = 11.0
        assert budget.try_acquire("alpha")

    def test_hourly_limit(self):
        """Should stop at the hourly allowance."""
        now = [0.0]
        budget = RateBudget(
            {"alpha": RateLimits(requests_per_minute=100, requests_per_hour=3, burst_limit=100)},
            clock=lambda: now[0],
        )
        for _ in range(3):
            assert budget.try_acquire("alpha")
            now[0] += 61
        assert not budget.try_acquire("alpha")
        assert budget.usage()["alpha"]["last_hour"] == 3

    def test_cost_takes_several_slots(self):
        """Should take every slot of a multi-request call or none of them."""
        budget = RateBudget({"alpha": RateLimits(requests_per_minute=5, burst_limit=10)})

        assert budget.try_acquire("alpha", cost=4)
        assert not budget.try_acquire("alpha", cost=2)
        assert budget.try_acquire("alpha", cost=1)
        assert budget.usage()["alpha"]["last_minute"] == 5


class TestReliabilityTracker:
    """Test provider reliability scoring."""

    def test_unknown_until_enough_attempts(self):
        """Should not score a provider with too few attempts."""
        tracker = ReliabilityTracker()
        for _ in range(ReliabilityTracker.MIN_ATTEMPTS - 1):
            tracker.record("alpha", success=True, latency=0.2)
        assert tracker.score("alpha") is None
        assert tracker.average_latency("alpha") == pytest.approx(0.2)

    def test_success_ratio(self):
        """Should report the share of successful calls."""
        tracker = ReliabilityTracker()
        for success in (True, True, True, False, False):
            tracker.record("alpha", success=success)
        assert tracker.score("alpha") == pytest.approx(0.6)


class TestProviderFactory:
    """Test building adapters from configuration."""

    def test_create_by_type(self):
        """Should create the adapter matching the configured type."""
        sky = create_provider(ProviderConfig(name="sky", type="skyscanner", base_url="https://x"))
        feed = create_provider(ProviderConfig(name="feed", type="json", base_url="https://y"))
        assert isinstance(sky, SkyscannerProvider)
        assert isinstance(feed, JsonQuoteProvider)

    def test_unknown_type(self):
        """Should reject unknown provider types."""
        with pytest.raises(ValueError):
            create_provider(ProviderConfig(name="x", type="soap", base_url="https://x"))

    def test_disabled_providers_skipped(self):
        """Should only build and budget enabled providers."""
        configs = [
            ProviderConfig(name="on", base_url="https://on", requests_per_minute=7),
            ProviderConfig(name="off", base_url="https://off", enabled=False),
        ]
        assert [p.name for p in build_providers(configs)] == ["on"]
        limits = rate_limits_for(configs)
        assert set(limits) == {"on"}
        assert limits["on"].requests_per_minute == 7
