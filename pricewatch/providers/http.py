"""
HTTP vendor adapters built on requests.
"""

import logging
from abc import abstractmethod
from datetime import date, datetime, time
from typing import Any, Callable, Optional

import requests

from pricewatch.errors import (
    MalformedResponse,
    ProviderRateLimited,
    ProviderTimeout,
    ProviderUnavailable,
)
from .base import Quote, QuoteProvider, SearchRequest

logger = logging.getLogger(__name__)

# Upper bound on origin x destination calls per check
MAX_ROUTE_PAIRS = 4


def _hh_mm(value: Optional[str]) -> Optional[str]:
    """Normalize a departure time to HH:MM (ValueError if unparseable)."""
    if not value:
        return None
    return time.fromisoformat(value).strftime("%H:%M")


def _has_time(value: str) -> bool:
    """True if an ISO timestamp carries a time part (midnight included)."""
    return "T" in value or " " in value.strip()


class HttpQuoteProvider(QuoteProvider):
    """Base adapter: one GET per route pair, one parser per vendor."""

    def __init__(
        self,
        name: str,
        base_url: str,
        api_key: str = "",
        timeout: float = 30.0,
        session: Optional[requests.Session] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.name = name
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.session = session or requests.Session()
        self.clock = clock

    def fetch_quotes(self, request: SearchRequest) -> list[Quote]:
        quotes: list[Quote] = []
        for origin, destination in request.route_pairs[:MAX_ROUTE_PAIRS]:
            payload = self._get(self.endpoint(), self.build_params(request, origin, destination))
            try:
                quotes.extend(self.parse(payload, request))
            except (KeyError, TypeError, ValueError) as e:
                raise MalformedResponse(self.name, f"Unexpected payload: {e}") from e
        return quotes

    def request_cost(self, request: SearchRequest) -> int:
        return max(1, len(request.route_pairs[:MAX_ROUTE_PAIRS]))

    def _get(self, endpoint: str, params: dict[str, Any]) -> Any:
        """Issue the request and translate transport failures into provider errors."""
        url = f"{self.base_url}{endpoint}"
        try:
            response = self.session.get(
                url,
                params=params,
                headers=self.headers(),
                timeout=self.timeout,
            )
        except requests.exceptions.Timeout as e:
            raise ProviderTimeout(self.name, f"No response within {self.timeout}s") from e
        except requests.exceptions.RequestException as e:
            raise ProviderUnavailable(self.name, f"Connection error: {e}") from e

        if response.status_code == 429:
            raise ProviderRateLimited(self.name, "Rate limit exceeded")
        if response.status_code in (401, 403):
            raise ProviderUnavailable(self.name, "API key is invalid or expired")
        if not response.ok:
            raise ProviderUnavailable(
                self.name, f"HTTP {response.status_code}: {response.text[:200]}"
            )

        try:
            return response.json()
        except ValueError as e:
            raise MalformedResponse(self.name, "Response is not JSON") from e

    def headers(self) -> dict[str, str]:
        return {"Accept": "application/json"}

    def build_params(
        self, request: SearchRequest, origin: str, destination: str
    ) -> dict[str, Any]:
        params = {
            "origin": origin,
            "destination": destination,
            "date_from": request.date_from.isoformat(),
            "date_to": request.date_to.isoformat(),
            "cabin_class": request.cabin_class,
            "adults": request.adults,
            "children": request.children,
            "infants": request.infants,
            "currency": request.currency,
        }
        if request.return_date:
            params["return_date"] = request.return_date.isoformat()
        if self.api_key:
            params["api_key"] = self.api_key
        return params

    @abstractmethod
    def endpoint(self) -> str:
        pass

    @abstractmethod
    def parse(self, payload: Any, request: SearchRequest) -> list[Quote]:
        pass


class JsonQuoteProvider(HttpQuoteProvider):
    """
    Adapter for feeds returning a flat quote list.

    Expected shape::

        {"quotes": [{"id": "...", "price": 385.0, "currency": "USD",
                     "origin": "JFK", "destination": "LAX",
                     "departure_date": "2026-12-01", "departure_time": "08:15",
                     "cabin_class": "economy", "stops": 0, "airline": "DL"}]}
    """

    def __init__(self, *args, path: str = "/quotes", **kwargs):
        super().__init__(*args, **kwargs)
        self.path = path

    def endpoint(self) -> str:
        return self.path

    def parse(self, payload: Any, request: SearchRequest) -> list[Quote]:
        observed_at = self.clock()
        quotes = []
        for item in payload["quotes"]:
            departure = item.get("departure_date")
            quotes.append(
                Quote(
                    provider=self.name,
                    price=float(item["price"]),
                    currency=str(item.get("currency") or request.currency).upper(),
                    observed_at=observed_at,
                    origin=item["origin"],
                    destination=item["destination"],
                    departure_date=date.fromisoformat(departure) if departure else None,
                    cabin_class=item.get("cabin_class"),
                    stops=int(item["stops"]) if item.get("stops") is not None else None,
                    airline=item.get("airline"),
                    departure_time=_hh_mm(item.get("departure_time")),
                    raw_ref=str(item["id"]) if item.get("id") is not None else None,
                )
            )
        return quotes


class SkyscannerProvider(HttpQuoteProvider):
    """Adapter for the Skyscanner browse-quotes format (Quotes/Places/Carriers)."""

    def endpoint(self) -> str:
        return "/flights/browse/v1.0/US/USD/en-US"

    def build_params(
        self, request: SearchRequest, origin: str, destination: str
    ) -> dict[str, Any]:
        params = {
            "origin": origin,
            "destination": destination,
            "outbound_date": request.date_from.isoformat(),
            "adults": request.adults,
            "children": request.children,
            "infants": request.infants,
            "cabin_class": request.cabin_class,
            "currency": request.currency,
            "locale": "en-US",
        }
        if request.return_date:
            params["inbound_date"] = request.return_date.isoformat()
        if self.api_key:
            params["api_key"] = self.api_key
        return params

    def parse(self, payload: Any, request: SearchRequest) -> list[Quote]:
        places = {p["PlaceId"]: p for p in payload.get("Places") or []}
        carriers = {c["CarrierId"]: c for c in payload.get("Carriers") or []}
        currency = (payload.get("Currencies") or [{}])[0].get("Code", "USD")
        observed_at = self.clock()

        quotes = []
        for item in payload.get("Quotes") or []:
            leg = item["OutboundLeg"]
            origin = places.get(leg["OriginId"], {}).get("IataCode")
            destination = places.get(leg["DestinationId"], {}).get("IataCode")
            if not origin or not destination:
                logger.debug(f"{self.name}: skipping quote {item.get('QuoteId')} with unknown place")
                continue
            carrier_ids = leg.get("CarrierIds") or []
            carrier = carriers.get(carrier_ids[0]) if carrier_ids else None
            departure = datetime.fromisoformat(leg["DepartureDate"])
            quotes.append(
                Quote(
                    provider=self.name,
                    price=float(item["MinPrice"]),
                    currency=currency,
                    observed_at=observed_at,
                    origin=origin,
                    destination=destination,
                    departure_date=departure.date(),
                    cabin_class=request.cabin_class,
                    stops=0 if item.get("Direct") else None,
                    airline=(carrier or {}).get("Code"),
                    departure_time=(
                        departure.strftime("%H:%M") if _has_time(leg["DepartureDate"]) else None
                    ),
                    raw_ref=str(item.get("QuoteId")),
                )
            )
        return quotes
