from __future__ import annotations

import logging
import re
from collections.abc import Mapping
from datetime import date, timedelta
from typing import Any

import httpx

from mailflow.errors import (
    NoFlightsAvailable,
    RateLimitError,
    ServiceError,
    TransientServiceError,
    parse_retry_after,
)
from mailflow.services.base import PriceQuote, PricingClient

logger = logging.getLogger(__name__)

DEFAULT_PRICING_URL = "https://lpc.kupibilet.ru/api/v2/one_way"

_IATA_RE = re.compile(r"^[A-Z]{3}$")

# Airport codes the fare search only knows by their city code.
CITY_CODE_ALIASES = {
    "MSK": "MOW",
    "SVO": "MOW",
    "DME": "MOW",
    "VKO": "MOW",
    "SPB": "LED",
}

# Destination substituted when a route starts and ends in the same city.
SAME_CITY_ALTERNATIVES = {
    "MOW": "LED",
    "LED": "MOW",
    "AER": "MOW",
    "SVX": "MOW",
}


def normalize_iata(code: str, *, field_name: str = "code") -> str:
    value = (code or "").strip().upper()
    if not _IATA_RE.match(value):
        raise ServiceError(
            f"Invalid {field_name} airport code: {code!r}",
            service="pricing",
            retriable=False,
            kind="validation",
        )
    return value


def correct_route(origin: str, destination: str) -> tuple[str, str]:
    """Map airport codes to city codes and break same-city routes."""
    departure = normalize_iata(origin, field_name="origin")
    arrival = normalize_iata(destination, field_name="destination")
    departure = CITY_CODE_ALIASES.get(departure, departure)
    arrival = CITY_CODE_ALIASES.get(arrival, arrival)
    if departure == arrival:
        substitute = SAME_CITY_ALTERNATIVES.get(departure, "MOW")
        logger.warning(
            "Route %s -> %s starts and ends in one city, searching %s -> %s instead",
            origin,
            destination,
            departure,
            substitute,
        )
        arrival = substitute
    return departure, arrival


def default_date_range(today: date | None = None) -> str:
    start = (today or date.today()) + timedelta(days=1)
    end = start + timedelta(days=14)
    return f"{start.isoformat()},{end.isoformat()}"


def split_date_range(date_range: str) -> tuple[str, str]:
    parts = [part.strip() for part in date_range.split(",")]
    if len(parts) != 2 or not all(parts):
        raise ServiceError(
            f"Invalid date range: {date_range!r}",
            service="pricing",
            retriable=False,
            kind="validation",
        )
    return parts[0], parts[1]


class HttpPricingClient(PricingClient):
    """Flight fare lookup against the one-way search endpoint."""

    def __init__(
        self,
        *,
        base_url: str = DEFAULT_PRICING_URL,
        currency: str = "RUB",
        timeout_seconds: float = 30.0,
        cabin_class: str = "economy",
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = base_url
        self.currency = currency
        self.cabin_class = cabin_class
        self._timeout = httpx.Timeout(timeout_seconds, connect=10.0)
        self._client = client
        self._owns_client = client is None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=self._timeout,
                follow_redirects=True,
                headers={"accept": "*/*", "content-type": "application/json"},
            )
            self._owns_client = True
        return self._client

    async def close(self) -> None:
        if self._owns_client and self._client is not None and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    def build_request(
        self,
        origin: str,
        destination: str,
        date_range: str,
        filters: Mapping[str, Any] | None = None,
    ) -> dict[str, Any]:
        start, end = split_date_range(date_range)
        options = dict(filters or {})
        return {
            "departure": origin,
            "arrival": destination,
            "cabin_class": str(options.pop("cabin_class", self.cabin_class)),
            "currency": self.currency,
            "departure_date": {"from": start, "to": end},
            "filters": {
                "airplane_only": options.get("airplane_only") or None,
                "is_direct": True if options.get("is_direct") is True else None,
                "with_baggage": options.get("with_baggage") or None,
            },
        }

    def _parse_offers(self, payload: Any, origin: str, destination: str) -> list[dict[str, Any]]:
        if not isinstance(payload, dict):
            return []
        offers: list[dict[str, Any]] = []
        solutions = payload.get("solutions")
        if isinstance(solutions, list) and solutions:
            for item in solutions:
                if not isinstance(item, dict):
                    continue
                price = item.get("price") if isinstance(item.get("price"), dict) else {}
                offers.append(
                    {
                        "origin": origin,
                        "destination": destination,
                        # amounts arrive in minor units
                        "price": round(float(price.get("amount") or 0) / 100),
                        "currency": price.get("currency") or self.currency,
                        "date": item.get("departure_date"),
                        "airline": item.get("airline") or "",
                        "stops": int(item.get("stops") or 0),
                    }
                )
            return offers

        flights = payload.get("flights")
        if isinstance(flights, list):
            for item in flights:
                if not isinstance(item, dict):
                    continue
                offers.append(
                    {
                        "origin": origin,
                        "destination": destination,
                        "price": float(item.get("price") or item.get("amount") or 0),
                        "currency": payload.get("currency") or self.currency,
                        "date": item.get("departure_date") or item.get("date"),
                        "airline": item.get("airline") or "",
                        "stops": int(item.get("stops") or 0),
                    }
                )
        return offers

    async def get_prices(
        self,
        origin: str,
        destination: str,
        date_range: str | None = None,
        filters: Mapping[str, Any] | None = None,
    ) -> PriceQuote:
        departure, arrival = correct_route(origin, destination)
        window = date_range or default_date_range()
        body = self.build_request(departure, arrival, window, filters)

        client = await self._get_client()
        try:
            response = await client.post(self.base_url, json=body)
        except httpx.TimeoutException as exc:
            raise TransientServiceError(
                f"Pricing request timed out: {exc}", service="pricing"
            ) from exc
        except httpx.TransportError as exc:
            raise TransientServiceError(
                f"Pricing request failed: {exc}", service="pricing"
            ) from exc

        if response.status_code == 429:
            raise RateLimitError(
                "Pricing API rate limit exceeded",
                service="pricing",
                retry_after=parse_retry_after(response.headers.get("retry-after")),
            )
        if response.status_code >= 500:
            raise TransientServiceError(
                f"Pricing API error: {response.status_code}",
                service="pricing",
                status_code=response.status_code,
            )
        if response.status_code >= 400:
            raise ServiceError(
                f"Pricing API rejected request: {response.status_code} {response.text[:200]}",
                service="pricing",
                status_code=response.status_code,
            )
        if response.status_code == 204 or not response.content:
            raise NoFlightsAvailable(departure, arrival, window)

        try:
            payload = response.json()
        except ValueError as exc:
            raise TransientServiceError(
                "Pricing API returned invalid JSON", service="pricing"
            ) from exc

        offers = self._parse_offers(payload, departure, arrival)
        if not offers:
            raise NoFlightsAvailable(departure, arrival, window)
        logger.debug("Pricing %s -> %s returned %d offer(s)", departure, arrival, len(offers))
        return PriceQuote(
            origin=departure,
            destination=arrival,
            date_range=window,
            currency=self.currency,
            prices=offers,
        )
