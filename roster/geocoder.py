"""Nominatim-compatible forward geocoder over httpx."""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Protocol

import httpx

from .config import GeocodingSettings, settings

logger = logging.getLogger(__name__)


class GeocodingRequestError(Exception):
    """Raised when the provider cannot be reached or answers with an error."""
    pass


@dataclass(frozen=True)
class GeocodeResult:
    """Coordinates of the best match."""
    lat: float
    lng: float


class Geocoder(Protocol):
    async def geocode(self, address: str) -> GeocodeResult | None: ...


def _to_coordinate(value: object) -> float | None:
    try:
        number = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def parse_search_response(payload: object) -> GeocodeResult | None:
    """First result with finite numeric ``lat``/``lon``, else None."""
    if not isinstance(payload, list) or not payload:
        return None
    first = payload[0]
    if not isinstance(first, dict):
        return None
    lat = _to_coordinate(first.get("lat"))
    lng = _to_coordinate(first.get("lon"))
    if lat is None or lng is None:
        return None
    return GeocodeResult(lat=lat, lng=lng)


class NominatimGeocoder:
    """One-result address search against a Nominatim ``/search`` endpoint.

    The caller owns the ``httpx.AsyncClient`` and the request pacing.
    """

    def __init__(self, client: httpx.AsyncClient, config: GeocodingSettings | None = None):
        self.client = client
        self.config = config or settings.geocoding

    def build_query(self, address: str) -> str:
        if self.config.query_suffix:
            return f"{address}, {self.config.query_suffix}"
        return address

    async def geocode(self, address: str) -> GeocodeResult | None:
        """Look up one address.

        Args:
            address: Free-text address line

        Returns:
            GeocodeResult, or None when the provider has no usable match

        Raises:
            GeocodingRequestError: On transport errors or non-2xx responses
        """
        params = {"format": "json", "limit": 1, "q": self.build_query(address)}
        try:
            response = await self.client.get(
                self.config.base_url,
                params=params,
                headers={"User-Agent": self.config.user_agent},
                timeout=self.config.timeout_seconds,
            )
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPStatusError as e:
            raise GeocodingRequestError(f"Geocoder returned HTTP {e.response.status_code}") from e
        except httpx.HTTPError as e:
            raise GeocodingRequestError(f"Geocoder request failed: {e}") from e
        except ValueError as e:
            raise GeocodingRequestError(f"Geocoder returned invalid JSON: {e}") from e

        result = parse_search_response(payload)
        if result is None:
            logger.debug(f"No geocoding result for '{address}'")
        return result


def create_http_client(config: GeocodingSettings | None = None) -> httpx.AsyncClient:
    config = config or settings.geocoding
    return httpx.AsyncClient(
        timeout=config.timeout_seconds,
        headers={"User-Agent": config.user_agent},
    )
