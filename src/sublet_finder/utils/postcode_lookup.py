"""Postcode coordinate lookup via postcodes.io API.

Resolves a property's postcode to latitude/longitude so that coordinate
bounded searches can be built. Lookup failures are never fatal: the
property is returned unchanged and later falls back to address search.
"""

import asyncio

import httpx

from sublet_finder.errors import GeocodeUnavailable
from sublet_finder.logging import get_logger
from sublet_finder.models import Property

logger = get_logger(__name__)

_BASE_URL = "https://api.postcodes.io"
_TIMEOUT = 10.0


class Geocoder:
    """Forward geocoder with an in-process cache of successful lookups."""

    def __init__(
        self,
        *,
        base_url: str = _BASE_URL,
        timeout: float = _TIMEOUT,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._client = client
        self._owns_client = client is None
        self._cache: dict[str, tuple[float, float]] = {}

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
        return self._client

    async def close(self) -> None:
        """Close the HTTP client if this geocoder created it."""
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "Geocoder":
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()

    async def lookup_coordinates(self, postcode: str) -> tuple[float, float]:
        """Forward lookup: full postcode -> (latitude, longitude).

        Raises:
            GeocodeUnavailable: If the postcode is unknown or the lookup fails.
        """
        key = "".join(postcode.upper().split())
        cached = self._cache.get(key)
        if cached is not None:
            return cached

        try:
            resp = await self._get_client().get(f"{self._base_url}/postcodes/{key}")
        except httpx.HTTPError as e:
            raise GeocodeUnavailable(f"{postcode}: {type(e).__name__}") from e

        if resp.status_code != 200:
            raise GeocodeUnavailable(f"{postcode}: HTTP {resp.status_code}")

        try:
            result = resp.json().get("result") or {}
            coords = (float(result["latitude"]), float(result["longitude"]))
        except (ValueError, TypeError, KeyError, AttributeError) as e:
            raise GeocodeUnavailable(f"{postcode}: malformed response") from e

        self._cache[key] = coords
        return coords

    async def geocode_property(self, prop: Property) -> Property:
        """Attach coordinates to ``prop``, or return it unchanged on failure."""
        if prop.has_coordinates:
            return prop
        try:
            latitude, longitude = await self.lookup_coordinates(prop.postcode)
        except GeocodeUnavailable as e:
            logger.warning("postcode_lookup_failed", postcode=prop.postcode, reason=str(e))
            return prop
        return prop.model_copy(update={"latitude": latitude, "longitude": longitude})

    async def geocode_many(self, properties: list[Property]) -> list[Property]:
        """Geocode properties concurrently, one result per input in input order."""
        if not properties:
            return []
        return list(await asyncio.gather(*(self.geocode_property(p) for p in properties)))
