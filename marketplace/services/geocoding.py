from __future__ import annotations

import asyncio
import math
import re
from dataclasses import dataclass
from typing import Mapping, Optional, Protocol, Tuple, Union

import aiohttp

from marketplace.core.logging import get_structlog_logger
from marketplace.services.records import Coordinates
from marketplace.services.redis import RedisCache

logger = get_structlog_logger(__name__)

EARTH_RADIUS_MILES = 3959.0
MILES_PER_DEGREE_LAT = 69.0

_POSTAL_CODE_NOISE = re.compile(r"[\s\-]")


def clean_postal_code(value: Optional[str]) -> Optional[str]:
    """Strip spaces and dashes; codes shorter than five characters are unusable."""
    if not value:
        return None
    cleaned = _POSTAL_CODE_NOISE.sub("", value).upper()
    if len(cleaned) < 5:
        return None
    # ZIP+4 resolves at the five digit level
    if cleaned.isdigit() and len(cleaned) == 9:
        return cleaned[:5]
    return cleaned


def haversine_miles(a: Coordinates, b: Coordinates) -> float:
    lat1, lat2 = math.radians(a.latitude), math.radians(b.latitude)
    d_lat = lat2 - lat1
    d_lon = math.radians(b.longitude - a.longitude)
    h = math.sin(d_lat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(d_lon / 2) ** 2
    return 2 * EARTH_RADIUS_MILES * math.asin(min(1.0, math.sqrt(h)))


@dataclass(frozen=True)
class BoundingBox:
    min_latitude: float
    max_latitude: float
    min_longitude: float
    max_longitude: float

    def contains(self, point: Coordinates) -> bool:
        return (
            self.min_latitude <= point.latitude <= self.max_latitude
            and self.min_longitude <= point.longitude <= self.max_longitude
        )


def bounding_box(center: Coordinates, radius_miles: float) -> BoundingBox:
    """Cheap rectangular prefilter around ``center``; always contains the radius circle."""
    lat_delta = radius_miles / MILES_PER_DEGREE_LAT
    cos_lat = math.cos(math.radians(center.latitude))
    lon_delta = 180.0 if cos_lat < 1e-6 else radius_miles / (MILES_PER_DEGREE_LAT * cos_lat)
    return BoundingBox(
        min_latitude=center.latitude - lat_delta,
        max_latitude=center.latitude + lat_delta,
        min_longitude=center.longitude - lon_delta,
        max_longitude=center.longitude + lon_delta,
    )


class Geocoder(Protocol):
    async def resolve(self, postal_code: str) -> Optional[Coordinates]: ...


class StaticGeocoder:
    """Lookup table geocoder for development and tests."""

    def __init__(self, table: Mapping[str, Union[Coordinates, Tuple[float, float]]]):
        self._table = {}
        for code, point in table.items():
            key = clean_postal_code(code)
            if key is None:
                continue
            self._table[key] = point if isinstance(point, Coordinates) else Coordinates(*point)

    async def resolve(self, postal_code: str) -> Optional[Coordinates]:
        key = clean_postal_code(postal_code)
        if key is None:
            return None
        return self._table.get(key)


class NominatimGeocoder:
    """
    OpenStreetMap Nominatim postal code lookup.

    Successful lookups are cached in Redis when a cache is configured. Every
    failure mode (timeout, HTTP error, malformed or empty answer) returns
    ``None`` so callers can fall back to postal code matching.
    """

    def __init__(
        self,
        url: str,
        country: str,
        user_agent: str,
        timeout_seconds: float = 10.0,
        cache: Optional[RedisCache] = None,
        cache_ttl: int = 86400,
    ):
        self.url = url
        self.country = country
        self.user_agent = user_agent
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self.cache = cache
        self.cache_ttl = cache_ttl

    async def resolve(self, postal_code: str) -> Optional[Coordinates]:
        key = clean_postal_code(postal_code)
        if key is None:
            logger.info("geocoding.invalid_postal_code", postal_code=postal_code)
            return None

        if self.cache is not None:
            cached = await self.cache.get(key)
            if isinstance(cached, dict) and "lat" in cached and "lon" in cached:
                return Coordinates(float(cached["lat"]), float(cached["lon"]))

        try:
            coordinates = await self._fetch(key)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning("geocoding.request_failed", postal_code=key, error=str(e) or type(e).__name__)
            return None

        if coordinates is None:
            logger.info("geocoding.no_result", postal_code=key)
            return None

        if self.cache is not None:
            await self.cache.set(
                key,
                {"lat": coordinates.latitude, "lon": coordinates.longitude},
                expire=self.cache_ttl,
            )
        return coordinates

    async def _fetch(self, postal_code: str) -> Optional[Coordinates]:
        params = {
            "postalcode": postal_code,
            "country": self.country,
            "format": "json",
            "limit": "1",
        }
        headers = {"User-Agent": self.user_agent}
        async with aiohttp.ClientSession(timeout=self.timeout) as session:
            async with session.get(self.url, params=params, headers=headers) as response:
                response.raise_for_status()
                results = await response.json(content_type=None)

        if not isinstance(results, list) or not results:
            return None
        try:
            return Coordinates(float(results[0]["lat"]), float(results[0]["lon"]))
        except (KeyError, TypeError, ValueError):
            logger.warning("geocoding.malformed_result", postal_code=postal_code)
            return None
