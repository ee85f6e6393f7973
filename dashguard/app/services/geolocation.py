"""Coarse IP geolocation for session anomaly detection.

Lookups are optional: when no provider is configured, or a lookup fails,
location-based checks are skipped rather than guessed.
"""

import ipaddress
import math
import time
from abc import ABC, abstractmethod
from collections import OrderedDict
from dataclasses import dataclass
from typing import Optional

import httpx

from dashguard.app.core.config import settings
from dashguard.app.core.logging import get_logger

logger = get_logger(__name__)

EARTH_RADIUS_KM = 6371.0088


@dataclass(frozen=True)
class GeoLocation:
    latitude: float
    longitude: float
    country: Optional[str] = None
    city: Optional[str] = None

    def label(self) -> str:
        parts = [p for p in (self.city, self.country) if p]
        return ", ".join(parts) if parts else f"{self.latitude:.2f},{self.longitude:.2f}"


def haversine_km(a: GeoLocation, b: GeoLocation) -> float:
    """Great-circle distance between two locations in kilometres."""
    lat1, lon1 = math.radians(a.latitude), math.radians(a.longitude)
    lat2, lon2 = math.radians(b.latitude), math.radians(b.longitude)
    dlat = lat2 - lat1
    dlon = lon2 - lon1
    h = math.sin(dlat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlon / 2) ** 2
    return 2 * EARTH_RADIUS_KM * math.asin(min(1.0, math.sqrt(h)))


def is_public_address(ip: str) -> bool:
    try:
        address = ipaddress.ip_address(ip.strip())
    except ValueError:
        return False
    return address.is_global


class GeolocationProvider(ABC):
    """Abstract base class for IP geolocation lookups."""

    @abstractmethod
    async def locate(self, ip: str) -> Optional[GeoLocation]:
        """Resolve an IP address to a coarse location.

        Returns:
            GeoLocation, or None when the address cannot be located

        Raises:
            httpx.HTTPError: If the lookup service is unreachable
        """
        pass


class HttpGeolocationProvider(GeolocationProvider):
    """Geolocation backed by an ip-api.com style JSON endpoint.

    Results (including "not found") are cached per address for
    ``cache_ttl`` seconds in a bounded LRU.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        url_template: Optional[str] = None,
        timeout: Optional[float] = None,
        cache_ttl: Optional[int] = None,
        max_entries: int = 10000,
    ):
        self._client = client
        self._url_template = url_template or settings.geolocation_url
        self._timeout = timeout if timeout is not None else settings.geolocation_timeout
        self._cache_ttl = cache_ttl if cache_ttl is not None else settings.geolocation_cache_ttl_seconds
        self._max_entries = max_entries
        self._cache: OrderedDict[str, tuple[Optional[GeoLocation], float]] = OrderedDict()

    def _cached(self, ip: str) -> tuple[bool, Optional[GeoLocation]]:
        hit = self._cache.get(ip)
        if hit is None:
            return False, None
        location, stored_at = hit
        if time.time() - stored_at >= self._cache_ttl:
            del self._cache[ip]
            return False, None
        self._cache.move_to_end(ip)
        return True, location

    def _store(self, ip: str, location: Optional[GeoLocation]) -> None:
        self._cache[ip] = (location, time.time())
        self._cache.move_to_end(ip)
        while len(self._cache) > self._max_entries:
            self._cache.popitem(last=False)

    async def locate(self, ip: str) -> Optional[GeoLocation]:
        # Private, loopback and malformed addresses carry no location
        if not is_public_address(ip):
            return None

        found, location = self._cached(ip)
        if found:
            return location

        response = await self._client.get(
            self._url_template.format(ip=ip.strip()), timeout=self._timeout
        )
        response.raise_for_status()
        data = response.json()

        location = None
        if data.get("status", "success") == "success" and "lat" in data and "lon" in data:
            location = GeoLocation(
                latitude=float(data["lat"]),
                longitude=float(data["lon"]),
                country=data.get("country"),
                city=data.get("city"),
            )
        else:
            logger.debug(f"Geolocation lookup returned no location for {ip}")

        self._store(ip, location)
        return location
