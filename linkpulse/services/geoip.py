"""GeoIP lookup for visits that arrive without a country header."""

import ipaddress
from dataclasses import dataclass
from pathlib import Path

import geoip2.database
import geoip2.errors
import httpx
import maxminddb
import structlog

from linkpulse.core.config import Settings

logger = structlog.get_logger()

IP_API_URL = "http://ip-api.com/json/{ip}"


@dataclass
class GeoLocation:
    """Geographic location data from IP lookup."""

    country: str | None = None  # ISO 3166-1 alpha-2 country code
    city: str | None = None


class GeoIPService:
    """Looks up geographic location from IP addresses.

    Supports two backends:
    1. GeoIP2 database (MaxMind) - for production use
    2. IP-API.com - free API fallback for development, if enabled

    Lookups are best-effort: any failure yields an empty ``GeoLocation``.

    Usage:
        service = GeoIPService.from_settings(settings)
        location = await service.lookup("8.8.8.8")
        await service.close()
    """

    def __init__(
        self,
        database_path: str | None = None,
        api_fallback: bool = False,
        timeout: float = 2.0,
    ):
        self._reader: geoip2.database.Reader | None = None
        self._database_path = database_path
        self._api_fallback = api_fallback
        self._timeout = timeout
        self._http: httpx.AsyncClient | None = None

        if database_path:
            self._open_database(database_path)

    @classmethod
    def from_settings(cls, settings: Settings) -> "GeoIPService":
        return cls(
            database_path=settings.geoip_database_path or None,
            api_fallback=settings.geoip_api_fallback,
        )

    def _open_database(self, database_path: str) -> None:
        path = Path(database_path)
        if not path.exists():
            logger.warning("GeoIP2 database not found", path=str(path))
            return
        try:
            self._reader = geoip2.database.Reader(str(path))
            logger.info("GeoIP2 database loaded", path=str(path))
        except (OSError, maxminddb.InvalidDatabaseError) as e:
            logger.error("Failed to load GeoIP2 database", path=str(path), error=str(e))

    @property
    def backend(self) -> str:
        if self._reader:
            return "geoip2"
        return "ip-api" if self._api_fallback else "none"

    async def lookup(self, ip_address: str | None) -> GeoLocation:
        """Look up geographic location for an IP address."""
        if not ip_address or not self._is_public_ip(ip_address):
            return GeoLocation()

        if self._reader:
            return self._lookup_geoip2(ip_address)
        if self._api_fallback:
            return await self._lookup_ip_api(ip_address)
        return GeoLocation()

    @staticmethod
    def _is_public_ip(ip_address: str) -> bool:
        try:
            return ipaddress.ip_address(ip_address).is_global
        except ValueError:
            return False

    def _lookup_geoip2(self, ip_address: str) -> GeoLocation:
        try:
            response = self._reader.city(ip_address)
        except (geoip2.errors.GeoIP2Error, ValueError) as e:
            logger.debug("GeoIP2 lookup failed", ip=ip_address, error=str(e))
            return GeoLocation()
        return GeoLocation(
            country=response.country.iso_code,
            city=response.city.name,
        )

    async def _lookup_ip_api(self, ip_address: str) -> GeoLocation:
        """Look up location using IP-API.com (free tier).

        Note: IP-API has rate limits (45 requests/minute for free tier).
        Use GeoIP2 database for production.
        """
        if self._http is None:
            self._http = httpx.AsyncClient(timeout=self._timeout)
        try:
            response = await self._http.get(
                IP_API_URL.format(ip=ip_address),
                params={"fields": "status,countryCode,city"},
            )
            if response.status_code == 200:
                data = response.json()
                if data.get("status") == "success":
                    return GeoLocation(
                        country=data.get("countryCode"),
                        city=data.get("city"),
                    )
        except (httpx.HTTPError, ValueError) as e:
            logger.debug("IP-API lookup failed", ip=ip_address, error=str(e))

        return GeoLocation()

    async def close(self) -> None:
        """Close the database reader and the HTTP client."""
        if self._reader:
            self._reader.close()
            self._reader = None
        if self._http is not None:
            await self._http.aclose()
            self._http = None
