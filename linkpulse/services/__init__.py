"""Link registry, classification, geo lookup and stats caching."""

from linkpulse.services.geoip import GeoIPService, GeoLocation
from linkpulse.services.link_registry import LinkRef, LinkRegistry
from linkpulse.services.stats_cache import (
    MemoryStatsCache,
    NullStatsCache,
    RedisStatsCache,
    StatsCache,
    create_stats_cache,
)

__all__ = [
    # Links
    "LinkRef",
    "LinkRegistry",
    # GeoIP
    "GeoIPService",
    "GeoLocation",
    # Stats cache
    "StatsCache",
    "RedisStatsCache",
    "MemoryStatsCache",
    "NullStatsCache",
    "create_stats_cache",
]
