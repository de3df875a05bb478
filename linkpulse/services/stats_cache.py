"""Short-lived cache of computed stats reports.

The cache is advisory: entries expire after their TTL and are never
invalidated on write, and any backend error is treated as a miss.
"""

import time
from abc import ABC, abstractmethod
from uuid import UUID

import redis.asyncio as redis
import structlog
from pydantic import ValidationError

from linkpulse.core.config import Settings
from linkpulse.core.observability import record_stats_cache
from linkpulse.schemas.stats import StatsReport

logger = structlog.get_logger()

STATS_CACHE_PREFIX = "stats:"


def stats_cache_key(link_id: UUID) -> str:
    """Generate cache key for a link's stats report."""
    return f"{STATS_CACHE_PREFIX}{link_id}"


class StatsCache(ABC):
    """Interface shared by all stats cache backends."""

    name = "abstract"

    @abstractmethod
    async def get(self, link_id: UUID) -> StatsReport | None:
        """Return the cached report, or None on a miss."""

    @abstractmethod
    async def set(self, link_id: UUID, report: StatsReport, ttl: int) -> None:
        """Store a report for ``ttl`` seconds."""

    async def close(self) -> None:
        return None


class RedisStatsCache(StatsCache):
    """Stats reports stored as JSON strings with ``SETEX``."""

    name = "redis"

    def __init__(self, client: redis.Redis):
        self._client = client

    async def get(self, link_id: UUID) -> StatsReport | None:
        try:
            data = await self._client.get(stats_cache_key(link_id))
        except redis.RedisError as e:
            logger.warning("Redis get error", link_id=str(link_id), error=str(e))
            record_stats_cache(hit=False)
            return None

        if not data:
            logger.debug("Stats cache miss", link_id=str(link_id))
            record_stats_cache(hit=False)
            return None

        try:
            report = StatsReport.model_validate_json(data)
        except ValidationError as e:
            logger.warning("Discarding unreadable stats cache entry", link_id=str(link_id), error=str(e))
            record_stats_cache(hit=False)
            return None

        logger.debug("Stats cache hit", link_id=str(link_id))
        record_stats_cache(hit=True)
        return report

    async def set(self, link_id: UUID, report: StatsReport, ttl: int) -> None:
        try:
            await self._client.setex(
                stats_cache_key(link_id),
                ttl,
                report.model_dump_json(by_alias=True),
            )
            logger.debug("Stats cached", link_id=str(link_id), ttl=ttl)
        except redis.RedisError as e:
            logger.warning("Redis set error", link_id=str(link_id), error=str(e))


class MemoryStatsCache(StatsCache):
    """Per-process cache with TTL, for single-process deployments and tests.

    Expired entries are swept on every ``set``; past ``max_entries`` the
    oldest stored entry is evicted.
    """

    name = "memory"

    def __init__(self, clock=time.monotonic, max_entries: int = 10_000):
        self._clock = clock
        self._max_entries = max(1, max_entries)
        self._entries: dict[str, tuple[float, StatsReport]] = {}

    def __len__(self) -> int:
        return len(self._entries)

    async def get(self, link_id: UUID) -> StatsReport | None:
        key = stats_cache_key(link_id)
        entry = self._entries.get(key)
        if entry is None:
            record_stats_cache(hit=False)
            return None
        expires_at, report = entry
        if self._clock() >= expires_at:
            del self._entries[key]
            record_stats_cache(hit=False)
            return None
        record_stats_cache(hit=True)
        return report

    async def set(self, link_id: UUID, report: StatsReport, ttl: int) -> None:
        now = self._clock()
        key = stats_cache_key(link_id)
        self._sweep(now)
        # Re-insert so dict order stays oldest-stored first
        self._entries.pop(key, None)
        while len(self._entries) >= self._max_entries:
            del self._entries[next(iter(self._entries))]
        self._entries[key] = (now + ttl, report)

    def _sweep(self, now: float) -> None:
        expired = [key for key, (expires_at, _) in self._entries.items() if now >= expires_at]
        for key in expired:
            del self._entries[key]


class NullStatsCache(StatsCache):
    """Never caches; every compute reads the aggregate rows."""

    name = "null"

    async def get(self, link_id: UUID) -> StatsReport | None:
        return None

    async def set(self, link_id: UUID, report: StatsReport, ttl: int) -> None:
        return None


def create_stats_cache(settings: Settings, client: redis.Redis | None) -> StatsCache:
    """Build the stats cache selected by ``stats_cache_backend``."""
    backend = settings.stats_cache_backend
    if backend == "redis":
        if client is None:
            raise ValueError("Redis stats cache requires a Redis client")
        cache: StatsCache = RedisStatsCache(client)
    elif backend == "memory":
        cache = MemoryStatsCache()
    elif backend == "null":
        cache = NullStatsCache()
    else:
        raise ValueError(f"Unknown stats cache backend: {backend}")

    logger.info("Stats cache initialized", backend=cache.name, ttl=settings.stats_cache_ttl)
    return cache
