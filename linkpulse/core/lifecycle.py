"""Process-wide components with an explicit construction/teardown lifecycle.

Built once per process by the API lifespan or the worker, then passed to
whatever needs them; nothing here is a module-level singleton.
"""

from dataclasses import dataclass

import redis.asyncio as redis
import structlog

from linkpulse.aggregators.stats_rollup import StatsRollup
from linkpulse.aggregators.visit_aggregator import VisitAggregator
from linkpulse.core.config import Settings
from linkpulse.core.database import Database
from linkpulse.core.redis import close_redis, create_redis
from linkpulse.queues.visit_queue import VisitQueue, create_visit_queue
from linkpulse.services.geoip import GeoIPService
from linkpulse.services.link_registry import LinkRegistry
from linkpulse.services.stats_cache import StatsCache, create_stats_cache

logger = structlog.get_logger()


@dataclass
class Components:
    """Everything the redirect path, the API and the consumer share."""

    settings: Settings
    database: Database
    redis: redis.Redis | None
    geoip: GeoIPService
    registry: LinkRegistry
    queue: VisitQueue
    stats_cache: StatsCache
    aggregator: VisitAggregator
    rollup: StatsRollup

    @classmethod
    async def create(cls, settings: Settings) -> "Components":
        """Construct and wire all components (nothing is started yet)."""
        database = Database(settings)
        needs_redis = settings.queue_backend == "redis" or settings.stats_cache_backend == "redis"
        client = create_redis(settings) if needs_redis else None
        geoip = GeoIPService.from_settings(settings)

        try:
            queue = await create_visit_queue(settings, client)
        except Exception:
            await geoip.close()
            if client is not None:
                await close_redis(client)
            await database.dispose()
            raise

        registry = LinkRegistry(database)
        stats_cache = create_stats_cache(settings, client)
        aggregator = VisitAggregator(
            database,
            registry,
            geoip,
            write_strategy=settings.aggregate_write_strategy,
        )
        rollup = StatsRollup(database, stats_cache, cache_ttl=settings.stats_cache_ttl)
        queue.on_deliver(aggregator.record)

        logger.info(
            "Components created",
            database=database.dialect,
            queue=queue.backend,
            stats_cache=stats_cache.name,
            write_strategy=aggregator.write_strategy,
            geoip=geoip.backend,
        )
        return cls(
            settings=settings,
            database=database,
            redis=client,
            geoip=geoip,
            registry=registry,
            queue=queue,
            stats_cache=stats_cache,
            aggregator=aggregator,
            rollup=rollup,
        )

    async def start(self, consume: bool | None = None) -> None:
        """Start the queue; consume visits in this process if asked to."""
        if consume is None:
            consume = self.settings.consume_in_process
        await self.queue.start(consume=consume)

    async def close(self) -> None:
        """Stop the queue, then release connections in reverse order."""
        await self.queue.stop()
        await self.stats_cache.close()
        await self.geoip.close()
        if self.redis is not None:
            await close_redis(self.redis)
        await self.database.dispose()
        logger.info("Components closed")

    @property
    def stats(self) -> dict:
        return {
            "queue": self.queue.stats,
            "aggregator": self.aggregator.stats,
            "rollup": self.rollup.stats,
        }
