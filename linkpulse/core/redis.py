"""Redis client construction."""

import redis.asyncio as redis
import structlog

from linkpulse.core.config import Settings

logger = structlog.get_logger()


def create_redis(settings: Settings) -> redis.Redis:
    """Create a Redis client; connections are opened lazily on first command."""
    client = redis.from_url(
        settings.redis_url,
        encoding="utf-8",
        decode_responses=True,
    )
    logger.info("Redis client initialized", url=settings.redis_url)
    return client


async def ping(client: redis.Redis) -> bool:
    """Return True when Redis answers, logging the failure otherwise."""
    try:
        return bool(await client.ping())
    except (redis.RedisError, OSError) as e:
        logger.warning("Redis ping failed", error=str(e))
        return False


async def close_redis(client: redis.Redis) -> None:
    """Close the Redis connection."""
    await client.aclose()
    logger.info("Redis connection closed")
