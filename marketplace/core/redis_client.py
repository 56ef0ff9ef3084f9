"""Optional async Redis client.

Redis backs the rate limiter in production; the API itself keeps working
without it, so connection failures only downgrade the health report.
"""

import logging

import redis.asyncio as aioredis

from marketplace.config import settings

logger = logging.getLogger(__name__)

_redis: aioredis.Redis | None = None


async def get_redis() -> aioredis.Redis | None:
    """Return the shared Redis client, or None if Redis is unavailable."""
    global _redis
    if _redis is None:
        client = aioredis.from_url(settings.REDIS_URL, decode_responses=True)
        try:
            await client.ping()
        except Exception:
            logger.warning("Redis unavailable (%s)", settings.REDIS_URL)
            await client.aclose()
            return None
        _redis = client
        logger.info("Redis connected at %s", settings.REDIS_URL)
    return _redis


async def close_redis() -> None:
    """Close the Redis connection on application shutdown."""
    global _redis
    if _redis is not None:
        await _redis.aclose()
        _redis = None
        logger.info("Redis connection closed")
