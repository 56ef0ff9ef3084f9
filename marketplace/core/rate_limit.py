"""Shared rate limiter instance.

Counters live in Redis when it answers a ping, so limits hold across
workers; otherwise they fall back to process memory (development, tests).
"""

import logging

import redis as sync_redis
from slowapi import Limiter
from slowapi.util import get_remote_address

from marketplace.config import settings

logger = logging.getLogger(__name__)


def _storage_uri() -> str:
    try:
        client = sync_redis.from_url(settings.REDIS_URL, socket_connect_timeout=1)
        client.ping()
        client.close()
    except Exception:
        logger.warning("Rate limiter: Redis unavailable, using in-memory storage")
        return "memory://"
    logger.info("Rate limiter: Redis storage (%s)", settings.REDIS_URL)
    return settings.REDIS_URL


limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[settings.RATE_LIMIT_DEFAULT],
    storage_uri=_storage_uri(),
)
