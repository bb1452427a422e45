"""
Redis connection for the durable cache tier.

The client is created lazily by redis-py on first command, so importing
this module never touches the network.
"""

import logging

import redis.asyncio as redis
from kanghoo.app.core.config import settings

logger = logging.getLogger(__name__)

redis_client = redis.from_url(
    settings.redis_url,
    decode_responses=settings.redis_decode_responses,
)


async def ping_redis() -> bool:
    """Reachability of the cache tier for ``/health``."""
    try:
        return bool(await redis_client.ping())
    except (redis.RedisError, OSError) as e:
        logger.warning("Redis ping failed: %s", e)
        return False
