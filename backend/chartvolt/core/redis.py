"""
Redis connection for the price cache and the notification channels.

One client per process. The API lifespan and the worker both call
connect_redis at startup; a failed connection leaves the client unset and
the service runs without quotes or published effects.
"""

import redis.asyncio as aioredis
from redis.exceptions import RedisError
from typing import Optional
import logging

logger = logging.getLogger(__name__)

_redis_client: Optional[aioredis.Redis] = None


async def connect_redis(url: str) -> Optional[aioredis.Redis]:
    """Connect and ping; returns None and logs when Redis is unreachable"""
    global _redis_client
    client = aioredis.from_url(url, encoding="utf-8", decode_responses=False)
    try:
        await client.ping()
    except (RedisError, OSError) as e:
        logger.error(f"Redis connection failed: {e}")
        await client.aclose()
        _redis_client = None
        return None
    _redis_client = client
    logger.info("Redis connected")
    return client


def get_redis_client() -> Optional[aioredis.Redis]:
    return _redis_client


async def close_redis() -> None:
    global _redis_client
    if _redis_client:
        await _redis_client.aclose()
        _redis_client = None
        logger.info("Redis connection closed")
