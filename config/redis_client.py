"""
config/redis_client.py
Async Redis client backing the shared rate-limit counters.
"""

import logging
from typing import Optional
import redis.asyncio as aioredis

from config.settings import settings

logger = logging.getLogger(__name__)


# ── Global client (initialized on startup) ───────────────────
redis_client: Optional[aioredis.Redis] = None


async def init_redis() -> Optional[aioredis.Redis]:
    """
    Initialize the Redis connection pool.
    Returns None when Redis is unreachable; callers then fall back
    to process-local counters.
    """
    global redis_client
    client = aioredis.from_url(
        settings.REDIS_URL,
        encoding="utf-8",
        decode_responses=True,
        max_connections=50,
    )
    try:
        await client.ping()
    except aioredis.RedisError as e:
        logger.warning(f"Redis unavailable at startup, using in-memory counters: {e}")
        await client.aclose()
        return None
    redis_client = client
    return redis_client


async def close_redis() -> None:
    """Close Redis connection pool."""
    global redis_client
    if redis_client:
        await redis_client.aclose()
        redis_client = None


def get_redis() -> Optional[aioredis.Redis]:
    """FastAPI dependency to get the Redis client (None in single-instance mode)."""
    return redis_client
