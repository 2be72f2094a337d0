"""
shared/utils/rate_limit.py
Keyed counters with a TTL window, used by the request-rate limiter.

RedisCounter is shared across instances; InMemoryCounter is process-local
and only correct for single-instance deployments.
"""

import asyncio
import time
from typing import Protocol

import redis.asyncio as aioredis


class KeyedCounter(Protocol):
    async def hit(self, key: str, window_seconds: int) -> int:
        """Increment key and return the count inside the current window."""
        ...


class RedisCounter:
    """Fixed window counter: INCR then EXPIRE on the first hit."""

    def __init__(self, client: aioredis.Redis, prefix: str = "rate_limit"):
        self.client = client
        self.prefix = prefix

    async def hit(self, key: str, window_seconds: int) -> int:
        full_key = f"{self.prefix}:{key}"
        pipe = self.client.pipeline()
        pipe.incr(full_key)
        pipe.expire(full_key, window_seconds, nx=True)
        results = await pipe.execute()
        return int(results[0])


class InMemoryCounter:
    def __init__(self, clock=time.monotonic):
        self._clock = clock
        self._windows: dict[str, tuple[float, int]] = {}
        self._lock = asyncio.Lock()

    async def hit(self, key: str, window_seconds: int) -> int:
        async with self._lock:
            now = self._clock()
            started, count = self._windows.get(key, (now, 0))
            if now - started >= window_seconds:
                started, count = now, 0
            count += 1
            self._windows[key] = (started, count)
            self._evict(now, window_seconds)
            return count

    def _evict(self, now: float, window_seconds: int) -> None:
        if len(self._windows) < 10_000:
            return
        expired = [k for k, (started, _) in self._windows.items() if now - started >= window_seconds]
        for k in expired:
            del self._windows[k]

    def reset(self) -> None:
        self._windows.clear()
