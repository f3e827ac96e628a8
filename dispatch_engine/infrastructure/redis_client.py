"""
Shared Redis client.

Only the background workers talk to Redis (for their cross-process lock),
so the client is created on first use and closed on application shutdown.
"""

from typing import Optional

import redis.asyncio as aioredis

from dispatch_engine.config import settings

_client: Optional[aioredis.Redis] = None


async def get_redis() -> aioredis.Redis:
    global _client
    if _client is None:
        _client = aioredis.from_url(settings.redis_url, decode_responses=True)
    return _client


async def close_redis() -> None:
    global _client
    if _client is not None:
        await _client.aclose()
        _client = None
