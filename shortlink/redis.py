"""Redis client lifecycle for the short-link service.

One shared ``redis.asyncio`` client per process, created lazily and closed on
shutdown. Every coordination primitive talks to Redis through
``shortlink.kvstore.RedisKVStore`` wrapped around this client.

How to Use
===========
**Step 1 — Get the client**::
    client = await get_redis()

**Step 2 — Cleanup on shutdown**::
    await close_redis()

Key Behaviours
===============
- The client is created on first access and reused afterwards.
- ``decode_responses=True``: every value comes back as ``str``.
"""

import redis.asyncio as redis

from shortlink.config import get_settings

__all__ = ["close_redis", "get_redis"]

settings = get_settings()

redis_client: redis.Redis | None = None


async def get_redis() -> redis.Redis:
    global redis_client
    if redis_client is None:
        redis_client = redis.from_url(
            settings.REDIS_URL,
            encoding="utf-8",
            decode_responses=True,
        )
    return redis_client


async def close_redis() -> None:
    global redis_client
    if redis_client is not None:
        await redis_client.aclose()
        redis_client = None
