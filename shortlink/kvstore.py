"""Key-value store abstraction shared by every coordination primitive.

All locks, session tables, idempotency markers and bloom bitmaps live in one
remote Redis. This module pins down the small set of operations the layer is
allowed to use and the single error it may surface for I/O failures.

Operation Map
=============
::
    KVStore method        Redis command(s)
    ──────────────────    ─────────────────────────────
    get                   GET
    set                   SET key value EX ttl
    set_if_absent         SET key value EX ttl NX
    delete                DEL
    delete_if_equals      EVAL (GET == value ? DEL)
    hash_get              HGET
    hash_put_if_absent    HSETNX
    hash_put_with_ttl     MULTI HSET + EXPIRE EXEC
    hash_get_all          HGETALL
    expire                EXPIRE
    get_bits / set_bits   GETBIT / SETBIT (pipelined)
    ping                  PING

How to Use
===========
**Step 1 — Wrap a client**::
    store = RedisKVStore(await get_redis())

**Step 2 — Call an atomic primitive**::
    owned = await store.set_if_absent("register:alice", token, ttl_seconds=30)

Key Behaviours
===============
- Each call is a single round trip and is atomic per key on the server.
- Connection errors and timeouts become ``StoreUnavailable``; callers never
  see a store failure as a missing key.
- No multi-key transactions are offered; ``hash_put_with_ttl`` is a MULTI/EXEC
  over a single key.

Classes:
    KVStore:       Protocol implemented by the Redis client and test doubles.
    RedisKVStore:  ``redis.asyncio`` implementation.
"""

from collections.abc import AsyncIterator, Sequence
from contextlib import asynccontextmanager
from typing import Protocol

import redis.asyncio as redis
from prometheus_client import Counter
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from shortlink.errors import StoreUnavailable

__all__ = ["KVStore", "RedisKVStore"]

KV_STORE_OPERATIONS_TOTAL = Counter(
    "shortlink_kv_store_operations_total",
    "Key-value store operations issued by the coordination layer",
    ["operation"],
)
KV_STORE_ERRORS_TOTAL = Counter(
    "shortlink_kv_store_errors_total",
    "Key-value store operations that failed with a connection error or timeout",
    ["operation"],
)

# Deletes only when the caller still owns the key.
_DELETE_IF_EQUALS_SCRIPT = """
if redis.call("GET", KEYS[1]) == ARGV[1] then
    return redis.call("DEL", KEYS[1])
else
    return 0
end
"""


class KVStore(Protocol):
    async def get(self, key: str) -> str | None: ...

    async def set(self, key: str, value: str, ttl_seconds: int) -> None: ...

    async def set_if_absent(self, key: str, value: str, ttl_seconds: int) -> bool: ...

    async def delete(self, key: str) -> bool: ...

    async def delete_if_equals(self, key: str, value: str) -> bool: ...

    async def hash_get(self, key: str, field: str) -> str | None: ...

    async def hash_put_if_absent(self, key: str, field: str, value: str) -> bool: ...

    async def hash_put_with_ttl(self, key: str, field: str, value: str, ttl_seconds: int) -> None: ...

    async def hash_get_all(self, key: str) -> dict[str, str]: ...

    async def expire(self, key: str, ttl_seconds: int) -> bool: ...

    async def get_bits(self, key: str, offsets: Sequence[int]) -> list[bool]: ...

    async def set_bits(self, key: str, offsets: Sequence[int]) -> None: ...

    async def ping(self) -> bool: ...


class RedisKVStore:
    """``KVStore`` backed by a ``redis.asyncio`` client.

    The client must be created with ``decode_responses=True``.
    """

    def __init__(self, client: redis.Redis) -> None:
        self._client = client

    @asynccontextmanager
    async def _call(self, operation: str, key: str) -> AsyncIterator[None]:
        KV_STORE_OPERATIONS_TOTAL.labels(operation=operation).inc()
        try:
            yield
        except (RedisConnectionError, RedisTimeoutError) as exc:
            KV_STORE_ERRORS_TOTAL.labels(operation=operation).inc()
            raise StoreUnavailable(f"Redis {operation} failed for '{key}': {exc}") from exc

    async def get(self, key: str) -> str | None:
        async with self._call("get", key):
            return await self._client.get(key)

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        assert ttl_seconds > 0, f"ttl_seconds must be positive, got {ttl_seconds!r}"
        async with self._call("set", key):
            await self._client.set(key, value, ex=ttl_seconds)

    async def set_if_absent(self, key: str, value: str, ttl_seconds: int) -> bool:
        assert ttl_seconds > 0, f"ttl_seconds must be positive, got {ttl_seconds!r}"
        async with self._call("set_if_absent", key):
            written = await self._client.set(key, value, ex=ttl_seconds, nx=True)
        return bool(written)

    async def delete(self, key: str) -> bool:
        async with self._call("delete", key):
            removed = await self._client.delete(key)
        return removed > 0

    async def delete_if_equals(self, key: str, value: str) -> bool:
        async with self._call("delete_if_equals", key):
            removed = await self._client.eval(_DELETE_IF_EQUALS_SCRIPT, 1, key, value)
        return bool(removed)

    async def hash_get(self, key: str, field: str) -> str | None:
        async with self._call("hash_get", key):
            return await self._client.hget(key, field)

    async def hash_put_if_absent(self, key: str, field: str, value: str) -> bool:
        async with self._call("hash_put_if_absent", key):
            return bool(await self._client.hsetnx(key, field, value))

    async def hash_put_with_ttl(self, key: str, field: str, value: str, ttl_seconds: int) -> None:
        """Write a field and (re)set the hash TTL in one MULTI/EXEC, so the hash never lives without a TTL."""
        assert ttl_seconds > 0, f"ttl_seconds must be positive, got {ttl_seconds!r}"
        async with self._call("hash_put_with_ttl", key):
            pipe = self._client.pipeline(transaction=True)
            pipe.hset(key, field, value)
            pipe.expire(key, ttl_seconds)
            await pipe.execute()

    async def hash_get_all(self, key: str) -> dict[str, str]:
        async with self._call("hash_get_all", key):
            entries = await self._client.hgetall(key)
        return dict(entries or {})

    async def expire(self, key: str, ttl_seconds: int) -> bool:
        assert ttl_seconds > 0, f"ttl_seconds must be positive, got {ttl_seconds!r}"
        async with self._call("expire", key):
            return bool(await self._client.expire(key, ttl_seconds))

    async def get_bits(self, key: str, offsets: Sequence[int]) -> list[bool]:
        async with self._call("get_bits", key):
            pipe = self._client.pipeline(transaction=False)
            for offset in offsets:
                pipe.getbit(key, offset)
            bits = await pipe.execute()
        return [bool(bit) for bit in bits]

    async def set_bits(self, key: str, offsets: Sequence[int]) -> None:
        async with self._call("set_bits", key):
            pipe = self._client.pipeline(transaction=False)
            for offset in offsets:
                pipe.setbit(key, offset, 1)
            await pipe.execute()

    async def ping(self) -> bool:
        async with self._call("ping", "-"):
            return bool(await self._client.ping())
