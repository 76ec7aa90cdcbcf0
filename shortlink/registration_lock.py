"""Named, non-blocking mutual exclusion over the key-value store.

Flow Diagram — hold("register:alice")
=====================================
::
    ┌──────────────────┐
    │ SET register:    │
    │ alice <token>    │
    │ EX ttl NX        │
    └────────┬─────────┘
     written?│
    ┌────────┴─────────┐
    │ NO               │ YES
    ▼                  ▼
┌──────────┐   ┌──────────────────┐
│ LockBusy │   │ critical section │
└──────────┘   └────────┬─────────┘
                        ▼ (finally)
               ┌──────────────────┐
               │ DEL if value ==  │
               │ <token>          │
               └──────────────────┘

Key Behaviours
===============
- ``wait=0`` makes exactly one attempt. A busy lock means another operation
  for the same identity is in flight, so it is reported as a conflict and
  not retried.
- The TTL only exists so a crashed holder cannot block the key forever. It
  must be well above the critical-section duration.
- Release compares the owner token, so a holder whose TTL lapsed cannot
  delete a lock that someone else acquired since.
"""

import asyncio
import logging
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from prometheus_client import Counter

from shortlink.enums import LockOutcome
from shortlink.errors import LockBusy
from shortlink.kvstore import KVStore

__all__ = ["RegistrationLock"]

logger = logging.getLogger(__name__)

REGISTRATION_LOCK_TOTAL = Counter(
    "shortlink_registration_lock_total",
    "Registration lock acquisitions and releases",
    ["outcome"],
)


class RegistrationLock:
    """Named lock; one instance is safely shared by every request of a process.

    Owner tokens are never stored per name alone. ``hold()`` keeps its token
    on its own frame; ``try_acquire`` / ``release`` key it by the calling task,
    so two requests of one process can never release each other's lock.
    """

    def __init__(self, store: KVStore, ttl_seconds: int = 30, retry_delay_seconds: float = 0.05) -> None:
        assert ttl_seconds > 0, f"ttl_seconds must be positive, got {ttl_seconds!r}"
        self._store = store
        self._ttl = ttl_seconds
        self._retry_delay = retry_delay_seconds
        self._tokens: dict[tuple[str, asyncio.Task | None], str] = {}

    async def acquire_token(self, name: str, wait: float = 0) -> str | None:
        """Try to take ``name`` and return the owner token, or ``None`` when busy.

        With ``wait > 0`` keep polling until the deadline.
        """
        assert isinstance(name, str) and name, f"name must be a non-empty string, got {name!r}"
        token = uuid.uuid4().hex
        loop = asyncio.get_running_loop()
        deadline = loop.time() + wait

        while True:
            if await self._store.set_if_absent(name, token, self._ttl):
                REGISTRATION_LOCK_TOTAL.labels(outcome=LockOutcome.ACQUIRED).inc()
                return token
            if loop.time() >= deadline:
                REGISTRATION_LOCK_TOTAL.labels(outcome=LockOutcome.BUSY).inc()
                return None
            await asyncio.sleep(self._retry_delay)

    async def release_token(self, name: str, token: str) -> bool:
        """Delete ``name`` only while it still carries ``token``."""
        if await self._store.delete_if_equals(name, token):
            REGISTRATION_LOCK_TOTAL.labels(outcome=LockOutcome.RELEASED).inc()
            return True
        REGISTRATION_LOCK_TOTAL.labels(outcome=LockOutcome.LOST).inc()
        logger.warning(f"Lock {name} expired before release; critical section outlived the TTL")
        return False

    async def try_acquire(self, name: str, wait: float = 0) -> bool:
        token = await self.acquire_token(name, wait=wait)
        if token is None:
            return False
        self._tokens[(name, asyncio.current_task())] = token
        return True

    async def release(self, name: str) -> None:
        """Release a lock taken by ``try_acquire`` in the current task."""
        token = self._tokens.pop((name, asyncio.current_task()), None)
        if token is None:
            logger.warning(f"Release of lock {name} that the current task does not hold")
            return
        await self.release_token(name, token)

    @asynccontextmanager
    async def hold(self, name: str, wait: float = 0) -> AsyncIterator[None]:
        """Scoped acquisition: raises ``LockBusy`` or releases on exit no matter what."""
        token = await self.acquire_token(name, wait=wait)
        if token is None:
            raise LockBusy(name)
        try:
            yield
        finally:
            await self.release_token(name, token)
