"""Idempotent message consumption built from SET NX and TTLs.

State Machine
=============
::
                 try_acquire (SET "0" NX EX 120)
    ┌────────┐ ─────────────────────────────────► ┌─────────────┐
    │ ABSENT │                                    │ IN_PROGRESS │
    └────────┘ ◄──────── release (DEL) ────────── └──────┬──────┘
        ▲                                                │ mark_done
        │           TTL expiry                           ▼ (SET "1" EX 120)
        └─────────────────────────────────────────  ┌─────────────┐
                                                    │    DONE     │
                                                    └─────────────┘

How to Use
===========
**Step 1 — Wrap the side effect**::
    outcome = await consume_once(guard, message_id, lambda: save_stats(event))

**Step 2 — Or drive the protocol by hand**::
    if await guard.try_acquire(message_id):
        ...  # already claimed; consult is_done() to tell done from racing
    try:
        await handle(event)
    except Exception:
        await guard.release(message_id)
        raise
    await guard.mark_done(message_id)

Key Behaviours
===============
- ``try_acquire`` returns ``False`` when the caller now owns the message and
  ``True`` when the key was already present in either state.
- A worker that dies while IN_PROGRESS blocks redelivery for at most the TTL.
- DONE markers expire too; a redelivery long after completion is treated as
  a new message.
"""

import logging
from collections.abc import Awaitable, Callable

from prometheus_client import Counter

from shortlink.enums import ConsumeOutcome, IdempotencyState
from shortlink.kvstore import KVStore

__all__ = ["IdempotencyGuard", "consume_once"]

logger = logging.getLogger(__name__)

MESSAGES_CONSUMED_TOTAL = Counter(
    "shortlink_messages_consumed_total",
    "Message deliveries by consumption outcome",
    ["outcome"],
)
MESSAGES_RELEASED_TOTAL = Counter(
    "shortlink_messages_released_total",
    "Messages released for retry after a handler failure",
)


class IdempotencyGuard:
    def __init__(self, store: KVStore, key_prefix: str = "short-link:idempotent:", ttl_seconds: int = 120) -> None:
        assert ttl_seconds > 0, f"ttl_seconds must be positive, got {ttl_seconds!r}"
        self._store = store
        self._prefix = key_prefix
        self._ttl = ttl_seconds

    def _key(self, message_id: str) -> str:
        assert isinstance(message_id, str) and message_id, f"message_id must be a non-empty string, got {message_id!r}"
        return f"{self._prefix}{message_id}"

    async def try_acquire(self, message_id: str) -> bool:
        """Claim the message. ``False`` means "proceed, you own it"."""
        claimed = await self._store.set_if_absent(self._key(message_id), IdempotencyState.IN_PROGRESS.value, self._ttl)
        return not claimed

    async def state(self, message_id: str) -> IdempotencyState:
        return IdempotencyState.from_stored(await self._store.get(self._key(message_id)))

    async def is_done(self, message_id: str) -> bool:
        return await self.state(message_id) is IdempotencyState.DONE

    async def mark_done(self, message_id: str) -> None:
        await self._store.set(self._key(message_id), IdempotencyState.DONE.value, self._ttl)

    async def release(self, message_id: str) -> None:
        await self._store.delete(self._key(message_id))


async def consume_once(
    guard: IdempotencyGuard,
    message_id: str,
    handler: Callable[[], Awaitable[None]],
) -> ConsumeOutcome:
    """Run ``handler`` at most once per ``message_id`` across all workers.

    Handler errors release the claim and propagate so the broker can redeliver.
    """
    if await guard.try_acquire(message_id):
        if await guard.is_done(message_id):
            outcome = ConsumeOutcome.SKIPPED_DONE
            logger.info(f"Message {message_id} already processed, skipping")
        else:
            outcome = ConsumeOutcome.SKIPPED_IN_PROGRESS
            logger.warning(f"Message {message_id} is being processed by another delivery, skipping")
        MESSAGES_CONSUMED_TOTAL.labels(outcome=outcome).inc()
        return outcome

    try:
        await handler()
    except Exception:
        await guard.release(message_id)
        MESSAGES_RELEASED_TOTAL.inc()
        logger.error(f"Message {message_id} failed, released for retry", exc_info=True)
        raise

    await guard.mark_done(message_id)
    MESSAGES_CONSUMED_TOTAL.labels(outcome=ConsumeOutcome.PROCESSED).inc()
    return ConsumeOutcome.PROCESSED
