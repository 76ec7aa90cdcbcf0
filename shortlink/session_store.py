"""Single-active-session token table kept in a Redis hash.

Data Layout
===========
::
    short-link:login:{username}      (HASH, TTL 30 min → 30 days)
    └─ {token}  →  UserSnapshot JSON

Flow Diagram — login()
======================
::
    ┌──────────────────┐
    │ HGETALL login:u  │
    └────────┬─────────┘
      empty? │
    ┌────────┴─────────┐
    │ YES              │ NO
    ▼                  ▼
┌──────────────┐  ┌──────────────────┐
│ token=uuid4  │  │ EXPIRE 30 days   │
│ MULTI        │  │ return existing  │
│ HSET+EXPIRE  │  │ token            │
└──────────────┘  └──────────────────┘

Key Behaviours
===============
- A second login reuses the live token instead of opening a parallel session.
- A new token and its 30 minute TTL are written in one transaction; a session
  hash never exists without a TTL.
- ``is_valid`` never touches the TTL; only ``login`` refreshes it.
- ``logout`` drops the whole hash, i.e. every token of the subject, not just
  the presented one.
- "Not logged in" is a negative result, never an exception.
"""

import logging
import uuid

from prometheus_client import Counter

from shortlink.enums import LogoutStatus
from shortlink.kvstore import KVStore
from shortlink.schemas import UserSnapshot

__all__ = ["SessionStore"]

logger = logging.getLogger(__name__)

SESSION_LOGINS_TOTAL = Counter(
    "shortlink_session_logins_total",
    "Logins by whether a live token was reused",
    ["reused"],
)


class SessionStore:
    def __init__(
        self,
        store: KVStore,
        key_prefix: str = "short-link:login:",
        initial_ttl_seconds: int = 30 * 60,
        refresh_ttl_seconds: int = 30 * 24 * 3600,
    ) -> None:
        self._store = store
        self._prefix = key_prefix
        self._initial_ttl = initial_ttl_seconds
        self._refresh_ttl = refresh_ttl_seconds

    def _key(self, subject: str) -> str:
        assert isinstance(subject, str) and subject, f"subject must be a non-empty string, got {subject!r}"
        return f"{self._prefix}{subject}"

    async def login(self, subject: str, snapshot: UserSnapshot) -> str:
        key = self._key(subject)
        existing = await self._store.hash_get_all(key)
        if existing:
            token = next(iter(existing))
            await self._store.expire(key, self._refresh_ttl)
            SESSION_LOGINS_TOTAL.labels(reused="true").inc()
            logger.debug(f"Reusing session for {subject}")
            return token

        token = str(uuid.uuid4())
        await self._store.hash_put_with_ttl(key, token, snapshot.model_dump_json(), self._initial_ttl)
        SESSION_LOGINS_TOTAL.labels(reused="false").inc()
        return token

    async def is_valid(self, subject: str, token: str | None) -> bool:
        if not token:
            return False
        return await self._store.hash_get(self._key(subject), token) is not None

    async def get_snapshot(self, subject: str, token: str | None) -> UserSnapshot | None:
        if not token:
            return None
        raw = await self._store.hash_get(self._key(subject), token)
        if raw is None:
            return None
        return UserSnapshot.model_validate_json(raw)

    async def logout(self, subject: str, token: str | None) -> LogoutStatus:
        if not await self.is_valid(subject, token):
            return LogoutStatus.SESSION_NOT_FOUND
        await self._store.delete(self._key(subject))
        logger.info(f"All sessions of {subject} invalidated")
        return LogoutStatus.LOGGED_OUT
