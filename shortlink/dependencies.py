"""Dependency injection: one coordination toolkit per process, one context per request.

``ServiceManager`` builds the shared Redis-backed primitives once at startup:
the two bloom filters, the registration lock, the session store, the
idempotency guard and the code generator. ``RequestContext`` pairs them with
the per-request database session and a request-scoped logger.
"""

import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Optional

import redis.asyncio as redis
from fastapi import Depends, Header, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

from shortlink.code_generator import CodeGenerator
from shortlink.config import Settings, get_settings
from shortlink.database import get_db
from shortlink.existence_filter import BloomSizing, ExistenceFilter
from shortlink.idempotency import IdempotencyGuard
from shortlink.kvstore import KVStore, RedisKVStore
from shortlink.link_service import ShortLinkService
from shortlink.redis import get_redis
from shortlink.registration_lock import RegistrationLock
from shortlink.schemas import UserSnapshot
from shortlink.session_store import SessionStore
from shortlink.user_service import UserService


# ============================================================================
# SHARED COORDINATION TOOLKIT
# ============================================================================


class ServiceManager:
    """Process-wide owner of the coordination primitives.

    Construct once, call ``initialize()`` at startup, ``cleanup()`` at shutdown.
    Tests pass their own ``KVStore`` to ``initialize``.
    """

    def __init__(self) -> None:
        self._initialized = False
        self._client: redis.Redis | None = None

    @property
    def initialized(self) -> bool:
        return self._initialized

    async def initialize(self, store: KVStore | None = None, settings: Settings | None = None) -> None:
        if self._initialized:
            return

        self.settings = settings or get_settings()
        self.logger = self._setup_logger()
        if store is None:
            self._client = await get_redis()
            store = RedisKVStore(self._client)
        self.store = store

        sizing = BloomSizing.optimal(self.settings.BLOOM_EXPECTED_INSERTIONS, self.settings.BLOOM_FALSE_PROBABILITY)
        self.username_filter = ExistenceFilter(
            store, self.settings.USER_BLOOM_NAME, sizing, key_prefix=self.settings.BLOOM_KEY_PREFIX
        )
        self.link_filter = ExistenceFilter(
            store, self.settings.LINK_BLOOM_NAME, sizing, key_prefix=self.settings.BLOOM_KEY_PREFIX
        )
        await self.username_filter.initialize()
        await self.link_filter.initialize()

        self.registration_lock = RegistrationLock(
            store,
            ttl_seconds=self.settings.REGISTER_LOCK_TTL_SECONDS,
            retry_delay_seconds=self.settings.REGISTER_LOCK_RETRY_DELAY_SECONDS,
        )
        self.sessions = SessionStore(
            store,
            key_prefix=self.settings.LOGIN_KEY_PREFIX,
            initial_ttl_seconds=self.settings.LOGIN_TTL_SECONDS,
            refresh_ttl_seconds=self.settings.LOGIN_REFRESH_TTL_SECONDS,
        )
        self.idempotency = IdempotencyGuard(
            store,
            key_prefix=self.settings.IDEMPOTENT_KEY_PREFIX,
            ttl_seconds=self.settings.IDEMPOTENT_TTL_SECONDS,
        )
        self.code_generator = CodeGenerator(
            self.link_filter,
            code_length=self.settings.SHORT_CODE_LENGTH,
            max_attempts=self.settings.CODE_GENERATION_MAX_ATTEMPTS,
        )
        self._initialized = True
        self.logger.info("Coordination toolkit initialized")

    def _setup_logger(self) -> logging.Logger:
        """Setup the package logger once; module loggers propagate into it."""
        logger = logging.getLogger("shortlink")
        if not logger.handlers:
            handler = logging.StreamHandler()
            formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
            handler.setFormatter(formatter)
            logger.addHandler(handler)
            logger.setLevel(logging.INFO)
        return logger

    async def cleanup(self) -> None:
        # The Redis client itself is closed by shortlink.redis.close_redis().
        self._client = None
        self._initialized = False


_service_manager = ServiceManager()


# ============================================================================
# REQUEST CONTEXT
# ============================================================================


@dataclass
class RequestContext:
    """Per-request view of the shared toolkit.

    Attributes:
        database: Async database session (the only per-request resource)
        service_manager: Shared coordination toolkit
        request_id: Unique identifier for this request
        trace_id: Correlation ID taken from ``x-trace-id``
        client_ip: Client IP address
        user_agent: Client user agent string
        start_time: Request start timestamp
    """

    database: AsyncSession
    service_manager: ServiceManager
    request_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    trace_id: Optional[str] = None
    client_ip: Optional[str] = None
    user_agent: Optional[str] = None
    start_time: float = field(default_factory=time.time)

    @property
    def settings(self) -> Settings:
        return self.service_manager.settings

    @property
    def store(self) -> KVStore:
        return self.service_manager.store

    @property
    def logger(self) -> logging.LoggerAdapter:
        return logging.LoggerAdapter(
            self.service_manager.logger,
            {
                "request_id": self.request_id,
                "trace_id": self.trace_id or self.request_id,
                "client_ip": self.client_ip,
            },
        )

    def get_duration(self) -> float:
        """Get request duration in milliseconds."""
        return (time.time() - self.start_time) * 1000


# ============================================================================
# DEPENDENCY FUNCTIONS
# ============================================================================


async def get_service_manager() -> ServiceManager:
    if not _service_manager.initialized:
        await _service_manager.initialize()
    return _service_manager


async def get_request_context(
    request: Request,
    db: AsyncSession = Depends(get_db),
    manager: ServiceManager = Depends(get_service_manager),
) -> RequestContext:
    return RequestContext(
        database=db,
        service_manager=manager,
        trace_id=request.headers.get("x-trace-id"),
        client_ip=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )


def get_user_service(ctx: RequestContext = Depends(get_request_context)) -> UserService:
    manager = ctx.service_manager
    return UserService(
        ctx.database,
        manager.username_filter,
        manager.registration_lock,
        manager.sessions,
        ctx.logger,
        lock_key_prefix=ctx.settings.REGISTER_LOCK_KEY_PREFIX,
    )


def get_link_service(ctx: RequestContext = Depends(get_request_context)) -> ShortLinkService:
    manager = ctx.service_manager
    return ShortLinkService(
        ctx.database,
        manager.store,
        manager.link_filter,
        manager.code_generator,
        ctx.logger,
        default_domain=ctx.settings.DEFAULT_DOMAIN,
        goto_key_prefix=ctx.settings.GOTO_KEY_PREFIX,
        goto_ttl_seconds=ctx.settings.GOTO_CACHE_TTL_SECONDS,
    )


async def get_current_user(
    username: str | None = Header(default=None),
    token: str | None = Header(default=None),
    manager: ServiceManager = Depends(get_service_manager),
) -> UserSnapshot:
    """Resolve the ``username`` / ``token`` headers to the logged-in user."""
    snapshot = await manager.sessions.get_snapshot(username, token) if username else None
    if snapshot is None:
        raise HTTPException(status_code=401, detail="User not logged in")
    return snapshot
