"""Shared pytest fixtures: in-memory key-value store, SQLite database and API client."""

import asyncio
from collections.abc import AsyncGenerator, Sequence
from typing import Any

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from shortlink.config import Settings
from shortlink.database import Base, get_db
from shortlink.dependencies import ServiceManager, get_service_manager
from shortlink.errors import StoreUnavailable
from shortlink.main import app


class FakeClock:
    def __init__(self, start: float = 1_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class InMemoryKVStore:
    """Single-process ``KVStore`` with Redis TTL semantics.

    Every operation yields to the event loop once before its atomic part, so
    tasks started with ``asyncio.gather`` genuinely interleave.
    """

    def __init__(self, clock: FakeClock) -> None:
        self._clock = clock
        self._data: dict[str, Any] = {}
        self._expires_at: dict[str, float] = {}
        self.calls: list[str] = []

    def _alive(self, key: str) -> bool:
        deadline = self._expires_at.get(key)
        if deadline is not None and deadline <= self._clock():
            self._data.pop(key, None)
            self._expires_at.pop(key, None)
        return key in self._data

    def ttl(self, key: str) -> float | None:
        if not self._alive(key):
            return None
        deadline = self._expires_at.get(key)
        return None if deadline is None else deadline - self._clock()

    async def _op(self, name: str) -> None:
        self.calls.append(name)
        await asyncio.sleep(0)

    async def get(self, key: str) -> str | None:
        await self._op("get")
        return self._data[key] if self._alive(key) else None

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        await self._op("set")
        self._data[key] = value
        self._expires_at[key] = self._clock() + ttl_seconds

    async def set_if_absent(self, key: str, value: str, ttl_seconds: int) -> bool:
        await self._op("set_if_absent")
        if self._alive(key):
            return False
        self._data[key] = value
        self._expires_at[key] = self._clock() + ttl_seconds
        return True

    async def delete(self, key: str) -> bool:
        await self._op("delete")
        existed = self._alive(key)
        self._data.pop(key, None)
        self._expires_at.pop(key, None)
        return existed

    async def delete_if_equals(self, key: str, value: str) -> bool:
        await self._op("delete_if_equals")
        if self._alive(key) and self._data[key] == value:
            del self._data[key]
            self._expires_at.pop(key, None)
            return True
        return False

    async def hash_get(self, key: str, field: str) -> str | None:
        await self._op("hash_get")
        return self._data[key].get(field) if self._alive(key) else None

    async def hash_put_if_absent(self, key: str, field: str, value: str) -> bool:
        await self._op("hash_put_if_absent")
        if not self._alive(key):
            self._data[key] = {}
        if field in self._data[key]:
            return False
        self._data[key][field] = value
        return True

    async def hash_put_with_ttl(self, key: str, field: str, value: str, ttl_seconds: int) -> None:
        await self._op("hash_put_with_ttl")
        if not self._alive(key):
            self._data[key] = {}
        self._data[key][field] = value
        self._expires_at[key] = self._clock() + ttl_seconds

    async def hash_get_all(self, key: str) -> dict[str, str]:
        await self._op("hash_get_all")
        return dict(self._data[key]) if self._alive(key) else {}

    async def expire(self, key: str, ttl_seconds: int) -> bool:
        await self._op("expire")
        if not self._alive(key):
            return False
        self._expires_at[key] = self._clock() + ttl_seconds
        return True

    async def get_bits(self, key: str, offsets: Sequence[int]) -> list[bool]:
        await self._op("get_bits")
        bits = self._data[key] if self._alive(key) else set()
        return [offset in bits for offset in offsets]

    async def set_bits(self, key: str, offsets: Sequence[int]) -> None:
        await self._op("set_bits")
        if not self._alive(key):
            self._data[key] = set()
        self._data[key].update(offsets)

    async def ping(self) -> bool:
        await self._op("ping")
        return True


class UnavailableKVStore(InMemoryKVStore):
    """Every operation fails the way ``RedisKVStore`` does when Redis is down."""

    async def _op(self, name: str) -> None:
        raise StoreUnavailable(f"Redis {name} failed: connection refused")


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def kv_store(clock: FakeClock) -> InMemoryKVStore:
    return InMemoryKVStore(clock)


@pytest.fixture
def unavailable_store(clock: FakeClock) -> UnavailableKVStore:
    return UnavailableKVStore(clock)


@pytest.fixture
def settings() -> Settings:
    return Settings(
        BLOOM_EXPECTED_INSERTIONS=10_000,
        BLOOM_FALSE_PROBABILITY=0.001,
        DEFAULT_DOMAIN="short.ly",
    )


@pytest_asyncio.fixture
async def session_factory() -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(session_factory: async_sessionmaker[AsyncSession]) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def service_manager(kv_store: InMemoryKVStore, settings: Settings) -> ServiceManager:
    manager = ServiceManager()
    await manager.initialize(store=kv_store, settings=settings)
    return manager


@pytest_asyncio.fixture
async def client(
    db_session: AsyncSession,
    service_manager: ServiceManager,
) -> AsyncGenerator[AsyncClient, None]:
    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        yield db_session

    async def override_get_service_manager() -> ServiceManager:
        return service_manager

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_service_manager] = override_get_service_manager

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://short.ly") as ac:
        yield ac

    app.dependency_overrides.clear()
