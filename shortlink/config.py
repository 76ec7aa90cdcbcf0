"""Configuration management for the short-link service.

This module provides centralized configuration using Pydantic BaseSettings
with environment variable support and caching.

Flow Diagram — get_settings()
=============================
::
    ┌─────────────┐
    │  Call get_  │
    │  settings() │
    └──────┬──────┘
           ▼
    ┌─────────────┐
    │ lru_cache   │
    │ lookup      │
    └──────┬──────┘
    HIT?   │
    ┌──────┴─────┐
    │ NO         │ YES
    ▼            ▼
┌─────────┐  ┌─────────┐
│ Read env│  │ Return  │
│ + .env  │  │ cached  │
└─────────┘  └─────────┘

How to Use
===========
**Step 1 — Import**::
    from shortlink.config import get_settings

**Step 2 — Read values**::
    settings = get_settings()
    ttl = settings.IDEMPOTENT_TTL_SECONDS

Key Behaviours
===============
- Settings are cached after first access.
- Environment variables override defaults automatically.
- Key prefixes are part of the wire contract with Redis; changing them
  orphans live sessions, locks and idempotency markers.

Classes:
    Settings:  Pydantic model for all configuration values.
"""

__all__ = ["Settings", "get_settings"]

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    APP_NAME: str = "short-link"
    APP_ENV: str = "development"
    DEFAULT_DOMAIN: str = "short.ly"

    # PostgreSQL
    DATABASE_URL: str = "postgresql+asyncpg://shortlink:shortlink@db:5432/shortlink"

    # Redis
    REDIS_URL: str = "redis://redis:6379/0"

    # Short code generation
    SHORT_CODE_LENGTH: int = 6
    CODE_GENERATION_MAX_ATTEMPTS: int = 10

    # Cache-penetration bloom filters
    BLOOM_KEY_PREFIX: str = "short-link:bloom"
    USER_BLOOM_NAME: str = "user-register"
    LINK_BLOOM_NAME: str = "short-link-create"
    BLOOM_EXPECTED_INSERTIONS: int = 10_000_000
    BLOOM_FALSE_PROBABILITY: float = 0.001

    # Registration lock
    REGISTER_LOCK_KEY_PREFIX: str = "register:"
    REGISTER_LOCK_TTL_SECONDS: int = 30
    REGISTER_LOCK_RETRY_DELAY_SECONDS: float = 0.05

    # Login sessions
    LOGIN_KEY_PREFIX: str = "short-link:login:"
    LOGIN_TTL_SECONDS: int = 30 * 60
    LOGIN_REFRESH_TTL_SECONDS: int = 30 * 24 * 3600

    # Message idempotency
    IDEMPOTENT_KEY_PREFIX: str = "short-link:idempotent:"
    IDEMPOTENT_TTL_SECONDS: int = 120

    # Redirect cache
    GOTO_KEY_PREFIX: str = "short-link:goto:"
    GOTO_CACHE_TTL_SECONDS: int = 3600

    # Kafka stats queue
    KAFKA_BOOTSTRAP_SERVERS: str = "kafka:9092"
    KAFKA_STATS_TOPIC: str = "short-link-stats"
    STATS_CONSUMER_GROUP: str = "short-link-stats-group"
    STATS_CONSUMER_NAME: str = "stats-consumer-1"
    STATS_BATCH_SIZE: int = 200
    STATS_POLL_TIMEOUT_MS: int = 1000

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
    )


@lru_cache()
def get_settings() -> Settings:
    return Settings()
