"""Link-plane operations: short link creation, resolution and visit events.

Flow Diagram — create_short_link()
==================================
::
    ┌──────────────────┐
    │ CodeGenerator.   │── exhausted ──► GenerationExhausted
    │ generate(url,    │
    │          domain) │
    └────────┬─────────┘
             ▼
    ┌──────────────────┐
    │ INSERT t_link    │
    └────────┬─────────┘
    UNIQUE   │ VIOLATION?
    ┌────────┴─────────┐
    │ NO               │ YES
    │                  ▼
    │         ┌──────────────────┐
    │         │ SELECT by full   │── found ──► ConflictDetected
    │         │ short url        │── missing ─► re-raise store error
    │         └──────────────────┘
    ▼
    ┌──────────────────┐
    │ filter.add(      │
    │ domain/code)     │
    └──────────────────┘

Flow Diagram — resolve()
========================
::
    ┌──────────────────┐
    │ GET goto:{url}   │── hit ──► origin url
    └────────┬─────────┘
        miss ▼
    ┌──────────────────┐
    │ filter.might_    │── absent ──► None (database never touched)
    │ contain(url)     │
    └────────┬─────────┘
        maybe▼
    ┌──────────────────┐
    │ SELECT t_link    │── none ──► None
    └────────┬─────────┘
             ▼
    ┌──────────────────┐
    │ SET goto:{url}   │
    │ EX ttl           │
    └──────────────────┘

Key Behaviours
===============
- A duplicate-key error whose row really exists means the filter
  under-reported; it is logged as an anomaly and surfaced, never retried.
- Visit events are best effort: a broker outage never fails a redirect.
"""

import logging
import time

from prometheus_client import Counter, Histogram
from sqlalchemy.ext.asyncio import AsyncSession

from shortlink.code_generator import CodeGenerator
from shortlink.enums import InsertStatus, RequestStatus
from shortlink.errors import ConflictDetected, GenerationExhausted
from shortlink.existence_filter import ExistenceFilter
from shortlink.kafka import publish_stats_event
from shortlink.kvstore import KVStore
from shortlink.models import ShortLink
from shortlink.repositories import ShortLinkRepository
from shortlink.schemas import LinkStatsEvent, ShortLinkCreate

__all__ = ["ShortLinkService"]

LINK_CREATION_REQUESTS_TOTAL = Counter(
    "shortlink_creation_requests_total",
    "Short link creation requests",
    ["status"],
)
LINK_CREATION_DURATION = Histogram(
    "shortlink_creation_duration_seconds",
    "Time taken to create short links",
    buckets=[0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5],
)
LINK_RESOLVE_REQUESTS_TOTAL = Counter(
    "shortlink_resolve_requests_total",
    "Short link resolutions by where the answer came from",
    ["source"],
)
FILTER_UNDER_REPORTED_TOTAL = Counter(
    "shortlink_filter_under_reported_total",
    "Inserts that hit a duplicate key the existence filter did not know about",
)


class ShortLinkService:
    def __init__(
        self,
        db: AsyncSession,
        store: KVStore,
        link_filter: ExistenceFilter,
        generator: CodeGenerator,
        logger: logging.Logger | logging.LoggerAdapter,
        default_domain: str,
        goto_key_prefix: str = "short-link:goto:",
        goto_ttl_seconds: int = 3600,
    ) -> None:
        self._links = ShortLinkRepository(db)
        self._store = store
        self._filter = link_filter
        self._generator = generator
        self._logger = logger
        self._default_domain = default_domain
        self._goto_prefix = goto_key_prefix
        self._goto_ttl = goto_ttl_seconds

    async def create_short_link(self, request: ShortLinkCreate) -> ShortLink:
        """Create a short link under ``request.domain`` (or the default domain).

        Raises:
            GenerationExhausted: no free code within the attempt bound.
            ConflictDetected: the generated code already exists in the database.
            IntegrityError: a unique violation not caused by the short URL.
        """
        start_time = time.perf_counter()
        domain = request.domain or self._default_domain
        try:
            short_uri = await self._generator.generate(request.origin_url, domain)
            full_short_url = f"{domain}/{short_uri}"
            link = ShortLink(
                domain=domain,
                short_uri=short_uri,
                full_short_url=full_short_url,
                origin_url=request.origin_url,
                gid=request.gid,
                describe=request.describe,
                enable_status=0,
            )

            result = await self._links.insert(link)
            if result.status is InsertStatus.UNIQUE_VIOLATION:
                await self._reconcile_duplicate(full_short_url, result.error)

            await self._filter.add(full_short_url)
        except (ConflictDetected, GenerationExhausted):
            LINK_CREATION_REQUESTS_TOTAL.labels(status=RequestStatus.CONFLICT).inc()
            raise
        except Exception:
            LINK_CREATION_REQUESTS_TOTAL.labels(status=RequestStatus.ERROR).inc()
            raise
        finally:
            LINK_CREATION_DURATION.observe(time.perf_counter() - start_time)

        LINK_CREATION_REQUESTS_TOTAL.labels(status=RequestStatus.SUCCESS).inc()
        self._logger.info(f"Short link created: {full_short_url} -> {request.origin_url}")
        return link

    async def _reconcile_duplicate(self, full_short_url: str, error: Exception | None) -> None:
        existing = await self._links.get_by_full_short_url(full_short_url)
        if existing is not None:
            FILTER_UNDER_REPORTED_TOTAL.inc()
            self._logger.warning(f"Short link {full_short_url} inserted twice; existence filter missed it")
            await self._filter.add(full_short_url)
            raise ConflictDetected(full_short_url, "Short link already exists, please retry later")
        assert error is not None, "unique violation must carry the store error"
        raise error

    async def resolve(self, full_short_url: str) -> str | None:
        """Return the origin URL for ``full_short_url`` or ``None``."""
        goto_key = f"{self._goto_prefix}{full_short_url}"
        cached = await self._store.get(goto_key)
        if cached:
            LINK_RESOLVE_REQUESTS_TOTAL.labels(source="cache").inc()
            return cached

        if not await self._filter.might_contain(full_short_url):
            LINK_RESOLVE_REQUESTS_TOTAL.labels(source="filter").inc()
            return None

        link = await self._links.get_by_full_short_url(full_short_url)
        if link is None or link.enable_status != 0:
            LINK_RESOLVE_REQUESTS_TOTAL.labels(source="database_miss").inc()
            return None

        await self._store.set(goto_key, link.origin_url, self._goto_ttl)
        LINK_RESOLVE_REQUESTS_TOTAL.labels(source="database").inc()
        return link.origin_url

    async def record_visit(self, full_short_url: str, user_agent: str | None, remote_addr: str | None) -> bool:
        event = LinkStatsEvent(full_short_url=full_short_url, user_agent=user_agent, remote_addr=remote_addr)
        try:
            published = await publish_stats_event(event)
        except Exception as exc:
            self._logger.error(f"Stats publish failed for {full_short_url}: {exc}")
            return False
        if not published:
            self._logger.debug(f"Stats producer not running, visit to {full_short_url} not recorded")
        return published
