"""Stats consumer exactly-once application and poll handling tests."""

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from sqlalchemy import select

from shortlink.enums import ConsumeOutcome
from shortlink.idempotency import IdempotencyGuard
from shortlink.models import ShortLink
from shortlink.schemas import LinkStatsEvent
from shortlink.stats_consumer import StatsConsumer

FULL_SHORT_URL = "short.ly/abc123"


@pytest_asyncio.fixture
async def stored_link(session_factory) -> None:
    async with session_factory() as session:
        session.add(
            ShortLink(
                domain="short.ly",
                short_uri="abc123",
                full_short_url=FULL_SHORT_URL,
                origin_url="https://example.com",
            )
        )
        await session.commit()


@pytest.fixture
def stats_consumer(kv_store, session_factory) -> StatsConsumer:
    return StatsConsumer(IdempotencyGuard(kv_store), session_factory)


async def total_pv(session_factory) -> int:
    async with session_factory() as session:
        result = await session.execute(select(ShortLink.total_pv).where(ShortLink.full_short_url == FULL_SHORT_URL))
        return result.scalar_one()


def make_record(event: LinkStatsEvent, offset: int, key: bytes | None = None) -> SimpleNamespace:
    return SimpleNamespace(value=event.model_dump_json(), key=key, offset=offset)


def make_kafka_consumer(records: dict) -> MagicMock:
    consumer = MagicMock()
    consumer.getmany = AsyncMock(return_value=records)
    consumer.commit = AsyncMock()
    return consumer


@pytest.mark.asyncio
async def test_visit_is_counted_once_across_redeliveries(stats_consumer, session_factory, stored_link):
    event = LinkStatsEvent(full_short_url=FULL_SHORT_URL)

    assert await stats_consumer.handle(event) is ConsumeOutcome.PROCESSED
    assert await stats_consumer.handle(event) is ConsumeOutcome.SKIPPED_DONE

    assert await total_pv(session_factory) == 1


@pytest.mark.asyncio
async def test_distinct_messages_are_all_counted(stats_consumer, session_factory, stored_link):
    for _ in range(3):
        await stats_consumer.handle(LinkStatsEvent(full_short_url=FULL_SHORT_URL))

    assert await total_pv(session_factory) == 3


@pytest.mark.asyncio
async def test_visit_for_unknown_link_is_marked_done(stats_consumer, kv_store):
    event = LinkStatsEvent(full_short_url="short.ly/missing")

    assert await stats_consumer.handle(event) is ConsumeOutcome.PROCESSED
    assert await kv_store.get(f"short-link:idempotent:{event.message_id}") == "1"


@pytest.mark.asyncio
async def test_drain_uses_record_key_as_message_id(stats_consumer, session_factory, stored_link):
    event = LinkStatsEvent(full_short_url=FULL_SHORT_URL)
    partition = ("short-link-stats", 0)
    records = {
        partition: [
            make_record(event, 0, key=b"visit-1"),
            make_record(LinkStatsEvent(full_short_url=FULL_SHORT_URL), 1, key=b"visit-1"),
        ]
    }
    consumer = make_kafka_consumer(records)

    handled = await stats_consumer.drain(consumer)

    assert handled == 2
    assert await total_pv(session_factory) == 1
    consumer.commit.assert_awaited_once()


@pytest.mark.asyncio
async def test_drain_skips_malformed_payloads(stats_consumer, session_factory, stored_link):
    partition = ("short-link-stats", 0)
    records = {
        partition: [
            SimpleNamespace(value="not json", key=None, offset=0),
            make_record(LinkStatsEvent(full_short_url=FULL_SHORT_URL), 1),
        ]
    }
    consumer = make_kafka_consumer(records)

    assert await stats_consumer.drain(consumer) == 1
    assert await total_pv(session_factory) == 1


@pytest.mark.asyncio
async def test_drain_rewinds_partition_on_failure(stats_consumer):
    partition = ("short-link-stats", 0)
    records = {
        partition: [
            make_record(LinkStatsEvent(full_short_url=FULL_SHORT_URL), 10),
            make_record(LinkStatsEvent(full_short_url=FULL_SHORT_URL), 11),
            make_record(LinkStatsEvent(full_short_url=FULL_SHORT_URL), 12),
        ]
    }
    consumer = make_kafka_consumer(records)
    stats_consumer.handle = AsyncMock(side_effect=[ConsumeOutcome.PROCESSED, RuntimeError("database down")])

    handled = await stats_consumer.drain(consumer)

    assert handled == 1
    assert stats_consumer.handle.await_count == 2
    consumer.seek.assert_called_once_with(partition, 11)
    consumer.commit.assert_awaited_once()


@pytest.mark.asyncio
async def test_drain_with_no_records_does_not_commit(stats_consumer):
    consumer = make_kafka_consumer({})

    assert await stats_consumer.drain(consumer) == 0
    consumer.commit.assert_not_awaited()
