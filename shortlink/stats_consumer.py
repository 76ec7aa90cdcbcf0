"""Stats queue consumer: applies link visit events exactly once per message id.

Kafka delivers at least once. Every record goes through ``consume_once`` so
that a redelivery, or two consumers racing on a rebalance, never counts a
visit twice. A record whose handler fails is released in Redis and the
partition is rewound to it, so the next poll delivers it again.
"""

import asyncio
import logging
import os
from collections.abc import Callable

import redis.asyncio as redis
from aiokafka import AIOKafkaConsumer
from prometheus_client import start_http_server
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from shortlink.config import get_settings
from shortlink.database import async_session
from shortlink.enums import ConsumeOutcome
from shortlink.idempotency import IdempotencyGuard, consume_once
from shortlink.kvstore import RedisKVStore
from shortlink.repositories import ShortLinkRepository
from shortlink.schemas import LinkStatsEvent

__all__ = ["StatsConsumer", "run"]

settings = get_settings()
logger = logging.getLogger(__name__)


class StatsConsumer:
    def __init__(self, guard: IdempotencyGuard, session_factory: Callable[[], AsyncSession]) -> None:
        self._guard = guard
        self._session_factory = session_factory

    async def handle(self, event: LinkStatsEvent, message_id: str | None = None) -> ConsumeOutcome:
        async def apply() -> None:
            async with self._session_factory() as session:
                updated = await ShortLinkRepository(session).increment_pv(event.full_short_url)
            if not updated:
                logger.warning(f"Visit for unknown short link {event.full_short_url} dropped")

        return await consume_once(self._guard, message_id or event.message_id, apply)

    async def drain(self, consumer: AIOKafkaConsumer) -> int:
        """Process one poll worth of records and commit what succeeded."""
        records = await consumer.getmany(
            timeout_ms=settings.STATS_POLL_TIMEOUT_MS,
            max_records=settings.STATS_BATCH_SIZE,
        )
        handled = 0
        for partition, partition_records in records.items():
            for record in partition_records:
                try:
                    event = LinkStatsEvent.model_validate_json(record.value)
                except ValidationError:
                    logger.warning("invalid stats payload", exc_info=True)
                    continue

                message_id = record.key.decode("utf-8") if record.key else event.message_id
                try:
                    await self.handle(event, message_id)
                except Exception:
                    logger.warning(f"stats record {message_id} failed, rewinding {partition}", exc_info=True)
                    consumer.seek(partition, record.offset)
                    break
                handled += 1

        if records:
            await consumer.commit()
        return handled


async def run() -> None:
    metrics_port = int(os.getenv("STATS_METRICS_PORT", "9200"))
    start_http_server(metrics_port)

    client = redis.from_url(
        settings.REDIS_URL,
        encoding="utf-8",
        decode_responses=True,
    )
    guard = IdempotencyGuard(
        RedisKVStore(client),
        key_prefix=settings.IDEMPOTENT_KEY_PREFIX,
        ttl_seconds=settings.IDEMPOTENT_TTL_SECONDS,
    )
    stats_consumer = StatsConsumer(guard, async_session)

    consumer = AIOKafkaConsumer(
        settings.KAFKA_STATS_TOPIC,
        bootstrap_servers=settings.KAFKA_BOOTSTRAP_SERVERS,
        group_id=settings.STATS_CONSUMER_GROUP,
        client_id=os.getenv("STATS_CONSUMER_NAME", settings.STATS_CONSUMER_NAME),
        enable_auto_commit=False,
        value_deserializer=lambda payload: payload.decode("utf-8"),
    )
    await consumer.start()

    try:
        while True:
            try:
                await stats_consumer.drain(consumer)
            except Exception:
                logger.warning("stats loop iteration failed", exc_info=True)
                await asyncio.sleep(1)
    finally:
        await consumer.stop()
        await client.aclose()


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    asyncio.run(run())
