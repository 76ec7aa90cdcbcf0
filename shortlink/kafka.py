"""Kafka producer management for link visit events."""

from aiokafka import AIOKafkaProducer

from shortlink.config import get_settings
from shortlink.schemas import LinkStatsEvent

__all__ = ["close_kafka", "init_kafka", "publish_stats_event"]

settings = get_settings()

_producer: AIOKafkaProducer | None = None


async def init_kafka() -> None:
    global _producer
    if _producer is not None:
        return

    producer = AIOKafkaProducer(
        bootstrap_servers=settings.KAFKA_BOOTSTRAP_SERVERS,
        value_serializer=lambda payload: payload.encode("utf-8"),
    )
    try:
        await producer.start()
        _producer = producer
    except Exception:
        await producer.stop()
        _producer = None


async def close_kafka() -> None:
    global _producer
    if _producer is None:
        return
    await _producer.stop()
    _producer = None


async def publish_stats_event(event: LinkStatsEvent) -> bool:
    """Send ``event`` keyed by its message id; ``False`` when no producer is running."""
    assert event.message_id, "event.message_id must be set"

    if _producer is None:
        return False

    await _producer.send_and_wait(
        settings.KAFKA_STATS_TOPIC,
        event.model_dump_json(),
        key=event.message_id.encode("utf-8"),
    )
    return True
