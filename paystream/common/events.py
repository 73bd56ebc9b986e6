"""Kafka envelope + producer/consumer helpers.

This module standardizes event structure, metadata propagation, and the
resilient consumer loop used by the processor.
"""

import asyncio
import json
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from aiokafka import AIOKafkaConsumer, AIOKafkaProducer
from pydantic import BaseModel, Field

from paystream.common.config import settings
from paystream.common.logging import bind_context, logger
from paystream.common.metrics import event_queue_delay_seconds


class EventEnvelope(BaseModel):
    """Canonical event shape sent across Kafka topics."""

    event_id: str = Field(default_factory=lambda: str(uuid4()))
    event_type: str
    aggregate_id: str
    occurred_at: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    trace_id: str
    payload: dict[str, Any]

    def encode(self) -> bytes:
        return json.dumps(self.model_dump()).encode("utf-8")


class KafkaBus:
    """Lazy Kafka producer wrapper with a bounded wait per publish."""

    def __init__(
        self,
        bootstrap_servers: str = settings.kafka_bootstrap_servers,
        timeout_seconds: float = settings.publish_timeout_seconds,
    ) -> None:
        self.bootstrap_servers = bootstrap_servers
        self.timeout_seconds = timeout_seconds
        self._producer: AIOKafkaProducer | None = None
        self._start_lock = asyncio.Lock()

    async def producer(self) -> AIOKafkaProducer:
        """Start the shared producer on first use; concurrent callers wait for it."""

        async with self._start_lock:
            if self._producer is None:
                producer = AIOKafkaProducer(
                    bootstrap_servers=self.bootstrap_servers,
                    acks="all",
                    request_timeout_ms=int(self.timeout_seconds * 1000),
                )
                try:
                    await producer.start()
                except BaseException:
                    # Failed or cancelled start still holds connections.
                    await producer.stop()
                    raise
                self._producer = producer
        return self._producer

    async def _send(self, topic: str, event: EventEnvelope) -> None:
        producer = await self.producer()
        await producer.send_and_wait(topic, event.encode(), key=event.aggregate_id.encode("utf-8"))

    async def publish(self, topic: str, event: EventEnvelope) -> None:
        """Send and wait for broker ack; a timeout raises like any other fault."""

        await asyncio.wait_for(self._send(topic, event), timeout=self.timeout_seconds)

    async def close(self) -> None:
        if self._producer:
            await self._producer.stop()
            self._producer = None


async def make_consumer(topic: str, group_id: str) -> AIOKafkaConsumer:
    """Create a configured Kafka consumer for one topic/group."""

    consumer = AIOKafkaConsumer(
        topic,
        bootstrap_servers=settings.kafka_bootstrap_servers,
        group_id=group_id,
        auto_offset_reset="earliest",
        enable_auto_commit=False,
    )
    await consumer.start()
    return consumer


def decode_envelope(raw: bytes) -> EventEnvelope:
    return EventEnvelope(**json.loads(raw.decode("utf-8")))


def observe_queue_delay(event: EventEnvelope, topic: str) -> None:
    occurred_at = datetime.fromisoformat(event.occurred_at.replace("Z", "+00:00"))
    if occurred_at.tzinfo is None:
        occurred_at = occurred_at.replace(tzinfo=timezone.utc)
    delay_seconds = max(0.0, (datetime.now(timezone.utc) - occurred_at).total_seconds())
    event_queue_delay_seconds.labels(service=settings.service_name, topic=topic).observe(delay_seconds)


async def dispatch(event: EventEnvelope, topic: str, group_id: str, handler) -> None:
    """Run `handler` with the event's correlation ids bound to the log context."""

    with bind_context(trace_id=event.trace_id, event_id=event.event_id, payment_id=event.aggregate_id):
        logger.info(
            "event_received topic=%s group=%s event_type=%s aggregate_id=%s",
            topic,
            group_id,
            event.event_type,
            event.aggregate_id,
        )
        await handler(event)


async def consume_forever(
    topic: str,
    group_id: str,
    handler,
) -> None:
    """Continuously consume one topic and pass parsed envelopes to `handler`.

    Errors in individual messages are logged and processing continues; commit is
    done in batches to keep throughput reasonable.
    """

    while True:
        consumer = None
        try:
            consumer = await make_consumer(topic, group_id)
            while True:
                results = await consumer.getmany(timeout_ms=500, max_records=50)
                for _, messages in results.items():
                    for msg in messages:
                        try:
                            event = decode_envelope(msg.value)
                            observe_queue_delay(event, topic)
                            await dispatch(event, topic, group_id, handler)
                        except Exception as exc:
                            logger.error(
                                "handler_error topic=%s group=%s offset=%s error=%s",
                                topic,
                                group_id,
                                msg.offset,
                                exc,
                            )
                await consumer.commit()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error("consumer_loop_error topic=%s group=%s error=%s", topic, group_id, exc)
            await asyncio.sleep(2)
        finally:
            if consumer is not None:
                await consumer.stop()
            await asyncio.sleep(0)
