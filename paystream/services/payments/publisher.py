"""Payment event fan-out: durable Kafka work queue + Redis broadcast channel."""

import json
from typing import Protocol

import redis

from paystream.common.config import settings
from paystream.common.errors import PublishError
from paystream.common.events import EventEnvelope, KafkaBus
from paystream.common.logging import logger
from paystream.common.metrics import publish_failures_total
from paystream.services.payments.schemas import PaymentEvent


class EventPublisher(Protocol):
    async def publish(self, event: PaymentEvent, trace_id: str) -> None: ...


def envelope_for(event: PaymentEvent, trace_id: str) -> EventEnvelope:
    return EventEnvelope(
        event_type=f"payments.{event.status.lower()}",
        aggregate_id=event.payment_id,
        trace_id=trace_id,
        payload=event.model_dump(mode="json", by_alias=True),
    )


class PaymentEventPublisher:
    """Publishes each event to the work queue and the broadcast channel.

    Both channels are always attempted. If either fails, `PublishError` is
    raised after the second attempt, naming every failed channel.
    """

    def __init__(
        self,
        kafka: KafkaBus,
        redis_client: redis.Redis,
        queue_topic: str = settings.payment_queue_topic,
        channel: str = settings.payment_events_channel,
        service_name: str = "payments",
    ) -> None:
        self.kafka = kafka
        self.redis = redis_client
        self.queue_topic = queue_topic
        self.channel = channel
        self.service_name = service_name

    async def enqueue(self, envelope: EventEnvelope) -> None:
        await self.kafka.publish(self.queue_topic, envelope)

    async def broadcast(self, envelope: EventEnvelope) -> None:
        # Best-effort fan-out; subscribers that are offline miss the message.
        self.redis.publish(self.channel, json.dumps(envelope.model_dump()))

    async def publish(self, event: PaymentEvent, trace_id: str) -> None:
        envelope = envelope_for(event, trace_id)
        failures: dict[str, Exception] = {}
        for channel, send in (("queue", self.enqueue), ("broadcast", self.broadcast)):
            try:
                await send(envelope)
            except Exception as exc:
                failures[channel] = exc
                publish_failures_total.labels(service=self.service_name, channel=channel).inc()
                logger.error(
                    "publish_failed channel=%s payment_id=%s error=%r",
                    channel,
                    event.payment_id,
                    exc,
                )
        if failures:
            detail = "; ".join(f"{channel}: {exc!r}" for channel, exc in failures.items())
            raise PublishError(f"Event publish failed ({detail})", failures)
        logger.info("event_published event_type=%s payment_id=%s", envelope.event_type, event.payment_id)

    async def close(self) -> None:
        await self.kafka.close()
        self.redis.close()
