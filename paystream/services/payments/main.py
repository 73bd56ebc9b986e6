"""Payment API process: wires PostgreSQL, Redis and Kafka into the workflow."""

from contextlib import asynccontextmanager

import redis
from fastapi import FastAPI

from paystream.common.config import settings
from paystream.common.db import make_engine, make_session_factory
from paystream.common.events import KafkaBus
from paystream.common.logging import configure_logging
from paystream.common.startup import log_startup_config
from paystream.common.tracing import instrument_app, setup_tracing
from paystream.services.payments.api import create_app
from paystream.services.payments.idempotency import RedisIdempotencyLedger, SqlIdempotencyLedger
from paystream.services.payments.publisher import PaymentEventPublisher
from paystream.services.payments.service import PaymentWorkflow
from paystream.services.payments.store import SqlPaymentStore

configure_logging()
setup_tracing(settings.service_name)
log_startup_config(
    settings,
    [
        "postgres_dsn",
        "kafka_bootstrap_servers",
        "redis_url",
        "payment_queue_topic",
        "payment_events_channel",
        "max_payment_amount",
        "idempotency_backend",
        "idempotency_ttl_seconds",
    ],
)

SessionLocal = make_session_factory(make_engine())
rdb = redis.Redis.from_url(
    settings.redis_url,
    decode_responses=True,
    socket_timeout=settings.redis_timeout_seconds,
    socket_connect_timeout=settings.redis_timeout_seconds,
)


def build_ledger():
    if settings.idempotency_backend == "redis":
        return RedisIdempotencyLedger(rdb, service_name=settings.service_name)
    if settings.idempotency_backend == "postgres":
        return SqlIdempotencyLedger(SessionLocal, service_name=settings.service_name)
    raise ValueError(f"unknown IDEMPOTENCY_BACKEND: {settings.idempotency_backend}")


publisher = PaymentEventPublisher(KafkaBus(), rdb, service_name=settings.service_name)
workflow = PaymentWorkflow(
    store=SqlPaymentStore(SessionLocal),
    ledger=build_ledger(),
    publisher=publisher,
    service_name=settings.service_name,
)


@asynccontextmanager
async def lifespan(_: FastAPI):
    """Close the Kafka producer and Redis pool with the app lifecycle."""

    yield
    await publisher.close()


app = create_app(workflow, lifespan=lifespan)
instrument_app(app)
