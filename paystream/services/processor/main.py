"""Processor API + worker lifecycle.

Runs the work-queue consumer and the periodic stale-PENDING sweep, and exposes
an on-demand reconcile endpoint.
"""

import asyncio
from contextlib import asynccontextmanager

import redis
from fastapi import FastAPI

from paystream.common.config import settings
from paystream.common.db import make_engine, make_session_factory
from paystream.common.events import KafkaBus
from paystream.common.logging import configure_logging
from paystream.common.metrics import metrics_response
from paystream.common.startup import log_startup_config
from paystream.common.tracing import instrument_app, setup_tracing
from paystream.services.payments.idempotency import SqlIdempotencyLedger
from paystream.services.payments.publisher import PaymentEventPublisher
from paystream.services.payments.schemas import ReconcileReport
from paystream.services.payments.store import SqlPaymentStore
from paystream.services.processor.service import PaymentProcessor

configure_logging()
setup_tracing(settings.service_name)
log_startup_config(
    settings,
    [
        "postgres_dsn",
        "kafka_bootstrap_servers",
        "redis_url",
        "payment_queue_topic",
        "stale_pending_seconds",
        "reconcile_interval_seconds",
    ],
)
SessionLocal = make_session_factory(make_engine())
rdb = redis.Redis.from_url(
    settings.redis_url,
    decode_responses=True,
    socket_timeout=settings.redis_timeout_seconds,
    socket_connect_timeout=settings.redis_timeout_seconds,
)
# Expired idempotency rows only accumulate in the postgres backend.
ledger = SqlIdempotencyLedger(SessionLocal) if settings.idempotency_backend == "postgres" else None
service = PaymentProcessor(
    SqlPaymentStore(SessionLocal),
    PaymentEventPublisher(KafkaBus(), rdb, service_name=settings.service_name),
    ledger=ledger,
    service_name=settings.service_name,
)


@asynccontextmanager
async def lifespan(_: FastAPI):
    """Run queue consumer + reconciliation loop with app lifecycle."""

    consumer_task = asyncio.create_task(service.start_consumers())
    reconcile_task = asyncio.create_task(service.reconcile_forever())
    yield
    consumer_task.cancel()
    reconcile_task.cancel()
    await service.publisher.close()


app = FastAPI(title="PayStream Processor", lifespan=lifespan)
instrument_app(app)


@app.post("/internal/reconcile", response_model=ReconcileReport)
async def reconcile():
    """Run one stale-PENDING sweep now."""

    return await service.sweep_stale_pending()


@app.get("/health")
def health():
    """Container health probe endpoint."""

    return {"ok": True}


@app.get("/metrics")
def metrics():
    """Prometheus scrape endpoint."""

    return metrics_response()
