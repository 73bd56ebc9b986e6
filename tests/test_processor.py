"""Queue processing and stale-PENDING reconciliation."""

from decimal import Decimal

import pytest

from paystream.common.events import EventEnvelope
from paystream.services.payments.models import Payment
from paystream.services.processor.service import STALE_PENDING_ERROR, PaymentProcessor


NOW = 1_700_000_000_000


def make_payment(payment_id: str, created_at: int, status: str = "PENDING") -> Payment:
    return Payment(
        payment_id=payment_id,
        user_id="user123",
        amount=Decimal("25.00"),
        currency="EUR",
        status=status,
        created_at=created_at,
        updated_at=created_at,
    )


def queued(payment_id: str) -> EventEnvelope:
    return EventEnvelope(event_type="payments.pending", aggregate_id=payment_id, trace_id="trace-q", payload={})


@pytest.fixture
def processor(store, ledger, publisher):
    return PaymentProcessor(store, publisher, ledger=ledger, service_name="test", stale_after_seconds=60, clock=lambda: NOW)


@pytest.mark.asyncio
async def test_queued_payment_completes_and_is_broadcast(processor, store, publisher):
    store.put(make_payment("p1", NOW - 1000))

    await processor.handle_queued(queued("p1"))

    assert store.get("p1").status == "SUCCESS"
    assert store.get("p1").updated_at == NOW
    [envelope] = publisher.broadcasts
    assert envelope.event_type == "payments.success"
    assert envelope.trace_id == "trace-q"
    assert envelope.payload["paymentId"] == "p1"


@pytest.mark.asyncio
async def test_redelivered_event_is_skipped(processor, store, publisher):
    store.put(make_payment("p1", NOW - 1000))

    await processor.handle_queued(queued("p1"))
    await processor.handle_queued(queued("p1"))

    assert store.get("p1").status == "SUCCESS"
    assert len(publisher.broadcasts) == 1


@pytest.mark.asyncio
async def test_failed_payment_is_never_completed(processor, store, publisher):
    store.put(make_payment("p1", NOW - 1000, status="FAILED"))

    await processor.handle_queued(queued("p1"))

    assert store.get("p1").status == "FAILED"
    assert publisher.broadcasts == []


@pytest.mark.asyncio
async def test_unknown_payment_is_skipped(processor, publisher):
    await processor.handle_queued(queued("missing"))

    assert publisher.broadcasts == []


@pytest.mark.asyncio
async def test_broadcast_failure_keeps_completion(processor, store, publisher):
    store.put(make_payment("p1", NOW - 1000))
    publisher.error = ConnectionError("redis down")

    await processor.handle_queued(queued("p1"))

    assert store.get("p1").status == "SUCCESS"


@pytest.mark.asyncio
async def test_sweep_fails_only_stale_pending(processor, store, publisher):
    store.put(make_payment("stale", NOW - 120_000))
    store.put(make_payment("fresh", NOW - 5_000))
    store.put(make_payment("done", NOW - 120_000, status="SUCCESS"))

    report = await processor.sweep_stale_pending()

    assert report.scanned == 1
    assert report.failed == 1
    assert store.get("stale").status == "FAILED"
    assert store.get("stale").error == STALE_PENDING_ERROR
    assert store.get("fresh").status == "PENDING"
    assert store.get("done").status == "SUCCESS"
    assert [e.event_type for e in publisher.broadcasts] == ["payments.failed"]


@pytest.mark.asyncio
async def test_sweep_with_nothing_stale_is_a_noop(processor, store):
    store.put(make_payment("fresh", NOW - 5_000))

    report = await processor.sweep_stale_pending()

    assert report.scanned == report.failed == 0
