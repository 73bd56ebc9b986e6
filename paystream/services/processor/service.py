"""Downstream processing of queued payments and stale-PENDING reconciliation."""

import asyncio

from paystream.common.config import settings
from paystream.common.events import EventEnvelope, consume_forever
from paystream.common.logging import logger
from paystream.common.metrics import (
    duplicate_events_skipped_total,
    payment_completed_total,
    stale_pending_reconciled_total,
)
from paystream.services.payments.idempotency import IdempotencyLedger
from paystream.services.payments.models import Payment
from paystream.services.payments.publisher import PaymentEventPublisher, envelope_for
from paystream.services.payments.schemas import PaymentEvent, ReconcileReport
from paystream.services.payments.service import now_ms
from paystream.services.payments.store import PaymentStore


STALE_PENDING_ERROR = "stale pending: no completion observed"


class PaymentProcessor:
    """Consumes the payment work queue and completes `PENDING` payments."""

    def __init__(
        self,
        store: PaymentStore,
        publisher: PaymentEventPublisher,
        ledger: IdempotencyLedger | None = None,
        service_name: str = "processor",
        stale_after_seconds: int = settings.stale_pending_seconds,
        batch_size: int = settings.reconcile_batch_size,
        clock=now_ms,
    ) -> None:
        self.store = store
        self.publisher = publisher
        self.ledger = ledger
        self.service_name = service_name
        self.stale_after_seconds = stale_after_seconds
        self.batch_size = batch_size
        self.clock = clock

    async def _announce(self, payment: Payment, status: str, trace_id: str) -> None:
        """Broadcast a terminal status; the work queue only carries new payments."""

        event = PaymentEvent(
            payment_id=payment.payment_id,
            user_id=payment.user_id,
            amount=payment.amount,
            currency=payment.currency,
            status=status,
            timestamp=self.clock(),
        )
        envelope = envelope_for(event, trace_id)
        try:
            await self.publisher.broadcast(envelope)
        except Exception as exc:
            logger.warning("status_broadcast_failed payment_id=%s status=%s error=%s", payment.payment_id, status, exc)

    async def handle_queued(self, event: EventEnvelope) -> None:
        """Move a queued payment `PENDING -> SUCCESS` and announce it."""

        topic = self.publisher.queue_topic
        payment = self.store.get(event.aggregate_id)
        if payment is None or payment.status != "PENDING":
            logger.info(
                "duplicate event skipped topic=%s payment_id=%s status=%s",
                topic,
                event.aggregate_id,
                payment.status if payment else None,
            )
            duplicate_events_skipped_total.labels(service=self.service_name, topic=topic).inc()
            return

        if not self.store.transition(payment.payment_id, "SUCCESS", self.clock()):
            logger.info("payment moved concurrently payment_id=%s", payment.payment_id)
            duplicate_events_skipped_total.labels(service=self.service_name, topic=topic).inc()
            return

        payment_completed_total.labels(service=self.service_name, status="SUCCESS").inc()
        logger.info("payment_completed payment_id=%s", payment.payment_id)
        await self._announce(payment, "SUCCESS", event.trace_id)

    async def sweep_stale_pending(self) -> ReconcileReport:
        """Fail `PENDING` payments older than the staleness window.

        Covers rows whose creation died between persist and publish (process
        crash, cancelled request). Not part of the creation contract itself.
        """

        now = self.clock()
        cutoff = now - self.stale_after_seconds * 1000
        stale = self.store.list_by_status("PENDING", created_before=cutoff, limit=self.batch_size)
        failed = 0
        for payment in stale:
            if not self.store.transition(payment.payment_id, "FAILED", now, error=STALE_PENDING_ERROR):
                continue
            failed += 1
            stale_pending_reconciled_total.labels(service=self.service_name).inc()
            logger.warning(
                "stale_pending_failed payment_id=%s age_ms=%s",
                payment.payment_id,
                now - payment.created_at,
            )
            await self._announce(payment, "FAILED", trace_id=f"reconcile-{now}")
        if self.ledger is not None:
            purged = self.ledger.purge_expired()
            if purged:
                logger.info("idempotency_keys_purged count=%s", purged)
        return ReconcileReport(scanned=len(stale), failed=failed)

    async def reconcile_forever(self, interval_seconds: int = settings.reconcile_interval_seconds) -> None:
        while True:
            try:
                report = await self.sweep_stale_pending()
                if report.scanned:
                    logger.info("reconcile_pass scanned=%s failed=%s", report.scanned, report.failed)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.exception("reconcile_pass_error: %s", exc)
            await asyncio.sleep(interval_seconds)

    async def start_consumers(self) -> None:
        """Start the Kafka consumer for the payment work queue."""

        await consume_forever(self.publisher.queue_topic, "processor-payments", self.handle_queued)
