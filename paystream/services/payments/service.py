"""Payment creation/retrieval workflow.

Creation order for a new key: lookup -> claim -> persist -> publish -> record.
The ledger's atomic claim is the only mutual exclusion between concurrent
requests; whoever claims a key first owns the one payment row for it, every
other request answers with that owner's id.
"""

from decimal import Decimal
from time import time
from uuid import uuid4

from paystream.common.config import settings
from paystream.common.logging import bind_context, logger
from paystream.common.metrics import (
    idempotent_hits_total,
    payment_created_total,
    payment_failure_total,
    payment_latency_seconds,
    payment_requests_total,
    payment_validation_errors_total,
)
from paystream.common.errors import NotFoundError, ValidationError
from paystream.common.state_machine import AttemptTracker
from paystream.common.tracing import tracer
from paystream.services.payments.idempotency import IdempotencyLedger
from paystream.services.payments.models import Payment
from paystream.services.payments.publisher import EventPublisher
from paystream.services.payments.schemas import PaymentEvent, PaymentResponse
from paystream.services.payments.store import PaymentStore
from paystream.services.payments.validator import validate_payment_id, validate_payment_request


def now_ms() -> int:
    return int(time() * 1000)


class PaymentWorkflow:
    """Owns payment creation, deduplication and retrieval."""

    def __init__(
        self,
        store: PaymentStore,
        ledger: IdempotencyLedger,
        publisher: EventPublisher,
        max_amount: Decimal = settings.max_payment_amount,
        service_name: str = "payments",
        id_factory=lambda: str(uuid4()),
        clock=now_ms,
    ) -> None:
        self.store = store
        self.ledger = ledger
        self.publisher = publisher
        self.max_amount = max_amount
        self.service_name = service_name
        self.id_factory = id_factory
        self.clock = clock

    async def create_payment(self, request, trace_id: str | None = None) -> PaymentResponse:
        """Create a payment once per idempotency key and publish its event.

        Raises `ValidationError` for malformed input before any side effect.
        Store and publisher faults do not raise; they come back as a `FAILED`
        response that still carries the payment id.
        """

        payment_requests_total.labels(service=self.service_name).inc()
        attempt = AttemptTracker()
        with payment_latency_seconds.labels(service=self.service_name).time(), tracer.start_as_current_span(
            "payments.create"
        ) as span:
            attempt.advance("VALIDATING")
            try:
                req = validate_payment_request(request, self.max_amount)
            except ValidationError as exc:
                attempt.fail()
                payment_validation_errors_total.labels(service=self.service_name, reason=exc.reason).inc()
                logger.warning("payment_validation_failed reason=%s message=%s", exc.reason, exc.message)
                raise
            attempt.advance("VALIDATED")

            payment_id = self.id_factory()
            timestamp = self.clock()
            trace_id = trace_id or str(uuid4())
            span.set_attribute("payment.idempotency_key", req.idempotency_key)

            existing_id = self.ledger.lookup(req.idempotency_key)
            if existing_id is None:
                existing_id = self._owner_if_lost(req.idempotency_key, payment_id)
                source = "claim"
            else:
                source = "lookup"
            if existing_id is not None:
                attempt.advance("IDEMPOTENT_HIT")
                idempotent_hits_total.labels(service=self.service_name, source=source).inc()
                logger.warning(
                    "duplicate_payment_detected key=%s payment_id=%s source=%s",
                    req.idempotency_key,
                    existing_id,
                    source,
                )
                span.set_attribute("payment.id", existing_id)
                return PaymentResponse(
                    payment_id=existing_id,
                    status="SUCCESS",
                    amount=req.amount,
                    currency=req.currency,
                    timestamp=timestamp,
                )

            span.set_attribute("payment.id", payment_id)
            with bind_context(payment_id=payment_id):
                logger.info("processing_payment payment_id=%s user_id=%s", payment_id, req.user_id)
                try:
                    attempt.advance("PERSISTING")
                    self.store.put(
                        Payment(
                            payment_id=payment_id,
                            user_id=req.user_id,
                            amount=req.amount,
                            currency=req.currency,
                            status="PENDING",
                            created_at=timestamp,
                            updated_at=timestamp,
                            error=None,
                        )
                    )
                    logger.info("payment_stored payment_id=%s", payment_id)

                    attempt.advance("PUBLISHING")
                    await self.publisher.publish(
                        PaymentEvent(
                            payment_id=payment_id,
                            user_id=req.user_id,
                            amount=req.amount,
                            currency=req.currency,
                            status="PENDING",
                            timestamp=self.clock(),
                        ),
                        trace_id,
                    )
                except Exception as exc:
                    stage = attempt.state
                    attempt.fail()
                    logger.exception("payment_processing_failed payment_id=%s stage=%s", payment_id, stage)
                    payment_failure_total.labels(service=self.service_name, stage=stage).inc()
                    if stage == "PUBLISHING":
                        self._mark_failed(payment_id, str(exc))
                    self.ledger.release(req.idempotency_key, payment_id)
                    return PaymentResponse(
                        payment_id=payment_id,
                        status="FAILED",
                        amount=req.amount,
                        currency=req.currency,
                        timestamp=timestamp,
                        error=str(exc),
                    )

                attempt.advance("RECORDING_KEY")
                self.ledger.record(req.idempotency_key, payment_id)
                attempt.advance("COMPLETED")
                payment_created_total.labels(service=self.service_name).inc()
                return PaymentResponse(
                    payment_id=payment_id,
                    status="PENDING",
                    amount=req.amount,
                    currency=req.currency,
                    timestamp=timestamp,
                )

    def _owner_if_lost(self, key: str, payment_id: str) -> str | None:
        """Claim `key` for `payment_id`; return the other owner if we lost."""

        owner = self.ledger.claim(key, payment_id)
        return None if owner == payment_id else owner

    def _mark_failed(self, payment_id: str, error: str) -> None:
        # Stored status follows the FAILED response; rows left PENDING when this
        # write fails are picked up by the reconciliation sweep.
        try:
            self.store.transition(payment_id, "FAILED", self.clock(), error=error)
        except Exception as exc:
            logger.error("payment_mark_failed_error payment_id=%s error=%s", payment_id, exc)

    def get_payment(self, payment_id: str | None) -> PaymentResponse:
        """Fetch one payment. Store faults propagate to the caller."""

        payment_id = validate_payment_id(payment_id)
        logger.debug("fetching_payment payment_id=%s", payment_id)
        payment = self.store.get(payment_id)
        if payment is None:
            logger.warning("payment_not_found payment_id=%s", payment_id)
            raise NotFoundError(f"Payment not found: {payment_id}")
        return to_response(payment)


def to_response(payment: Payment) -> PaymentResponse:
    return PaymentResponse(
        payment_id=payment.payment_id,
        user_id=payment.user_id,
        status=payment.status,
        amount=payment.amount,
        currency=payment.currency,
        timestamp=payment.created_at,
        updated_at=payment.updated_at,
        error=payment.error,
    )
