"""Payment persistence.

`PaymentStore` is the contract the workflow and processor depend on;
`SqlPaymentStore` is the PostgreSQL realization.
"""

from typing import Protocol

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from paystream.common.errors import DuplicatePaymentError
from paystream.common.state_machine import validate_transition
from paystream.services.payments.models import Payment


class PaymentStore(Protocol):
    def put(self, payment: Payment) -> None:
        """Insert a new payment; never overwrites an existing identifier."""

    def get(self, payment_id: str) -> Payment | None: ...

    def transition(self, payment_id: str, new_status: str, updated_at: int, error: str | None = None) -> bool:
        """Move a payment to `new_status` if it has not moved already."""

    def list_by_status(self, status: str, created_before: int, limit: int = 100) -> list[Payment]: ...


class SqlPaymentStore:
    """SQLAlchemy-backed store with insert-once and guarded status updates."""

    def __init__(self, session_factory) -> None:
        self.session_factory = session_factory

    def put(self, payment: Payment) -> None:
        with self.session_factory() as db:
            db.add(payment)
            try:
                db.commit()
            except IntegrityError as exc:
                db.rollback()
                raise DuplicatePaymentError(f"Payment already exists: {payment.payment_id}") from exc

    def get(self, payment_id: str) -> Payment | None:
        with self.session_factory() as db:
            return db.get(Payment, payment_id)

    def transition(self, payment_id: str, new_status: str, updated_at: int, error: str | None = None) -> bool:
        """Apply one monotonic status change.

        The write is guarded by the expected current status, so a concurrent
        writer that got there first makes this a no-op returning False.
        """

        with self.session_factory() as db:
            payment = db.get(Payment, payment_id)
            if payment is None:
                return False
            current = payment.status
            try:
                validate_transition(current, new_status)
            except ValueError:
                return False
            result = db.execute(
                update(Payment)
                .where(Payment.payment_id == payment_id, Payment.status == current)
                .values(status=new_status, updated_at=updated_at, error=error)
            )
            db.commit()
            return result.rowcount == 1

    def list_by_status(self, status: str, created_before: int, limit: int = 100) -> list[Payment]:
        with self.session_factory() as db:
            return list(
                db.execute(
                    select(Payment)
                    .where(Payment.status == status, Payment.created_at < created_before)
                    .order_by(Payment.created_at)
                    .limit(limit)
                ).scalars()
            )
