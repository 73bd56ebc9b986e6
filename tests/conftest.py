"""In-memory collaborators for workflow, API and processor tests."""

import threading
from copy import copy
from decimal import Decimal

import pytest

from paystream.common.errors import DuplicatePaymentError
from paystream.common.state_machine import validate_transition
from paystream.services.payments.idempotency import IdempotencyLedger
from paystream.services.payments.schemas import PaymentCreateRequest
from paystream.services.payments.service import PaymentWorkflow


class InMemoryPaymentStore:
    """Thread-safe store with the same insert-once/monotonic contract."""

    def __init__(self) -> None:
        self.rows = {}
        self.lock = threading.Lock()
        self.put_error: Exception | None = None
        self.get_error: Exception | None = None

    def put(self, payment) -> None:
        if self.put_error is not None:
            raise self.put_error
        with self.lock:
            if payment.payment_id in self.rows:
                raise DuplicatePaymentError(f"Payment already exists: {payment.payment_id}")
            self.rows[payment.payment_id] = copy(payment)

    def get(self, payment_id):
        if self.get_error is not None:
            raise self.get_error
        with self.lock:
            row = self.rows.get(payment_id)
            return copy(row) if row is not None else None

    def transition(self, payment_id, new_status, updated_at, error=None) -> bool:
        with self.lock:
            row = self.rows.get(payment_id)
            if row is None:
                return False
            try:
                validate_transition(row.status, new_status)
            except ValueError:
                return False
            row.status = new_status
            row.updated_at = updated_at
            row.error = error
            return True

    def list_by_status(self, status, created_before, limit=100):
        with self.lock:
            rows = [copy(r) for r in self.rows.values() if r.status == status and r.created_at < created_before]
        return sorted(rows, key=lambda r: r.created_at)[:limit]


class InMemoryLedger(IdempotencyLedger):
    """Dict-backed ledger; the lock makes `_claim` a true compare-and-set.

    `down=True` makes every primitive raise, as a store outage would.
    `lookup_barrier` holds each lookup until all parties arrived, forcing
    concurrent requests past the lookup before any of them claims.
    """

    backend = "memory"

    def __init__(self, **kwargs) -> None:
        super().__init__(**kwargs)
        self.entries: dict[str, dict] = {}
        self.lock = threading.Lock()
        self.down = False
        self.record_down = False
        self.lookup_barrier: threading.Barrier | None = None

    def _check(self) -> None:
        if self.down:
            raise ConnectionError("ledger unavailable")

    def _lookup(self, key):
        if self.lookup_barrier is not None:
            self.lookup_barrier.wait(timeout=5)
        self._check()
        with self.lock:
            entry = self.entries.get(key)
            return entry["payment_id"] if entry else None

    def _claim(self, key, payment_id):
        self._check()
        with self.lock:
            entry = self.entries.setdefault(key, {"payment_id": payment_id, "state": "RESERVED"})
            return entry["payment_id"]

    def _record(self, key, payment_id):
        self._check()
        if self.record_down:
            raise ConnectionError("ledger write timed out")
        with self.lock:
            entry = self.entries.get(key)
            if entry is None or entry["payment_id"] != payment_id:
                raise RuntimeError("claim lost")
            entry["state"] = "COMPLETED"

    def _release(self, key, payment_id):
        self._check()
        with self.lock:
            if self.entries.get(key, {}).get("payment_id") == payment_id:
                del self.entries[key]


class RecordingPublisher:
    """Captures published events; `error` makes the next publishes fail."""

    queue_topic = "payments.queue"

    def __init__(self) -> None:
        self.events = []
        self.broadcasts = []
        self.error: Exception | None = None

    async def publish(self, event, trace_id):
        if self.error is not None:
            raise self.error
        self.events.append((event, trace_id))

    async def broadcast(self, envelope):
        if self.error is not None:
            raise self.error
        self.broadcasts.append(envelope)


@pytest.fixture
def store():
    return InMemoryPaymentStore()


@pytest.fixture
def ledger():
    return InMemoryLedger(ttl_seconds=60, service_name="test")


@pytest.fixture
def publisher():
    return RecordingPublisher()


@pytest.fixture
def workflow(store, ledger, publisher):
    return PaymentWorkflow(store=store, ledger=ledger, publisher=publisher, service_name="test")


@pytest.fixture
def make_request():
    def _make(**overrides):
        fields = {
            "user_id": "user123",
            "amount": Decimal("100.0"),
            "currency": "USD",
            "idempotency_key": "key123",
        }
        fields.update(overrides)
        return PaymentCreateRequest(**fields)

    return _make
