"""Prometheus metric definitions shared across services."""

from prometheus_client import Counter, Histogram, generate_latest
from starlette.responses import Response


payment_requests_total = Counter("payment_requests_total", "Total payment creation requests", ["service"])
payment_created_total = Counter("payment_created_total", "Payments persisted and published", ["service"])
payment_failure_total = Counter(
    "payment_failure_total",
    "Payment creations that ended FAILED",
    ["service", "stage"],
)
payment_validation_errors_total = Counter(
    "payment_validation_errors_total",
    "Rejected payment requests by validation reason",
    ["service", "reason"],
)
payment_latency_seconds = Histogram("payment_latency_seconds", "Payment creation latency seconds", ["service"])
idempotent_hits_total = Counter(
    "idempotent_hits_total",
    "Creations answered from an existing idempotency record",
    ["service", "source"],
)
idempotency_fail_open_total = Counter(
    "idempotency_fail_open_total",
    "Ledger reads/claims that failed open during a backing-store fault",
    ["service", "operation"],
)
idempotency_record_failures_total = Counter(
    "idempotency_record_failures_total",
    "Ledger writes that failed soft after the payment was committed",
    ["service", "operation"],
)
publish_failures_total = Counter(
    "publish_failures_total",
    "Event publish failures by channel",
    ["service", "channel"],
)
http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["service", "route", "method", "status_code"],
)
http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration seconds",
    ["service", "route", "method"],
)
event_queue_delay_seconds = Histogram(
    "event_queue_delay_seconds",
    "Event queue delay seconds between occurred_at and consume time",
    ["service", "topic"],
)
payment_completed_total = Counter(
    "payment_completed_total",
    "Payments moved to a terminal status by the processor",
    ["service", "status"],
)
duplicate_events_skipped_total = Counter(
    "duplicate_events_skipped_total",
    "Queue events skipped because the payment was unknown or already terminal",
    ["service", "topic"],
)
stale_pending_reconciled_total = Counter(
    "stale_pending_reconciled_total",
    "Stale PENDING payments failed by the reconciliation sweep",
    ["service"],
)


def metrics_response() -> Response:
    """Expose all registered Prometheus metrics in text format."""

    return Response(content=generate_latest(), media_type="text/plain")
