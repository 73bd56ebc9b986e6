"""JSON logs carrying the trace/event/payment ids of the work in progress."""

import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar

from pythonjsonlogger.json import JsonFormatter

from paystream.common.config import settings


trace_id_ctx: ContextVar[str] = ContextVar("trace_id", default="")
event_id_ctx: ContextVar[str] = ContextVar("event_id", default="")
payment_id_ctx: ContextVar[str] = ContextVar("payment_id", default="")

_CONTEXT_VARS = {"trace_id": trace_id_ctx, "event_id": event_id_ctx, "payment_id": payment_id_ctx}


class CorrelationFilter(logging.Filter):
    """Stamp the service name and the bound correlation ids on each record."""

    def __init__(self, service_name: str) -> None:
        super().__init__()
        self.service_name = service_name

    def filter(self, record: logging.LogRecord) -> bool:
        record.service_name = self.service_name
        for field, var in _CONTEXT_VARS.items():
            setattr(record, field, var.get())
        return True


@contextmanager
def bind_context(**ids: str | None):
    """Bind correlation ids for the duration of the block; None leaves a var as is."""

    tokens = [(_CONTEXT_VARS[name], _CONTEXT_VARS[name].set(value)) for name, value in ids.items() if value is not None]
    try:
        yield
    finally:
        for var, token in reversed(tokens):
            var.reset(token)


def configure_logging(service_name: str = settings.service_name, level: str = settings.log_level) -> None:
    """Route every logger to one JSON stdout handler. Call once per process."""

    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(CorrelationFilter(service_name))
    handler.setFormatter(
        JsonFormatter(
            "%(asctime)s %(levelname)s %(name)s %(service_name)s %(trace_id)s %(event_id)s %(payment_id)s %(message)s",
            rename_fields={"levelname": "level", "asctime": "ts"},
        )
    )

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(level)
    # Broker client chatter drowns payment logs at INFO.
    logging.getLogger("aiokafka").setLevel(max(root.level, logging.WARNING))


logger = logging.getLogger("paystream")
