"""HTTP binding for the payment workflow.

`create_app` takes a ready `PaymentWorkflow`, so the same routes serve the
production wiring in `main.py` and in-memory collaborators in tests.
"""

from time import perf_counter
from uuid import uuid4

from fastapi import Body, FastAPI, Header, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from paystream.common.config import settings
from paystream.common.errors import PaymentError
from paystream.common.logging import bind_context, logger
from paystream.common.metrics import http_request_duration_seconds, http_requests_total, metrics_response
from paystream.services.payments.schemas import PaymentCreateRequest, PaymentResponse
from paystream.services.payments.service import PaymentWorkflow


def error_response(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


def create_app(workflow: PaymentWorkflow, lifespan=None) -> FastAPI:
    app = FastAPI(title="PayStream Payments", lifespan=lifespan)
    app.state.workflow = workflow

    @app.middleware("http")
    async def metrics_middleware(request: Request, call_next):
        """Record request count and latency for every HTTP call."""

        start = perf_counter()
        route = request.url.path
        method = request.method
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            route_obj = request.scope.get("route")
            if route_obj is not None and getattr(route_obj, "path", None):
                route = route_obj.path
            return response
        finally:
            elapsed = max(0.0, perf_counter() - start)
            http_request_duration_seconds.labels(
                service=settings.service_name,
                route=route,
                method=method,
            ).observe(elapsed)
            http_requests_total.labels(
                service=settings.service_name,
                route=route,
                method=method,
                status_code=str(status_code),
            ).inc()

    @app.exception_handler(PaymentError)
    async def payment_error_handler(_: Request, exc: PaymentError):
        logger.warning("request_rejected code=%s status=%s message=%s", exc.code, exc.status_code, exc.message)
        return error_response(exc.status_code, exc.message)

    @app.exception_handler(RequestValidationError)
    async def malformed_body_handler(_: Request, exc: RequestValidationError):
        logger.warning("malformed_request_body errors=%s", exc.errors())
        return error_response(400, "Invalid JSON format in request body")

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception):
        logger.error("unexpected_error path=%s", request.url.path, exc_info=exc)
        return error_response(500, "Internal server error")

    @app.post(
        "/payments",
        status_code=201,
        response_model=PaymentResponse,
        response_model_by_alias=True,
        response_model_exclude_none=True,
    )
    async def create_payment(
        req: PaymentCreateRequest | None = Body(default=None),
        x_trace_id: str | None = Header(default=None),
    ):
        """Create (or return the existing) payment for an idempotency key."""

        trace_id = x_trace_id or str(uuid4())
        with bind_context(trace_id=trace_id):
            response = await workflow.create_payment(req, trace_id)
            logger.info("payment_create_answered payment_id=%s status=%s", response.payment_id, response.status)
        return response

    @app.get(
        "/payments/{payment_id}",
        response_model=PaymentResponse,
        response_model_by_alias=True,
        response_model_exclude_none=True,
    )
    def get_payment(payment_id: str):
        """Fetch the stored state of one payment."""

        return workflow.get_payment(payment_id)

    @app.get("/metrics")
    def metrics():
        """Prometheus scrape endpoint."""

        return metrics_response()

    @app.get("/health")
    def health():
        """Container health probe endpoint."""

        return {"ok": True}

    return app
