"""Typed business errors.

Every error carries a client-facing `message`, a machine-readable `code` and
an HTTP-equivalent `status_code`. The HTTP layer renders them as `{"error":
message}`; anything that is not a `PaymentError` becomes a generic 500.
"""


class PaymentError(Exception):
    """Base class for errors with a defined client-facing meaning."""

    code = "PAYMENT_ERROR"
    status_code = 500

    def __init__(self, message: str, code: str | None = None, status_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        if status_code is not None:
            self.status_code = status_code


class ValidationError(PaymentError):
    """Malformed or missing input. Raised before any side effect."""

    code = "VALIDATION_ERROR"
    status_code = 400

    def __init__(self, field: str, reason: str, message: str) -> None:
        super().__init__(message)
        self.field = field
        self.reason = reason


class NotFoundError(PaymentError):
    code = "PAYMENT_NOT_FOUND"
    status_code = 404


class DuplicatePaymentError(PaymentError):
    """A payment row with the same identifier already exists."""

    code = "PAYMENT_ALREADY_EXISTS"
    status_code = 409


class PublishError(PaymentError):
    """One or more event channels rejected a publish."""

    code = "PUBLISH_FAILED"
    status_code = 502

    def __init__(self, message: str, failures: dict[str, Exception] | None = None) -> None:
        super().__init__(message)
        self.failures = failures or {}
