"""Business-rule validation for payment requests and payment identifiers.

Rules run in a fixed order and the first failure wins. Messages are part of the
public contract; clients match on them.
"""

import re
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation

from paystream.common.errors import ValidationError


MAX_PAYMENT_AMOUNT = Decimal("10000")
AMOUNT_QUANTUM = Decimal("0.0001")

CURRENCY_PATTERN = re.compile(r"^[A-Z]{3}$")
PAYMENT_ID_PATTERN = re.compile(
    r"^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$"
)


@dataclass(frozen=True)
class ValidatedPayment:
    """Normalized request; the only form downstream components consume."""

    user_id: str
    amount: Decimal
    currency: str
    idempotency_key: str


def _blank(value) -> bool:
    return value is None or not str(value).strip()


def _as_decimal(value) -> Decimal | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, Decimal):
        amount = value
    else:
        try:
            amount = Decimal(str(value))
        except InvalidOperation:
            return None
    return amount if amount.is_finite() else None


def validate_payment_request(request, max_amount: Decimal = MAX_PAYMENT_AMOUNT) -> ValidatedPayment:
    """Check `request` against the creation rules and return its normalized form."""

    if request is None:
        raise ValidationError("request", "REQUEST_MISSING", "Payment request cannot be null")

    if _blank(request.user_id):
        raise ValidationError("userId", "USER_ID_REQUIRED", "User ID is required")

    amount = _as_decimal(request.amount)
    if amount is None or amount <= 0:
        raise ValidationError("amount", "AMOUNT_INVALID", "Amount must be greater than zero")
    if amount > max_amount:
        raise ValidationError("amount", "AMOUNT_TOO_HIGH", f"Amount cannot exceed ${max_amount:,.0f}")
    # payments.amount is NUMERIC(18, 4); finer amounts would be rounded on insert.
    if amount != amount.quantize(AMOUNT_QUANTUM):
        raise ValidationError("amount", "AMOUNT_INVALID", "Amount cannot have more than 4 decimal places")

    if _blank(request.currency):
        raise ValidationError("currency", "CURRENCY_INVALID", "Currency is required")
    currency = str(request.currency).strip().upper()
    if not CURRENCY_PATTERN.match(currency):
        raise ValidationError(
            "currency",
            "CURRENCY_INVALID",
            "Currency must be a valid 3-letter code (e.g., USD, EUR)",
        )

    if _blank(request.idempotency_key):
        raise ValidationError("idempotencyKey", "IDEMPOTENCY_KEY_REQUIRED", "Idempotency key is required")

    return ValidatedPayment(
        user_id=str(request.user_id).strip(),
        amount=amount,
        currency=currency,
        idempotency_key=str(request.idempotency_key).strip(),
    )


def validate_payment_id(payment_id: str | None) -> str:
    """Return the id unchanged, or raise when it is blank or not UUID-shaped.

    Surrounding whitespace is not trimmed, so `" <uuid> "` is malformed.
    """

    if _blank(payment_id):
        raise ValidationError("paymentId", "ID_REQUIRED", "Payment ID is required")
    if not PAYMENT_ID_PATTERN.fullmatch(payment_id):
        raise ValidationError("paymentId", "ID_FORMAT_INVALID", "Invalid payment ID format")
    return payment_id
