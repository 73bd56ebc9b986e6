"""API request/response schemas for payment endpoints.

Field rules live in `validator.py` so that error messages stay stable; the
request model only coerces JSON types.
"""

from decimal import Decimal

from pydantic import BaseModel, ConfigDict, field_serializer
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class PaymentCreateRequest(CamelModel):
    """Payment creation payload accepted from clients."""

    user_id: str | None = None
    amount: Decimal | None = None
    currency: str | None = None
    idempotency_key: str | None = None


class PaymentResponse(CamelModel):
    """Payment result returned by create and retrieve."""

    payment_id: str
    status: str
    amount: Decimal
    currency: str
    timestamp: int
    user_id: str | None = None
    updated_at: int | None = None
    error: str | None = None

    @field_serializer("amount")
    def _amount_as_number(self, amount: Decimal) -> float:
        return float(amount)


class PaymentEvent(CamelModel):
    """Payload of every event emitted for a payment status."""

    payment_id: str
    user_id: str
    amount: Decimal
    currency: str
    status: str
    timestamp: int

    @field_serializer("amount")
    def _amount_as_number(self, amount: Decimal) -> float:
        return float(amount)


class ReconcileReport(BaseModel):
    scanned: int
    failed: int
