"""Pydantic schemas for Lab Payments module."""

from datetime import datetime
from decimal import Decimal

from pydantic import Field, field_validator, model_validator

from labledger.modules.lab_orders.schemas import LabOrderResponse
from labledger.modules.lab_payments.models import PaymentMethod, PaymentStatus
from labledger.shared.schemas.base import BaseSchema, Money


# --- Requests ---


class PaymentTarget(BaseSchema):
    """Orders and/or individual items the payment should be applied to."""

    orders: list[int] = Field(default_factory=list)
    items: list[int] = Field(default_factory=list)

    @field_validator("orders", "items")
    @classmethod
    def dedupe_ids(cls, v: list[int]) -> list[int]:
        return sorted(set(v))

    @property
    def is_empty(self) -> bool:
        return not self.orders and not self.items


class BatchPaymentRequest(BaseSchema):
    """One payment applied across several items, possibly spanning orders."""

    amount: Decimal = Field(gt=0, decimal_places=2, description="Payment amount (must be positive)")
    payment_method: PaymentMethod = Field(alias="paymentMethod")
    target: PaymentTarget
    idempotency_key: str = Field(alias="idempotencyKey", min_length=1, max_length=100)
    notes: str | None = None

    @field_validator("idempotency_key")
    @classmethod
    def strip_key(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("idempotencyKey must not be blank")
        return v

    @model_validator(mode="after")
    def require_target(self):
        if self.target.is_empty:
            raise ValueError("target must name at least one order or item")
        return self


class AdminBatchPaymentRequest(BatchPaymentRequest):
    """Batch payment recorded at the desk on the patient's behalf."""

    processed_by_admin_id: int = Field(alias="processedByAdminId")


class AdminMultiPatientPaymentRequest(AdminBatchPaymentRequest):
    """
    One desk payment covering items of several patients.

    Split into one record per patient; each share is keyed
    "<idempotencyKey>:patient-<id>", so the key is kept shorter.
    """

    idempotency_key: str = Field(alias="idempotencyKey", min_length=1, max_length=80)


class GatewayPaymentInitiate(BaseSchema):
    """Register a pending gateway payment before redirecting the patient."""

    amount: Decimal = Field(gt=0, decimal_places=2)
    target: PaymentTarget
    idempotency_key: str = Field(alias="idempotencyKey", min_length=1, max_length=100)
    payment_method: PaymentMethod = Field(PaymentMethod.BKASH, alias="paymentMethod")

    @model_validator(mode="after")
    def require_target(self):
        if self.target.is_empty:
            raise ValueError("target must name at least one order or item")
        return self


class RefundRequest(BaseSchema):
    """Return the allocated balance of a cancelled item."""

    idempotency_key: str = Field(alias="idempotencyKey", min_length=1, max_length=100)
    payment_method: PaymentMethod = Field(PaymentMethod.OFFLINE_CASH, alias="paymentMethod")
    notes: str | None = None


# --- Responses ---


class AllocationResponse(BaseSchema):
    id: int
    order_item_id: int
    order_id: int
    applied_amount: Money
    created_at: datetime


class LabPaymentResponse(BaseSchema):
    """Payment record with its allocation rows."""

    id: int
    payment_reference: str
    patient_id: int
    applied_amount: Money
    payment_method: str
    status: PaymentStatus
    requested_target: dict
    applied_to_orders: list[int] | None = None
    transaction_id: str | None = None
    notes: str | None = None
    failure_reason: str | None = None
    created_by_id: int | None = None
    processed_by_admin_id: int | None = None
    created_at: datetime
    completed_at: datetime | None = None
    allocations: list[AllocationResponse] = []


class LabPaymentSummary(BaseSchema):
    """Payment row for history listings (no allocations)."""

    id: int
    payment_reference: str
    applied_amount: Money
    payment_method: str
    status: PaymentStatus
    applied_to_orders: list[int] | None = None
    created_at: datetime
    completed_at: datetime | None = None


class BatchPaymentResponse(BaseSchema):
    """Result of a batch payment: the record plus the orders it touched."""

    payment: LabPaymentResponse
    orders: list[LabOrderResponse]
    replayed: bool = False


class MultiPatientPaymentResponse(BaseSchema):
    payment_reference: str
    total_amount: Money
    payments: list[BatchPaymentResponse]
    replayed: bool = False
