"""Pydantic schemas for Lab Orders module."""

from datetime import datetime
from decimal import Decimal

from pydantic import Field

from labledger.modules.lab_orders.models import CancelledBy, OrderItemStatus, OrderStatus
from labledger.shared.schemas.base import BaseSchema, Money


# --- Requests ---


class LabOrderCreate(BaseSchema):
    """Order one or more catalog tests for a patient; prices are snapshotted."""

    patient_id: int = Field(alias="patientId")
    lab_test_ids: list[int] = Field(alias="labTestIds", min_length=1)
    doctor_id: int | None = Field(None, alias="doctorId")
    appointment_id: int | None = Field(None, alias="appointmentId")
    payment_threshold: Decimal | None = Field(None, alias="paymentThreshold", ge=0, le=1)
    notes: str | None = None


class ApproveItemsRequest(BaseSchema):
    """Approve the listed items, or every ordered item when omitted."""

    item_ids: list[int] | None = Field(None, alias="itemIds")


class ItemSelectionUpdate(BaseSchema):
    is_selected: bool = Field(alias="isSelected")


class CancelItemRequest(BaseSchema):
    reason: str | None = Field(None, max_length=1000)
    cancelled_by: CancelledBy = Field(alias="cancelledBy")


class ItemStatusUpdate(BaseSchema):
    status: OrderItemStatus


class OrderThresholdUpdate(BaseSchema):
    """Per-order threshold; null reverts to the global default."""

    threshold: Decimal | None = Field(None, ge=0, le=1)


# --- Responses ---


class LabOrderItemResponse(BaseSchema):
    id: int
    order_id: int
    lab_test_id: int
    test_name: str
    unit_price: Money
    status: OrderItemStatus
    is_selected: bool
    sample_allowed: bool
    sample_id: str | None = None
    cancellation_reason: str | None = None
    cancelled_at: datetime | None = None
    created_at: datetime


class LabOrderResponse(BaseSchema):
    """Order with its cached totals and items."""

    id: int
    patient_id: int
    doctor_id: int | None = None
    appointment_id: int | None = None
    order_total: Money
    order_paid: Money
    order_due: Money
    refund_candidate_amount: Money
    payment_threshold: Decimal | None = None
    sample_allowed: bool
    status: OrderStatus
    notes: str | None = None
    created_at: datetime
    updated_at: datetime
    items: list[LabOrderItemResponse] = []
