"""LabTestOrder and LabTestOrderItem models."""

from datetime import datetime
from decimal import Decimal
from enum import StrEnum

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Numeric,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship, validates

from labledger.core.database.base import BaseModel


class OrderItemStatus(StrEnum):
    """Fulfillment status of a single test, in forward order."""

    ORDERED = "ordered"
    APPROVED = "approved"
    SAMPLE_COLLECTION_SCHEDULED = "sample_collection_scheduled"
    SAMPLE_COLLECTED = "sample_collected"
    PROCESSING = "processing"
    RESULTS_READY = "results_ready"
    COMPLETED = "completed"
    CANCELLED_BY_PATIENT = "cancelled_by_patient"
    CANCELLED_BY_ADMIN = "cancelled_by_admin"


class OrderStatus(StrEnum):
    """Coarse order status, projected from item statuses and payment totals."""

    ORDERED = "ordered"
    VERIFIED = "verified"
    PAYMENT_PENDING = "payment_pending"
    PAYMENT_PARTIAL = "payment_partial"
    PAYMENT_COMPLETED = "payment_completed"
    SAMPLE_COLLECTION_SCHEDULED = "sample_collection_scheduled"
    SAMPLE_COLLECTED = "sample_collected"
    PROCESSING = "processing"
    RESULTS_READY = "results_ready"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class CancelledBy(StrEnum):
    PATIENT = "patient"
    ADMIN = "admin"


class LabTestOrder(BaseModel):
    """
    A patient's lab order grouping one or more test items.

    order_total, order_paid, order_due, refund_candidate_amount and
    sample_allowed are caches re-derived from the allocation ledger; never
    increment them directly (see LedgerService.recalculate_orders).
    """

    __tablename__ = "lab_test_orders"

    patient_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("patients.id"), nullable=False, index=True
    )
    # Owned by the scheduling service, kept for reference only
    doctor_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    appointment_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    order_total: Mapped[Decimal] = mapped_column(
        Numeric(10, 2), nullable=False, default=Decimal("0.00")
    )
    order_paid: Mapped[Decimal] = mapped_column(
        Numeric(10, 2), nullable=False, default=Decimal("0.00")
    )
    order_due: Mapped[Decimal] = mapped_column(
        Numeric(10, 2), nullable=False, default=Decimal("0.00"), index=True
    )
    # Money allocated to items that were later cancelled; exposed, never auto-refunded
    refund_candidate_amount: Mapped[Decimal] = mapped_column(
        Numeric(10, 2), nullable=False, default=Decimal("0.00")
    )

    # NULL falls back to the global lab_payment_threshold_default
    payment_threshold: Mapped[Decimal | None] = mapped_column(Numeric(3, 2), nullable=True)
    sample_allowed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False, index=True)

    status: Mapped[str] = mapped_column(
        String(40), nullable=False, default=OrderStatus.ORDERED.value, index=True
    )
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_by_id: Mapped[int | None] = mapped_column(
        BigInteger, ForeignKey("users.id"), nullable=True
    )

    # Relationships
    patient: Mapped["Patient"] = relationship("Patient")
    items: Mapped[list["LabTestOrderItem"]] = relationship(
        "LabTestOrderItem",
        back_populates="order",
        order_by="LabTestOrderItem.id",
    )

    @property
    def is_cancelled(self) -> bool:
        return self.status == OrderStatus.CANCELLED.value


class LabTestOrderItem(BaseModel):
    """One test within an order; unit_price is a snapshot taken at order time."""

    __tablename__ = "lab_test_order_items"

    order_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("lab_test_orders.id"), nullable=False, index=True
    )
    lab_test_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("lab_tests.id"), nullable=False, index=True
    )
    test_name: Mapped[str] = mapped_column(String(200), nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)

    status: Mapped[str] = mapped_column(
        String(40), nullable=False, default=OrderItemStatus.ORDERED.value, index=True
    )
    is_selected: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False, index=True)
    sample_allowed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False, index=True)
    # SMP-YYYYMMDD-NNNN, issued once when the sample is collected
    sample_id: Mapped[str | None] = mapped_column(String(30), nullable=True, unique=True, index=True)

    cancellation_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    cancelled_by_id: Mapped[int | None] = mapped_column(
        BigInteger, ForeignKey("users.id"), nullable=True
    )
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Relationships
    order: Mapped["LabTestOrder"] = relationship("LabTestOrder", back_populates="items")
    lab_test: Mapped["LabTest"] = relationship("LabTest")

    @validates("unit_price")
    def _freeze_unit_price(self, key: str, value: Decimal) -> Decimal:
        current = self.__dict__.get("unit_price")
        if self.id is not None and current is not None and Decimal(value) != current:
            raise ValueError(f"unit_price of order item {self.id} is immutable")
        return value

    @property
    def is_cancelled(self) -> bool:
        return self.status in (
            OrderItemStatus.CANCELLED_BY_PATIENT.value,
            OrderItemStatus.CANCELLED_BY_ADMIN.value,
        )


# Import for type hints
from labledger.modules.lab_tests.models import LabTest  # noqa: E402
from labledger.modules.patients.models import Patient  # noqa: E402
