"""LabOrderPayment and LabOrderPaymentAllocation models."""

from datetime import datetime
from decimal import Decimal
from enum import StrEnum

from sqlalchemy import (
    JSON,
    BigInteger,
    DateTime,
    ForeignKey,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from labledger.core.database.base import Base, BigIntPK


class PaymentMethod(StrEnum):
    """Payment method options."""

    BKASH = "bkash"
    BANK_TRANSFER = "bank_transfer"
    OFFLINE_CASH = "offline_cash"
    OFFLINE_CARD = "offline_card"
    MIXED = "mixed"


class PaymentStatus(StrEnum):
    """Payment status options."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


# Payments whose allocation rows count towards an item's paid amount.
# REFUNDED records are reversals carrying negative allocation rows.
LEDGER_STATUSES = (PaymentStatus.COMPLETED.value, PaymentStatus.REFUNDED.value)


class LabOrderPayment(Base):
    """
    One payment transaction applied to a patient's lab order items.

    payment_reference is the caller's idempotency key: a second request with
    the same key returns this record instead of allocating again.
    """

    __tablename__ = "lab_order_payments"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)

    payment_reference: Mapped[str] = mapped_column(
        String(100), nullable=False, unique=True, index=True
    )
    patient_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("patients.id"), nullable=False, index=True
    )

    applied_amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    payment_method: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=PaymentStatus.PENDING.value, index=True
    )

    # What the caller asked for: {"orders": [...], "items": [...]}
    requested_target: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    # Order ids actually touched; display cache, the allocation rows are authoritative
    applied_to_orders: Mapped[list | None] = mapped_column(JSON, nullable=True)

    transaction_id: Mapped[str | None] = mapped_column(
        String(200), nullable=True, unique=True, index=True
    )  # gateway transaction id (bKash trxID)

    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(String(500), nullable=True)

    created_by_id: Mapped[int | None] = mapped_column(
        BigInteger, ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True
    )
    processed_by_admin_id: Mapped[int | None] = mapped_column(
        BigInteger, ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Relationships
    allocations: Mapped[list["LabOrderPaymentAllocation"]] = relationship(
        "LabOrderPaymentAllocation",
        back_populates="payment",
        order_by="LabOrderPaymentAllocation.id",
    )

    @property
    def is_settled(self) -> bool:
        """Completed payments and refund reversals are final."""
        return self.status in LEDGER_STATUSES


class LabOrderPaymentAllocation(Base):
    """
    How much of a payment went to one order item.

    A payment touches an item at most once; the rows of a payment always
    sum to its applied_amount.
    """

    __tablename__ = "lab_order_payment_allocations"
    __table_args__ = (
        UniqueConstraint("payment_id", "order_item_id", name="uq_payment_item_allocation"),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)

    payment_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("lab_order_payments.id"), nullable=False, index=True
    )
    order_item_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("lab_test_order_items.id"), nullable=False, index=True
    )
    # Denormalised for per-order reporting
    order_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("lab_test_orders.id"), nullable=False, index=True
    )

    applied_amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    # Relationships
    payment: Mapped["LabOrderPayment"] = relationship(
        "LabOrderPayment", back_populates="allocations"
    )
    order_item: Mapped["LabTestOrderItem"] = relationship("LabTestOrderItem")


# Import for type hints
from labledger.modules.lab_orders.models import LabTestOrderItem  # noqa: E402
