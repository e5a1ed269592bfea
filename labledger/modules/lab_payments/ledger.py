"""
Ledger reads and cache re-derivation.

Item and order money fields are caches of the allocation rows. Every write
path (allocation, cancellation, status change, threshold change, refund)
ends with recalculate_orders(), which recomputes them from ledger sums
instead of adjusting running counters.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Iterable

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from labledger.core.system_settings.service import ThresholdConfig
from labledger.modules.lab_orders.models import LabTestOrder, LabTestOrderItem, OrderStatus
from labledger.modules.lab_orders.status import project_order_status
from labledger.modules.lab_payments.allocation import is_sample_allowed
from labledger.modules.lab_payments.models import (
    LEDGER_STATUSES,
    LabOrderPayment,
    LabOrderPaymentAllocation,
)
from labledger.shared.utils.money import ZERO, money_from_db, round_money


@dataclass(frozen=True)
class OrderAggregates:
    order_total: Decimal
    order_paid: Decimal
    order_due: Decimal
    refund_candidate_amount: Decimal
    sample_allowed: bool
    status: str
    item_sample_allowed: dict[int, bool] = field(default_factory=dict)


def derive_order_aggregates(
    items: Iterable[LabTestOrderItem],
    allocated: dict[int, Decimal],
    threshold: Decimal,
) -> OrderAggregates:
    """Compute an order's cached fields from its items and their ledger sums."""
    items = list(items)
    total = paid = refund_candidate = ZERO
    flags: dict[int, bool] = {}
    active_flags: list[bool] = []

    for item in items:
        item_paid = allocated.get(item.id, ZERO)
        allowed = is_sample_allowed(item_paid, item.unit_price, threshold)
        flags[item.id] = allowed
        if item.is_cancelled:
            refund_candidate += item_paid
            continue
        total += item.unit_price
        paid += item_paid
        active_flags.append(allowed)

    order_total = round_money(total)
    order_paid = round_money(paid)
    order_due = max(round_money(order_total - order_paid), ZERO)
    status = project_order_status((i.status for i in items), order_paid, order_due)

    return OrderAggregates(
        order_total=order_total,
        order_paid=order_paid,
        order_due=order_due,
        refund_candidate_amount=round_money(refund_candidate),
        # AND over active items; an order with nothing active is never allowed
        sample_allowed=bool(active_flags) and all(active_flags),
        status=status.value,
        item_sample_allowed=flags,
    )


class LedgerService:
    """Ledger sums and cache maintenance for lab orders."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def allocated_by_item(self, item_ids: Iterable[int]) -> dict[int, Decimal]:
        """Net allocated amount per item across completed payments and refunds."""
        ids = sorted(set(item_ids))
        if not ids:
            return {}
        result = await self.db.execute(
            select(
                LabOrderPaymentAllocation.order_item_id,
                func.coalesce(func.sum(LabOrderPaymentAllocation.applied_amount), 0),
            )
            .join(LabOrderPayment, LabOrderPayment.id == LabOrderPaymentAllocation.payment_id)
            .where(
                LabOrderPaymentAllocation.order_item_id.in_(ids),
                LabOrderPayment.status.in_(LEDGER_STATUSES),
            )
            .group_by(LabOrderPaymentAllocation.order_item_id)
        )
        return {item_id: money_from_db(total) for item_id, total in result.all()}

    async def allocated_for_item(self, item_id: int) -> Decimal:
        return (await self.allocated_by_item([item_id])).get(item_id, ZERO)

    async def payment_allocated_total(self, payment_id: int) -> Decimal:
        total = await self.db.scalar(
            select(func.coalesce(func.sum(LabOrderPaymentAllocation.applied_amount), 0)).where(
                LabOrderPaymentAllocation.payment_id == payment_id
            )
        )
        return money_from_db(total)

    async def recalculate_orders(
        self, order_ids: Iterable[int], config: ThresholdConfig
    ) -> list[LabTestOrder]:
        """Re-derive totals, sample flags and status for the given orders. Does not commit."""
        ids = sorted(set(order_ids))
        if not ids:
            return []

        # Pending allocation rows and item changes must be visible to the sums below
        await self.db.flush()

        result = await self.db.execute(
            select(LabTestOrder)
            .where(LabTestOrder.id.in_(ids))
            .options(selectinload(LabTestOrder.items))
            .order_by(LabTestOrder.id)
            .execution_options(populate_existing=True)
        )
        orders = list(result.scalars().all())

        allocated = await self.allocated_by_item(item.id for order in orders for item in order.items)

        for order in orders:
            aggregates = derive_order_aggregates(
                order.items, allocated, config.for_order(order.payment_threshold)
            )
            for item in order.items:
                item.sample_allowed = aggregates.item_sample_allowed[item.id]
            order.order_total = aggregates.order_total
            order.order_paid = aggregates.order_paid
            order.order_due = aggregates.order_due
            order.refund_candidate_amount = aggregates.refund_candidate_amount
            order.sample_allowed = aggregates.sample_allowed
            order.status = aggregates.status

        await self.db.flush()
        return orders

    async def recalculate_default_threshold_orders(
        self, config: ThresholdConfig
    ) -> list[LabTestOrder]:
        """Re-derive every live order that follows the global threshold. Does not commit."""
        result = await self.db.execute(
            select(LabTestOrder.id).where(
                LabTestOrder.payment_threshold.is_(None),
                LabTestOrder.status != OrderStatus.CANCELLED.value,
            )
        )
        return await self.recalculate_orders(result.scalars().all(), config)
