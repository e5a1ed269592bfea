"""Service for Lab Orders module."""

import logging
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from labledger.core.audit import AuditAction, AuditService
from labledger.core.documents import next_sample_id
from labledger.core.exceptions import (
    NotFoundError,
    ThresholdNotMetError,
    ValidationError,
)
from labledger.core.system_settings.service import get_threshold_config, parse_threshold
from labledger.modules.lab_orders.models import (
    CancelledBy,
    LabTestOrder,
    LabTestOrderItem,
    OrderItemStatus,
    OrderStatus,
)
from labledger.modules.lab_orders.schemas import LabOrderCreate
from labledger.modules.lab_orders.status import (
    CANCELLED_STATUSES,
    PRE_COLLECTION_STATUSES,
    cancellation_status,
    ensure_item_transition,
    requires_sample_allowed,
)
from labledger.modules.lab_payments.allocation import is_sample_allowed
from labledger.modules.lab_payments.ledger import LedgerService
from labledger.modules.lab_tests.models import LabTest
from labledger.modules.patients.service import get_patient
from labledger.shared.utils.money import round_money

logger = logging.getLogger(__name__)


class LabOrderService:
    """Service for lab orders and their items."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.audit = AuditService(db)
        self.ledger = LedgerService(db)

    # --- Orders ---

    async def create_order(self, data: LabOrderCreate, created_by_id: int | None) -> LabTestOrder:
        """Create an order from catalog ids, snapshotting name and price per item."""
        await get_patient(self.db, data.patient_id)

        result = await self.db.execute(
            select(LabTest).where(LabTest.id.in_(set(data.lab_test_ids)))
        )
        tests = {test.id: test for test in result.scalars().all()}
        for test_id in data.lab_test_ids:
            test = tests.get(test_id)
            if test is None:
                raise NotFoundError("Lab test", test_id)
            if not test.is_active:
                raise ValidationError(f"Lab test '{test.name}' is not available", field="lab_test_ids")

        threshold = None
        if data.payment_threshold is not None:
            threshold = parse_threshold(data.payment_threshold)

        order = LabTestOrder(
            patient_id=data.patient_id,
            doctor_id=data.doctor_id,
            appointment_id=data.appointment_id,
            payment_threshold=threshold,
            status=OrderStatus.ORDERED.value,
            notes=data.notes,
            created_by_id=created_by_id,
        )
        self.db.add(order)
        await self.db.flush()

        for test_id in data.lab_test_ids:
            test = tests[test_id]
            self.db.add(
                LabTestOrderItem(
                    order_id=order.id,
                    lab_test_id=test.id,
                    test_name=test.name,
                    unit_price=round_money(test.price),
                    status=OrderItemStatus.ORDERED.value,
                    is_selected=True,
                )
            )

        config = await get_threshold_config(self.db)
        [order] = await self.ledger.recalculate_orders([order.id], config)

        await self.audit.log(
            action=AuditAction.CREATE_ORDER,
            entity_type="LabTestOrder",
            entity_id=order.id,
            user_id=created_by_id,
            new_values={
                "patient_id": data.patient_id,
                "lab_test_ids": data.lab_test_ids,
                "order_total": str(order.order_total),
            },
        )

        await self.db.commit()
        logger.info(
            "Lab order created",
            extra={"order_id": order.id, "patient_id": data.patient_id, "items": len(data.lab_test_ids)},
        )
        return await self.get_order(order.id)

    async def get_order(self, order_id: int) -> LabTestOrder:
        """Get order by ID with items loaded."""
        result = await self.db.execute(
            select(LabTestOrder)
            .where(LabTestOrder.id == order_id)
            .options(selectinload(LabTestOrder.items))
            .execution_options(populate_existing=True)
        )
        order = result.scalar_one_or_none()
        if not order:
            raise NotFoundError("Lab order", order_id)
        return order

    async def list_pending_payment_orders(
        self,
        patient_id: int,
        item_statuses: list[OrderItemStatus] | None = None,
        page: int = 1,
        limit: int = 50,
    ) -> tuple[list[LabTestOrder], int]:
        """
        Orders of a patient that still have money due, oldest first.

        item_statuses narrows the list to orders with at least one item in
        one of those fulfillment statuses.
        """
        query = select(LabTestOrder).where(
            LabTestOrder.patient_id == patient_id,
            LabTestOrder.order_due > 0,
            LabTestOrder.status != OrderStatus.CANCELLED.value,
        )
        if item_statuses:
            matching = select(LabTestOrderItem.order_id).where(
                LabTestOrderItem.status.in_([s.value for s in item_statuses]),
                LabTestOrderItem.status.not_in([s.value for s in CANCELLED_STATUSES]),
            )
            query = query.where(LabTestOrder.id.in_(matching))

        count_query = select(func.count()).select_from(query.subquery())
        total = (await self.db.execute(count_query)).scalar() or 0

        query = (
            query.options(selectinload(LabTestOrder.items))
            .order_by(LabTestOrder.created_at, LabTestOrder.id)
            .offset((page - 1) * limit)
            .limit(limit)
        )
        result = await self.db.execute(query)
        return list(result.scalars().all()), total

    async def list_pending_approval_orders(
        self, page: int = 1, limit: int = 50
    ) -> tuple[list[LabTestOrder], int]:
        """Orders with at least one item still waiting for admin approval."""
        waiting = select(LabTestOrderItem.order_id).where(
            LabTestOrderItem.status == OrderItemStatus.ORDERED.value
        )
        query = select(LabTestOrder).where(LabTestOrder.id.in_(waiting))

        count_query = select(func.count()).select_from(query.subquery())
        total = (await self.db.execute(count_query)).scalar() or 0

        query = (
            query.options(selectinload(LabTestOrder.items))
            .order_by(LabTestOrder.created_at, LabTestOrder.id)
            .offset((page - 1) * limit)
            .limit(limit)
        )
        result = await self.db.execute(query)
        return list(result.scalars().all()), total

    # --- Items ---

    async def approve_items(
        self, order_id: int, item_ids: list[int] | None, approved_by_id: int
    ) -> LabTestOrder:
        """Move ordered items to approved. With no ids, approves every ordered item."""
        # Items before order, the same lock order the payment path uses
        items = await self._lock_items(order_id)
        order = await self._lock_order(order_id)

        if item_ids is None:
            to_approve = [i for i in items if i.status == OrderItemStatus.ORDERED.value]
            if not to_approve:
                raise ValidationError("Order has no items waiting for approval")
        else:
            by_id = {i.id: i for i in items}
            to_approve = []
            for item_id in sorted(set(item_ids)):
                item = by_id.get(item_id)
                if item is None:
                    raise NotFoundError("Order item", item_id)
                ensure_item_transition(item.status, OrderItemStatus.APPROVED)
                to_approve.append(item)

        for item in to_approve:
            item.status = OrderItemStatus.APPROVED.value

        config = await get_threshold_config(self.db)
        await self.ledger.recalculate_orders([order.id], config)

        await self.audit.log(
            action=AuditAction.APPROVE_ITEMS,
            entity_type="LabTestOrder",
            entity_id=order.id,
            user_id=approved_by_id,
            new_values={"approved_item_ids": [i.id for i in to_approve]},
        )
        await self.db.commit()
        return await self.get_order(order_id)

    async def toggle_item_selection(
        self, order_id: int, item_id: int, is_selected: bool, user_id: int
    ) -> LabTestOrder:
        """
        Include or exclude an item from future batch payments.

        Past allocations stay where they are; only target resolution changes.
        """
        item = await self._lock_item(order_id, item_id)
        if OrderItemStatus(item.status) not in PRE_COLLECTION_STATUSES:
            raise ValidationError(
                f"Selection can only change while the item is ordered or approved (is {item.status})",
                field="is_selected",
            )

        old = item.is_selected
        item.is_selected = is_selected
        await self.audit.log(
            action=AuditAction.SELECT_ITEM,
            entity_type="LabTestOrderItem",
            entity_id=item.id,
            user_id=user_id,
            old_values={"is_selected": old},
            new_values={"is_selected": is_selected},
        )
        await self.db.commit()
        return await self.get_order(order_id)

    async def cancel_order_item(
        self,
        order_id: int,
        item_id: int,
        reason: str | None,
        cancelled_by: CancelledBy,
        user_id: int,
    ) -> LabTestOrder:
        """
        Cancel an item before sample collection.

        Money already allocated to it is not reversed; it shows up in the
        order's refund_candidate_amount until refunded.
        """
        item = await self._lock_item(order_id, item_id)
        order = await self._lock_order(order_id)
        target = cancellation_status(cancelled_by)
        ensure_item_transition(item.status, target)

        old_status = item.status
        item.status = target.value
        item.is_selected = False
        item.cancellation_reason = reason
        item.cancelled_by_id = user_id
        item.cancelled_at = datetime.now(timezone.utc)

        config = await get_threshold_config(self.db)
        await self.ledger.recalculate_orders([order.id], config)

        await self.audit.log(
            action=AuditAction.CANCEL_ITEM,
            entity_type="LabTestOrderItem",
            entity_id=item.id,
            user_id=user_id,
            old_values={"status": old_status},
            new_values={"status": target.value, "reason": reason},
        )
        await self.db.commit()
        logger.info(
            "Lab order item cancelled",
            extra={"order_id": order_id, "item_id": item_id, "cancelled_by": cancelled_by.value},
        )
        return await self.get_order(order_id)

    async def transition_item_status(
        self, order_id: int, item_id: int, target: OrderItemStatus, user_id: int
    ) -> LabTestOrder:
        """
        Move an item one step along its fulfillment flow.

        Raises:
            ValidationError: illegal transition, or a cancellation (use cancel_order_item)
            ThresholdNotMetError: target is past sample collection and too little is paid

        Entering sample_collected issues the item its sample id.
        """
        if target in CANCELLED_STATUSES:
            raise ValidationError("Use the cancel endpoint to cancel an order item", field="status")

        item = await self._lock_item(order_id, item_id)
        order = await self._lock_order(order_id)
        ensure_item_transition(item.status, target)

        config = await get_threshold_config(self.db)
        if requires_sample_allowed(target):
            # Decide from the ledger, not from the cached flag
            threshold = config.for_order(order.payment_threshold)
            paid = await self.ledger.allocated_for_item(item.id)
            if not is_sample_allowed(paid, item.unit_price, threshold):
                raise ThresholdNotMetError(item.id, paid, item.unit_price, threshold)

        old_status = item.status
        item.status = target.value
        new_values = {"status": target.value}
        if target == OrderItemStatus.SAMPLE_COLLECTED and item.sample_id is None:
            item.sample_id = await next_sample_id(self.db)
            new_values["sample_id"] = item.sample_id
        await self.ledger.recalculate_orders([order.id], config)

        await self.audit.log(
            action=AuditAction.TRANSITION_ITEM,
            entity_type="LabTestOrderItem",
            entity_id=item.id,
            user_id=user_id,
            old_values={"status": old_status},
            new_values=new_values,
        )
        await self.db.commit()
        return await self.get_order(order_id)

    async def set_order_threshold(
        self, order_id: int, threshold: Decimal | None, user_id: int
    ) -> LabTestOrder:
        """Override the threshold for one order; None falls back to the global default."""
        order = await self._lock_order(order_id)
        old = order.payment_threshold
        order.payment_threshold = parse_threshold(threshold) if threshold is not None else None

        config = await get_threshold_config(self.db)
        await self.ledger.recalculate_orders([order.id], config)

        await self.audit.log(
            action=AuditAction.SET_ORDER_THRESHOLD,
            entity_type="LabTestOrder",
            entity_id=order.id,
            user_id=user_id,
            old_values={"payment_threshold": str(old) if old is not None else None},
            new_values={"payment_threshold": str(threshold) if threshold is not None else None},
        )
        await self.db.commit()
        return await self.get_order(order_id)

    # --- Locking helpers ---

    async def _lock_order(self, order_id: int) -> LabTestOrder:
        order = await self.db.scalar(
            select(LabTestOrder)
            .where(LabTestOrder.id == order_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        if not order:
            raise NotFoundError("Lab order", order_id)
        return order

    async def _lock_items(self, order_id: int) -> list[LabTestOrderItem]:
        result = await self.db.execute(
            select(LabTestOrderItem)
            .where(LabTestOrderItem.order_id == order_id)
            .order_by(LabTestOrderItem.id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def _lock_item(self, order_id: int, item_id: int) -> LabTestOrderItem:
        item = await self.db.scalar(
            select(LabTestOrderItem)
            .where(LabTestOrderItem.id == item_id, LabTestOrderItem.order_id == order_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        if not item:
            raise NotFoundError("Order item", item_id)
        return item
