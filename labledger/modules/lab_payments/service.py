"""
Service for Lab Payments module.

Every payment, whether submitted by a patient, recorded by an admin or
confirmed by the gateway webhook, goes through LabPaymentService.process():

1. look the record up by its reference; a completed record is replayed
2. otherwise insert (or reuse) a pending record and commit it
3. claim it with a conditional update and allocate in the same transaction,
   retrying on lock conflicts
4. on a domain error roll back and mark the record failed
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Protocol

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from labledger.core.audit import AuditAction, AuditService
from labledger.core.auth.dependencies import ADMIN_ROLES
from labledger.core.auth.models import User
from labledger.core.config import settings
from labledger.core.exceptions import (
    AllocationConflictError,
    AppException,
    DuplicatePaymentError,
    ItemNotEligibleError,
    NotFoundError,
    ValidationError,
)
from labledger.core.system_settings.service import get_threshold_config
from labledger.modules.lab_orders.models import LabTestOrder, LabTestOrderItem
from labledger.modules.lab_orders.status import CANCELLED_STATUSES
from labledger.modules.lab_payments.allocation import AllocationCandidate, plan_allocation
from labledger.modules.lab_payments.ledger import LedgerService
from labledger.modules.lab_payments.models import (
    LabOrderPayment,
    LabOrderPaymentAllocation,
    PaymentMethod,
    PaymentStatus,
)
from labledger.modules.lab_payments.schemas import (
    AdminBatchPaymentRequest,
    AdminMultiPatientPaymentRequest,
    BatchPaymentRequest,
    GatewayPaymentInitiate,
    RefundRequest,
)
from labledger.shared.utils.money import ZERO, round_money, sum_money

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PaymentIntent:
    """What a payment should do, independent of how it arrived."""

    patient_id: int
    amount: Decimal
    payment_method: PaymentMethod
    order_ids: tuple[int, ...] = ()
    item_ids: tuple[int, ...] = ()
    notes: str | None = None
    created_by_id: int | None = None
    processed_by_admin_id: int | None = None

    @property
    def requested_target(self) -> dict:
        return {"orders": list(self.order_ids), "items": list(self.item_ids)}

    @classmethod
    def from_record(cls, payment: LabOrderPayment) -> "PaymentIntent":
        target = payment.requested_target or {}
        return cls(
            patient_id=payment.patient_id,
            amount=round_money(payment.applied_amount),
            payment_method=PaymentMethod(payment.payment_method),
            order_ids=tuple(target.get("orders", [])),
            item_ids=tuple(target.get("items", [])),
            notes=payment.notes,
            created_by_id=payment.created_by_id,
            processed_by_admin_id=payment.processed_by_admin_id,
        )


class PaymentReference(Protocol):
    """How an incoming payment finds its record."""

    payment_reference: str
    transaction_id: str | None

    async def find(self, db: AsyncSession) -> LabOrderPayment | None: ...


@dataclass(frozen=True)
class ClientKeyReference:
    """Synchronous API: the client's idempotency key is the reference."""

    payment_reference: str
    transaction_id: str | None = None

    async def find(self, db: AsyncSession) -> LabOrderPayment | None:
        return await db.scalar(
            select(LabOrderPayment).where(LabOrderPayment.payment_reference == self.payment_reference)
        )


@dataclass(frozen=True)
class GatewayTransactionReference:
    """Gateway callback: match on the transaction id, then on the registered reference."""

    transaction_id: str
    payment_reference: str

    async def find(self, db: AsyncSession) -> LabOrderPayment | None:
        payment = await db.scalar(
            select(LabOrderPayment).where(LabOrderPayment.transaction_id == self.transaction_id)
        )
        if payment is not None:
            return payment
        return await db.scalar(
            select(LabOrderPayment).where(LabOrderPayment.payment_reference == self.payment_reference)
        )


@dataclass
class BatchPaymentResult:
    payment: LabOrderPayment
    orders: list[LabTestOrder] = field(default_factory=list)
    replayed: bool = False


@dataclass
class MultiPatientPaymentResult:
    payment_reference: str
    amount: Decimal
    results: list[BatchPaymentResult] = field(default_factory=list)

    @property
    def replayed(self) -> bool:
        return all(result.replayed for result in self.results)


def patient_share_reference(payment_reference: str, patient_id: int) -> str:
    """Reference of one patient's share of a multi-patient desk payment."""
    return f"{payment_reference}:patient-{patient_id}"


class LabPaymentService:
    """Payment ingestion, allocation and refunds for lab orders."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.audit = AuditService(db)
        self.ledger = LedgerService(db)

    # --- Entry points ---

    async def submit_batch_payment(
        self,
        patient_id: int,
        data: BatchPaymentRequest,
        created_by_id: int | None,
    ) -> BatchPaymentResult:
        """Apply one payment to the requested orders/items of a patient."""
        processed_by_admin_id = None
        if isinstance(data, AdminBatchPaymentRequest):
            processed_by_admin_id = data.processed_by_admin_id
            await self._ensure_admin_processor(processed_by_admin_id)

        intent = PaymentIntent(
            patient_id=patient_id,
            amount=round_money(data.amount),
            payment_method=data.payment_method,
            order_ids=tuple(data.target.orders),
            item_ids=tuple(data.target.items),
            notes=data.notes,
            created_by_id=created_by_id,
            processed_by_admin_id=processed_by_admin_id,
        )
        return await self.process(ClientKeyReference(data.idempotency_key), intent)

    async def initiate_gateway_payment(
        self, patient_id: int, data: GatewayPaymentInitiate, created_by_id: int | None
    ) -> BatchPaymentResult:
        """
        Register a pending record for a gateway payment.

        Allocation happens later, when the gateway confirms the transaction.
        Re-initiating with the same key returns the existing record.
        """
        intent = PaymentIntent(
            patient_id=patient_id,
            amount=round_money(data.amount),
            payment_method=data.payment_method,
            order_ids=tuple(data.target.orders),
            item_ids=tuple(data.target.items),
            created_by_id=created_by_id,
        )
        self._validate_intent(intent)
        reference = ClientKeyReference(data.idempotency_key)

        payment = await reference.find(self.db)
        if payment is not None:
            self._ensure_same_request(payment, intent)
            return await self._result(payment.id, replayed=True)

        payment, created = await self._register(reference, intent)
        return await self._result(payment.id, replayed=not created)

    async def confirm_gateway_payment(
        self,
        reference: GatewayTransactionReference,
        amount: Decimal | None = None,
    ) -> BatchPaymentResult | None:
        """
        Allocate a registered gateway payment once the gateway reports success.

        Returns None when no record matches the reference.
        """
        payment = await reference.find(self.db)
        if payment is None:
            return None

        # A settled record is replayed whatever the re-delivery carries
        if payment.is_settled:
            self._log_replay(payment)
            return await self._result(payment.id, replayed=True)

        intent = PaymentIntent.from_record(payment)
        if amount is not None and round_money(amount) != intent.amount:
            await self._mark_failed(
                payment.id,
                f"Gateway amount {round_money(amount)} does not match registered amount {intent.amount}",
            )
            raise ValidationError("Gateway amount does not match the registered payment", field="amount")

        return await self.process(reference, intent)

    async def fail_gateway_payment(
        self, reference: PaymentReference, reason: str
    ) -> LabOrderPayment | None:
        """Record a gateway-side failure. Settled records are left untouched."""
        payment = await reference.find(self.db)
        if payment is None:
            return None
        if not payment.is_settled:
            await self._mark_failed(payment.id, reason)
        return await self.get_payment(payment.id)

    async def submit_multi_patient_payment(
        self, data: AdminMultiPatientPaymentRequest, created_by_id: int | None
    ) -> MultiPatientPaymentResult:
        """
        Split one desk payment across the patients owning the targeted items.

        The amount is planned oldest-due-first over all targeted items, then
        each patient's share becomes its own record under
        patient_share_reference(key, patient_id) and goes through process().
        The split is fixed when the shares are first registered; a retry with
        the same key replays settled shares and retries the others.
        """
        await self._ensure_admin_processor(data.processed_by_admin_id)
        amount = round_money(data.amount)
        key = data.idempotency_key

        intents = await self._registered_shares(key)
        if intents:
            self._ensure_same_split(key, intents, amount, data.payment_method)
        else:
            intents = await self._plan_shares(data, amount, created_by_id)
            intents = await self._register_shares(key, intents)
            self._ensure_same_split(key, intents, amount, data.payment_method)

        results = []
        for intent in intents:
            reference = ClientKeyReference(patient_share_reference(key, intent.patient_id))
            results.append(await self.process(reference, intent))

        logger.info(
            "Multi-patient lab payment processed",
            extra={
                "payment_reference": key,
                "amount": str(amount),
                "patients": [intent.patient_id for intent in intents],
            },
        )
        return MultiPatientPaymentResult(payment_reference=key, amount=amount, results=results)

    async def _registered_shares(self, key: str) -> list[PaymentIntent]:
        result = await self.db.execute(
            select(LabOrderPayment)
            .where(
                LabOrderPayment.payment_reference.startswith(f"{key}:patient-", autoescape=True)
            )
            .order_by(LabOrderPayment.patient_id)
        )
        return [PaymentIntent.from_record(payment) for payment in result.scalars().all()]

    def _ensure_same_split(
        self,
        key: str,
        intents: list[PaymentIntent],
        amount: Decimal,
        payment_method: PaymentMethod,
    ) -> None:
        mismatches = []
        if sum_money(intent.amount for intent in intents) != amount:
            mismatches.append("amount")
        if any(intent.payment_method != payment_method for intent in intents):
            mismatches.append("payment method")
        if mismatches:
            raise DuplicatePaymentError(key, f"different {', '.join(mismatches)}")

    async def _plan_shares(
        self,
        data: AdminMultiPatientPaymentRequest,
        amount: Decimal,
        created_by_id: int | None,
    ) -> list[PaymentIntent]:
        """Resolve the target across patients and split amount into per-patient intents."""
        order_ids = data.target.orders
        item_ids = data.target.items

        if order_ids:
            found = set(
                (
                    await self.db.execute(
                        select(LabTestOrder.id).where(LabTestOrder.id.in_(order_ids))
                    )
                ).scalars()
            )
            for order_id in order_ids:
                if order_id not in found:
                    raise ItemNotEligibleError(f"Lab order {order_id} not found")

        conditions = []
        if item_ids:
            conditions.append(LabTestOrderItem.id.in_(item_ids))
        if order_ids:
            conditions.append(
                and_(
                    LabTestOrderItem.order_id.in_(order_ids),
                    LabTestOrderItem.is_selected.is_(True),
                    LabTestOrderItem.status.not_in([s.value for s in CANCELLED_STATUSES]),
                )
            )
        rows = (
            await self.db.execute(
                select(LabTestOrderItem, LabTestOrder)
                .join(LabTestOrder, LabTestOrder.id == LabTestOrderItem.order_id)
                .where(or_(*conditions))
                .order_by(LabTestOrderItem.id)
            )
        ).all()
        if not rows:
            raise ItemNotEligibleError("The selected orders have no payable items")

        items = {item.id: (item, order) for item, order in rows}
        for item_id in item_ids:
            if item_id not in items:
                raise ItemNotEligibleError(f"Order item {item_id} not found", item_id=item_id)
        for item, _ in items.values():
            if item.is_cancelled:
                raise ItemNotEligibleError(f"Order item {item.id} is cancelled", item_id=item.id)
            if not item.is_selected:
                raise ItemNotEligibleError(
                    f"Order item {item.id} is deselected for payment", item_id=item.id
                )

        allocated = await self.ledger.allocated_by_item(items.keys())
        lines = plan_allocation(
            amount,
            [
                AllocationCandidate(
                    item_id=item.id,
                    order_id=order.id,
                    order_created_at=order.created_at,
                    unit_price=round_money(item.unit_price),
                    allocated=allocated.get(item.id, ZERO),
                )
                for item, order in items.values()
            ],
        )

        shares: dict[int, list] = {}
        for line in lines:
            patient_id = items[line.item_id][1].patient_id
            shares.setdefault(patient_id, []).append(line)

        return [
            PaymentIntent(
                patient_id=patient_id,
                amount=sum_money(line.amount for line in patient_lines),
                payment_method=data.payment_method,
                item_ids=tuple(sorted(line.item_id for line in patient_lines)),
                notes=data.notes,
                created_by_id=created_by_id,
                processed_by_admin_id=data.processed_by_admin_id,
            )
            for patient_id, patient_lines in sorted(shares.items())
        ]

    async def _register_shares(self, key: str, intents: list[PaymentIntent]) -> list[PaymentIntent]:
        """Register every share in one transaction. Returns the shares now on record."""
        records = [
            self._pending_record(patient_share_reference(key, intent.patient_id), intent)
            for intent in intents
        ]
        self.db.add_all(records)
        try:
            await self.db.flush()
            for record, intent in zip(records, intents):
                await self._audit_registration(record, intent)
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            existing = await self._registered_shares(key)
            if not existing:
                raise
            return existing
        return intents

    # --- Shared path ---

    async def process(
        self, reference: PaymentReference, intent: PaymentIntent
    ) -> BatchPaymentResult:
        """
        Idempotent allocation of intent under reference.

        Raises:
            ValidationError: amount not positive or empty target
            DuplicatePaymentError: reference already used by a different request
            OverpaymentRejectedError / ItemNotEligibleError: record is marked failed
            AllocationConflictError: lock contention outlasted the retries, record stays pending
        """
        self._validate_intent(intent)

        payment = await reference.find(self.db)
        if payment is not None:
            self._ensure_same_request(payment, intent)
            if payment.is_settled:
                self._log_replay(payment)
                return await self._result(payment.id, replayed=True)
        else:
            payment, created = await self._register(reference, intent)
            if not created and payment.is_settled:
                self._log_replay(payment)
                return await self._result(payment.id, replayed=True)

        payment_id = payment.id
        max_attempts = settings.allocation_max_retries + 1
        attempt = 0
        while True:
            attempt += 1
            try:
                applied = await self._allocate(payment_id, intent, reference.transaction_id)
                break
            except OperationalError as exc:
                await self.db.rollback()
                if attempt >= max_attempts:
                    logger.error(
                        "Lab payment allocation gave up after lock conflicts",
                        extra={"payment_id": payment_id, "attempts": attempt},
                    )
                    raise AllocationConflictError(attempt) from exc
                logger.warning(
                    "Lab payment allocation lock conflict, retrying",
                    extra={"payment_id": payment_id, "attempt": attempt},
                )
                await asyncio.sleep(settings.allocation_retry_backoff_ms * attempt / 1000)
            except AppException as exc:
                await self.db.rollback()
                logger.info(
                    "Lab payment rejected",
                    extra={"payment_id": payment_id, "code": exc.code, "reason": exc.message},
                )
                await self._mark_failed(payment_id, exc.message)
                raise

        if not applied:
            # Another request completed this record while we waited for its lock
            return await self._result(payment_id, replayed=True)
        return await self._result(payment_id, replayed=False)

    def _validate_intent(self, intent: PaymentIntent) -> None:
        if intent.amount <= 0:
            raise ValidationError("Payment amount must be greater than zero", field="amount")
        if not intent.order_ids and not intent.item_ids:
            raise ValidationError("target must name at least one order or item", field="target")

    def _ensure_same_request(self, payment: LabOrderPayment, intent: PaymentIntent) -> None:
        """A reference may only ever stand for one logical payment."""
        mismatches = []
        if payment.patient_id != intent.patient_id:
            mismatches.append("patient")
        if round_money(payment.applied_amount) != intent.amount:
            mismatches.append("amount")
        if payment.payment_method != intent.payment_method.value:
            mismatches.append("payment method")
        target = payment.requested_target or {}
        if (
            sorted(target.get("orders", [])) != sorted(intent.order_ids)
            or sorted(target.get("items", [])) != sorted(intent.item_ids)
        ):
            mismatches.append("target")
        if mismatches:
            raise DuplicatePaymentError(
                payment.payment_reference, f"different {', '.join(mismatches)}"
            )

    def _log_replay(self, payment: LabOrderPayment) -> None:
        logger.info(
            "Lab payment replay",
            extra={
                "payment_id": payment.id,
                "payment_reference": payment.payment_reference,
                "status": payment.status,
            },
        )

    async def _register(
        self, reference: PaymentReference, intent: PaymentIntent
    ) -> tuple[LabOrderPayment, bool]:
        """Insert the pending record and commit it. Returns (record, created)."""
        payment = self._pending_record(reference.payment_reference, intent)

        # Insert first; the unique reference decides concurrent duplicates
        self.db.add(payment)
        try:
            await self.db.flush()
            await self._audit_registration(payment, intent)
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            existing = await reference.find(self.db)
            if existing is None:
                raise
            self._ensure_same_request(existing, intent)
            return existing, False
        return payment, True

    def _pending_record(self, payment_reference: str, intent: PaymentIntent) -> LabOrderPayment:
        return LabOrderPayment(
            payment_reference=payment_reference,
            patient_id=intent.patient_id,
            applied_amount=intent.amount,
            payment_method=intent.payment_method.value,
            status=PaymentStatus.PENDING.value,
            requested_target=intent.requested_target,
            notes=intent.notes,
            created_by_id=intent.created_by_id,
            processed_by_admin_id=intent.processed_by_admin_id,
        )

    async def _audit_registration(self, payment: LabOrderPayment, intent: PaymentIntent) -> None:
        await self.audit.log(
            action=AuditAction.REGISTER_PAYMENT,
            entity_type="LabOrderPayment",
            entity_id=payment.id,
            entity_identifier=payment.payment_reference,
            user_id=intent.created_by_id,
            new_values={
                "patient_id": intent.patient_id,
                "amount": str(intent.amount),
                "payment_method": intent.payment_method.value,
                "target": intent.requested_target,
            },
        )

    async def _ensure_admin_processor(self, user_id: int) -> None:
        user = await self.db.scalar(select(User).where(User.id == user_id))
        if user is None or not user.is_active or not user.has_role(*ADMIN_ROLES):
            raise ValidationError(
                f"User {user_id} is not an active admin", field="processedByAdminId"
            )

    async def _allocate(
        self, payment_id: int, intent: PaymentIntent, transaction_id: str | None
    ) -> bool:
        """
        One allocation transaction. Returns False if the record was already settled.

        Lock order: payment row, items by ascending id, orders by ascending id.
        """
        # Claim the record with a conditional write before reading anything.
        # Zero rows means another request settled it first.
        claimed = await self.db.execute(
            update(LabOrderPayment)
            .where(
                LabOrderPayment.id == payment_id,
                LabOrderPayment.status.in_(
                    [PaymentStatus.PENDING.value, PaymentStatus.FAILED.value]
                ),
            )
            .values(updated_at=func.now())
            .execution_options(synchronize_session=False)
        )
        if claimed.rowcount == 0:
            await self.db.rollback()
            return False

        config = await get_threshold_config(self.db)

        payment = await self.db.scalar(
            select(LabOrderPayment)
            .where(LabOrderPayment.id == payment_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        if payment is None:
            raise NotFoundError("Lab payment", payment_id)

        items = await self._lock_target_items(intent)
        orders = await self._lock_orders({item.order_id for item in items})
        self._ensure_items_eligible(items, orders, intent)

        allocated = await self.ledger.allocated_by_item(item.id for item in items)
        candidates = [
            AllocationCandidate(
                item_id=item.id,
                order_id=item.order_id,
                order_created_at=orders[item.order_id].created_at,
                unit_price=round_money(item.unit_price),
                allocated=allocated.get(item.id, ZERO),
            )
            for item in items
        ]
        lines = plan_allocation(intent.amount, candidates)

        for line in lines:
            self.db.add(
                LabOrderPaymentAllocation(
                    payment_id=payment.id,
                    order_item_id=line.item_id,
                    order_id=line.order_id,
                    applied_amount=line.amount,
                )
            )

        touched_orders = sorted({line.order_id for line in lines})
        payment.status = PaymentStatus.COMPLETED.value
        payment.completed_at = datetime.now(timezone.utc)
        payment.failure_reason = None
        payment.applied_to_orders = touched_orders
        if transaction_id:
            payment.transaction_id = transaction_id

        await self.ledger.recalculate_orders(touched_orders, config)

        await self.audit.log(
            action=AuditAction.COMPLETE_PAYMENT,
            entity_type="LabOrderPayment",
            entity_id=payment.id,
            entity_identifier=payment.payment_reference,
            user_id=intent.processed_by_admin_id or intent.created_by_id,
            new_values={
                "amount": str(intent.amount),
                "allocations": {str(line.item_id): str(line.amount) for line in lines},
                "transaction_id": transaction_id,
            },
        )

        await self.db.commit()
        logger.info(
            "Lab payment allocated",
            extra={
                "payment_id": payment_id,
                "payment_reference": payment.payment_reference,
                "amount": str(intent.amount),
                "items": len(lines),
                "orders": touched_orders,
            },
        )
        return True

    async def _lock_target_items(self, intent: PaymentIntent) -> list[LabTestOrderItem]:
        """Resolve the target to concrete items and lock them in id order."""
        item_ids = set(intent.item_ids)

        if intent.order_ids:
            rows = await self.db.execute(
                select(LabTestOrder.id, LabTestOrder.patient_id).where(
                    LabTestOrder.id.in_(intent.order_ids)
                )
            )
            owners = dict(rows.all())
            for order_id in intent.order_ids:
                if owners.get(order_id) != intent.patient_id:
                    raise ItemNotEligibleError(
                        f"Lab order {order_id} not found for patient {intent.patient_id}"
                    )
            # Ordering a whole order means its payable items only
            result = await self.db.execute(
                select(LabTestOrderItem.id).where(
                    LabTestOrderItem.order_id.in_(intent.order_ids),
                    LabTestOrderItem.is_selected.is_(True),
                    LabTestOrderItem.status.not_in([s.value for s in CANCELLED_STATUSES]),
                )
            )
            item_ids.update(result.scalars().all())

        if not item_ids:
            raise ItemNotEligibleError("The selected orders have no payable items")

        result = await self.db.execute(
            select(LabTestOrderItem)
            .where(LabTestOrderItem.id.in_(sorted(item_ids)))
            .order_by(LabTestOrderItem.id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        items = list(result.scalars().all())

        found = {item.id for item in items}
        for item_id in intent.item_ids:
            if item_id not in found:
                raise ItemNotEligibleError(f"Order item {item_id} not found", item_id=item_id)
        return items

    async def _lock_orders(self, order_ids: set[int]) -> dict[int, LabTestOrder]:
        result = await self.db.execute(
            select(LabTestOrder)
            .where(LabTestOrder.id.in_(sorted(order_ids)))
            .order_by(LabTestOrder.id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return {order.id: order for order in result.scalars().all()}

    def _ensure_items_eligible(
        self,
        items: list[LabTestOrderItem],
        orders: dict[int, LabTestOrder],
        intent: PaymentIntent,
    ) -> None:
        for item in items:
            order = orders[item.order_id]
            if order.patient_id != intent.patient_id:
                raise ItemNotEligibleError(
                    f"Order item {item.id} belongs to another patient", item_id=item.id
                )
            if item.is_cancelled:
                raise ItemNotEligibleError(f"Order item {item.id} is cancelled", item_id=item.id)
            if not item.is_selected:
                raise ItemNotEligibleError(
                    f"Order item {item.id} is deselected for payment", item_id=item.id
                )

    async def _mark_failed(self, payment_id: int, reason: str) -> None:
        """Record why the last attempt failed; the record can be retried under its key."""
        payment = await self.db.scalar(
            select(LabOrderPayment)
            .where(LabOrderPayment.id == payment_id)
            .execution_options(populate_existing=True)
        )
        if payment is None or payment.is_settled:
            return
        payment.status = PaymentStatus.FAILED.value
        payment.failure_reason = reason[:500]
        await self.audit.log(
            action=AuditAction.FAIL_PAYMENT,
            entity_type="LabOrderPayment",
            entity_id=payment.id,
            entity_identifier=payment.payment_reference,
            new_values={"failure_reason": payment.failure_reason},
        )
        await self.db.commit()

    async def _result(self, payment_id: int, replayed: bool) -> BatchPaymentResult:
        payment = await self.get_payment(payment_id)
        orders = await self._load_orders(payment.applied_to_orders or [])
        return BatchPaymentResult(payment=payment, orders=orders, replayed=replayed)

    async def _load_orders(self, order_ids: list[int]) -> list[LabTestOrder]:
        if not order_ids:
            return []
        result = await self.db.execute(
            select(LabTestOrder)
            .where(LabTestOrder.id.in_(order_ids))
            .options(selectinload(LabTestOrder.items))
            .order_by(LabTestOrder.id)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    # --- Reads ---

    async def get_payment(self, payment_id: int) -> LabOrderPayment:
        """Get payment by ID with its allocation rows loaded."""
        result = await self.db.execute(
            select(LabOrderPayment)
            .where(LabOrderPayment.id == payment_id)
            .options(selectinload(LabOrderPayment.allocations))
            .execution_options(populate_existing=True)
        )
        payment = result.scalar_one_or_none()
        if not payment:
            raise NotFoundError("Lab payment", payment_id)
        return payment

    async def list_patient_payments(
        self,
        patient_id: int,
        status: PaymentStatus | None = None,
        page: int = 1,
        limit: int = 50,
    ) -> tuple[list[LabOrderPayment], int]:
        """Payment history of a patient, newest first."""
        query = select(LabOrderPayment).where(LabOrderPayment.patient_id == patient_id)
        if status:
            query = query.where(LabOrderPayment.status == status.value)

        count_query = select(func.count()).select_from(query.subquery())
        total = (await self.db.execute(count_query)).scalar() or 0

        query = query.order_by(LabOrderPayment.created_at.desc(), LabOrderPayment.id.desc())
        query = query.offset((page - 1) * limit).limit(limit)
        result = await self.db.execute(query)
        return list(result.scalars().all()), total

    # --- Refunds ---

    async def refund_cancelled_item(
        self,
        order_id: int,
        item_id: int,
        data: RefundRequest,
        processed_by_id: int,
    ) -> BatchPaymentResult:
        """
        Return a cancelled item's allocated balance.

        Writes a reversal record (status refunded, negative amount) with one
        negative allocation row, so the item's ledger sum drops to zero and the
        order's refund_candidate_amount with it. Idempotent by key.
        """
        reference = ClientKeyReference(data.idempotency_key)
        existing = await reference.find(self.db)
        if existing is not None:
            return await self._refund_replay(existing, item_id)

        config = await get_threshold_config(self.db)

        item = await self.db.scalar(
            select(LabTestOrderItem)
            .where(LabTestOrderItem.id == item_id, LabTestOrderItem.order_id == order_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        if item is None:
            raise NotFoundError("Order item", item_id)
        order = await self.db.scalar(
            select(LabTestOrder)
            .where(LabTestOrder.id == order_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        if not item.is_cancelled:
            raise ItemNotEligibleError(
                f"Order item {item_id} is not cancelled; only cancelled items can be refunded",
                item_id=item_id,
            )

        refundable = await self.ledger.allocated_for_item(item_id)
        if refundable <= 0:
            raise ValidationError(f"Order item {item_id} has no balance to refund", field="item_id")

        now = datetime.now(timezone.utc)
        reversal = LabOrderPayment(
            payment_reference=reference.payment_reference,
            patient_id=order.patient_id,
            applied_amount=-refundable,
            payment_method=data.payment_method.value,
            status=PaymentStatus.REFUNDED.value,
            requested_target={"orders": [], "items": [item_id]},
            applied_to_orders=[order_id],
            notes=data.notes,
            created_by_id=processed_by_id,
            processed_by_admin_id=processed_by_id,
            completed_at=now,
        )
        self.db.add(reversal)
        try:
            await self.db.flush()
        except IntegrityError:
            await self.db.rollback()
            existing = await reference.find(self.db)
            if existing is None:
                raise
            return await self._refund_replay(existing, item_id)

        self.db.add(
            LabOrderPaymentAllocation(
                payment_id=reversal.id,
                order_item_id=item_id,
                order_id=order_id,
                applied_amount=-refundable,
            )
        )
        await self.ledger.recalculate_orders([order_id], config)

        await self.audit.log(
            action=AuditAction.REFUND_ITEM,
            entity_type="LabTestOrderItem",
            entity_id=item_id,
            entity_identifier=reversal.payment_reference,
            user_id=processed_by_id,
            old_values={"allocated": str(refundable)},
            new_values={"allocated": str(ZERO), "reversal_payment_id": reversal.id},
        )
        await self.db.commit()

        logger.info(
            "Lab order item refunded",
            extra={"order_id": order_id, "item_id": item_id, "amount": str(refundable)},
        )
        return await self._result(reversal.id, replayed=False)

    async def _refund_replay(self, payment: LabOrderPayment, item_id: int) -> BatchPaymentResult:
        target_items = (payment.requested_target or {}).get("items", [])
        if payment.status != PaymentStatus.REFUNDED.value or target_items != [item_id]:
            raise DuplicatePaymentError(payment.payment_reference, "not a refund of this item")
        self._log_replay(payment)
        return await self._result(payment.id, replayed=True)
