"""Tests for LabPaymentService: ingestion, idempotency and ledger aggregates."""

import asyncio
from decimal import Decimal

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from labledger.core.audit import AuditAction, AuditService
from labledger.core.auth.models import User, UserRole
from labledger.core.config import settings
from labledger.core.database.base import Base
from labledger.core.exceptions import (
    AllocationConflictError,
    DuplicatePaymentError,
    ItemNotEligibleError,
    OverpaymentRejectedError,
    ThresholdNotMetError,
    ValidationError,
)
from labledger.modules.lab_orders.models import CancelledBy, OrderItemStatus, OrderStatus
from labledger.modules.lab_orders.schemas import LabOrderCreate
from labledger.modules.lab_orders.service import LabOrderService
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
    PaymentTarget,
    RefundRequest,
)
from labledger.modules.lab_payments.service import (
    ClientKeyReference,
    LabPaymentService,
    PaymentIntent,
    patient_share_reference,
)
from labledger.modules.lab_tests.models import LabTest
from labledger.modules.patients.models import Patient


def batch(amount: str, key: str, orders=(), items=(), method=PaymentMethod.OFFLINE_CASH):
    return BatchPaymentRequest(
        amount=Decimal(amount),
        payment_method=method,
        target=PaymentTarget(orders=list(orders), items=list(items)),
        idempotency_key=key,
    )


async def allocation_rows(db: AsyncSession) -> list[LabOrderPaymentAllocation]:
    result = await db.execute(select(LabOrderPaymentAllocation).order_by(LabOrderPaymentAllocation.id))
    return list(result.scalars().all())


async def payments_with_reference(db: AsyncSession, reference: str) -> int:
    return await db.scalar(
        select(func.count()).select_from(LabOrderPayment).where(
            LabOrderPayment.payment_reference == reference
        )
    )


class TestBatchAllocation:
    async def test_oldest_order_paid_first_across_orders(
        self, db_session: AsyncSession, seed: dict, make_order
    ):
        """A (100) in the older order, B (50) in the newer: 120 -> A 100, B 20."""
        order_a = await make_order(seed["cbc"])
        order_b = await make_order(seed["lipid"])
        service = LabPaymentService(db_session)

        result = await service.submit_batch_payment(
            seed["patient"].id, batch("120.00", "pay-1", orders=[order_b.id, order_a.id]), seed["patient_user"].id
        )

        assert result.replayed is False
        assert result.payment.status == PaymentStatus.COMPLETED
        assert {a.order_item_id: a.applied_amount for a in result.payment.allocations} == {
            order_a.items[0].id: Decimal("100.00"),
            order_b.items[0].id: Decimal("20.00"),
        }
        assert sorted(result.payment.applied_to_orders) == sorted([order_a.id, order_b.id])

        orders = {o.id: o for o in result.orders}
        assert orders[order_a.id].order_due == Decimal("0.00")
        assert orders[order_a.id].status == OrderStatus.PAYMENT_COMPLETED
        assert orders[order_b.id].order_paid == Decimal("20.00")
        assert orders[order_b.id].order_due == Decimal("30.00")
        assert orders[order_b.id].status == OrderStatus.PAYMENT_PARTIAL

    async def test_allocations_sum_to_payment_amount(
        self, db_session: AsyncSession, seed: dict, make_order
    ):
        order = await make_order(seed["cbc"], seed["lipid"], seed["thyroid"])
        service = LabPaymentService(db_session)

        result = await service.submit_batch_payment(
            seed["patient"].id, batch("275.50", "pay-sum", orders=[order.id]), None
        )

        rows = await allocation_rows(db_session)
        assert sum(r.applied_amount for r in rows) == Decimal("275.50")
        assert all(r.applied_amount > 0 for r in rows)
        assert await service.ledger.payment_allocated_total(result.payment.id) == Decimal("275.50")
        [updated] = result.orders
        assert updated.order_paid + updated.order_due == updated.order_total

    async def test_overpayment_rejected_without_side_effects(
        self, db_session: AsyncSession, seed: dict, make_order
    ):
        order_id = (await make_order(seed["cbc"], seed["lipid"])).id
        service = LabPaymentService(db_session)

        with pytest.raises(OverpaymentRejectedError):
            await service.submit_batch_payment(
                seed["patient"].id, batch("200.00", "pay-over", orders=[order_id]), None
            )

        assert await allocation_rows(db_session) == []
        payment = await db_session.scalar(
            select(LabOrderPayment).where(LabOrderPayment.payment_reference == "pay-over")
        )
        assert payment.status == PaymentStatus.FAILED
        assert "exceeds" in payment.failure_reason

        unchanged = await LabOrderService(db_session).get_order(order_id)
        assert unchanged.order_paid == Decimal("0.00")
        assert unchanged.order_due == Decimal("150.00")

    async def test_explicit_items_and_orders_are_merged(
        self, db_session: AsyncSession, seed: dict, make_order
    ):
        order = await make_order(seed["cbc"], seed["lipid"])
        cbc_item = order.items[0]
        service = LabPaymentService(db_session)

        result = await service.submit_batch_payment(
            seed["patient"].id,
            batch("150.00", "pay-merge", orders=[order.id], items=[cbc_item.id]),
            None,
        )

        assert len(result.payment.allocations) == 2

    async def test_admin_payment_records_processor(
        self, db_session: AsyncSession, seed: dict, make_order
    ):
        order = await make_order(seed["cbc"])
        service = LabPaymentService(db_session)
        data = AdminBatchPaymentRequest(
            amount=Decimal("100.00"),
            payment_method=PaymentMethod.OFFLINE_CARD,
            target=PaymentTarget(orders=[order.id]),
            idempotency_key="desk-1",
            processed_by_admin_id=seed["admin"].id,
        )

        result = await service.submit_batch_payment(seed["patient"].id, data, seed["admin"].id)

        assert result.payment.processed_by_admin_id == seed["admin"].id
        assert result.payment.payment_method == "offline_card"

    async def test_processor_must_be_an_active_admin(
        self, db_session: AsyncSession, seed: dict, make_order
    ):
        order = await make_order(seed["cbc"])
        patient_id, admin_id = seed["patient"].id, seed["admin"].id
        service = LabPaymentService(db_session)

        for processor_id, key in ((seed["patient_user"].id, "desk-bad-1"), (999999, "desk-bad-2")):
            data = AdminBatchPaymentRequest(
                amount=Decimal("10.00"),
                payment_method=PaymentMethod.OFFLINE_CASH,
                target=PaymentTarget(orders=[order.id]),
                idempotency_key=key,
                processed_by_admin_id=processor_id,
            )
            with pytest.raises(ValidationError) as exc_info:
                await service.submit_batch_payment(patient_id, data, admin_id)
            assert exc_info.value.details["field"] == "processedByAdminId"
            assert await payments_with_reference(db_session, key) == 0

    async def test_completion_is_audited(self, db_session: AsyncSession, seed: dict, make_order):
        order = await make_order(seed["cbc"])
        service = LabPaymentService(db_session)
        result = await service.submit_batch_payment(
            seed["patient"].id, batch("10.00", "pay-audit", orders=[order.id]), seed["patient_user"].id
        )

        history = await AuditService(db_session).history("LabOrderPayment", result.payment.id)
        assert [h.action for h in history] == [
            AuditAction.REGISTER_PAYMENT,
            AuditAction.COMPLETE_PAYMENT,
        ]

    async def test_empty_target_rejected_before_any_record(self, db_session: AsyncSession, seed: dict):
        service = LabPaymentService(db_session)
        intent = PaymentIntent(
            patient_id=seed["patient"].id,
            amount=Decimal("10.00"),
            payment_method=PaymentMethod.OFFLINE_CASH,
        )

        with pytest.raises(ValidationError):
            await service.process(ClientKeyReference("pay-empty"), intent)

        assert await payments_with_reference(db_session, "pay-empty") == 0


class TestIdempotency:
    async def test_same_key_is_replayed(self, db_session: AsyncSession, seed: dict, make_order):
        order = await make_order(seed["cbc"], seed["lipid"])
        service = LabPaymentService(db_session)
        request = batch("120.00", "pay-twice", orders=[order.id])

        first = await service.submit_batch_payment(seed["patient"].id, request, None)
        second = await service.submit_batch_payment(seed["patient"].id, request, None)

        assert first.replayed is False
        assert second.replayed is True
        assert second.payment.id == first.payment.id
        assert len(await allocation_rows(db_session)) == 2
        assert await payments_with_reference(db_session, "pay-twice") == 1
        assert second.orders[0].order_paid == Decimal("120.00")

    async def test_key_reused_with_different_amount(
        self, db_session: AsyncSession, seed: dict, make_order
    ):
        order = await make_order(seed["cbc"])
        service = LabPaymentService(db_session)
        await service.submit_batch_payment(
            seed["patient"].id, batch("50.00", "pay-dup", orders=[order.id]), None
        )

        with pytest.raises(DuplicatePaymentError):
            await service.submit_batch_payment(
                seed["patient"].id, batch("40.00", "pay-dup", orders=[order.id]), None
            )

    async def test_key_reused_by_another_patient(
        self, db_session: AsyncSession, seed: dict, make_order
    ):
        order = await make_order(seed["cbc"])
        other_order = await make_order(seed["cbc"], patient=seed["other_patient"])
        service = LabPaymentService(db_session)
        await service.submit_batch_payment(
            seed["patient"].id, batch("50.00", "pay-shared", orders=[order.id]), None
        )

        with pytest.raises(DuplicatePaymentError):
            await service.submit_batch_payment(
                seed["other_patient"].id, batch("50.00", "pay-shared", orders=[other_order.id]), None
            )

    async def test_failed_record_is_retried_in_place(
        self, db_session: AsyncSession, seed: dict, make_order
    ):
        order = await make_order(seed["cbc"], seed["lipid"])
        order_id, lipid_id = order.id, order.items[1].id
        patient_id, admin_id = seed["patient"].id, seed["admin"].id
        orders = LabOrderService(db_session)
        payments = LabPaymentService(db_session)

        await orders.toggle_item_selection(order_id, lipid_id, False, admin_id)
        with pytest.raises(ItemNotEligibleError):
            await payments.submit_batch_payment(
                patient_id, batch("30.00", "pay-retry", items=[lipid_id]), None
            )

        await orders.toggle_item_selection(order_id, lipid_id, True, admin_id)
        result = await payments.submit_batch_payment(
            patient_id, batch("30.00", "pay-retry", items=[lipid_id]), None
        )

        assert result.payment.status == PaymentStatus.COMPLETED
        assert result.payment.failure_reason is None
        assert await payments_with_reference(db_session, "pay-retry") == 1

    async def test_failed_key_reused_with_different_target(
        self, db_session: AsyncSession, seed: dict, make_order
    ):
        order = await make_order(seed["cbc"], seed["lipid"])
        order_id, cbc_id, lipid_id = order.id, order.items[0].id, order.items[1].id
        patient_id, admin_id = seed["patient"].id, seed["admin"].id
        payments = LabPaymentService(db_session)

        await LabOrderService(db_session).toggle_item_selection(order_id, lipid_id, False, admin_id)
        with pytest.raises(ItemNotEligibleError):
            await payments.submit_batch_payment(
                patient_id, batch("30.00", "pay-retarget", items=[lipid_id]), None
            )

        with pytest.raises(DuplicatePaymentError):
            await payments.submit_batch_payment(
                patient_id, batch("30.00", "pay-retarget", items=[cbc_id]), None
            )

        payment = await db_session.scalar(
            select(LabOrderPayment).where(LabOrderPayment.payment_reference == "pay-retarget")
        )
        assert payment.status == PaymentStatus.FAILED
        assert payment.requested_target == {"orders": [], "items": [lipid_id]}
        assert await allocation_rows(db_session) == []


class TestEligibility:
    async def test_cancelled_item_not_eligible(self, db_session: AsyncSession, seed: dict, make_order):
        order = await make_order(seed["cbc"], seed["lipid"])
        cbc_id = order.items[0].id
        await LabOrderService(db_session).cancel_order_item(
            order.id, cbc_id, "Not needed", CancelledBy.PATIENT, seed["patient_user"].id
        )

        with pytest.raises(ItemNotEligibleError) as exc_info:
            await LabPaymentService(db_session).submit_batch_payment(
                seed["patient"].id, batch("10.00", "pay-cancelled", items=[cbc_id]), None
            )
        assert exc_info.value.details["item_id"] == cbc_id

    async def test_other_patients_item_not_eligible(
        self, db_session: AsyncSession, seed: dict, make_order
    ):
        other_order = await make_order(seed["cbc"], patient=seed["other_patient"])
        other_order_id, other_item_id = other_order.id, other_order.items[0].id
        patient_id = seed["patient"].id
        service = LabPaymentService(db_session)

        with pytest.raises(ItemNotEligibleError):
            await service.submit_batch_payment(
                patient_id, batch("10.00", "pay-foreign-item", items=[other_item_id]), None
            )
        with pytest.raises(ItemNotEligibleError):
            await service.submit_batch_payment(
                patient_id, batch("10.00", "pay-foreign-order", orders=[other_order_id]), None
            )

    async def test_order_with_nothing_payable(self, db_session: AsyncSession, seed: dict, make_order):
        order = await make_order(seed["cbc"])
        await LabOrderService(db_session).toggle_item_selection(
            order.id, order.items[0].id, False, seed["patient_user"].id
        )

        with pytest.raises(ItemNotEligibleError):
            await LabPaymentService(db_session).submit_batch_payment(
                seed["patient"].id, batch("10.00", "pay-nothing", orders=[order.id]), None
            )

    async def test_deselection_keeps_past_allocations(
        self, db_session: AsyncSession, seed: dict, make_order
    ):
        order = await make_order(seed["cbc"], seed["lipid"])
        cbc, lipid = order.items
        payments = LabPaymentService(db_session)
        await payments.submit_batch_payment(
            seed["patient"].id, batch("60.00", "pay-sel-1", items=[cbc.id]), None
        )

        updated = await LabOrderService(db_session).toggle_item_selection(
            order.id, cbc.id, False, seed["patient_user"].id
        )
        assert updated.order_paid == Decimal("60.00")
        assert await payments.ledger.allocated_for_item(cbc.id) == Decimal("60.00")

        # Paying the whole order now only reaches the still-selected item
        result = await payments.submit_batch_payment(
            seed["patient"].id, batch("50.00", "pay-sel-2", orders=[order.id]), None
        )
        assert [a.order_item_id for a in result.payment.allocations] == [lipid.id]


class TestCancellationAndRefund:
    async def test_cancelled_item_becomes_refund_candidate(
        self, db_session: AsyncSession, seed: dict, make_order
    ):
        order = await make_order(seed["cbc"], seed["lipid"])
        cbc = order.items[0]
        await LabPaymentService(db_session).submit_batch_payment(
            seed["patient"].id, batch("100.00", "pay-cx", items=[cbc.id]), None
        )

        updated = await LabOrderService(db_session).cancel_order_item(
            order.id, cbc.id, "Duplicate order", CancelledBy.ADMIN, seed["admin"].id
        )

        assert updated.order_total == Decimal("50.00")
        assert updated.order_paid == Decimal("0.00")
        assert updated.order_due == Decimal("50.00")
        assert updated.refund_candidate_amount == Decimal("100.00")
        assert updated.status == OrderStatus.ORDERED
        cancelled = updated.items[0]
        assert cancelled.status == OrderItemStatus.CANCELLED_BY_ADMIN
        assert cancelled.is_selected is False
        # Prior allocation is not reversed
        assert len(await allocation_rows(db_session)) == 1

    async def test_refund_reverses_the_balance(self, db_session: AsyncSession, seed: dict, make_order):
        order = await make_order(seed["cbc"], seed["lipid"])
        cbc = order.items[0]
        payments = LabPaymentService(db_session)
        await payments.submit_batch_payment(
            seed["patient"].id, batch("80.00", "pay-rf", items=[cbc.id]), None
        )
        await LabOrderService(db_session).cancel_order_item(
            order.id, cbc.id, None, CancelledBy.PATIENT, seed["patient_user"].id
        )

        refund = RefundRequest(idempotency_key="refund-1")
        result = await payments.refund_cancelled_item(order.id, cbc.id, refund, seed["admin"].id)

        assert result.payment.status == PaymentStatus.REFUNDED
        assert result.payment.applied_amount == Decimal("-80.00")
        assert [a.applied_amount for a in result.payment.allocations] == [Decimal("-80.00")]
        assert result.orders[0].refund_candidate_amount == Decimal("0.00")
        assert await payments.ledger.allocated_for_item(cbc.id) == Decimal("0.00")

        again = await payments.refund_cancelled_item(order.id, cbc.id, refund, seed["admin"].id)
        assert again.replayed is True
        assert again.payment.id == result.payment.id

    async def test_refund_requires_cancelled_item_with_balance(
        self, db_session: AsyncSession, seed: dict, make_order
    ):
        order = await make_order(seed["cbc"], seed["lipid"])
        order_id = order.id
        cbc_id, lipid_id = (item.id for item in order.items)
        admin_id = seed["admin"].id
        payments = LabPaymentService(db_session)

        with pytest.raises(ItemNotEligibleError):
            await payments.refund_cancelled_item(
                order_id, cbc_id, RefundRequest(idempotency_key="refund-live"), admin_id
            )

        await LabOrderService(db_session).cancel_order_item(
            order_id, lipid_id, None, CancelledBy.ADMIN, admin_id
        )
        with pytest.raises(ValidationError):
            await payments.refund_cancelled_item(
                order_id, lipid_id, RefundRequest(idempotency_key="refund-empty"), admin_id
            )


class TestThresholdGating:
    async def test_sample_allowed_follows_ledger(self, db_session: AsyncSession, seed: dict, make_order):
        order = await make_order(seed["cbc"], seed["lipid"])
        cbc = order.items[0]
        payments = LabPaymentService(db_session)

        first = await payments.submit_batch_payment(
            seed["patient"].id, batch("40.00", "gate-1", items=[cbc.id]), None
        )
        assert first.orders[0].items[0].sample_allowed is False

        second = await payments.submit_batch_payment(
            seed["patient"].id, batch("10.00", "gate-2", items=[cbc.id]), None
        )
        [updated] = second.orders
        assert updated.items[0].sample_allowed is True
        # lipid is still unpaid, so the order as a whole is not allowed
        assert updated.sample_allowed is False

    async def test_order_threshold_override(self, db_session: AsyncSession, seed: dict, make_order):
        order = await make_order(seed["cbc"])
        await LabPaymentService(db_session).submit_batch_payment(
            seed["patient"].id, batch("30.00", "gate-3", orders=[order.id]), None
        )
        orders = LabOrderService(db_session)

        lowered = await orders.set_order_threshold(order.id, Decimal("0.25"), seed["admin"].id)
        assert lowered.sample_allowed is True
        assert lowered.items[0].sample_allowed is True

        restored = await orders.set_order_threshold(order.id, None, seed["admin"].id)
        assert restored.payment_threshold is None
        assert restored.sample_allowed is False

    async def test_processing_blocked_until_threshold(
        self, db_session: AsyncSession, seed: dict, make_order
    ):
        order = await make_order(seed["cbc"])
        order_id, item_id = order.id, order.items[0].id
        tech_id = seed["tech"].id
        orders = LabOrderService(db_session)
        await orders.approve_items(order_id, None, seed["admin"].id)
        await orders.transition_item_status(
            order_id, item_id, OrderItemStatus.SAMPLE_COLLECTION_SCHEDULED, tech_id
        )

        with pytest.raises(ThresholdNotMetError):
            await orders.transition_item_status(
                order_id, item_id, OrderItemStatus.SAMPLE_COLLECTED, tech_id
            )

        await LabPaymentService(db_session).submit_batch_payment(
            seed["patient"].id, batch("50.00", "gate-4", items=[item_id]), None
        )
        updated = await orders.transition_item_status(
            order_id, item_id, OrderItemStatus.SAMPLE_COLLECTED, tech_id
        )
        assert updated.items[0].status == OrderItemStatus.SAMPLE_COLLECTED
        assert updated.status == OrderStatus.SAMPLE_COLLECTED


class TestLockConflicts:
    async def test_lock_conflict_is_retried(
        self, db_session: AsyncSession, seed: dict, make_order, monkeypatch
    ):
        order = await make_order(seed["cbc"])
        monkeypatch.setattr(settings, "allocation_retry_backoff_ms", 0)
        original = LabPaymentService._allocate
        calls = {"n": 0}

        async def flaky(self, *args, **kwargs):
            calls["n"] += 1
            if calls["n"] == 1:
                raise OperationalError("SELECT ... FOR UPDATE", {}, Exception("could not obtain lock"))
            return await original(self, *args, **kwargs)

        monkeypatch.setattr(LabPaymentService, "_allocate", flaky)

        result = await LabPaymentService(db_session).submit_batch_payment(
            seed["patient"].id, batch("25.00", "lock-1", orders=[order.id]), None
        )

        assert calls["n"] == 2
        assert result.payment.status == PaymentStatus.COMPLETED

    async def test_persistent_conflict_leaves_record_pending(
        self, db_session: AsyncSession, seed: dict, make_order, monkeypatch
    ):
        order = await make_order(seed["cbc"])
        monkeypatch.setattr(settings, "allocation_retry_backoff_ms", 0)
        monkeypatch.setattr(settings, "allocation_max_retries", 2)

        async def always_locked(self, *args, **kwargs):
            raise OperationalError("SELECT ... FOR UPDATE", {}, Exception("deadlock detected"))

        monkeypatch.setattr(LabPaymentService, "_allocate", always_locked)

        with pytest.raises(AllocationConflictError) as exc_info:
            await LabPaymentService(db_session).submit_batch_payment(
                seed["patient"].id, batch("25.00", "lock-2", orders=[order.id]), None
            )
        assert exc_info.value.details["attempts"] == 3

        payment = await db_session.scalar(
            select(LabOrderPayment).where(LabOrderPayment.payment_reference == "lock-2")
        )
        assert payment.status == PaymentStatus.PENDING


class TestPaymentHistory:
    async def test_list_patient_payments(self, db_session: AsyncSession, seed: dict, make_order):
        order = await make_order(seed["cbc"], seed["lipid"])
        service = LabPaymentService(db_session)
        for key, amount in (("hist-1", "10.00"), ("hist-2", "20.00"), ("hist-3", "30.00")):
            await service.submit_batch_payment(
                seed["patient"].id, batch(amount, key, orders=[order.id]), None
            )

        payments, total = await service.list_patient_payments(seed["patient"].id, page=1, limit=2)
        assert total == 3
        assert [p.payment_reference for p in payments] == ["hist-3", "hist-2"]

        others, other_total = await service.list_patient_payments(seed["other_patient"].id)
        assert others == [] and other_total == 0


def desk_batch(amount: str, key: str, admin_id: int, orders=(), items=()):
    return AdminMultiPatientPaymentRequest(
        amount=Decimal(amount),
        payment_method=PaymentMethod.OFFLINE_CASH,
        target=PaymentTarget(orders=list(orders), items=list(items)),
        idempotency_key=key,
        processed_by_admin_id=admin_id,
    )


class TestMultiPatientPayment:
    async def test_desk_payment_split_per_patient(
        self, db_session: AsyncSession, seed: dict, make_order
    ):
        own = await make_order(seed["cbc"])
        other = await make_order(seed["lipid"], patient=seed["other_patient"])
        patient_id, other_id = seed["patient"].id, seed["other_patient"].id
        admin_id = seed["admin"].id

        result = await LabPaymentService(db_session).submit_multi_patient_payment(
            desk_batch("120.00", "desk-multi", admin_id, orders=[own.id, other.id]), admin_id
        )

        assert result.replayed is False
        shares = {r.payment.patient_id: r.payment for r in result.results}
        assert set(shares) == {patient_id, other_id}
        assert shares[patient_id].payment_reference == patient_share_reference("desk-multi", patient_id)
        assert shares[patient_id].applied_amount == Decimal("100.00")
        assert shares[other_id].applied_amount == Decimal("20.00")
        for payment in shares.values():
            assert payment.status == PaymentStatus.COMPLETED
            assert payment.processed_by_admin_id == admin_id
            assert sum(a.applied_amount for a in payment.allocations) == payment.applied_amount

        orders = LabOrderService(db_session)
        assert (await orders.get_order(own.id)).order_due == Decimal("0.00")
        assert (await orders.get_order(other.id)).order_due == Decimal("30.00")

    async def test_same_key_replays_every_share(
        self, db_session: AsyncSession, seed: dict, make_order
    ):
        own = await make_order(seed["cbc"])
        other = await make_order(seed["lipid"], patient=seed["other_patient"])
        admin_id = seed["admin"].id
        service = LabPaymentService(db_session)
        request = desk_batch("150.00", "desk-twice", admin_id, orders=[own.id, other.id])

        first = await service.submit_multi_patient_payment(request, admin_id)
        second = await service.submit_multi_patient_payment(request, admin_id)

        assert second.replayed is True
        assert [r.payment.id for r in second.results] == [r.payment.id for r in first.results]
        assert len(await allocation_rows(db_session)) == 2

    async def test_overpayment_writes_no_share(
        self, db_session: AsyncSession, seed: dict, make_order
    ):
        own = await make_order(seed["cbc"])
        other = await make_order(seed["lipid"], patient=seed["other_patient"])
        admin_id = seed["admin"].id

        with pytest.raises(OverpaymentRejectedError):
            await LabPaymentService(db_session).submit_multi_patient_payment(
                desk_batch("150.01", "desk-over", admin_id, orders=[own.id, other.id]), admin_id
            )

        assert await db_session.scalar(select(func.count()).select_from(LabOrderPayment)) == 0

    async def test_key_reused_with_different_amount(
        self, db_session: AsyncSession, seed: dict, make_order
    ):
        own = await make_order(seed["cbc"])
        other = await make_order(seed["lipid"], patient=seed["other_patient"])
        admin_id = seed["admin"].id
        service = LabPaymentService(db_session)
        await service.submit_multi_patient_payment(
            desk_batch("60.00", "desk-dup", admin_id, items=[own.items[0].id, other.items[0].id]),
            admin_id,
        )

        with pytest.raises(DuplicatePaymentError):
            await service.submit_multi_patient_payment(
                desk_batch("70.00", "desk-dup", admin_id, items=[own.items[0].id, other.items[0].id]),
                admin_id,
            )


@pytest.fixture
async def file_sessions(tmp_path):
    """Sessions on a file-backed SQLite database, so each gets its own connection."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


class TestConcurrentSubmission:
    async def test_same_key_allocates_once(self, file_sessions):
        async with file_sessions() as session:
            admin = User(email="admin@lab.test", full_name="Lab Admin", role=UserRole.ADMIN.value)
            user = User(email="rahim@lab.test", full_name="Rahim Uddin", role=UserRole.PATIENT.value)
            session.add_all([admin, user])
            await session.flush()
            patient = Patient(user_id=user.id, full_name="Rahim Uddin")
            cbc = LabTest(name="Complete Blood Count", price=Decimal("100.00"))
            session.add_all([patient, cbc])
            await session.commit()
            order = await LabOrderService(session).create_order(
                LabOrderCreate(patient_id=patient.id, lab_test_ids=[cbc.id]), admin.id
            )
            patient_id, order_id = patient.id, order.id

        async def submit():
            async with file_sessions() as session:
                result = await LabPaymentService(session).submit_batch_payment(
                    patient_id, batch("60.00", "race-1", orders=[order_id]), None
                )
                return result.replayed, result.payment.id

        outcomes = await asyncio.gather(submit(), submit())

        assert sorted(replayed for replayed, _ in outcomes) == [False, True]
        assert len({payment_id for _, payment_id in outcomes}) == 1
        async with file_sessions() as session:
            assert await payments_with_reference(session, "race-1") == 1
            rows = await allocation_rows(session)
            assert [r.applied_amount for r in rows] == [Decimal("60.00")]
            order = await LabOrderService(session).get_order(order_id)
            assert order.order_paid == Decimal("60.00")
