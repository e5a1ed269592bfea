"""Tests for the pure allocation engine."""

from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from labledger.core.exceptions import OverpaymentRejectedError, ValidationError
from labledger.modules.lab_payments.allocation import (
    AllocationCandidate,
    is_sample_allowed,
    merge_candidates,
    plan_allocation,
    total_due,
)

T0 = datetime(2026, 3, 1, 9, 0)


def candidate(item_id, price, allocated="0", order_id=1, created_at=T0):
    return AllocationCandidate(
        item_id=item_id,
        order_id=order_id,
        order_created_at=created_at,
        unit_price=Decimal(price),
        allocated=Decimal(allocated),
    )


class TestPlanAllocation:
    def test_oldest_item_is_paid_first(self):
        """A due 100, B due 50: 120 pays A in full and leaves B with 30 due."""
        a = candidate(1, "100.00")
        b = candidate(2, "50.00")

        lines = plan_allocation(Decimal("120.00"), [b, a])

        assert [(l.item_id, l.amount) for l in lines] == [
            (1, Decimal("100.00")),
            (2, Decimal("20.00")),
        ]
        assert b.due - lines[1].amount == Decimal("30.00")

    def test_overpayment_rejected(self):
        with pytest.raises(OverpaymentRejectedError) as exc_info:
            plan_allocation(Decimal("200.00"), [candidate(1, "100.00"), candidate(2, "50.00")])
        assert exc_info.value.details["total_due"] == "150.00"

    def test_exact_total_is_accepted(self):
        lines = plan_allocation(Decimal("150.00"), [candidate(1, "100.00"), candidate(2, "50.00")])
        assert sum(l.amount for l in lines) == Decimal("150.00")

    def test_non_positive_amount_rejected(self):
        with pytest.raises(ValidationError):
            plan_allocation(Decimal("0"), [candidate(1, "100.00")])
        with pytest.raises(ValidationError):
            plan_allocation(Decimal("-5"), [candidate(1, "100.00")])

    def test_fully_paid_items_get_no_line(self):
        paid = candidate(1, "100.00", allocated="100.00")
        open_ = candidate(2, "50.00", allocated="10.00")

        lines = plan_allocation(Decimal("40.00"), [paid, open_])

        assert [(l.item_id, l.amount) for l in lines] == [(2, Decimal("40.00"))]

    def test_stops_when_amount_is_used_up(self):
        lines = plan_allocation(
            Decimal("100.00"), [candidate(1, "100.00"), candidate(2, "50.00"), candidate(3, "80.00")]
        )
        assert [l.item_id for l in lines] == [1]

    def test_spans_orders_by_order_age(self):
        older = candidate(9, "60.00", order_id=1, created_at=T0)
        newer = candidate(2, "60.00", order_id=2, created_at=T0 + timedelta(days=1))

        lines = plan_allocation(Decimal("90.00"), [newer, older])

        assert [(l.order_id, l.item_id, l.amount) for l in lines] == [
            (1, 9, Decimal("60.00")),
            (2, 2, Decimal("30.00")),
        ]

    def test_same_inputs_same_plan(self):
        items = [candidate(3, "30.00"), candidate(1, "10.00"), candidate(2, "20.00")]
        first = plan_allocation(Decimal("45.00"), items)
        second = plan_allocation(Decimal("45.00"), list(reversed(items)))
        assert first == second

    def test_repeated_item_is_allocated_once(self):
        a = candidate(1, "100.00")
        lines = plan_allocation(Decimal("100.00"), [a, a])
        assert len(lines) == 1

        with pytest.raises(OverpaymentRejectedError):
            plan_allocation(Decimal("150.00"), [a, a])


class TestHelpers:
    def test_due_never_negative(self):
        assert candidate(1, "50.00", allocated="60.00").due == Decimal("0.00")

    def test_merge_and_total_due(self):
        items = merge_candidates([candidate(1, "10.00"), candidate(1, "10.00"), candidate(2, "5.00")])
        assert [c.item_id for c in items] == [1, 2]
        assert total_due(items) == Decimal("15.00")


class TestSampleAllowed:
    @pytest.mark.parametrize(
        "allocated, threshold, expected",
        [
            ("0.00", "0.50", False),
            ("49.99", "0.50", False),
            ("50.00", "0.50", True),
            ("100.00", "1.00", True),
            ("0.00", "0.00", True),
        ],
    )
    def test_threshold_boundary(self, allocated, threshold, expected):
        assert is_sample_allowed(Decimal(allocated), Decimal("100.00"), Decimal(threshold)) is expected

    def test_monotonic_in_allocated_amount(self):
        price, threshold = Decimal("80.00"), Decimal("0.50")
        flags = [is_sample_allowed(Decimal(paid), price, threshold) for paid in range(0, 81, 5)]
        # once allowed, never disallowed again as payments grow
        assert flags == sorted(flags)

    def test_zero_price_always_allowed(self):
        assert is_sample_allowed(Decimal("0"), Decimal("0.00"), Decimal("1.00")) is True
