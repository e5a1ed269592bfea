"""
Allocation engine.

Pure functions: given a payment amount and the current state of the target
items, decide how much each item receives. Nothing here touches the
database, so the same inputs always produce the same plan.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Iterable

from labledger.core.exceptions import OverpaymentRejectedError, ValidationError
from labledger.shared.utils.money import ZERO, round_money, sum_money


@dataclass(frozen=True)
class AllocationCandidate:
    """An order item that may receive part of a payment."""

    item_id: int
    order_id: int
    order_created_at: datetime
    unit_price: Decimal
    allocated: Decimal  # ledger sum so far

    @property
    def due(self) -> Decimal:
        return max(round_money(self.unit_price - self.allocated), ZERO)


@dataclass(frozen=True)
class AllocationLine:
    item_id: int
    order_id: int
    amount: Decimal


def allocation_sort_key(candidate: AllocationCandidate) -> tuple[datetime, int]:
    """Oldest order first, then item id."""
    return (candidate.order_created_at, candidate.item_id)


def merge_candidates(candidates: Iterable[AllocationCandidate]) -> list[AllocationCandidate]:
    """Drop repeated items (an item named directly and through its order)."""
    unique: dict[int, AllocationCandidate] = {}
    for candidate in candidates:
        unique.setdefault(candidate.item_id, candidate)
    return list(unique.values())


def total_due(candidates: Iterable[AllocationCandidate]) -> Decimal:
    return sum_money(c.due for c in candidates)


def plan_allocation(
    amount: Decimal, candidates: Iterable[AllocationCandidate]
) -> list[AllocationLine]:
    """
    Distribute amount over candidates, oldest due first.

    Each item receives min(remaining, due). Fully paid items are skipped,
    so no zero-amount line is ever produced. The returned lines always sum
    to amount exactly.

    Raises:
        ValidationError: amount is not positive
        OverpaymentRejectedError: amount exceeds the total due
    """
    amount = round_money(amount)
    if amount <= 0:
        raise ValidationError("Payment amount must be greater than zero", field="amount")

    ordered = sorted(merge_candidates(candidates), key=allocation_sort_key)
    due_total = total_due(ordered)
    if amount > due_total:
        raise OverpaymentRejectedError(amount, due_total)

    lines: list[AllocationLine] = []
    remaining = amount
    for candidate in ordered:
        if remaining <= 0:
            break
        due = candidate.due
        if due <= 0:
            continue
        share = min(remaining, due)
        lines.append(AllocationLine(item_id=candidate.item_id, order_id=candidate.order_id, amount=share))
        remaining = round_money(remaining - share)

    return lines


def is_sample_allowed(allocated: Decimal, unit_price: Decimal, threshold: Decimal) -> bool:
    """Paid fraction of the item's price has reached the threshold."""
    if unit_price <= 0:
        return True
    return Decimal(allocated) / Decimal(unit_price) >= Decimal(threshold)
