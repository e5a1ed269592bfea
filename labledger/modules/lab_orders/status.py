"""
Item status transitions and the order status projection.

Every OrderItemStatus has an entry in ITEM_TRANSITIONS; terminal states map
to an empty set. Order status is never set by hand: project_order_status()
derives it from item statuses and the cached payment totals.
"""

from decimal import Decimal
from typing import Iterable

from labledger.core.exceptions import ValidationError
from labledger.modules.lab_orders.models import CancelledBy, OrderItemStatus, OrderStatus

S = OrderItemStatus

FULFILLMENT_FLOW: tuple[OrderItemStatus, ...] = (
    S.ORDERED,
    S.APPROVED,
    S.SAMPLE_COLLECTION_SCHEDULED,
    S.SAMPLE_COLLECTED,
    S.PROCESSING,
    S.RESULTS_READY,
    S.COMPLETED,
)

CANCELLED_STATUSES = frozenset({S.CANCELLED_BY_PATIENT, S.CANCELLED_BY_ADMIN})
# Cancellation and selection changes are only possible before sample collection is scheduled
PRE_COLLECTION_STATUSES = frozenset({S.ORDERED, S.APPROVED})

ITEM_TRANSITIONS: dict[OrderItemStatus, frozenset[OrderItemStatus]] = {
    S.ORDERED: frozenset({S.APPROVED, S.CANCELLED_BY_PATIENT, S.CANCELLED_BY_ADMIN}),
    S.APPROVED: frozenset(
        {S.SAMPLE_COLLECTION_SCHEDULED, S.CANCELLED_BY_PATIENT, S.CANCELLED_BY_ADMIN}
    ),
    S.SAMPLE_COLLECTION_SCHEDULED: frozenset({S.SAMPLE_COLLECTED}),
    S.SAMPLE_COLLECTED: frozenset({S.PROCESSING}),
    S.PROCESSING: frozenset({S.RESULTS_READY}),
    S.RESULTS_READY: frozenset({S.COMPLETED}),
    S.COMPLETED: frozenset(),
    S.CANCELLED_BY_PATIENT: frozenset(),
    S.CANCELLED_BY_ADMIN: frozenset(),
}

_STAGE = {status: index for index, status in enumerate(FULFILLMENT_FLOW)}

_STAGE_TO_ORDER_STATUS = {
    S.SAMPLE_COLLECTION_SCHEDULED: OrderStatus.SAMPLE_COLLECTION_SCHEDULED,
    S.SAMPLE_COLLECTED: OrderStatus.SAMPLE_COLLECTED,
    S.PROCESSING: OrderStatus.PROCESSING,
    S.RESULTS_READY: OrderStatus.RESULTS_READY,
    S.COMPLETED: OrderStatus.COMPLETED,
}


def is_cancelled(status: str) -> bool:
    return OrderItemStatus(status) in CANCELLED_STATUSES


def requires_sample_allowed(target: OrderItemStatus) -> bool:
    """True for every state past sample_collection_scheduled."""
    return target in _STAGE and _STAGE[target] > _STAGE[S.SAMPLE_COLLECTION_SCHEDULED]


def ensure_item_transition(current: str, target: OrderItemStatus) -> None:
    """Raise ValidationError unless current -> target is a legal move."""
    current_status = OrderItemStatus(current)
    if target not in ITEM_TRANSITIONS[current_status]:
        raise ValidationError(
            f"Cannot move order item from {current_status.value} to {target.value}",
            field="status",
        )


def cancellation_status(cancelled_by: CancelledBy) -> OrderItemStatus:
    if cancelled_by == CancelledBy.PATIENT:
        return S.CANCELLED_BY_PATIENT
    return S.CANCELLED_BY_ADMIN


def project_order_status(
    item_statuses: Iterable[str], order_paid: Decimal, order_due: Decimal
) -> OrderStatus:
    """
    Derive the coarse order status.

    1. all items cancelled -> cancelled
    2. least-advanced active item at or past sample collection -> that stage
    3. something paid -> payment_completed (nothing due) or payment_partial
    4. nothing paid -> ordered / verified (some approved) / payment_pending (all approved)
    """
    active = [OrderItemStatus(s) for s in item_statuses if not is_cancelled(s)]
    if not active:
        return OrderStatus.CANCELLED

    least = min(active, key=_STAGE.__getitem__)
    if least in _STAGE_TO_ORDER_STATUS:
        return _STAGE_TO_ORDER_STATUS[least]

    if order_paid > 0:
        if order_due <= 0:
            return OrderStatus.PAYMENT_COMPLETED
        return OrderStatus.PAYMENT_PARTIAL

    approved = sum(1 for s in active if s != S.ORDERED)
    if approved == 0:
        return OrderStatus.ORDERED
    if approved == len(active):
        return OrderStatus.PAYMENT_PENDING
    return OrderStatus.VERIFIED
