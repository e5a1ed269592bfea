"""API endpoints for Lab Orders module."""

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from labledger.core.auth.dependencies import (
    ADMIN_ROLES,
    STAFF_ROLES,
    get_current_user,
    require_roles,
)
from labledger.core.auth.models import User
from labledger.core.database.session import get_db
from labledger.core.exceptions import AuthorizationError
from labledger.modules.lab_orders.models import CancelledBy, LabTestOrder, OrderItemStatus
from labledger.modules.lab_orders.schemas import (
    ApproveItemsRequest,
    CancelItemRequest,
    ItemSelectionUpdate,
    ItemStatusUpdate,
    LabOrderCreate,
    LabOrderResponse,
    OrderThresholdUpdate,
)
from labledger.modules.lab_orders.service import LabOrderService
from labledger.modules.patients.service import ensure_patient_access, get_patient
from labledger.shared.schemas.base import ApiResponse, PaginatedResponse

router = APIRouter(prefix="/lab-orders", tags=["Lab Orders"])


async def _check_patient(db: AsyncSession, user: User, patient_id: int) -> None:
    patient = await get_patient(db, patient_id)
    ensure_patient_access(user, patient)


async def _load_accessible_order(
    service: LabOrderService, user: User, order_id: int
) -> LabTestOrder:
    order = await service.get_order(order_id)
    await _check_patient(service.db, user, order.patient_id)
    return order


@router.post(
    "",
    response_model=ApiResponse[LabOrderResponse],
    status_code=status.HTTP_201_CREATED,
)
async def create_lab_order(
    data: LabOrderCreate,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """Create an order from catalog test ids. Only admins may set paymentThreshold."""
    await _check_patient(db, current_user, data.patient_id)
    if data.payment_threshold is not None and not current_user.has_role(*ADMIN_ROLES):
        raise AuthorizationError("Only admins can set a payment threshold")
    service = LabOrderService(db)
    order = await service.create_order(data, current_user.id)
    return ApiResponse(
        data=LabOrderResponse.model_validate(order),
        message="Lab order created successfully",
    )


@router.get(
    "/pending-approval",
    response_model=ApiResponse[PaginatedResponse[LabOrderResponse]],
)
async def list_pending_approval(
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_roles(*STAFF_ROLES)),
):
    """Orders with items waiting for approval."""
    service = LabOrderService(db)
    orders, total = await service.list_pending_approval_orders(page=page, limit=limit)
    return ApiResponse(
        data=PaginatedResponse.create(
            items=[LabOrderResponse.model_validate(o) for o in orders],
            total=total,
            page=page,
            limit=limit,
        )
    )


@router.get(
    "/patients/{patient_id}/pending-payments",
    response_model=ApiResponse[PaginatedResponse[LabOrderResponse]],
)
async def list_pending_payments(
    patient_id: int,
    item_status: list[OrderItemStatus] | None = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """Unpaid or partially paid orders of a patient, optionally filtered by item status."""
    await _check_patient(db, current_user, patient_id)
    service = LabOrderService(db)
    orders, total = await service.list_pending_payment_orders(
        patient_id, item_statuses=item_status, page=page, limit=limit
    )
    return ApiResponse(
        data=PaginatedResponse.create(
            items=[LabOrderResponse.model_validate(o) for o in orders],
            total=total,
            page=page,
            limit=limit,
        )
    )


@router.get(
    "/{order_id}",
    response_model=ApiResponse[LabOrderResponse],
)
async def get_lab_order(
    order_id: int,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    service = LabOrderService(db)
    order = await _load_accessible_order(service, current_user, order_id)
    return ApiResponse(data=LabOrderResponse.model_validate(order))


@router.post(
    "/{order_id}/items/approve",
    response_model=ApiResponse[LabOrderResponse],
)
async def approve_order_items(
    order_id: int,
    data: ApproveItemsRequest,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_roles(*ADMIN_ROLES)),
):
    """Approve ordered items (SuperAdmin/Admin)."""
    service = LabOrderService(db)
    order = await service.approve_items(order_id, data.item_ids, current_user.id)
    return ApiResponse(
        data=LabOrderResponse.model_validate(order),
        message="Order items approved",
    )


@router.patch(
    "/{order_id}/items/{item_id}/selection",
    response_model=ApiResponse[LabOrderResponse],
)
async def update_item_selection(
    order_id: int,
    item_id: int,
    data: ItemSelectionUpdate,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    service = LabOrderService(db)
    await _load_accessible_order(service, current_user, order_id)
    order = await service.toggle_item_selection(order_id, item_id, data.is_selected, current_user.id)
    return ApiResponse(data=LabOrderResponse.model_validate(order))


@router.post(
    "/{order_id}/items/{item_id}/cancel",
    response_model=ApiResponse[LabOrderResponse],
)
async def cancel_order_item(
    order_id: int,
    item_id: int,
    data: CancelItemRequest,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """Cancel a test before sample collection. Paid money stays as a refund candidate."""
    service = LabOrderService(db)
    await _load_accessible_order(service, current_user, order_id)
    if current_user.is_patient and data.cancelled_by != CancelledBy.PATIENT:
        raise AuthorizationError("Patients can only cancel as patient")
    order = await service.cancel_order_item(
        order_id, item_id, data.reason, data.cancelled_by, current_user.id
    )
    return ApiResponse(
        data=LabOrderResponse.model_validate(order),
        message="Order item cancelled",
    )


@router.post(
    "/{order_id}/items/{item_id}/status",
    response_model=ApiResponse[LabOrderResponse],
)
async def transition_order_item(
    order_id: int,
    item_id: int,
    data: ItemStatusUpdate,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_roles(*STAFF_ROLES)),
):
    """Advance an item along the fulfillment flow (staff and lab technicians)."""
    service = LabOrderService(db)
    order = await service.transition_item_status(order_id, item_id, data.status, current_user.id)
    return ApiResponse(data=LabOrderResponse.model_validate(order))


@router.patch(
    "/{order_id}/threshold",
    response_model=ApiResponse[LabOrderResponse],
)
async def update_order_threshold(
    order_id: int,
    data: OrderThresholdUpdate,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_roles(*ADMIN_ROLES)),
):
    """Set or clear the per-order payment threshold (SuperAdmin/Admin)."""
    service = LabOrderService(db)
    order = await service.set_order_threshold(order_id, data.threshold, current_user.id)
    return ApiResponse(data=LabOrderResponse.model_validate(order))
