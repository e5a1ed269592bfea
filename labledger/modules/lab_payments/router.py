"""API endpoints for Lab Payments module."""

from fastapi import APIRouter, Depends, Query, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from labledger.core.auth.dependencies import ADMIN_ROLES, get_current_user, require_roles
from labledger.core.auth.models import User
from labledger.core.database.session import get_db
from labledger.modules.lab_orders.schemas import LabOrderResponse
from labledger.modules.lab_payments.models import PaymentStatus
from labledger.modules.lab_payments.schemas import (
    AdminBatchPaymentRequest,
    AdminMultiPatientPaymentRequest,
    BatchPaymentRequest,
    BatchPaymentResponse,
    GatewayPaymentInitiate,
    LabPaymentResponse,
    LabPaymentSummary,
    MultiPatientPaymentResponse,
    RefundRequest,
)
from labledger.modules.lab_payments.service import BatchPaymentResult, LabPaymentService
from labledger.modules.patients.service import ensure_patient_access, get_patient
from labledger.shared.schemas.base import ApiResponse, PaginatedResponse

router = APIRouter(prefix="/lab-payments", tags=["Lab Payments"])


def _batch_payload(result: BatchPaymentResult) -> BatchPaymentResponse:
    return BatchPaymentResponse(
        payment=LabPaymentResponse.model_validate(result.payment),
        orders=[LabOrderResponse.model_validate(o) for o in result.orders],
        replayed=result.replayed,
    )


def _batch_response(
    result: BatchPaymentResult, response: Response, message: str = "Payment applied successfully"
) -> ApiResponse:
    """201 for a newly applied payment, 200 when a completed key is replayed."""
    if result.replayed:
        response.status_code = status.HTTP_200_OK
        message = "Payment already processed"
    return ApiResponse(data=_batch_payload(result), message=message)


@router.post(
    "/patients/{patient_id}/batch",
    response_model=ApiResponse[BatchPaymentResponse],
    status_code=status.HTTP_201_CREATED,
)
async def submit_batch_payment(
    patient_id: int,
    data: BatchPaymentRequest,
    response: Response,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """
    Pay for several tests, possibly across orders, in one transaction.

    Safe to retry with the same idempotencyKey.
    """
    patient = await get_patient(db, patient_id)
    ensure_patient_access(current_user, patient)
    service = LabPaymentService(db)
    result = await service.submit_batch_payment(patient_id, data, current_user.id)
    return _batch_response(result, response)


@router.post(
    "/admin/patients/{patient_id}/batch",
    response_model=ApiResponse[BatchPaymentResponse],
    status_code=status.HTTP_201_CREATED,
)
async def submit_admin_batch_payment(
    patient_id: int,
    data: AdminBatchPaymentRequest,
    response: Response,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_roles(*ADMIN_ROLES)),
):
    """Record a desk payment on the patient's behalf (SuperAdmin/Admin)."""
    await get_patient(db, patient_id)
    service = LabPaymentService(db)
    result = await service.submit_batch_payment(patient_id, data, current_user.id)
    return _batch_response(result, response)


@router.post(
    "/admin/batch",
    response_model=ApiResponse[MultiPatientPaymentResponse],
    status_code=status.HTTP_201_CREATED,
)
async def submit_multi_patient_payment(
    data: AdminMultiPatientPaymentRequest,
    response: Response,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_roles(*ADMIN_ROLES)),
):
    """
    Record one desk payment covering tests of several patients (SuperAdmin/Admin).

    Creates one payment record per patient. Safe to retry with the same idempotencyKey.
    """
    service = LabPaymentService(db)
    result = await service.submit_multi_patient_payment(data, current_user.id)
    if result.replayed:
        response.status_code = status.HTTP_200_OK
    return ApiResponse(
        data=MultiPatientPaymentResponse(
            payment_reference=result.payment_reference,
            total_amount=result.amount,
            payments=[_batch_payload(r) for r in result.results],
            replayed=result.replayed,
        ),
        message=f"Payment recorded for {len(result.results)} patient(s)",
    )


@router.post(
    "/patients/{patient_id}/gateway",
    response_model=ApiResponse[BatchPaymentResponse],
    status_code=status.HTTP_201_CREATED,
)
async def initiate_gateway_payment(
    patient_id: int,
    data: GatewayPaymentInitiate,
    response: Response,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """Register a pending gateway payment; it is applied when the gateway confirms it."""
    patient = await get_patient(db, patient_id)
    ensure_patient_access(current_user, patient)
    service = LabPaymentService(db)
    result = await service.initiate_gateway_payment(patient_id, data, current_user.id)
    if result.replayed:
        response.status_code = status.HTTP_200_OK
    return ApiResponse(
        data=BatchPaymentResponse(
            payment=LabPaymentResponse.model_validate(result.payment),
            orders=[],
            replayed=result.replayed,
        ),
        message="Gateway payment registered",
    )


@router.get(
    "/patients/{patient_id}",
    response_model=ApiResponse[PaginatedResponse[LabPaymentSummary]],
)
async def list_patient_payments(
    patient_id: int,
    status: PaymentStatus | None = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """Payment history of a patient, newest first."""
    patient = await get_patient(db, patient_id)
    ensure_patient_access(current_user, patient)
    service = LabPaymentService(db)
    payments, total = await service.list_patient_payments(
        patient_id, status=status, page=page, limit=limit
    )
    return ApiResponse(
        data=PaginatedResponse.create(
            items=[LabPaymentSummary.model_validate(p) for p in payments],
            total=total,
            page=page,
            limit=limit,
        )
    )


@router.get(
    "/{payment_id}",
    response_model=ApiResponse[LabPaymentResponse],
)
async def get_lab_payment(
    payment_id: int,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    service = LabPaymentService(db)
    payment = await service.get_payment(payment_id)
    patient = await get_patient(db, payment.patient_id)
    ensure_patient_access(current_user, patient)
    return ApiResponse(data=LabPaymentResponse.model_validate(payment))


@router.post(
    "/orders/{order_id}/items/{item_id}/refund",
    response_model=ApiResponse[BatchPaymentResponse],
    status_code=status.HTTP_201_CREATED,
)
async def refund_cancelled_item(
    order_id: int,
    item_id: int,
    data: RefundRequest,
    response: Response,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_roles(*ADMIN_ROLES)),
):
    """Refund what was paid towards a cancelled test (SuperAdmin/Admin)."""
    service = LabPaymentService(db)
    result = await service.refund_cancelled_item(order_id, item_id, data, current_user.id)
    return _batch_response(result, response, message="Refund recorded")
