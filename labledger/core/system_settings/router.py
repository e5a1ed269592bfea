"""API for system settings."""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from labledger.core.auth.dependencies import ADMIN_ROLES, get_current_user, require_roles
from labledger.core.auth.models import User
from labledger.core.database.session import get_db
from labledger.core.system_settings.schemas import PaymentThresholdResponse, PaymentThresholdUpdate
from labledger.core.system_settings.service import get_threshold_config, set_default_threshold
from labledger.modules.lab_payments.ledger import LedgerService
from labledger.shared.schemas.base import ApiResponse

router = APIRouter(prefix="/system-settings", tags=["System Settings"])


@router.get("/payment-threshold", response_model=ApiResponse[PaymentThresholdResponse])
async def get_payment_threshold(
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """Global fraction of price that must be paid before samples are processed."""
    config = await get_threshold_config(db)
    return ApiResponse(
        data=PaymentThresholdResponse(
            default_threshold=config.default_threshold, source=config.source
        )
    )


@router.put("/payment-threshold", response_model=ApiResponse[PaymentThresholdResponse])
async def put_payment_threshold(
    data: PaymentThresholdUpdate,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_roles(*ADMIN_ROLES)),
):
    """
    Update the global threshold (SuperAdmin/Admin).

    Sample flags of every order that follows the default are re-derived in
    the same transaction; orders with their own threshold are unaffected.
    """
    config = await set_default_threshold(db, data.threshold, current_user.id)
    await LedgerService(db).recalculate_default_threshold_orders(config)
    await db.commit()
    return ApiResponse(
        message="Payment threshold updated",
        data=PaymentThresholdResponse(
            default_threshold=config.default_threshold, source=config.source
        ),
    )
