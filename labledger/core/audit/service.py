from enum import StrEnum
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from labledger.core.audit.models import AuditLog


class AuditAction(StrEnum):
    """Audit actions recorded by the lab ledger."""

    CREATE_ORDER = "lab_order.create"
    APPROVE_ITEMS = "lab_order.approve_items"
    SELECT_ITEM = "lab_order.select_item"
    CANCEL_ITEM = "lab_order.cancel_item"
    TRANSITION_ITEM = "lab_order.transition_item"
    SET_ORDER_THRESHOLD = "lab_order.set_threshold"

    REGISTER_PAYMENT = "lab_payment.register"
    COMPLETE_PAYMENT = "lab_payment.complete"
    FAIL_PAYMENT = "lab_payment.fail"
    REFUND_ITEM = "lab_payment.refund_item"

    UPDATE_SETTING = "system_setting.update"


class AuditService:
    """Service for creating audit logs."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def log(
        self,
        action: str | AuditAction,
        entity_type: str,
        entity_id: int,
        user_id: int | None = None,
        entity_identifier: str | None = None,
        old_values: dict[str, Any] | None = None,
        new_values: dict[str, Any] | None = None,
        comment: str | None = None,
    ) -> AuditLog:
        """Create an audit log entry within the caller's transaction."""
        audit_log = AuditLog(
            user_id=user_id,
            action=str(action),
            entity_type=entity_type,
            entity_id=entity_id,
            entity_identifier=entity_identifier,
            old_values=old_values,
            new_values=new_values,
            comment=comment,
        )

        self.db.add(audit_log)
        await self.db.flush()

        return audit_log

    async def history(self, entity_type: str, entity_id: int) -> list[AuditLog]:
        """Audit trail of one entity, oldest first."""
        result = await self.db.execute(
            select(AuditLog)
            .where(AuditLog.entity_type == entity_type, AuditLog.entity_id == entity_id)
            .order_by(AuditLog.created_at, AuditLog.id)
        )
        return list(result.scalars().all())
