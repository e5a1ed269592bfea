import logging
import secrets
from enum import StrEnum

from sqlalchemy.ext.asyncio import AsyncSession

from labledger.core.config import settings
from labledger.core.exceptions import AllocationConflictError, AppException
from labledger.integrations.bkash.schemas import BkashTransactionStatus, BkashWebhookPayload
from labledger.modules.lab_payments.service import (
    ClientKeyReference,
    GatewayTransactionReference,
    LabPaymentService,
)

logger = logging.getLogger(__name__)


class BkashCallbackOutcome(StrEnum):
    PROCESSED = "processed"
    REPLAYED = "replayed"
    FAILED = "failed"
    REJECTED = "rejected"
    UNMATCHED = "unmatched"
    IGNORED = "ignored"


class BkashWebhookService:
    def __init__(self, db: AsyncSession):
        self.db = db
        self.payments = LabPaymentService(db)

    def verify_webhook_token(self, token: str) -> bool:
        configured = (settings.bkash_webhook_token or "").strip()
        if not configured:
            return False
        return secrets.compare_digest(token or "", configured)

    async def process_callback(self, payload: BkashWebhookPayload) -> BkashCallbackOutcome:
        """
        Idempotent callback processing:
        - Completed: allocate the registered payment through the shared payment path
        - Failed / Cancelled: mark the pending record failed
        - unknown references are acknowledged and logged
        """
        reference_key = payload.merchantInvoiceNumber.strip()
        status = payload.transactionStatus.strip()
        log_context = {
            "payment_reference": reference_key,
            "bkash_payment_id": payload.paymentID,
            "trx_id": payload.trxID,
            "transaction_status": status,
        }

        if status == BkashTransactionStatus.COMPLETED:
            if not payload.trxID:
                logger.warning("bKash completed callback without trxID", extra=log_context)
                return BkashCallbackOutcome.REJECTED
            reference = GatewayTransactionReference(
                transaction_id=payload.trxID.strip(), payment_reference=reference_key
            )
            try:
                result = await self.payments.confirm_gateway_payment(reference, payload.amount)
            except AllocationConflictError:
                # Leave the record pending; a non-2xx makes bKash deliver again
                raise
            except AppException as exc:
                logger.warning(
                    "bKash payment rejected",
                    extra={**log_context, "code": exc.code, "reason": exc.message},
                )
                return BkashCallbackOutcome.REJECTED
            if result is None:
                logger.warning("bKash callback unmatched", extra=log_context)
                return BkashCallbackOutcome.UNMATCHED
            if result.replayed:
                return BkashCallbackOutcome.REPLAYED
            return BkashCallbackOutcome.PROCESSED

        if status in (BkashTransactionStatus.FAILED, BkashTransactionStatus.CANCELLED):
            if payload.trxID:
                reference = GatewayTransactionReference(
                    transaction_id=payload.trxID.strip(), payment_reference=reference_key
                )
            else:
                reference = ClientKeyReference(reference_key)
            payment = await self.payments.fail_gateway_payment(
                reference, f"bKash transaction {status.lower()}"
            )
            if payment is None:
                logger.warning("bKash callback unmatched", extra=log_context)
                return BkashCallbackOutcome.UNMATCHED
            logger.info("bKash payment failed", extra={**log_context, "payment_id": payment.id})
            return BkashCallbackOutcome.FAILED

        logger.info("bKash callback with unhandled status ignored", extra=log_context)
        return BkashCallbackOutcome.IGNORED
