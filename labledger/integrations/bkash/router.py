from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from labledger.core.database.session import get_db
from labledger.integrations.bkash.schemas import BkashWebhookAck, BkashWebhookPayload
from labledger.integrations.bkash.service import BkashWebhookService


router = APIRouter(prefix="/bkash", tags=["bKash"])


@router.post("/webhook/{token}", response_model=BkashWebhookAck)
async def bkash_webhook(
    token: str,
    payload: BkashWebhookPayload,
    db: AsyncSession = Depends(get_db),
):
    service = BkashWebhookService(db)
    if not service.verify_webhook_token(token):
        # Avoid exposing endpoint existence when token isn't configured/mismatched.
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Not found")

    outcome = await service.process_callback(payload)
    return BkashWebhookAck(statusMessage=f"Accepted ({outcome.value})")
