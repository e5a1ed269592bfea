from decimal import Decimal
from enum import StrEnum

from pydantic import BaseModel, Field


class BkashTransactionStatus(StrEnum):
    COMPLETED = "Completed"
    FAILED = "Failed"
    CANCELLED = "Cancelled"


class BkashWebhookPayload(BaseModel):
    """
    bKash payment callback (fields we use).

    merchantInvoiceNumber carries the payment reference the pending record
    was registered under; trxID is bKash's own transaction id.
    """

    paymentID: str = Field(..., min_length=1, max_length=100)
    trxID: str | None = Field(None, max_length=100)
    transactionStatus: str
    amount: Decimal | None = Field(None, gt=0)
    merchantInvoiceNumber: str = Field(..., min_length=1, max_length=100)


class BkashWebhookAck(BaseModel):
    statusCode: str = "0000"
    statusMessage: str
