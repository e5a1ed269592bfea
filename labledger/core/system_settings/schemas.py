"""Schemas for system settings."""

from decimal import Decimal

from pydantic import Field

from labledger.shared.schemas.base import BaseSchema


class PaymentThresholdResponse(BaseSchema):
    default_threshold: Decimal
    source: str  # "database" once an admin has set it, else "environment"


class PaymentThresholdUpdate(BaseSchema):
    threshold: Decimal = Field(ge=0, le=1, description="Fraction of price, e.g. 0.50")
