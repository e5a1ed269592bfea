"""Service for system settings and the payment threshold configuration."""

import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from labledger.core.audit import AuditAction, AuditService
from labledger.core.config import settings
from labledger.core.exceptions import ValidationError
from labledger.core.system_settings.models import SettingKey, SystemSetting

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ThresholdConfig:
    """
    Process-wide payment threshold, loaded once per request.

    The allocation engine receives this value explicitly instead of reading
    the settings table itself, so its output depends only on the ledger, the
    config and the request.
    """

    default_threshold: Decimal
    source: str = "environment"

    def for_order(self, order_threshold: Decimal | None) -> Decimal:
        """Effective threshold: the order's own override, else the default."""
        if order_threshold is not None:
            return Decimal(order_threshold)
        return self.default_threshold


def parse_threshold(value: str | Decimal | float) -> Decimal:
    try:
        threshold = Decimal(str(value))
    except InvalidOperation:
        raise ValidationError(f"Invalid payment threshold: {value!r}", field="threshold")
    if threshold < 0 or threshold > 1:
        raise ValidationError("Payment threshold must be between 0 and 1", field="threshold")
    return threshold.quantize(Decimal("0.01"))


async def get_setting(db: AsyncSession, key: str) -> SystemSetting | None:
    return await db.scalar(select(SystemSetting).where(SystemSetting.setting_key == key))


async def get_threshold_config(db: AsyncSession) -> ThresholdConfig:
    """Default threshold from the settings table, falling back to the environment."""
    row = await get_setting(db, SettingKey.LAB_PAYMENT_THRESHOLD_DEFAULT)
    if row is None:
        return ThresholdConfig(default_threshold=settings.lab_payment_threshold_default)
    try:
        return ThresholdConfig(default_threshold=parse_threshold(row.setting_value), source="database")
    except ValidationError:
        logger.warning(
            "Ignoring malformed threshold setting",
            extra={"setting_value": row.setting_value},
        )
        return ThresholdConfig(default_threshold=settings.lab_payment_threshold_default)


async def set_default_threshold(
    db: AsyncSession, value: Decimal, updated_by_id: int
) -> ThresholdConfig:
    """Create or update the global threshold row. Does not commit."""
    threshold = parse_threshold(value)
    row = await get_setting(db, SettingKey.LAB_PAYMENT_THRESHOLD_DEFAULT)
    old_value = row.setting_value if row else None
    if row is None:
        row = SystemSetting(
            setting_key=SettingKey.LAB_PAYMENT_THRESHOLD_DEFAULT,
            setting_value=str(threshold),
            description="Fraction of a lab test's price required before its sample may be processed",
            updated_by_id=updated_by_id,
        )
        db.add(row)
    else:
        row.setting_value = str(threshold)
        row.updated_by_id = updated_by_id
    await db.flush()

    await AuditService(db).log(
        action=AuditAction.UPDATE_SETTING,
        entity_type="SystemSetting",
        entity_id=row.id,
        entity_identifier=row.setting_key,
        user_id=updated_by_id,
        old_values={"setting_value": old_value} if old_value is not None else None,
        new_values={"setting_value": str(threshold)},
    )
    return ThresholdConfig(default_threshold=threshold, source="database")
