"""Key/value system settings (payment threshold and similar rarely-changed knobs)."""

from sqlalchemy import BigInteger, ForeignKey, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from labledger.core.database.base import BaseModel


class SettingKey:
    """Known setting keys."""

    LAB_PAYMENT_THRESHOLD_DEFAULT = "lab_payment_threshold_default"


class SystemSetting(BaseModel):
    """One configuration value, stored as text and parsed by its reader."""

    __tablename__ = "system_settings"

    setting_key: Mapped[str] = mapped_column(String(100), unique=True, nullable=False, index=True)
    setting_value: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    updated_by_id: Mapped[int | None] = mapped_column(
        BigInteger, ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
