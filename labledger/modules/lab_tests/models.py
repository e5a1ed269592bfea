"""Lab test catalog (read-only reference data)."""

from decimal import Decimal

from sqlalchemy import Boolean, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from labledger.core.database.base import BaseModel


class LabTest(BaseModel):
    """
    A test offered by the lab.

    Maintained by the catalog service. Orders copy name and price into
    their items, so later catalog price changes never touch existing orders.
    """

    __tablename__ = "lab_tests"

    name: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    category: Mapped[str | None] = mapped_column(String(100), nullable=True)
    price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
