"""Patient identity (read-only, owned by the patient registry)."""

from sqlalchemy import BigInteger, ForeignKey, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from labledger.core.database.base import BaseModel


class Patient(BaseModel):
    __tablename__ = "patients"

    user_id: Mapped[int | None] = mapped_column(
        BigInteger, ForeignKey("users.id"), nullable=True, unique=True, index=True
    )
    full_name: Mapped[str] = mapped_column(String(200), nullable=False)
    phone: Mapped[str | None] = mapped_column(String(50), nullable=True)

    user: Mapped["User | None"] = relationship("User")


from labledger.core.auth.models import User  # noqa: E402
