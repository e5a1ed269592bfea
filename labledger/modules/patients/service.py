"""Lookups and access checks against the patient registry."""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from labledger.core.auth.models import User
from labledger.core.exceptions import AuthorizationError, NotFoundError
from labledger.modules.patients.models import Patient


async def get_patient(db: AsyncSession, patient_id: int) -> Patient:
    patient = await db.scalar(select(Patient).where(Patient.id == patient_id))
    if not patient:
        raise NotFoundError("Patient", patient_id)
    return patient


def ensure_patient_access(user: User, patient: Patient) -> None:
    """Patients may only act on their own record; staff may act on any."""
    if user.is_patient and patient.user_id != user.id:
        raise AuthorizationError("Patients can only access their own lab orders and payments")
