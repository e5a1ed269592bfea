from collections.abc import AsyncGenerator
from decimal import Decimal

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from labledger.core.auth.jwt import create_access_token
from labledger.core.auth.models import User, UserRole
from labledger.core.database.base import Base
from labledger.core.database import get_db
from labledger.main import app
from labledger.modules.lab_orders.schemas import LabOrderCreate
from labledger.modules.lab_orders.service import LabOrderService
from labledger.modules.lab_tests.models import LabTest
from labledger.modules.patients.models import Patient

# In-memory SQLite shared by every session of a test
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

test_engine = create_async_engine(TEST_DATABASE_URL, echo=False, poolclass=StaticPool)
test_async_session = async_sessionmaker(
    test_engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)


@pytest.fixture(autouse=True)
async def setup_database():
    """Create tables before each test and drop after."""
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest.fixture
async def db_session() -> AsyncGenerator[AsyncSession, None]:
    """Get test database session."""
    async with test_async_session() as session:
        yield session


@pytest.fixture
async def client(db_session: AsyncSession) -> AsyncGenerator[AsyncClient, None]:
    """Get test HTTP client with overridden database dependency."""

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as client:
        yield client

    app.dependency_overrides.clear()


def auth_headers(user: User) -> dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token(user.id, user.role)}"}


@pytest.fixture
def headers_for():
    return auth_headers


@pytest.fixture
async def seed(db_session: AsyncSession) -> dict:
    """
    Users of every role, two patients and a small catalog.

    Catalog prices: cbc 100.00, lipid 50.00, thyroid 200.00, consult 0.00.
    """
    admin = User(email="admin@lab.test", full_name="Lab Admin", role=UserRole.ADMIN.value)
    tech = User(email="tech@lab.test", full_name="Lab Tech", role=UserRole.LAB_TECHNICIAN.value)
    patient_user = User(email="rahim@lab.test", full_name="Rahim Uddin", role=UserRole.PATIENT.value)
    other_user = User(email="karim@lab.test", full_name="Karim Ali", role=UserRole.PATIENT.value)
    db_session.add_all([admin, tech, patient_user, other_user])
    await db_session.flush()

    patient = Patient(user_id=patient_user.id, full_name="Rahim Uddin", phone="+8801700000001")
    other_patient = Patient(user_id=other_user.id, full_name="Karim Ali", phone="+8801700000002")
    db_session.add_all([patient, other_patient])

    cbc = LabTest(name="Complete Blood Count", category="Haematology", price=Decimal("100.00"))
    lipid = LabTest(name="Lipid Profile", category="Biochemistry", price=Decimal("50.00"))
    thyroid = LabTest(name="Thyroid Panel", category="Endocrinology", price=Decimal("200.00"))
    consult = LabTest(name="Sample Consultation", category="Other", price=Decimal("0.00"))
    retired = LabTest(name="Retired Test", price=Decimal("10.00"), is_active=False)
    db_session.add_all([cbc, lipid, thyroid, consult, retired])
    await db_session.commit()

    return {
        "admin": admin,
        "tech": tech,
        "patient_user": patient_user,
        "other_user": other_user,
        "patient": patient,
        "other_patient": other_patient,
        "cbc": cbc,
        "lipid": lipid,
        "thyroid": thyroid,
        "consult": consult,
        "retired": retired,
    }


@pytest.fixture
def make_order(db_session: AsyncSession, seed: dict):
    """Create an order for the seeded patient (or another) from catalog tests."""
    # Plain ids survive the session expiring instances on a rollback
    patient_id = seed["patient"].id
    admin_id = seed["admin"].id

    async def _make_order(*tests: LabTest, patient: Patient | None = None, threshold=None):
        service = LabOrderService(db_session)
        return await service.create_order(
            LabOrderCreate(
                patient_id=patient.id if patient else patient_id,
                lab_test_ids=[t.id for t in tests],
                payment_threshold=threshold,
            ),
            created_by_id=admin_id,
        )

    return _make_order
