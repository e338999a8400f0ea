import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("JWT_SECRET_KEY", "test-secret-key")

from datetime import date
from decimal import Decimal
from typing import AsyncGenerator, Dict, Optional

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from app.auth.models import User
from app.auth.security import build_token_payload, create_access_token, hash_password
from app.core.cache import year_cache
from app.core.models import AcademicYear, FeeStructure, SchoolClass
from app.db.session import Base, get_db
from app.main import app


TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"
TEST_PASSWORD = "StrongPass123"


@pytest.fixture()
async def engine():
    """Fresh in-memory database per test; StaticPool keeps the single connection alive."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture()
async def db_session(engine) -> AsyncGenerator[AsyncSession, None]:
    """Provide a database session for a test and override FastAPI dependency."""
    async_session = async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )

    async with async_session() as session:

        async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
            yield session

        app.dependency_overrides[get_db] = override_get_db
        yield session

    app.dependency_overrides.clear()


@pytest.fixture(autouse=True)
def clear_year_cache():
    year_cache.clear()
    yield
    year_cache.clear()


@pytest.fixture()
async def client(db_session: AsyncSession) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP client bound to the FastAPI app."""
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


# --- Data helpers ---
async def make_user(db: AsyncSession, role: str, email: Optional[str] = None) -> User:
    user = User(
        full_name=f"Test {role.title()}",
        email=email or f"{role}@school.test",
        password_hash=hash_password(TEST_PASSWORD),
        role=role,
        status="ACTIVE",
    )
    db.add(user)
    await db.commit()
    await db.refresh(user)
    return user


def auth_headers(user: User, year: Optional[AcademicYear] = None) -> Dict[str, str]:
    token = create_access_token(
        subject=build_token_payload(
            user.id,
            user.role,
            academic_year_id=year.id if year else None,
            academic_year_status=year.status if year else None,
        )
    )
    return {"Authorization": f"Bearer {token}"}


async def make_year(
    db: AsyncSession,
    name: str = "2025-2026",
    start: date = date(2025, 4, 1),
    end: date = date(2026, 3, 31),
    is_current: bool = True,
) -> AcademicYear:
    ay = AcademicYear(name=name, start_date=start, end_date=end, is_current=is_current, status="ACTIVE")
    db.add(ay)
    await db.commit()
    await db.refresh(ay)
    return ay


async def make_class(db: AsyncSession, name: str, display_order: Optional[int] = None, section: Optional[str] = None) -> SchoolClass:
    cl = SchoolClass(name=name, section=section, display_order=display_order, is_active=True)
    db.add(cl)
    await db.commit()
    await db.refresh(cl)
    return cl


async def make_fee_structure(
    db: AsyncSession,
    year: AcademicYear,
    cl: SchoolClass,
    fee_type: str,
    amount: str,
    due_date: Optional[date] = None,
) -> FeeStructure:
    fs = FeeStructure(
        academic_year_id=year.id,
        class_id=cl.id,
        fee_type=fee_type,
        amount=Decimal(amount),
        frequency="annual",
        due_date=due_date,
        is_active=True,
    )
    db.add(fs)
    await db.commit()
    await db.refresh(fs)
    return fs


async def admit(client: AsyncClient, headers: Dict[str, str], year: AcademicYear, cl: SchoolClass, admission_number: str) -> dict:
    response = await client.post(
        "/api/v1/students",
        json={
            "admission_number": admission_number,
            "first_name": "Asha",
            "last_name": admission_number,
            "academic_year_id": str(year.id),
            "class_id": str(cl.id),
        },
        headers=headers,
    )
    assert response.status_code == 201, response.text
    return response.json()


@pytest.fixture()
async def admin(db_session: AsyncSession) -> User:
    return await make_user(db_session, "admin")


@pytest.fixture()
async def accountant(db_session: AsyncSession) -> User:
    return await make_user(db_session, "accountant")


@pytest.fixture()
async def teacher(db_session: AsyncSession) -> User:
    return await make_user(db_session, "teacher")


@pytest.fixture()
async def year(db_session: AsyncSession) -> AcademicYear:
    return await make_year(db_session)


@pytest.fixture()
async def grade1(db_session: AsyncSession) -> SchoolClass:
    return await make_class(db_session, "Grade 1", display_order=1)


@pytest.fixture()
async def grade2(db_session: AsyncSession) -> SchoolClass:
    return await make_class(db_session, "Grade 2", display_order=2)


@pytest.fixture()
async def admin_headers(admin: User, year: AcademicYear) -> Dict[str, str]:
    return auth_headers(admin, year)
