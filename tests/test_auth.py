import pytest
from httpx import AsyncClient
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.auth.models import User
from app.auth.roles import capabilities, role_permissions
from app.core.models import SecurityEvent

from tests.conftest import TEST_PASSWORD, auth_headers, make_user, make_year


@pytest.mark.asyncio
async def test_login_success_includes_current_year(client: AsyncClient, db_session: AsyncSession) -> None:
    await make_user(db_session, "accountant")
    ay = await make_year(db_session)

    response = await client.post(
        "/api/v1/auth/login",
        json={"email": "accountant@school.test", "password": TEST_PASSWORD},
    )
    assert response.status_code == 200
    data = response.json()
    assert data["token_type"] == "bearer"
    assert data["access_token"]
    assert data["user"]["role"] == "accountant"
    assert data["academic_year"]["id"] == str(ay.id)
    assert data["academic_year"]["status"] == "ACTIVE"

    events = (await db_session.execute(select(SecurityEvent).where(SecurityEvent.action == "login"))).scalars().all()
    assert len(events) == 1


@pytest.mark.asyncio
async def test_login_wrong_password_logs_failure(client: AsyncClient, db_session: AsyncSession) -> None:
    await make_user(db_session, "admin")

    response = await client.post(
        "/api/v1/auth/login",
        json={"email": "admin@school.test", "password": "WrongPass123"},
    )
    assert response.status_code == 401
    assert response.json()["detail"] == "Invalid credentials"

    failed = (
        await db_session.execute(select(SecurityEvent).where(SecurityEvent.action == "login_failed"))
    ).scalars().all()
    assert len(failed) == 1
    assert failed[0].details == {"email": "admin@school.test"}


@pytest.mark.asyncio
async def test_non_admin_cannot_login_without_current_year(client: AsyncClient, db_session: AsyncSession) -> None:
    await make_user(db_session, "teacher")
    response = await client.post(
        "/api/v1/auth/login",
        json={"email": "teacher@school.test", "password": TEST_PASSWORD},
    )
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_admin_can_login_without_current_year(client: AsyncClient, db_session: AsyncSession) -> None:
    await make_user(db_session, "admin")
    response = await client.post(
        "/api/v1/auth/login",
        json={"email": "admin@school.test", "password": TEST_PASSWORD},
    )
    assert response.status_code == 200
    assert response.json()["academic_year"] is None


@pytest.mark.asyncio
async def test_me_returns_role_capabilities(client: AsyncClient, db_session: AsyncSession) -> None:
    user = await make_user(db_session, "accountant")
    response = await client.get("/api/v1/auth/me", headers=auth_headers(user))
    assert response.status_code == 200
    data = response.json()
    assert "can_manage_finances" in data["capabilities"]
    assert "is_admin" not in data["capabilities"]
    assert data["permissions"]["fees"]["create"] is True


@pytest.mark.asyncio
async def test_missing_token_is_rejected(client: AsyncClient, db_session: AsyncSession) -> None:
    response = await client.get("/api/v1/auth/me")
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_only_admin_creates_users(client: AsyncClient, db_session: AsyncSession) -> None:
    admin = await make_user(db_session, "admin")
    accountant = await make_user(db_session, "accountant")
    payload = {
        "full_name": "New Teacher",
        "email": "new.teacher@school.test",
        "password": "StrongPass123",
        "role": "teacher",
    }

    denied = await client.post("/api/v1/auth/users", json=payload, headers=auth_headers(accountant))
    assert denied.status_code == 403

    created = await client.post("/api/v1/auth/users", json=payload, headers=auth_headers(admin))
    assert created.status_code == 201
    assert created.json()["role"] == "teacher"

    duplicate = await client.post("/api/v1/auth/users", json=payload, headers=auth_headers(admin))
    assert duplicate.status_code == 409

    user = (await db_session.execute(select(User).where(User.email == "new.teacher@school.test"))).scalar_one()
    assert user.password_hash != "StrongPass123"


@pytest.mark.asyncio
async def test_teacher_cannot_read_fees(client: AsyncClient, db_session: AsyncSession) -> None:
    teacher = await make_user(db_session, "teacher")
    ay = await make_year(db_session)
    response = await client.get(
        "/api/v1/fees/summary",
        params={"academic_year_id": str(ay.id)},
        headers=auth_headers(teacher, ay),
    )
    assert response.status_code == 403


def test_role_permission_map() -> None:
    assert role_permissions("parent") == {}
    assert role_permissions("unknown") == {}
    assert role_permissions("teacher")["students"] == {"read": True}
    assert "delete" not in role_permissions("accountant")["fees"]
    assert capabilities("admin") == frozenset(
        {"is_admin", "can_manage_finances", "can_view_students", "can_modify_students"}
    )
    assert capabilities("teacher") == frozenset({"can_view_students"})
    assert capabilities(None) == frozenset()
