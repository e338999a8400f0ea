import pytest
from httpx import AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from tests.conftest import auth_headers


@pytest.mark.asyncio
async def test_any_user_records_own_event(client: AsyncClient, db_session: AsyncSession, teacher, year) -> None:
    response = await client.post(
        "/api/v1/security/events",
        json={"action": "student_access", "resource_type": "student", "resource_id": "ADM-1", "details": {"view": "profile"}},
        headers=auth_headers(teacher, year),
    )
    assert response.status_code == 201
    data = response.json()
    assert data["user_id"] == str(teacher.id)
    assert data["action"] == "student_access"
    assert data["details"] == {"view": "profile"}


@pytest.mark.asyncio
async def test_only_admin_reviews_events(
    client: AsyncClient, db_session: AsyncSession, admin, teacher, year
) -> None:
    for action in ("logout", "student_access"):
        await client.post("/api/v1/security/events", json={"action": action}, headers=auth_headers(teacher, year))

    denied = await client.get("/api/v1/security/events", headers=auth_headers(teacher, year))
    assert denied.status_code == 403

    listed = await client.get(
        "/api/v1/security/events", params={"action": "logout"}, headers=auth_headers(admin, year)
    )
    assert listed.status_code == 200
    assert [e["action"] for e in listed.json()] == ["logout"]

    by_user = await client.get(
        "/api/v1/security/events", params={"user_id": str(teacher.id)}, headers=auth_headers(admin, year)
    )
    assert len(by_user.json()) == 2
