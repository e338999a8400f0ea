import pytest
from httpx import AsyncClient
from jose import jwt
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings

from tests.conftest import auth_headers


@pytest.mark.asyncio
async def test_create_current_year_issues_token(client: AsyncClient, db_session: AsyncSession, admin) -> None:
    headers = auth_headers(admin)
    first = await client.post(
        "/api/v1/academic-years",
        json={"name": "2025-2026", "start_date": "2025-04-01", "end_date": "2026-03-31", "set_as_current": True},
        headers=headers,
    )
    assert first.status_code == 201, first.text
    data = first.json()
    assert data["academic_year"]["is_current"] is True
    claims = jwt.decode(data["access_token"], settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
    assert claims["academic_year_id"] == data["academic_year"]["id"]
    assert claims["academic_year_status"] == "ACTIVE"

    second = await client.post(
        "/api/v1/academic-years",
        json={"name": "2026-2027", "start_date": "2026-04-01", "end_date": "2027-03-31", "set_as_current": True},
        headers=headers,
    )
    assert second.status_code == 201

    current = await client.get("/api/v1/academic-years/current", headers=headers)
    assert current.json()["name"] == "2026-2027"
    listed = await client.get("/api/v1/academic-years", headers=headers)
    assert sum(1 for y in listed.json() if y["is_current"]) == 1


@pytest.mark.asyncio
async def test_year_validation(client: AsyncClient, db_session: AsyncSession, admin, year) -> None:
    headers = auth_headers(admin, year)
    duplicate = await client.post(
        "/api/v1/academic-years",
        json={"name": "2025-2026", "start_date": "2025-04-01", "end_date": "2026-03-31"},
        headers=headers,
    )
    assert duplicate.status_code == 409

    backwards = await client.post(
        "/api/v1/academic-years",
        json={"name": "2030-2031", "start_date": "2031-03-31", "end_date": "2030-04-01"},
        headers=headers,
    )
    assert backwards.status_code == 400


@pytest.mark.asyncio
async def test_closed_year_cannot_be_current_or_closed_again(
    client: AsyncClient, db_session: AsyncSession, admin, year
) -> None:
    headers = auth_headers(admin, year)
    closed = await client.post(f"/api/v1/academic-years/{year.id}/close", headers=headers)
    assert closed.status_code == 200
    assert closed.json()["closed_by"] == str(admin.id)

    again = await client.post(f"/api/v1/academic-years/{year.id}/close", headers=headers)
    assert again.status_code == 400
    set_current = await client.post(f"/api/v1/academic-years/{year.id}/set-current", headers=headers)
    assert set_current.status_code == 400

    only_closed = await client.get("/api/v1/academic-years", params={"status_filter": "CLOSED"}, headers=headers)
    assert [y["name"] for y in only_closed.json()] == ["2025-2026"]


@pytest.mark.asyncio
async def test_classes_are_ordered_and_unique(client: AsyncClient, db_session: AsyncSession, admin, year) -> None:
    headers = auth_headers(admin, year)
    bulk = await client.post(
        "/api/v1/classes/bulk",
        json=[{"name": "Grade 2", "order": 2}, {"name": "Grade 1", "order": 1}],
        headers=headers,
    )
    assert bulk.status_code == 201, bulk.text

    duplicate = await client.post("/api/v1/classes", json={"name": "Grade 1"}, headers=headers)
    assert duplicate.status_code == 409

    section = await client.post(
        "/api/v1/classes", json={"name": "Grade 1", "section": "B", "display_order": 1}, headers=headers
    )
    assert section.status_code == 201

    listed = await client.get("/api/v1/classes", headers=headers)
    assert [(c["name"], c["section"]) for c in listed.json()] == [
        ("Grade 1", None),
        ("Grade 1", "B"),
        ("Grade 2", None),
    ]
