from datetime import date
from decimal import Decimal
from uuid import UUID

import pytest
from httpx import AsyncClient
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.v1.fees.ledger import reconcile_year, student_year_balance
from app.core.models import FeePaymentRecord, Student, StudentFeeRecord, StudentPromotion

from tests.conftest import admit, auth_headers, make_fee_structure, make_year


@pytest.fixture()
async def next_year(db_session: AsyncSession):
    return await make_year(db_session, "2026-2027", date(2026, 4, 1), date(2027, 3, 31), is_current=False)


@pytest.fixture()
async def owing_student(client: AsyncClient, db_session: AsyncSession, admin_headers, year, grade1):
    """Grade 1 student who paid 400 of a 1000 tuition in 2025-2026."""
    await make_fee_structure(db_session, year, grade1, "Tuition Fee", "1000")
    student = await admit(client, admin_headers, year, grade1, "ADM-P1")
    record = (await db_session.execute(select(StudentFeeRecord))).scalar_one()
    paid = await client.post(
        f"/api/v1/fees/records/{record.id}/payments",
        json={"amount_paid": "400", "payment_method": "CASH"},
        headers=admin_headers,
    )
    assert paid.status_code == 201
    return student, record


def _batch(target, *items, key=None):
    body = {"target_academic_year_id": str(target.id), "items": list(items)}
    if key:
        body["idempotency_key"] = key
    return body


@pytest.mark.asyncio
async def test_missing_fee_plans_blocks_promotion(
    client: AsyncClient, db_session: AsyncSession, admin_headers, next_year, grade2, owing_student
) -> None:
    student, _ = owing_student
    response = await client.post(
        "/api/v1/promotions/execute",
        json=_batch(next_year, {"student_id": student["id"], "promotion_type": "promoted"}),
        headers=admin_headers,
    )
    assert response.status_code == 409
    assert response.json()["detail"] == {
        "error": "MISSING_FEE_PLANS",
        "missing": [{"year": "2026-2027", "class": "Grade 2"}],
    }
    assert (await db_session.execute(select(StudentPromotion))).scalar_one_or_none() is None


@pytest.mark.asyncio
async def test_promotion_carries_dues_forward(
    client: AsyncClient, db_session: AsyncSession, admin_headers, year, next_year, grade2, owing_student
) -> None:
    student, old_record = owing_student
    student_id = UUID(student["id"])
    await make_fee_structure(db_session, next_year, grade2, "Tuition Fee", "1200")

    response = await client.post(
        "/api/v1/promotions/execute",
        json=_batch(next_year, {"student_id": student["id"], "promotion_type": "promoted"}),
        headers=admin_headers,
    )
    assert response.status_code == 200, response.text
    result = response.json()
    assert result["promoted_count"] == 1
    assert result["replayed"] is False
    assert Decimal(result["total_carried_forward"]) == Decimal("600")
    assert result["promotions"][0]["to_class_id"] == str(grade2.id)

    history = (await client.get(f"/api/v1/students/{student['id']}/enrollments", headers=admin_headers)).json()
    assert [(h["class_name"], h["status"], h["valid_to"]) for h in history] == [
        ("Grade 1", "PROMOTED", "2026-04-01"),
        ("Grade 2", "ACTIVE", None),
    ]

    new_records = (
        await db_session.execute(
            select(StudentFeeRecord)
            .where(StudentFeeRecord.academic_year_id == next_year.id)
            .order_by(StudentFeeRecord.priority_order)
        )
    ).scalars().all()
    assert [(r.fee_type, r.actual_fee, r.priority_order) for r in new_records] == [
        ("Previous Year Dues", Decimal("600"), 0),
        ("Tuition Fee", Decimal("1200"), 10),
    ]
    assert new_records[0].carry_forward_source_year_id == year.id

    # Source year is settled in the ledger; its records are untouched
    assert await student_year_balance(db_session, student_id, year.id) == Decimal("0")
    assert await student_year_balance(db_session, student_id, next_year.id) == Decimal("1800")
    await db_session.refresh(old_record)
    assert old_record.balance_fee == Decimal("600")
    assert (await reconcile_year(db_session, year.id)).is_consistent
    assert (await reconcile_year(db_session, next_year.id)).is_consistent

    # Old-year record no longer takes money
    refused = await client.post(
        f"/api/v1/fees/records/{old_record.id}/payments",
        json={"amount_paid": "100", "payment_method": "CASH"},
        headers=admin_headers,
    )
    assert refused.status_code == 409

    preview = await client.get(
        f"/api/v1/fees/students/{student['id']}/allocation-preview", params={"amount": "700"}, headers=admin_headers
    )
    lines = preview.json()["lines"]
    assert [(line["fee_type"], Decimal(line["allocated_amount"])) for line in lines] == [
        ("Previous Year Dues", Decimal("600")),
        ("Tuition Fee", Decimal("100")),
    ]

    dues = await client.get(
        "/api/v1/fees/previous-year-dues", params={"academic_year_id": str(next_year.id)}, headers=admin_headers
    )
    assert dues.status_code == 200
    assert dues.json()["students_with_dues"] == 1
    assert Decimal(dues.json()["total_outstanding"]) == Decimal("600")


@pytest.mark.asyncio
async def test_idempotency_key_replays_result(
    client: AsyncClient, db_session: AsyncSession, admin_headers, next_year, grade2, owing_student
) -> None:
    student, _ = owing_student
    await make_fee_structure(db_session, next_year, grade2, "Tuition Fee", "1200")
    body = _batch(next_year, {"student_id": student["id"], "promotion_type": "promoted"}, key="batch-2026")

    first = await client.post("/api/v1/promotions/execute", json=body, headers=admin_headers)
    assert first.status_code == 200
    second = await client.post("/api/v1/promotions/execute", json=body, headers=admin_headers)
    assert second.status_code == 200
    assert second.json()["replayed"] is True
    assert second.json()["promotions"][0]["id"] == first.json()["promotions"][0]["id"]

    promotions = (await db_session.execute(select(StudentPromotion))).scalars().all()
    assert len(promotions) == 1
    dues = (
        await db_session.execute(
            select(StudentFeeRecord).where(StudentFeeRecord.fee_type == "Previous Year Dues")
        )
    ).scalars().all()
    assert len(dues) == 1


@pytest.mark.asyncio
async def test_repeat_and_dropout(
    client: AsyncClient, db_session: AsyncSession, admin_headers, year, next_year, grade1, owing_student
) -> None:
    repeater, _ = owing_student
    dropout = await admit(client, admin_headers, year, grade1, "ADM-P2")
    await make_fee_structure(db_session, next_year, grade1, "Tuition Fee", "1100")

    response = await client.post(
        "/api/v1/promotions/execute",
        json=_batch(
            next_year,
            {"student_id": repeater["id"], "promotion_type": "repeated", "reason": "attendance"},
            {"student_id": dropout["id"], "promotion_type": "dropout", "reason": "moved away"},
        ),
        headers=admin_headers,
    )
    assert response.status_code == 200, response.text
    result = response.json()
    assert result["repeated_count"] == 1
    assert result["dropout_count"] == 1
    assert Decimal(result["total_carried_forward"]) == Decimal("600")

    by_student = {p["student_id"]: p for p in result["promotions"]}
    assert by_student[repeater["id"]]["to_class_id"] == str(grade1.id)
    assert by_student[dropout["id"]]["to_class_id"] is None
    assert Decimal(by_student[dropout["id"]]["carried_forward_amount"]) == Decimal("0")

    left = await db_session.get(Student, UUID(dropout["id"]))
    await db_session.refresh(left)
    assert left.status == "INACTIVE"
    history = (await client.get(f"/api/v1/students/{dropout['id']}/enrollments", headers=admin_headers)).json()
    assert [(h["status"], h["is_current"]) for h in history] == [("DROPOUT", False)]

    listed = await client.get(
        "/api/v1/promotions/history", params={"academic_year_id": str(next_year.id)}, headers=admin_headers
    )
    assert len(listed.json()) == 2


@pytest.mark.asyncio
async def test_invalid_batches_are_rejected(
    client: AsyncClient, db_session: AsyncSession, admin_headers, year, next_year, grade1, grade2, owing_student
) -> None:
    student, _ = owing_student
    await make_fee_structure(db_session, next_year, grade2, "Tuition Fee", "1200")
    item = {"student_id": student["id"], "promotion_type": "promoted"}

    duplicate = await client.post("/api/v1/promotions/execute", json=_batch(next_year, item, item), headers=admin_headers)
    assert duplicate.status_code == 400

    same_year = await client.post("/api/v1/promotions/execute", json=_batch(year, item), headers=admin_headers)
    assert same_year.status_code == 400

    empty = await client.post("/api/v1/promotions/execute", json=_batch(next_year), headers=admin_headers)
    assert empty.status_code == 422


@pytest.mark.asyncio
async def test_accountant_cannot_promote(
    client: AsyncClient, db_session: AsyncSession, accountant, year, next_year, owing_student
) -> None:
    student, _ = owing_student
    response = await client.post(
        "/api/v1/promotions/execute",
        json=_batch(next_year, {"student_id": student["id"], "promotion_type": "repeated"}),
        headers=auth_headers(accountant, year),
    )
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_carried_out_year_records_are_frozen(
    client: AsyncClient, db_session: AsyncSession, admin_headers, next_year, grade2, owing_student
) -> None:
    student, old_record = owing_student
    old_record_id = old_record.id
    await make_fee_structure(db_session, next_year, grade2, "Tuition Fee", "1200")
    promoted = await client.post(
        "/api/v1/promotions/execute",
        json=_batch(next_year, {"student_id": student["id"], "promotion_type": "promoted"}),
        headers=admin_headers,
    )
    assert promoted.status_code == 200, promoted.text
    payment_id = (await db_session.execute(select(FeePaymentRecord))).scalar_one().id
    ledger_url = f"/api/v1/fees/students/{student['id']}/ledger"
    before = (await client.get(ledger_url, headers=admin_headers)).json()
    assert Decimal(before["balance"]) == Decimal("1800")

    discount = await client.post(
        f"/api/v1/fees/records/{old_record_id}/discount",
        json={"discount_type": "fixed", "discount_value": "200", "reason": "late scholarship"},
        headers=admin_headers,
    )
    assert discount.status_code == 409
    block = await client.post(
        f"/api/v1/fees/records/{old_record_id}/block", json={"reason": "audit"}, headers=admin_headers
    )
    assert block.status_code == 409
    refund = await client.post(
        f"/api/v1/fees/payments/{payment_id}/reversals",
        json={"reversal_type": "refund", "reversal_amount": "400", "reason": "paid twice"},
        headers=admin_headers,
    )
    assert refund.status_code == 409

    after = (await client.get(ledger_url, headers=admin_headers)).json()
    assert Decimal(after["balance"]) == Decimal("1800")
    assert len(after["entries"]) == len(before["entries"])
    preview = await client.get(
        f"/api/v1/fees/students/{student['id']}/allocation-preview", params={"amount": "1"}, headers=admin_headers
    )
    assert Decimal(preview.json()["total_outstanding"]) == Decimal("1800")
