from decimal import Decimal
from uuid import UUID

import pytest
from httpx import AsyncClient
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.v1.fees.ledger import entry_type_for, post_ledger_entry, reconcile_year, student_year_balance
from app.core.models import FeeLedgerEntry, StudentFeeRecord

from tests.conftest import admit, make_fee_structure


def test_entry_side_follows_source() -> None:
    assert entry_type_for("FEE_ASSESSED") == "DEBIT"
    assert entry_type_for("DISCOUNT") == "CREDIT"
    assert entry_type_for("DISCOUNT_REVERSAL") == "DEBIT"
    assert entry_type_for("PAYMENT") == "CREDIT"
    assert entry_type_for("REVERSAL") == "DEBIT"
    assert entry_type_for("CARRY_FORWARD_IN") == "DEBIT"
    assert entry_type_for("CARRY_FORWARD_OUT") == "CREDIT"
    with pytest.raises(ValueError):
        entry_type_for("ADJUSTMENT")


@pytest.mark.asyncio
async def test_zero_amount_posts_nothing_and_negative_is_rejected(db_session: AsyncSession, year) -> None:
    student_id = UUID(int=1)
    assert post_ledger_entry(
        db_session, student_id=student_id, academic_year_id=year.id, source="PAYMENT", amount=Decimal("0")
    ) is None
    with pytest.raises(ValueError):
        post_ledger_entry(
            db_session, student_id=student_id, academic_year_id=year.id, source="PAYMENT", amount=Decimal("-5")
        )
    assert not db_session.new


@pytest.mark.asyncio
async def test_ledger_tracks_payments_and_reconciles(
    client: AsyncClient, db_session: AsyncSession, admin_headers, year, grade1
) -> None:
    await make_fee_structure(db_session, year, grade1, "Tuition Fee", "1000")
    student = await admit(client, admin_headers, year, grade1, "ADM-1")
    record = (await db_session.execute(select(StudentFeeRecord))).scalar_one()

    response = await client.post(
        f"/api/v1/fees/records/{record.id}/payments",
        json={"amount_paid": "400", "payment_method": "CASH"},
        headers=admin_headers,
    )
    assert response.status_code == 201, response.text

    balance = await student_year_balance(db_session, UUID(student["id"]), year.id)
    assert balance == Decimal("600")

    ledger = await client.get(f"/api/v1/fees/students/{student['id']}/ledger", headers=admin_headers)
    assert ledger.status_code == 200
    data = ledger.json()
    assert [e["source"] for e in data["entries"]] == ["FEE_ASSESSED", "PAYMENT"]
    assert Decimal(data["total_debits"]) == Decimal("1000")
    assert Decimal(data["total_credits"]) == Decimal("400")
    assert Decimal(data["balance"]) == Decimal("600")

    report = await reconcile_year(db_session, year.id)
    assert report.records_checked == 1
    assert report.is_consistent


@pytest.mark.asyncio
async def test_reconciliation_reports_drift(
    client: AsyncClient, db_session: AsyncSession, admin_headers, year, grade1
) -> None:
    await make_fee_structure(db_session, year, grade1, "Tuition Fee", "1000")
    await admit(client, admin_headers, year, grade1, "ADM-2")
    record = (await db_session.execute(select(StudentFeeRecord))).scalar_one()

    # Simulate a write that bypassed the ledger
    record.paid_amount = Decimal("100")
    await db_session.commit()

    response = await client.get(
        "/api/v1/fees/reconciliation", params={"academic_year_id": str(year.id)}, headers=admin_headers
    )
    assert response.status_code == 200
    report = response.json()
    assert report["is_consistent"] is False
    assert len(report["mismatches"]) == 1
    mismatch = report["mismatches"][0]
    assert Decimal(mismatch["record_balance"]) == Decimal("900")
    assert Decimal(mismatch["ledger_balance"]) == Decimal("1000")
    assert Decimal(mismatch["difference"]) == Decimal("-100")


@pytest.mark.asyncio
async def test_ledger_entries_cannot_be_changed(
    client: AsyncClient, db_session: AsyncSession, admin_headers, year, grade1
) -> None:
    await make_fee_structure(db_session, year, grade1, "Tuition Fee", "1000")
    await admit(client, admin_headers, year, grade1, "ADM-3")
    entry = (await db_session.execute(select(FeeLedgerEntry))).scalar_one()

    entry.amount = Decimal("1")
    with pytest.raises(ValueError):
        await db_session.flush()
    await db_session.rollback()

    entry = (await db_session.execute(select(FeeLedgerEntry))).scalar_one()
    await db_session.delete(entry)
    with pytest.raises(ValueError):
        await db_session.flush()
    await db_session.rollback()

    entries = (await db_session.execute(select(FeeLedgerEntry))).scalars().all()
    assert len(entries) == 1
    assert entries[0].amount == Decimal("1000")
