"""
Fee ledger: append-only double-entry postings and the readers built on them.

Every mutation of a StudentFeeRecord posts here in the same transaction:

    FEE_ASSESSED       DEBIT   actual fee of a new record
    DISCOUNT           CREDIT  discount increase
    DISCOUNT_REVERSAL  DEBIT   discount decrease
    PAYMENT            CREDIT  amount allocated to the record
    REVERSAL           DEBIT   reversed/refunded amount
    CARRY_FORWARD_IN   DEBIT   dues carried into the target year (Previous Year Dues record)
    CARRY_FORWARD_OUT  CREDIT  same dues leaving the source year (year-level, no record)

Balances are never stored; they are folded from entries (see calculations.project_balances).
"""

import logging
from decimal import Decimal
from typing import List, Optional, Set
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.enums import LedgerEntryType, LedgerSource
from app.core.models import FeeLedgerEntry, StudentFeeRecord

from .calculations import LedgerBalance, project_balances, to_decimal
from .schemas import (
    LedgerEntryResponse,
    ReconciliationMismatch,
    ReconciliationReport,
    StudentLedgerResponse,
)

logger = logging.getLogger(__name__)

_ENTRY_TYPE_BY_SOURCE = {
    LedgerSource.FEE_ASSESSED.value: LedgerEntryType.DEBIT.value,
    LedgerSource.DISCOUNT.value: LedgerEntryType.CREDIT.value,
    LedgerSource.DISCOUNT_REVERSAL.value: LedgerEntryType.DEBIT.value,
    LedgerSource.PAYMENT.value: LedgerEntryType.CREDIT.value,
    LedgerSource.REVERSAL.value: LedgerEntryType.DEBIT.value,
    LedgerSource.CARRY_FORWARD_IN.value: LedgerEntryType.DEBIT.value,
    LedgerSource.CARRY_FORWARD_OUT.value: LedgerEntryType.CREDIT.value,
}


def entry_type_for(source: str) -> str:
    try:
        return _ENTRY_TYPE_BY_SOURCE[source]
    except KeyError:
        raise ValueError(f"Unknown ledger source: {source}") from None


def post_ledger_entry(
    db: AsyncSession,
    *,
    student_id: UUID,
    academic_year_id: UUID,
    source: str,
    amount,
    fee_record_id: Optional[UUID] = None,
    reference_id: Optional[UUID] = None,
    description: Optional[str] = None,
    created_by: Optional[UUID] = None,
) -> Optional[FeeLedgerEntry]:
    """Append one entry. Zero amounts post nothing. Caller must commit."""
    value = to_decimal(amount)
    if value < 0:
        raise ValueError("Ledger amounts are positive; the source decides the side")
    if value == 0:
        return None
    entry = FeeLedgerEntry(
        student_id=student_id,
        academic_year_id=academic_year_id,
        fee_record_id=fee_record_id,
        entry_type=entry_type_for(source),
        source=source,
        amount=value,
        reference_id=reference_id,
        description=description,
        created_by=created_by,
    )
    db.add(entry)
    logger.info(
        "ledger %s %s %s student=%s year=%s record=%s",
        entry.entry_type, source, value, student_id, academic_year_id, fee_record_id,
    )
    return entry


def _entry_to_response(e: FeeLedgerEntry) -> LedgerEntryResponse:
    return LedgerEntryResponse(
        id=e.id,
        student_id=e.student_id,
        academic_year_id=e.academic_year_id,
        fee_record_id=e.fee_record_id,
        entry_type=e.entry_type,
        source=e.source,
        amount=to_decimal(e.amount),
        reference_id=e.reference_id,
        description=e.description,
        created_by=e.created_by,
        created_at=e.created_at,
    )


async def list_entries(
    db: AsyncSession,
    student_id: Optional[UUID] = None,
    academic_year_id: Optional[UUID] = None,
    fee_record_id: Optional[UUID] = None,
) -> List[FeeLedgerEntry]:
    stmt = select(FeeLedgerEntry)
    if student_id is not None:
        stmt = stmt.where(FeeLedgerEntry.student_id == student_id)
    if academic_year_id is not None:
        stmt = stmt.where(FeeLedgerEntry.academic_year_id == academic_year_id)
    if fee_record_id is not None:
        stmt = stmt.where(FeeLedgerEntry.fee_record_id == fee_record_id)
    stmt = stmt.order_by(FeeLedgerEntry.created_at, FeeLedgerEntry.id)
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def student_has_ledger_entries(db: AsyncSession, student_id: UUID) -> bool:
    result = await db.execute(select(FeeLedgerEntry.id).where(FeeLedgerEntry.student_id == student_id).limit(1))
    return result.first() is not None


async def carried_out_years(db: AsyncSession, student_id: UUID) -> Set[UUID]:
    """Academic years whose dues for this student were carried into a later year."""
    result = await db.execute(
        select(FeeLedgerEntry.academic_year_id).where(
            FeeLedgerEntry.student_id == student_id,
            FeeLedgerEntry.source == LedgerSource.CARRY_FORWARD_OUT.value,
        )
    )
    return set(result.scalars().all())


async def get_student_ledger(
    db: AsyncSession,
    student_id: UUID,
    academic_year_id: Optional[UUID] = None,
) -> StudentLedgerResponse:
    entries = await list_entries(db, student_id=student_id, academic_year_id=academic_year_id)
    totals = project_balances(entries, key=lambda e: e.student_id).get(student_id, LedgerBalance())
    return StudentLedgerResponse(
        student_id=student_id,
        academic_year_id=academic_year_id,
        entries=[_entry_to_response(e) for e in entries],
        total_debits=totals.debits,
        total_credits=totals.credits,
        balance=totals.balance,
    )


async def student_year_balance(db: AsyncSession, student_id: UUID, academic_year_id: UUID) -> Decimal:
    entries = await list_entries(db, student_id=student_id, academic_year_id=academic_year_id)
    return project_balances(entries).get((student_id, academic_year_id), LedgerBalance()).balance


async def reconcile_year(db: AsyncSession, academic_year_id: UUID) -> ReconciliationReport:
    """
    Compare every fee record of the year with the ledger entries attached to it.
    Year-level entries (fee_record_id NULL) do not belong to any record and are skipped.
    """
    records = (
        await db.execute(
            select(StudentFeeRecord).where(StudentFeeRecord.academic_year_id == academic_year_id)
        )
    ).scalars().all()
    entries = (
        await db.execute(
            select(FeeLedgerEntry).where(
                FeeLedgerEntry.academic_year_id == academic_year_id,
                FeeLedgerEntry.fee_record_id.is_not(None),
            )
        )
    ).scalars().all()
    by_record = project_balances(entries, key=lambda e: e.fee_record_id)

    mismatches: List[ReconciliationMismatch] = []
    for rec in records:
        ledger_balance = by_record.get(rec.id, LedgerBalance()).balance
        record_balance = rec.balance_fee
        if ledger_balance != record_balance:
            mismatches.append(
                ReconciliationMismatch(
                    fee_record_id=rec.id,
                    student_id=rec.student_id,
                    fee_type=rec.fee_type,
                    record_balance=record_balance,
                    ledger_balance=ledger_balance,
                    difference=record_balance - ledger_balance,
                )
            )
    if mismatches:
        logger.warning("ledger reconciliation found %d mismatches in year %s", len(mismatches), academic_year_id)
    return ReconciliationReport(
        academic_year_id=academic_year_id,
        records_checked=len(records),
        mismatches=mismatches,
        is_consistent=not mismatches,
    )

