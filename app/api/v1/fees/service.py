"""Fees service: fee structures, student fee records, discounts, payments, reversals. Every money movement posts to the ledger."""

import logging
import secrets
import string
from dataclasses import asdict
from datetime import date, datetime
from decimal import Decimal
from typing import Dict, List, Optional, Sequence
from uuid import UUID

from fastapi import status
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.v1.academic_years.service import get_academic_year_or_404, get_writable_academic_year
from app.api.v1.security.service import log_security_event
from app.auth.roles import is_admin
from app.core.cache import year_cache
from app.core.config import settings
from app.core.enums import (
    AcademicYearStatus,
    DiscountType,
    EnrollmentStatus,
    FeeChangeType,
    LedgerSource,
    PREVIOUS_YEAR_DUES_FEE_TYPE,
    StudentStatus,
)
from app.core.exceptions import ServiceError
from app.core.models import (
    AcademicYear,
    DiscountHistory,
    FeeChangeHistory,
    FeePaymentRecord,
    FeeStructure,
    PaymentAllocation,
    PaymentReversal,
    SchoolClass,
    Student,
    StudentEnrollment,
    StudentFeeRecord,
)

from .calculations import (
    ZERO,
    calculate_discount_amount,
    calculate_fee_amounts,
    money,
    plan_fifo_allocation,
    stored_status,
    summarize_year,
    to_decimal,
)
from .ledger import carried_out_years, post_ledger_entry
from .schemas import (
    AllocationPreview,
    AllocationPreviewLine,
    BlockedPaymentsReport,
    BlockedStudentItem,
    BulkDiscountCreate,
    BulkDiscountFailure,
    BulkDiscountResponse,
    DiscountCreate,
    DiscountHistoryResponse,
    DiscountReport,
    FeeChangeHistoryResponse,
    FeeRecordResponse,
    FeeStructureCreate,
    FeeStructureResponse,
    FifoPaymentRequest,
    GenerateFeeRecordsRequest,
    GenerateFeeRecordsResponse,
    PaymentAllocationResponse,
    PaymentBlockRequest,
    PaymentCreate,
    PaymentResponse,
    PaymentReversalCreate,
    PaymentReversalResponse,
    PreviousYearDuesItem,
    PreviousYearDuesSummary,
    StudentDiscountReportItem,
    StudentFeesResponse,
    YearDiscountReportItem,
    YearSummaryResponse,
)

logger = logging.getLogger(__name__)

_RECEIPT_ALPHABET = string.ascii_uppercase + string.digits


def generate_receipt_number(now: Optional[datetime] = None) -> str:
    """RCP-<yyyymmddHHMMSS>-<4 random alphanumerics>."""
    now = now or datetime.utcnow()
    suffix = "".join(secrets.choice(_RECEIPT_ALPHABET) for _ in range(4))
    return f"RCP-{now:%Y%m%d%H%M%S}-{suffix}"


# --- Audit helper ---
def _log_fee_change(
    db: AsyncSession,
    record: StudentFeeRecord,
    change_type: str,
    *,
    amount=None,
    previous_value=None,
    new_value=None,
    old_values: Optional[dict] = None,
    new_values: Optional[dict] = None,
    payment_method: Optional[str] = None,
    receipt_number: Optional[str] = None,
    notes: Optional[str] = None,
    changed_by: Optional[UUID] = None,
) -> None:
    db.add(
        FeeChangeHistory(
            fee_record_id=record.id,
            change_type=change_type,
            amount=amount,
            previous_value=previous_value,
            new_value=new_value,
            old_values=old_values,
            new_values=new_values,
            payment_method=payment_method,
            receipt_number=receipt_number,
            notes=notes,
            changed_by=changed_by,
        )
    )


def _amounts_snapshot(record: StudentFeeRecord) -> dict:
    return {
        "discount_amount": str(to_decimal(record.discount_amount)),
        "paid_amount": str(to_decimal(record.paid_amount)),
        "status": record.status,
    }


# --- Fee Structure ---
def _structure_to_response(fs: FeeStructure, class_name: Optional[str] = None) -> FeeStructureResponse:
    return FeeStructureResponse(
        id=fs.id,
        academic_year_id=fs.academic_year_id,
        class_id=fs.class_id,
        class_name=class_name,
        fee_type=fs.fee_type,
        amount=to_decimal(fs.amount),
        frequency=fs.frequency,
        due_date=fs.due_date,
        description=fs.description,
        is_active=fs.is_active,
        created_at=fs.created_at,
        updated_at=fs.updated_at,
    )


async def create_fee_structure(db: AsyncSession, payload: FeeStructureCreate) -> FeeStructureResponse:
    await get_writable_academic_year(db, payload.academic_year_id)
    cl = await db.get(SchoolClass, payload.class_id)
    if not cl or not cl.is_active:
        raise ServiceError("Invalid class", status.HTTP_400_BAD_REQUEST)
    fs = FeeStructure(
        academic_year_id=payload.academic_year_id,
        class_id=payload.class_id,
        fee_type=payload.fee_type.strip(),
        amount=money(payload.amount),
        frequency=payload.frequency.value,
        due_date=payload.due_date,
        description=payload.description,
        is_active=True,
    )
    db.add(fs)
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise ServiceError(
            "This class already has this fee type for this academic year",
            status.HTTP_409_CONFLICT,
        )
    await db.refresh(fs)
    logger.info("fee structure %s %s for class %s year %s", fs.fee_type, fs.amount, cl.name, fs.academic_year_id)
    return _structure_to_response(fs, cl.name)


async def list_fee_structures(
    db: AsyncSession,
    academic_year_id: UUID,
    class_id: Optional[UUID] = None,
    active_only: bool = True,
) -> List[FeeStructureResponse]:
    stmt = (
        select(FeeStructure, SchoolClass.name.label("class_name"))
        .join(SchoolClass, FeeStructure.class_id == SchoolClass.id)
        .where(FeeStructure.academic_year_id == academic_year_id)
    )
    if class_id is not None:
        stmt = stmt.where(FeeStructure.class_id == class_id)
    if active_only:
        stmt = stmt.where(FeeStructure.is_active.is_(True))
    stmt = stmt.order_by(SchoolClass.display_order.nullslast(), SchoolClass.name, FeeStructure.fee_type)
    result = await db.execute(stmt)
    return [_structure_to_response(fs, class_name) for fs, class_name in result.all()]


# --- Student Fee Records ---
def _record_to_response(
    rec: StudentFeeRecord,
    student_name: Optional[str] = None,
    admission_number: Optional[str] = None,
    class_name: Optional[str] = None,
    today: Optional[date] = None,
) -> FeeRecordResponse:
    amounts = calculate_fee_amounts(rec.actual_fee, rec.discount_amount, rec.paid_amount, rec.due_date, today)
    return FeeRecordResponse(
        id=rec.id,
        student_id=rec.student_id,
        student_name=student_name,
        admission_number=admission_number,
        academic_year_id=rec.academic_year_id,
        class_id=rec.class_id,
        class_name=class_name,
        fee_type=rec.fee_type,
        actual_fee=amounts.actual_amount,
        discount_amount=amounts.discount_amount,
        final_fee=amounts.final_amount,
        paid_amount=amounts.paid_amount,
        balance_fee=amounts.balance_amount,
        due_date=rec.due_date,
        status=rec.status,
        display_status=amounts.status,
        discount_notes=rec.discount_notes,
        priority_order=rec.priority_order,
        payment_blocked=rec.payment_blocked,
        blocked_reason=rec.blocked_reason,
        is_carry_forward=rec.is_carry_forward,
        carry_forward_source_year_id=rec.carry_forward_source_year_id,
        created_at=rec.created_at,
        updated_at=rec.updated_at,
    )


def _record_rows_stmt():
    return (
        select(
            StudentFeeRecord,
            Student.first_name,
            Student.last_name,
            Student.admission_number,
            SchoolClass.name.label("class_name"),
        )
        .join(Student, StudentFeeRecord.student_id == Student.id)
        .join(SchoolClass, StudentFeeRecord.class_id == SchoolClass.id)
    )


def _rows_to_responses(rows) -> List[FeeRecordResponse]:
    today = date.today()
    return [
        _record_to_response(rec, f"{first} {last}".strip(), adm, class_name, today)
        for rec, first, last, adm, class_name in rows
    ]


async def get_fee_record_or_404(db: AsyncSession, fee_record_id: UUID, for_update: bool = False) -> StudentFeeRecord:
    stmt = select(StudentFeeRecord).where(StudentFeeRecord.id == fee_record_id)
    if for_update:
        stmt = stmt.with_for_update()
    rec = (await db.execute(stmt)).scalar_one_or_none()
    if not rec:
        raise ServiceError("Fee record not found", status.HTTP_404_NOT_FOUND)
    return rec


async def _get_student_or_404(db: AsyncSession, student_id: UUID) -> Student:
    student = await db.get(Student, student_id)
    if not student:
        raise ServiceError("Student not found", status.HTTP_404_NOT_FOUND)
    return student


async def _ensure_not_carried_forward(db: AsyncSession, rec: StudentFeeRecord) -> None:
    """Records of a year whose dues moved to a Previous Year Dues record are frozen."""
    if rec.academic_year_id in await carried_out_years(db, rec.student_id):
        raise ServiceError(
            "Dues of this year were carried forward; use the Previous Year Dues record instead",
            status.HTTP_409_CONFLICT,
        )


async def assign_fee_records_for_student(
    db: AsyncSession,
    student_id: UUID,
    academic_year_id: UUID,
    class_id: UUID,
    changed_by: Optional[UUID] = None,
) -> List[StudentFeeRecord]:
    """
    Create the student's missing fee records for the year from the class fee structures.
    Idempotent per (student, year, fee type). Posts FEE_ASSESSED for each new record. Caller must commit.
    """
    structures = (
        await db.execute(
            select(FeeStructure).where(
                FeeStructure.academic_year_id == academic_year_id,
                FeeStructure.class_id == class_id,
                FeeStructure.is_active.is_(True),
            )
        )
    ).scalars().all()
    if not structures:
        return []
    existing_types = set(
        (
            await db.execute(
                select(StudentFeeRecord.fee_type).where(
                    StudentFeeRecord.student_id == student_id,
                    StudentFeeRecord.academic_year_id == academic_year_id,
                )
            )
        ).scalars().all()
    )

    created: List[StudentFeeRecord] = []
    for fs in structures:
        if fs.fee_type in existing_types:
            continue
        amount = money(fs.amount)
        rec = StudentFeeRecord(
            student_id=student_id,
            academic_year_id=academic_year_id,
            class_id=class_id,
            fee_structure_id=fs.id,
            fee_type=fs.fee_type,
            actual_fee=amount,
            discount_amount=ZERO,
            paid_amount=ZERO,
            due_date=fs.due_date,
            status=stored_status(amount, ZERO),
            priority_order=10,
            payment_blocked=False,
            is_carry_forward=False,
        )
        db.add(rec)
        await db.flush()
        post_ledger_entry(
            db,
            student_id=student_id,
            academic_year_id=academic_year_id,
            fee_record_id=rec.id,
            source=LedgerSource.FEE_ASSESSED.value,
            amount=amount,
            reference_id=fs.id,
            description=f"{fs.fee_type} assessed",
            created_by=changed_by,
        )
        _log_fee_change(
            db, rec, FeeChangeType.CREATED.value,
            amount=amount,
            new_values={"actual_fee": str(amount), "fee_type": fs.fee_type, "status": rec.status},
            changed_by=changed_by,
        )
        created.append(rec)
    return created


async def generate_fee_records(
    db: AsyncSession,
    payload: GenerateFeeRecordsRequest,
    changed_by: Optional[UUID] = None,
) -> GenerateFeeRecordsResponse:
    """Create missing fee records for every actively enrolled student of the year (optionally one class)."""
    ay = await get_writable_academic_year(db, payload.academic_year_id)
    stmt = (
        select(StudentEnrollment.student_id, StudentEnrollment.class_id)
        .join(Student, StudentEnrollment.student_id == Student.id)
        .where(
            StudentEnrollment.academic_year_id == ay.id,
            StudentEnrollment.is_current.is_(True),
            StudentEnrollment.status == EnrollmentStatus.ACTIVE.value,
            Student.status == StudentStatus.ACTIVE.value,
        )
    )
    if payload.class_id is not None:
        stmt = stmt.where(StudentEnrollment.class_id == payload.class_id)
    enrolled = (await db.execute(stmt)).all()

    created_count = 0
    try:
        for student_id, class_id in enrolled:
            created = await assign_fee_records_for_student(db, student_id, ay.id, class_id, changed_by)
            created_count += len(created)
        await db.commit()
    except IntegrityError:
        await db.rollback()
        logger.exception("fee record generation failed for year %s", ay.name)
        raise ServiceError("Fee records changed concurrently; retry", status.HTTP_409_CONFLICT)

    year_cache.invalidate_year(ay.id)
    logger.info("generated %d fee records for %d students in %s", created_count, len(enrolled), ay.name)
    return GenerateFeeRecordsResponse(
        academic_year_id=ay.id,
        students_processed=len(enrolled),
        records_created=created_count,
    )


async def list_fee_records(
    db: AsyncSession,
    academic_year_id: UUID,
    class_id: Optional[UUID] = None,
    status_filter: Optional[str] = None,
    student_id: Optional[UUID] = None,
    include_archived: bool = False,
) -> List[FeeRecordResponse]:
    """Fee records of one year. Served from the year-scoped cache."""
    key = year_cache.make_key("fee-records", academic_year_id, class_id, status_filter, student_id, include_archived)

    async def _load() -> List[FeeRecordResponse]:
        stmt = _record_rows_stmt().where(StudentFeeRecord.academic_year_id == academic_year_id)
        if class_id is not None:
            stmt = stmt.where(StudentFeeRecord.class_id == class_id)
        if student_id is not None:
            stmt = stmt.where(StudentFeeRecord.student_id == student_id)
        if not include_archived:
            stmt = stmt.where(Student.status != StudentStatus.ARCHIVED.value)
        stmt = stmt.order_by(Student.first_name, Student.last_name, StudentFeeRecord.priority_order, StudentFeeRecord.fee_type)
        rows = _rows_to_responses((await db.execute(stmt)).all())
        if status_filter:
            rows = [r for r in rows if status_filter in (r.status, r.display_status)]
        return rows

    return await year_cache.get_or_load(key, _load)


async def get_student_fees(db: AsyncSession, student_id: UUID, academic_year_id: UUID) -> StudentFeesResponse:
    key = year_cache.make_key("student-fees", student_id, academic_year_id)

    async def _load() -> StudentFeesResponse:
        await _get_student_or_404(db, student_id)
        stmt = (
            _record_rows_stmt()
            .where(
                StudentFeeRecord.student_id == student_id,
                StudentFeeRecord.academic_year_id == academic_year_id,
            )
            .order_by(StudentFeeRecord.priority_order, StudentFeeRecord.due_date.nullslast(), StudentFeeRecord.fee_type)
        )
        records = _rows_to_responses((await db.execute(stmt)).all())
        return StudentFeesResponse(
            student_id=student_id,
            academic_year_id=academic_year_id,
            records=records,
            total_actual=sum((r.actual_fee for r in records), ZERO),
            total_discount=sum((r.discount_amount for r in records), ZERO),
            total_paid=sum((r.paid_amount for r in records), ZERO),
            total_balance=sum((r.balance_fee for r in records), ZERO),
        )

    return await year_cache.get_or_load(key, _load)


# --- Discount ---
async def apply_discount(
    db: AsyncSession,
    fee_record_id: UUID,
    payload: DiscountCreate,
    applied_by: Optional[UUID],
    current_user_role: str,
    ip_address: Optional[str] = None,
) -> FeeRecordResponse:
    """Replace the record's discount. The ledger receives the difference to the previous discount."""
    rec = await get_fee_record_or_404(db, fee_record_id, for_update=True)
    await get_writable_academic_year(db, rec.academic_year_id)
    await _ensure_not_carried_forward(db, rec)

    threshold = Decimal(str(settings.discount_approval_threshold_percent))
    if payload.discount_type == DiscountType.PERCENTAGE:
        if payload.discount_value > Decimal("100"):
            raise ServiceError("Percentage discount cannot exceed 100%", status.HTTP_400_BAD_REQUEST)
        if payload.discount_value > threshold and not is_admin(current_user_role):
            raise ServiceError(
                f"Only Admin can approve discount greater than {settings.discount_approval_threshold_percent}%",
                status.HTTP_403_FORBIDDEN,
            )

    actual = to_decimal(rec.actual_fee)
    paid = to_decimal(rec.paid_amount)
    new_discount = calculate_discount_amount(actual, payload.discount_type.value, payload.discount_value)
    if new_discount > actual - paid:
        raise ServiceError(
            "Discount cannot reduce the fee below the amount already paid",
            status.HTTP_400_BAD_REQUEST,
        )

    previous = to_decimal(rec.discount_amount)
    delta = new_discount - previous
    old_values = _amounts_snapshot(rec)
    try:
        rec.discount_amount = new_discount
        rec.discount_notes = payload.reason.strip()
        rec.discount_updated_by = applied_by
        rec.discount_updated_at = datetime.utcnow()
        rec.status = stored_status(rec.final_fee, rec.paid_amount)

        history = DiscountHistory(
            fee_record_id=rec.id,
            student_id=rec.student_id,
            discount_type=payload.discount_type.value,
            discount_value=payload.discount_value,
            discount_amount=new_discount,
            previous_discount_amount=previous,
            reason=payload.reason.strip(),
            notes=payload.notes,
            applied_by=applied_by,
        )
        db.add(history)
        await db.flush()

        if delta != 0:
            post_ledger_entry(
                db,
                student_id=rec.student_id,
                academic_year_id=rec.academic_year_id,
                fee_record_id=rec.id,
                source=LedgerSource.DISCOUNT.value if delta > 0 else LedgerSource.DISCOUNT_REVERSAL.value,
                amount=abs(delta),
                reference_id=history.id,
                description=payload.reason.strip(),
                created_by=applied_by,
            )
        _log_fee_change(
            db, rec, FeeChangeType.DISCOUNT.value,
            amount=delta,
            previous_value=previous,
            new_value=new_discount,
            old_values=old_values,
            new_values=_amounts_snapshot(rec),
            notes=payload.reason.strip(),
            changed_by=applied_by,
        )
        log_security_event(
            db,
            "discount_applied",
            user_id=applied_by,
            resource_type="student_fee_record",
            resource_id=rec.id,
            details={
                "discount_type": payload.discount_type.value,
                "discount_value": str(payload.discount_value),
                "discount_amount": str(new_discount),
                "previous_discount_amount": str(previous),
            },
            ip_address=ip_address,
        )
        await db.commit()
    except IntegrityError:
        await db.rollback()
        logger.exception("discount on fee record %s rolled back", fee_record_id)
        raise ServiceError("Discount could not be applied", status.HTTP_409_CONFLICT)

    await db.refresh(rec)
    year_cache.invalidate_after_payment(rec.student_id, rec.academic_year_id)
    logger.info("discount %s -> %s on fee record %s", previous, new_discount, rec.id)
    return _record_to_response(rec)


async def list_discount_history(db: AsyncSession, fee_record_id: UUID) -> List[DiscountHistoryResponse]:
    await get_fee_record_or_404(db, fee_record_id)
    result = await db.execute(
        select(DiscountHistory)
        .where(DiscountHistory.fee_record_id == fee_record_id)
        .order_by(DiscountHistory.applied_at)
    )
    return [
        DiscountHistoryResponse(
            id=d.id,
            fee_record_id=d.fee_record_id,
            student_id=d.student_id,
            discount_type=d.discount_type,
            discount_value=to_decimal(d.discount_value),
            discount_amount=to_decimal(d.discount_amount),
            previous_discount_amount=to_decimal(d.previous_discount_amount),
            reason=d.reason,
            notes=d.notes,
            applied_by=d.applied_by,
            applied_at=d.applied_at,
        )
        for d in result.scalars().all()
    ]


async def bulk_apply_discount(
    db: AsyncSession,
    payload: BulkDiscountCreate,
    applied_by: Optional[UUID],
    current_user_role: str,
    ip_address: Optional[str] = None,
) -> BulkDiscountResponse:
    """
    Apply one discount to many fee records through apply_discount, one commit per record.
    Records that cannot take the discount are reported instead of failing the batch.
    """
    if payload.discount_type == DiscountType.PERCENTAGE:
        # Whole batch is refused above the approval threshold
        threshold = Decimal(str(settings.discount_approval_threshold_percent))
        if payload.discount_value > Decimal("100"):
            raise ServiceError("Percentage discount cannot exceed 100%", status.HTTP_400_BAD_REQUEST)
        if payload.discount_value > threshold and not is_admin(current_user_role):
            raise ServiceError(
                f"Only Admin can approve discount greater than {settings.discount_approval_threshold_percent}%",
                status.HTTP_403_FORBIDDEN,
            )

    single = DiscountCreate(**payload.model_dump(exclude={"fee_record_ids"}))
    applied: List[FeeRecordResponse] = []
    failed: List[BulkDiscountFailure] = []
    for fee_record_id in dict.fromkeys(payload.fee_record_ids):
        try:
            applied.append(
                await apply_discount(db, fee_record_id, single, applied_by, current_user_role, ip_address)
            )
        except ServiceError as e:
            failed.append(BulkDiscountFailure(fee_record_id=fee_record_id, status_code=e.status_code, error=e.message))
    if failed:
        logger.warning("bulk discount: %d applied, %d refused", len(applied), len(failed))
    else:
        logger.info("bulk discount applied to %d fee records", len(applied))
    return BulkDiscountResponse(applied=applied, failed=failed)


async def get_discount_report(
    db: AsyncSession,
    academic_year_id: Optional[UUID] = None,
    student_id: Optional[UUID] = None,
) -> DiscountReport:
    """Current discounts totalled per student and per academic year."""
    stmt = (
        select(
            StudentFeeRecord,
            Student.first_name,
            Student.last_name,
            Student.admission_number,
            SchoolClass.name.label("class_name"),
            AcademicYear,
        )
        .join(Student, StudentFeeRecord.student_id == Student.id)
        .join(SchoolClass, StudentFeeRecord.class_id == SchoolClass.id)
        .join(AcademicYear, StudentFeeRecord.academic_year_id == AcademicYear.id)
        .where(StudentFeeRecord.discount_amount > 0)
    )
    if academic_year_id is not None:
        stmt = stmt.where(StudentFeeRecord.academic_year_id == academic_year_id)
    if student_id is not None:
        stmt = stmt.where(StudentFeeRecord.student_id == student_id)

    students: Dict[UUID, StudentDiscountReportItem] = {}
    years: Dict[UUID, YearDiscountReportItem] = {}
    year_starts: Dict[UUID, date] = {}
    for rec, first, last, adm, class_name, ay in (await db.execute(stmt)).all():
        discount = to_decimal(rec.discount_amount)
        item = students.get(rec.student_id)
        if item is None:
            item = students[rec.student_id] = StudentDiscountReportItem(
                student_id=rec.student_id,
                student_name=f"{first} {last}".strip(),
                admission_number=adm,
                class_name=class_name,
                total_discount=ZERO,
                discount_count=0,
            )
        item.total_discount += discount
        item.discount_count += 1

        year = years.get(ay.id)
        if year is None:
            year = years[ay.id] = YearDiscountReportItem(
                academic_year_id=ay.id,
                academic_year=ay.name,
                total_fees=ZERO,
                total_discount=ZERO,
                discount_percentage=ZERO,
                discount_count=0,
            )
            year_starts[ay.id] = ay.start_date
        year.total_fees += to_decimal(rec.actual_fee)
        year.total_discount += discount
        year.discount_count += 1

    for year in years.values():
        if year.total_fees > 0:
            year.discount_percentage = money(year.total_discount * 100 / year.total_fees)

    return DiscountReport(
        students=sorted(students.values(), key=lambda s: (-s.total_discount, s.student_name)),
        years=sorted(years.values(), key=lambda y: year_starts[y.academic_year_id], reverse=True),
    )


# --- Payment ---
async def _allocation_responses(
    db: AsyncSession, payment_ids: Sequence[UUID]
) -> Dict[UUID, List[PaymentAllocationResponse]]:
    if not payment_ids:
        return {}
    rows = (
        await db.execute(
            select(PaymentAllocation, StudentFeeRecord.fee_type, StudentFeeRecord.academic_year_id)
            .join(StudentFeeRecord, PaymentAllocation.fee_record_id == StudentFeeRecord.id)
            .where(PaymentAllocation.payment_record_id.in_(payment_ids))
            .order_by(PaymentAllocation.allocation_order)
        )
    ).all()
    out: Dict[UUID, List[PaymentAllocationResponse]] = {}
    for alloc, fee_type, year_id in rows:
        out.setdefault(alloc.payment_record_id, []).append(
            PaymentAllocationResponse(
                fee_record_id=alloc.fee_record_id,
                fee_type=fee_type,
                academic_year_id=year_id,
                allocated_amount=to_decimal(alloc.allocated_amount),
                reversed_amount=to_decimal(alloc.reversed_amount),
                allocation_order=alloc.allocation_order,
            )
        )
    return out


def _payment_to_response(pr: FeePaymentRecord, allocations: List[PaymentAllocationResponse]) -> PaymentResponse:
    return PaymentResponse(
        id=pr.id,
        student_id=pr.student_id,
        fee_record_id=pr.fee_record_id,
        target_academic_year_id=pr.target_academic_year_id,
        amount_paid=to_decimal(pr.amount_paid),
        reversed_amount=sum((a.reversed_amount for a in allocations), ZERO),
        payment_method=pr.payment_method,
        payment_date=pr.payment_date,
        receipt_number=pr.receipt_number,
        payment_receiver=pr.payment_receiver,
        reference_number=pr.reference_number,
        late_fee=to_decimal(pr.late_fee),
        notes=pr.notes,
        created_by=pr.created_by,
        created_at=pr.created_at,
        allocations=allocations,
    )


async def _payable_records(
    db: AsyncSession,
    student_id: UUID,
    academic_year_id: Optional[UUID] = None,
) -> List[StudentFeeRecord]:
    """Records that may still take money: open year, dues not carried forward."""
    stmt = (
        select(StudentFeeRecord)
        .join(AcademicYear, StudentFeeRecord.academic_year_id == AcademicYear.id)
        .where(
            StudentFeeRecord.student_id == student_id,
            AcademicYear.status == AcademicYearStatus.ACTIVE.value,
        )
        .with_for_update()
    )
    if academic_year_id is not None:
        stmt = stmt.where(StudentFeeRecord.academic_year_id == academic_year_id)
    records = (await db.execute(stmt)).scalars().all()
    carried = await carried_out_years(db, student_id)
    return [r for r in records if r.academic_year_id not in carried]


async def _settle(
    db: AsyncSession,
    student_id: UUID,
    lines: List[tuple],
    payload: PaymentCreate,
    created_by: Optional[UUID],
    ip_address: Optional[str],
) -> FeePaymentRecord:
    """
    Persist one payment allocated over (record, amount) lines in order:
    payment row, allocation rows, record updates, PAYMENT ledger credits, change history.
    """
    first_record = lines[0][0]
    total = sum((amount for _, amount in lines), ZERO)
    payment = FeePaymentRecord(
        student_id=student_id,
        fee_record_id=first_record.id,
        target_academic_year_id=first_record.academic_year_id,
        amount_paid=total,
        payment_method=payload.payment_method.value,
        payment_date=payload.payment_date or date.today(),
        receipt_number=generate_receipt_number(),
        payment_receiver=payload.payment_receiver,
        reference_number=payload.reference_number,
        late_fee=money(payload.late_fee),
        notes=payload.notes,
        created_by=created_by,
    )
    db.add(payment)
    await db.flush()

    for order, (rec, amount) in enumerate(lines, start=1):
        old_values = _amounts_snapshot(rec)
        db.add(
            PaymentAllocation(
                payment_record_id=payment.id,
                fee_record_id=rec.id,
                allocated_amount=amount,
                reversed_amount=ZERO,
                allocation_order=order,
            )
        )
        previous_paid = to_decimal(rec.paid_amount)
        rec.paid_amount = previous_paid + amount
        rec.status = stored_status(rec.final_fee, rec.paid_amount)
        post_ledger_entry(
            db,
            student_id=student_id,
            academic_year_id=rec.academic_year_id,
            fee_record_id=rec.id,
            source=LedgerSource.PAYMENT.value,
            amount=amount,
            reference_id=payment.id,
            description=f"Receipt {payment.receipt_number}",
            created_by=created_by,
        )
        _log_fee_change(
            db, rec, FeeChangeType.PAYMENT.value,
            amount=amount,
            previous_value=previous_paid,
            new_value=rec.paid_amount,
            old_values=old_values,
            new_values=_amounts_snapshot(rec),
            payment_method=payment.payment_method,
            receipt_number=payment.receipt_number,
            notes=payload.notes,
            changed_by=created_by,
        )

    log_security_event(
        db,
        "payment_created",
        user_id=created_by,
        resource_type="fee_payment",
        resource_id=payment.id,
        details={
            "student_id": str(student_id),
            "amount": str(total),
            "receipt_number": payment.receipt_number,
            "allocations": len(lines),
        },
        ip_address=ip_address,
    )
    return payment


async def record_payment(
    db: AsyncSession,
    fee_record_id: UUID,
    payload: PaymentCreate,
    created_by: Optional[UUID],
    ip_address: Optional[str] = None,
) -> PaymentResponse:
    rec = await get_fee_record_or_404(db, fee_record_id, for_update=True)
    await get_writable_academic_year(db, rec.academic_year_id)
    if rec.payment_blocked:
        raise ServiceError(
            f"Payments are blocked for this fee record: {rec.blocked_reason or 'no reason given'}",
            status.HTTP_400_BAD_REQUEST,
        )
    await _ensure_not_carried_forward(db, rec)
    amount = money(payload.amount_paid)
    if amount > rec.balance_fee:
        raise ServiceError("Payment amount cannot exceed remaining balance", status.HTTP_400_BAD_REQUEST)

    try:
        payment = await _settle(db, rec.student_id, [(rec, amount)], payload, created_by, ip_address)
        await db.commit()
    except IntegrityError:
        await db.rollback()
        logger.exception("payment on fee record %s rolled back", fee_record_id)
        raise ServiceError("Payment could not be recorded", status.HTTP_409_CONFLICT)

    await db.refresh(payment)
    year_cache.invalidate_after_payment(rec.student_id, rec.academic_year_id)
    logger.info("payment %s of %s on fee record %s", payment.receipt_number, amount, rec.id)
    allocations = await _allocation_responses(db, [payment.id])
    return _payment_to_response(payment, allocations.get(payment.id, []))


async def simulate_fifo_allocation(
    db: AsyncSession,
    student_id: UUID,
    amount: Decimal,
    academic_year_id: Optional[UUID] = None,
) -> AllocationPreview:
    """Preview how a lump payment would be spread. Nothing is written."""
    await _get_student_or_404(db, student_id)
    records = await _payable_records(db, student_id, academic_year_id)
    plan = plan_fifo_allocation(records, money(amount))
    outstanding = sum(
        (r.balance_fee for r in records if not r.payment_blocked),
        ZERO,
    )
    return AllocationPreview(
        student_id=student_id,
        payment_amount=plan.payment_amount,
        total_outstanding=outstanding,
        total_allocated=plan.total_allocated,
        remaining_amount=plan.remaining_amount,
        lines=[
            AllocationPreviewLine(
                fee_record_id=line.fee_record_id,
                fee_type=line.fee_type,
                academic_year_id=line.academic_year_id,
                due_date=line.due_date,
                balance_before=line.balance_before,
                allocated_amount=line.allocated_amount,
                balance_after=line.balance_after,
            )
            for line in plan.lines
        ],
    )


async def process_fifo_payment(
    db: AsyncSession,
    student_id: UUID,
    payload: FifoPaymentRequest,
    created_by: Optional[UUID],
    ip_address: Optional[str] = None,
) -> PaymentResponse:
    """Record one payment allocated over outstanding records in FIFO order."""
    await _get_student_or_404(db, student_id)
    records = await _payable_records(db, student_id, payload.academic_year_id)
    plan = plan_fifo_allocation(records, money(payload.amount_paid))
    if not plan.lines:
        raise ServiceError("No outstanding fees to allocate the payment to", status.HTTP_400_BAD_REQUEST)
    if plan.remaining_amount > 0:
        logger.warning(
            "rejected FIFO payment of %s for student %s: exceeds outstanding %s",
            plan.payment_amount, student_id, plan.total_allocated,
        )
        raise ServiceError("Payment amount exceeds total outstanding balance", status.HTTP_400_BAD_REQUEST)

    by_id = {r.id: r for r in records}
    lines = [(by_id[line.fee_record_id], line.allocated_amount) for line in plan.lines]
    try:
        payment = await _settle(db, student_id, lines, payload, created_by, ip_address)
        await db.commit()
    except IntegrityError:
        await db.rollback()
        logger.exception("FIFO payment for student %s rolled back", student_id)
        raise ServiceError("Payment could not be recorded", status.HTTP_409_CONFLICT)

    await db.refresh(payment)
    for year_id in {rec.academic_year_id for rec, _ in lines}:
        year_cache.invalidate_after_payment(student_id, year_id)
    logger.info(
        "FIFO payment %s of %s over %d records for student %s",
        payment.receipt_number, plan.payment_amount, len(lines), student_id,
    )
    allocations = await _allocation_responses(db, [payment.id])
    return _payment_to_response(payment, allocations.get(payment.id, []))


async def get_payment_history(
    db: AsyncSession,
    student_id: UUID,
    academic_year_id: Optional[UUID] = None,
) -> List[PaymentResponse]:
    key = year_cache.make_key("payment-history", student_id, academic_year_id)

    async def _load() -> List[PaymentResponse]:
        stmt = select(FeePaymentRecord).where(FeePaymentRecord.student_id == student_id)
        if academic_year_id is not None:
            stmt = stmt.where(FeePaymentRecord.target_academic_year_id == academic_year_id)
        stmt = stmt.order_by(FeePaymentRecord.payment_date.desc(), FeePaymentRecord.created_at.desc())
        payments = (await db.execute(stmt)).scalars().all()
        allocations = await _allocation_responses(db, [p.id for p in payments])
        return [_payment_to_response(p, allocations.get(p.id, [])) for p in payments]

    return await year_cache.get_or_load(key, _load)


# --- Reversal ---
def _reversal_to_response(r: PaymentReversal) -> PaymentReversalResponse:
    return PaymentReversalResponse(
        id=r.id,
        payment_record_id=r.payment_record_id,
        reversal_type=r.reversal_type,
        reversal_amount=to_decimal(r.reversal_amount),
        reason=r.reason,
        notes=r.notes,
        authorized_by=r.authorized_by,
        reversal_date=r.reversal_date,
    )


async def reverse_payment(
    db: AsyncSession,
    payment_id: UUID,
    payload: PaymentReversalCreate,
    authorized_by: Optional[UUID],
    ip_address: Optional[str] = None,
) -> PaymentReversalResponse:
    """
    Reverse or refund part or all of a payment. Allocations are unwound newest-first;
    each unwound share posts a REVERSAL debit against its record.
    """
    payment = await db.get(FeePaymentRecord, payment_id)
    if not payment:
        raise ServiceError("Payment not found", status.HTTP_404_NOT_FOUND)

    allocations = (
        await db.execute(
            select(PaymentAllocation)
            .where(PaymentAllocation.payment_record_id == payment_id)
            .order_by(PaymentAllocation.allocation_order.desc())
            .with_for_update()
        )
    ).scalars().all()
    reversible = sum(
        (to_decimal(a.allocated_amount) - to_decimal(a.reversed_amount) for a in allocations),
        ZERO,
    )
    amount = money(payload.reversal_amount)
    if amount > reversible:
        raise ServiceError(
            f"Reversal amount cannot exceed the unreversed payment amount ({reversible})",
            status.HTTP_400_BAD_REQUEST,
        )

    touched: List[StudentFeeRecord] = []
    try:
        reversal = PaymentReversal(
            payment_record_id=payment.id,
            reversal_type=payload.reversal_type.value,
            reversal_amount=amount,
            reason=payload.reason.strip(),
            notes=payload.notes,
            authorized_by=authorized_by,
        )
        db.add(reversal)
        await db.flush()

        left = amount
        for alloc in allocations:
            if left <= 0:
                break
            open_share = to_decimal(alloc.allocated_amount) - to_decimal(alloc.reversed_amount)
            if open_share <= 0:
                continue
            take = min(open_share, left)
            rec = await get_fee_record_or_404(db, alloc.fee_record_id, for_update=True)
            await get_writable_academic_year(db, rec.academic_year_id)
            await _ensure_not_carried_forward(db, rec)

            old_values = _amounts_snapshot(rec)
            previous_paid = to_decimal(rec.paid_amount)
            alloc.reversed_amount = to_decimal(alloc.reversed_amount) + take
            rec.paid_amount = previous_paid - take
            rec.status = stored_status(rec.final_fee, rec.paid_amount)
            post_ledger_entry(
                db,
                student_id=rec.student_id,
                academic_year_id=rec.academic_year_id,
                fee_record_id=rec.id,
                source=LedgerSource.REVERSAL.value,
                amount=take,
                reference_id=reversal.id,
                description=f"{payload.reversal_type.value} of receipt {payment.receipt_number}",
                created_by=authorized_by,
            )
            _log_fee_change(
                db, rec, FeeChangeType.REVERSAL.value,
                amount=take,
                previous_value=previous_paid,
                new_value=rec.paid_amount,
                old_values=old_values,
                new_values=_amounts_snapshot(rec),
                receipt_number=payment.receipt_number,
                notes=payload.reason.strip(),
                changed_by=authorized_by,
            )
            touched.append(rec)
            left -= take

        log_security_event(
            db,
            f"payment_{payload.reversal_type.value}",
            user_id=authorized_by,
            resource_type="fee_payment",
            resource_id=payment.id,
            details={"amount": str(amount), "reason": payload.reason.strip()},
            ip_address=ip_address,
        )
        await db.commit()
    except ServiceError:
        await db.rollback()
        raise
    except IntegrityError:
        await db.rollback()
        logger.exception("reversal of payment %s rolled back", payment_id)
        raise ServiceError("Reversal could not be recorded", status.HTTP_409_CONFLICT)

    await db.refresh(reversal)
    for year_id in {rec.academic_year_id for rec in touched}:
        year_cache.invalidate_after_payment(payment.student_id, year_id)
    logger.info("%s of %s on receipt %s", payload.reversal_type.value, amount, payment.receipt_number)
    return _reversal_to_response(reversal)


# --- Block / unblock ---
async def set_payment_block(
    db: AsyncSession,
    fee_record_id: UUID,
    blocked: bool,
    changed_by: Optional[UUID],
    payload: Optional[PaymentBlockRequest] = None,
) -> FeeRecordResponse:
    rec = await get_fee_record_or_404(db, fee_record_id, for_update=True)
    await get_writable_academic_year(db, rec.academic_year_id)
    await _ensure_not_carried_forward(db, rec)
    if rec.payment_blocked == blocked:
        raise ServiceError(
            "Payments are already blocked for this fee record" if blocked else "Payments are not blocked for this fee record",
            status.HTTP_400_BAD_REQUEST,
        )
    reason = payload.reason.strip() if payload else None
    old_values = {"payment_blocked": rec.payment_blocked, "blocked_reason": rec.blocked_reason}
    rec.payment_blocked = blocked
    rec.blocked_reason = reason if blocked else None
    rec.blocked_at = datetime.utcnow() if blocked else None
    rec.blocked_by = changed_by if blocked else None
    _log_fee_change(
        db, rec, FeeChangeType.BLOCKED.value if blocked else FeeChangeType.UNBLOCKED.value,
        old_values=old_values,
        new_values={"payment_blocked": blocked, "blocked_reason": rec.blocked_reason},
        notes=reason,
        changed_by=changed_by,
    )
    await db.commit()
    await db.refresh(rec)
    year_cache.invalidate_after_payment(rec.student_id, rec.academic_year_id)
    logger.info("fee record %s payment_blocked=%s", rec.id, blocked)
    return _record_to_response(rec)


async def get_blocked_payments_report(db: AsyncSession, academic_year_id: UUID) -> BlockedPaymentsReport:
    """Students of the year with at least one fee record whose payments are blocked."""
    await get_academic_year_or_404(db, academic_year_id)
    stmt = (
        _record_rows_stmt()
        .where(
            StudentFeeRecord.academic_year_id == academic_year_id,
            StudentFeeRecord.payment_blocked.is_(True),
        )
        .order_by(Student.first_name, Student.last_name, StudentFeeRecord.priority_order, StudentFeeRecord.fee_type)
    )
    items: Dict[UUID, BlockedStudentItem] = {}
    for rec in _rows_to_responses((await db.execute(stmt)).all()):
        item = items.get(rec.student_id)
        if item is None:
            item = items[rec.student_id] = BlockedStudentItem(
                student_id=rec.student_id,
                student_name=rec.student_name,
                admission_number=rec.admission_number,
                blocked_balance=ZERO,
                records=[],
            )
        item.records.append(rec)
        item.blocked_balance += rec.balance_fee
    return BlockedPaymentsReport(
        academic_year_id=academic_year_id,
        students_count=len(items),
        total_blocked_balance=sum((i.blocked_balance for i in items.values()), ZERO),
        items=list(items.values()),
    )


# --- Change history ---
async def get_change_history(db: AsyncSession, fee_record_id: UUID) -> List[FeeChangeHistoryResponse]:
    await get_fee_record_or_404(db, fee_record_id)
    rows = (
        await db.execute(
            select(FeeChangeHistory)
            .where(FeeChangeHistory.fee_record_id == fee_record_id)
            .order_by(FeeChangeHistory.change_date, FeeChangeHistory.id)
        )
    ).scalars().all()
    return [
        FeeChangeHistoryResponse(
            id=h.id,
            fee_record_id=h.fee_record_id,
            change_type=h.change_type,
            amount=h.amount,
            previous_value=h.previous_value,
            new_value=h.new_value,
            old_values=h.old_values,
            new_values=h.new_values,
            payment_method=h.payment_method,
            receipt_number=h.receipt_number,
            notes=h.notes,
            changed_by=h.changed_by,
            change_date=h.change_date,
        )
        for h in rows
    ]


# --- Summary ---
async def get_year_summary(db: AsyncSession, academic_year_id: UUID) -> YearSummaryResponse:
    """Collection totals of one year, cached under fee-stats."""
    key = year_cache.make_key("fee-stats", academic_year_id)

    async def _load() -> YearSummaryResponse:
        ay = await get_academic_year_or_404(db, academic_year_id)
        records = (
            await db.execute(
                select(StudentFeeRecord).where(StudentFeeRecord.academic_year_id == academic_year_id)
            )
        ).scalars().all()
        summary = summarize_year(records, [ay], academic_year_id)
        return YearSummaryResponse(academic_year_id=academic_year_id, **asdict(summary))

    return await year_cache.get_or_load(key, _load)


# --- Previous year dues ---
async def get_previous_year_dues(db: AsyncSession, academic_year_id: UUID) -> PreviousYearDuesSummary:
    """Dues carried into this year by promotions, cached under pyd-summary."""
    key = year_cache.make_key("pyd-summary", academic_year_id)

    async def _load() -> PreviousYearDuesSummary:
        await get_academic_year_or_404(db, academic_year_id)
        stmt = (
            _record_rows_stmt()
            .where(
                StudentFeeRecord.academic_year_id == academic_year_id,
                StudentFeeRecord.is_carry_forward.is_(True),
                StudentFeeRecord.fee_type == PREVIOUS_YEAR_DUES_FEE_TYPE,
            )
            .order_by(Student.first_name, Student.last_name)
        )
        items: List[PreviousYearDuesItem] = []
        for rec, first, last, adm, _class_name in (await db.execute(stmt)).all():
            items.append(
                PreviousYearDuesItem(
                    fee_record_id=rec.id,
                    student_id=rec.student_id,
                    student_name=f"{first} {last}".strip(),
                    admission_number=adm,
                    source_academic_year_id=rec.carry_forward_source_year_id,
                    actual_fee=to_decimal(rec.actual_fee),
                    paid_amount=to_decimal(rec.paid_amount),
                    balance_fee=rec.balance_fee,
                    status=rec.status,
                )
            )
        return PreviousYearDuesSummary(
            academic_year_id=academic_year_id,
            students_with_dues=len({i.student_id for i in items if i.balance_fee > 0}),
            total_carried_forward=sum((i.actual_fee for i in items), ZERO),
            total_collected=sum((i.paid_amount for i in items), ZERO),
            total_outstanding=sum((i.balance_fee for i in items), ZERO),
            items=items,
        )

    return await year_cache.get_or_load(key, _load)

