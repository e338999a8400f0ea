"""
Year-end promotions.

A batch moves students from their current enrollment into the target year:
promoted students go to the next class, repeated students stay in their class,
dropouts leave. Outstanding dues of the source year follow promoted and repeated
students as a "Previous Year Dues" record that is settled before anything else.
The whole batch is one transaction.
"""

import logging
from typing import Dict, List, Optional, Set
from uuid import UUID

from fastapi import status
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.v1.academic_years.service import get_writable_academic_year
from app.api.v1.classes.service import next_class
from app.api.v1.fees.calculations import ZERO, money
from app.api.v1.fees.ledger import post_ledger_entry, student_year_balance
from app.api.v1.fees.service import assign_fee_records_for_student
from app.api.v1.students import enrollment_service
from app.core.cache import year_cache
from app.core.enums import (
    EnrollmentStatus,
    FeeChangeType,
    FeeStatus,
    LedgerSource,
    PREVIOUS_YEAR_DUES_FEE_TYPE,
    PromotionType,
    StudentStatus,
)
from app.core.exceptions import MissingFeePlansError, ServiceError
from app.core.models import (
    AcademicYear,
    FeeChangeHistory,
    FeeStructure,
    SchoolClass,
    Student,
    StudentFeeRecord,
    StudentPromotion,
)

from .schemas import PromotionExecuteRequest, PromotionExecuteResponse, PromotionResponse

logger = logging.getLogger(__name__)

_CLOSING_STATUS = {
    PromotionType.PROMOTED: EnrollmentStatus.PROMOTED.value,
    PromotionType.REPEATED: EnrollmentStatus.REPEATED.value,
    PromotionType.DROPOUT: EnrollmentStatus.DROPOUT.value,
}


def _to_response(p: StudentPromotion) -> PromotionResponse:
    return PromotionResponse(
        id=p.id,
        student_id=p.student_id,
        from_academic_year_id=p.from_academic_year_id,
        to_academic_year_id=p.to_academic_year_id,
        from_class_id=p.from_class_id,
        to_class_id=p.to_class_id,
        promotion_type=p.promotion_type,
        promotion_date=p.promotion_date,
        carried_forward_amount=money(p.carried_forward_amount),
        reason=p.reason,
        notes=p.notes,
        idempotency_key=p.idempotency_key,
        promoted_by=p.promoted_by,
        created_at=p.created_at,
    )


def _batch_response(
    target_academic_year_id: UUID,
    idempotency_key: Optional[str],
    promotions: List[StudentPromotion],
    replayed: bool,
) -> PromotionExecuteResponse:
    def _count(kind: PromotionType) -> int:
        return sum(1 for p in promotions if p.promotion_type == kind.value)

    return PromotionExecuteResponse(
        target_academic_year_id=target_academic_year_id,
        idempotency_key=idempotency_key,
        replayed=replayed,
        promoted_count=_count(PromotionType.PROMOTED),
        repeated_count=_count(PromotionType.REPEATED),
        dropout_count=_count(PromotionType.DROPOUT),
        total_carried_forward=sum((money(p.carried_forward_amount) for p in promotions), ZERO),
        promotions=[_to_response(p) for p in promotions],
    )


def _class_label(cl: SchoolClass) -> str:
    return f"{cl.name} ({cl.section})" if cl.section else cl.name


async def _find_missing_fee_plans(
    db: AsyncSession, target: AcademicYear, class_ids: Set[UUID]
) -> List[Dict[str, str]]:
    if not class_ids:
        return []
    present = set(
        (
            await db.execute(
                select(FeeStructure.class_id).where(
                    FeeStructure.academic_year_id == target.id,
                    FeeStructure.is_active.is_(True),
                    FeeStructure.class_id.in_(class_ids),
                )
            )
        ).scalars().all()
    )
    missing_ids = class_ids - present
    if not missing_ids:
        return []
    classes = (
        await db.execute(
            select(SchoolClass)
            .where(SchoolClass.id.in_(missing_ids))
            .order_by(SchoolClass.display_order.nullslast(), SchoolClass.name)
        )
    ).scalars().all()
    return [{"year": target.name, "class": _class_label(c)} for c in classes]


async def _carry_forward(
    db: AsyncSession,
    student_id: UUID,
    source_year_id: UUID,
    target: AcademicYear,
    target_class_id: UUID,
    promoted_by: Optional[UUID],
):
    """
    Move the student's outstanding source-year balance into the target year.
    Source-year records stay as they are; the source ledger gets a year-level credit.
    """
    outstanding = money(await student_year_balance(db, student_id, source_year_id))
    if outstanding <= 0:
        return ZERO
    rec = StudentFeeRecord(
        student_id=student_id,
        academic_year_id=target.id,
        class_id=target_class_id,
        fee_type=PREVIOUS_YEAR_DUES_FEE_TYPE,
        actual_fee=outstanding,
        discount_amount=ZERO,
        paid_amount=ZERO,
        due_date=target.start_date,
        status=FeeStatus.PENDING.value,
        priority_order=0,
        payment_blocked=False,
        is_carry_forward=True,
        carry_forward_source_year_id=source_year_id,
    )
    db.add(rec)
    await db.flush()
    post_ledger_entry(
        db,
        student_id=student_id,
        academic_year_id=target.id,
        fee_record_id=rec.id,
        source=LedgerSource.CARRY_FORWARD_IN.value,
        amount=outstanding,
        reference_id=source_year_id,
        description="Dues carried in from previous year",
        created_by=promoted_by,
    )
    post_ledger_entry(
        db,
        student_id=student_id,
        academic_year_id=source_year_id,
        source=LedgerSource.CARRY_FORWARD_OUT.value,
        amount=outstanding,
        reference_id=rec.id,
        description=f"Dues carried forward to {target.name}",
        created_by=promoted_by,
    )
    db.add(
        FeeChangeHistory(
            fee_record_id=rec.id,
            change_type=FeeChangeType.CARRY_FORWARD.value,
            amount=outstanding,
            new_values={"actual_fee": str(outstanding), "source_academic_year_id": str(source_year_id)},
            changed_by=promoted_by,
        )
    )
    return outstanding


async def execute_promotions(
    db: AsyncSession,
    payload: PromotionExecuteRequest,
    promoted_by: Optional[UUID] = None,
) -> PromotionExecuteResponse:
    if payload.idempotency_key:
        previous = (
            await db.execute(
                select(StudentPromotion)
                .where(StudentPromotion.idempotency_key == payload.idempotency_key)
                .order_by(StudentPromotion.created_at)
            )
        ).scalars().all()
        if previous:
            logger.info("promotion batch %s already processed; replaying result", payload.idempotency_key)
            return _batch_response(previous[0].to_academic_year_id, payload.idempotency_key, list(previous), True)

    target = await get_writable_academic_year(db, payload.target_academic_year_id)
    promotion_date = payload.promotion_date or target.start_date

    seen: Set[UUID] = set()
    plans = []
    next_class_cache: Dict[UUID, UUID] = {}
    for item in payload.items:
        if item.student_id in seen:
            raise ServiceError(f"Student {item.student_id} appears more than once", status.HTTP_400_BAD_REQUEST)
        seen.add(item.student_id)

        student = await db.get(Student, item.student_id)
        if not student or student.status == StudentStatus.ARCHIVED.value:
            raise ServiceError(f"Student {item.student_id} not found", status.HTTP_404_NOT_FOUND)
        current = await enrollment_service.get_current_enrollment(db, student.id)
        if current is None:
            raise ServiceError(
                f"Student {student.admission_number} has no current enrollment",
                status.HTTP_400_BAD_REQUEST,
            )
        if current.academic_year_id == target.id:
            raise ServiceError(
                f"Student {student.admission_number} is already enrolled in {target.name}",
                status.HTTP_400_BAD_REQUEST,
            )
        from_class_id = item.from_class_id or current.class_id

        to_class_id: Optional[UUID] = None
        if item.promotion_type == PromotionType.REPEATED:
            to_class_id = from_class_id
        elif item.promotion_type == PromotionType.PROMOTED:
            to_class_id = item.to_class_id
            if to_class_id is None:
                if from_class_id not in next_class_cache:
                    from_class = await db.get(SchoolClass, from_class_id)
                    nxt = await next_class(db, from_class) if from_class else None
                    next_class_cache[from_class_id] = nxt.id if nxt else from_class_id
                to_class_id = next_class_cache[from_class_id]
        plans.append((item, student, current, from_class_id, to_class_id))

    missing = await _find_missing_fee_plans(db, target, {p[4] for p in plans if p[4] is not None})
    if missing:
        logger.warning("promotion to %s blocked: missing fee plans %s", target.name, missing)
        raise MissingFeePlansError(missing)

    promotions: List[StudentPromotion] = []
    source_years: Set[UUID] = set()
    try:
        for item, student, current, from_class_id, to_class_id in plans:
            source_year_id = current.academic_year_id
            source_years.add(source_year_id)
            await enrollment_service.close_enrollment(
                db,
                student.id,
                promotion_date,
                _CLOSING_STATUS[item.promotion_type],
                change_reason=item.reason or item.promotion_type.value,
            )

            carried = ZERO
            if item.promotion_type == PromotionType.DROPOUT:
                student.status = StudentStatus.INACTIVE.value
                student.status_reason = item.reason or "dropout"
            else:
                carried = await _carry_forward(db, student.id, source_year_id, target, to_class_id, promoted_by)
                await enrollment_service.open_enrollment(
                    db,
                    student.id,
                    target.id,
                    to_class_id,
                    promotion_date,
                    change_reason=item.promotion_type.value,
                )
                student.class_id = to_class_id
                await assign_fee_records_for_student(db, student.id, target.id, to_class_id, promoted_by)

            promotion = StudentPromotion(
                student_id=student.id,
                from_academic_year_id=source_year_id,
                to_academic_year_id=target.id,
                from_class_id=from_class_id,
                to_class_id=to_class_id,
                promotion_type=item.promotion_type.value,
                promotion_date=promotion_date,
                carried_forward_amount=carried,
                reason=item.reason,
                notes=item.notes,
                idempotency_key=payload.idempotency_key,
                promoted_by=promoted_by,
            )
            db.add(promotion)
            promotions.append(promotion)
        await db.commit()
    except ServiceError:
        await db.rollback()
        raise
    except IntegrityError as e:
        await db.rollback()
        logger.exception("promotion batch to %s rolled back", target.name)
        raise ServiceError("Promotion failed; no changes were saved", status.HTTP_409_CONFLICT) from e

    for promotion in promotions:
        await db.refresh(promotion)
    for source_year_id in source_years:
        year_cache.invalidate_after_promotion(source_year_id, target.id)
    for promotion in promotions:
        year_cache.invalidate_student_year(promotion.student_id, target.id)

    result = _batch_response(target.id, payload.idempotency_key, promotions, False)
    logger.info(
        "promotion to %s: %d promoted, %d repeated, %d dropout, %s carried forward",
        target.name, result.promoted_count, result.repeated_count, result.dropout_count, result.total_carried_forward,
    )
    return result


async def list_promotion_history(
    db: AsyncSession,
    academic_year_id: Optional[UUID] = None,
    student_id: Optional[UUID] = None,
) -> List[PromotionResponse]:
    """Promotions into (or out of) a year, newest first. Cached under promotion-history."""
    key = year_cache.make_key("promotion-history", academic_year_id, student_id)

    async def _load() -> List[PromotionResponse]:
        stmt = select(StudentPromotion)
        if academic_year_id is not None:
            stmt = stmt.where(
                (StudentPromotion.to_academic_year_id == academic_year_id)
                | (StudentPromotion.from_academic_year_id == academic_year_id)
            )
        if student_id is not None:
            stmt = stmt.where(StudentPromotion.student_id == student_id)
        stmt = stmt.order_by(StudentPromotion.created_at.desc())
        return [_to_response(p) for p in (await db.execute(stmt)).scalars().all()]

    return await year_cache.get_or_load(key, _load)
