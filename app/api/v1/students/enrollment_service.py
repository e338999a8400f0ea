"""
Enrollment history (SCD type 2).

Each row is valid over [valid_from, valid_to). Changing a student's class closes the current
row at the effective date and inserts a new one, so the class on any past date can be recovered.
Functions here flush but never commit; the calling service owns the transaction.
"""

import logging
from datetime import date
from typing import List, Optional
from uuid import UUID

from fastapi import status
from sqlalchemy import and_, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.enums import EnrollmentStatus
from app.core.exceptions import ServiceError
from app.core.models import StudentEnrollment

logger = logging.getLogger(__name__)


async def get_current_enrollment(db: AsyncSession, student_id: UUID) -> Optional[StudentEnrollment]:
    result = await db.execute(
        select(StudentEnrollment).where(
            StudentEnrollment.student_id == student_id,
            StudentEnrollment.is_current.is_(True),
        )
    )
    return result.scalars().first()


async def open_enrollment(
    db: AsyncSession,
    student_id: UUID,
    academic_year_id: UUID,
    class_id: UUID,
    valid_from: date,
    change_reason: Optional[str] = None,
) -> StudentEnrollment:
    """Start the first (or next, after a close) enrollment interval of a student."""
    if await get_current_enrollment(db, student_id):
        raise ServiceError("Student already has a current enrollment", status.HTTP_409_CONFLICT)
    latest = await _latest_enrollment(db, student_id)
    if latest is not None and latest.valid_to is not None and valid_from < latest.valid_to:
        raise ServiceError("Enrollment would overlap the previous enrollment", status.HTTP_400_BAD_REQUEST)
    row = StudentEnrollment(
        student_id=student_id,
        academic_year_id=academic_year_id,
        class_id=class_id,
        status=EnrollmentStatus.ACTIVE.value,
        valid_from=valid_from,
        valid_to=None,
        is_current=True,
        change_reason=change_reason,
    )
    db.add(row)
    await db.flush()
    logger.info("opened enrollment for student %s in class %s from %s", student_id, class_id, valid_from)
    return row


async def close_enrollment(
    db: AsyncSession,
    student_id: UUID,
    effective_date: date,
    closing_status: str,
    change_reason: Optional[str] = None,
) -> Optional[StudentEnrollment]:
    """End the current interval at effective_date. Returns None if the student has no current row."""
    current = await get_current_enrollment(db, student_id)
    if current is None:
        return None
    if effective_date < current.valid_from:
        raise ServiceError(
            "Effective date cannot be before the start of the current enrollment",
            status.HTTP_400_BAD_REQUEST,
        )
    current.valid_to = effective_date
    current.is_current = False
    current.status = closing_status
    if change_reason:
        current.change_reason = change_reason
    await db.flush()
    logger.info("closed enrollment %s for student %s on %s (%s)", current.id, student_id, effective_date, closing_status)
    return current


async def change_enrollment(
    db: AsyncSession,
    student_id: UUID,
    academic_year_id: UUID,
    class_id: UUID,
    effective_date: date,
    closing_status: str = EnrollmentStatus.TRANSFERRED.value,
    change_reason: Optional[str] = None,
) -> StudentEnrollment:
    """Close the current interval and open a new one starting on the same date."""
    current = await get_current_enrollment(db, student_id)
    if current is None:
        raise ServiceError("Student has no current enrollment", status.HTTP_404_NOT_FOUND)
    if effective_date <= current.valid_from:
        raise ServiceError(
            "Effective date must be after the start of the current enrollment",
            status.HTTP_400_BAD_REQUEST,
        )
    if current.academic_year_id == academic_year_id and current.class_id == class_id:
        raise ServiceError("Student is already enrolled in this class for this year", status.HTTP_400_BAD_REQUEST)
    await close_enrollment(db, student_id, effective_date, closing_status, change_reason)
    return await open_enrollment(db, student_id, academic_year_id, class_id, effective_date, change_reason)


async def _latest_enrollment(db: AsyncSession, student_id: UUID) -> Optional[StudentEnrollment]:
    result = await db.execute(
        select(StudentEnrollment)
        .where(StudentEnrollment.student_id == student_id)
        .order_by(StudentEnrollment.valid_from.desc(), StudentEnrollment.created_at.desc())
        .limit(1)
    )
    return result.scalars().first()


async def enrollment_history(db: AsyncSession, student_id: UUID) -> List[StudentEnrollment]:
    result = await db.execute(
        select(StudentEnrollment)
        .where(StudentEnrollment.student_id == student_id)
        .order_by(StudentEnrollment.valid_from, StudentEnrollment.created_at)
    )
    return list(result.scalars().all())


async def enrollment_as_of(db: AsyncSession, student_id: UUID, as_of: date) -> Optional[StudentEnrollment]:
    """The row whose [valid_from, valid_to) contains as_of."""
    result = await db.execute(
        select(StudentEnrollment)
        .where(
            StudentEnrollment.student_id == student_id,
            StudentEnrollment.valid_from <= as_of,
            or_(StudentEnrollment.valid_to.is_(None), StudentEnrollment.valid_to > as_of),
        )
        .order_by(StudentEnrollment.valid_from.desc())
        .limit(1)
    )
    return result.scalars().first()


async def students_enrolled_in(
    db: AsyncSession, academic_year_id: UUID, class_id: Optional[UUID] = None
) -> List[StudentEnrollment]:
    """Current, active enrollments of a year."""
    conditions = [
        StudentEnrollment.academic_year_id == academic_year_id,
        StudentEnrollment.is_current.is_(True),
        StudentEnrollment.status == EnrollmentStatus.ACTIVE.value,
    ]
    if class_id is not None:
        conditions.append(StudentEnrollment.class_id == class_id)
    result = await db.execute(select(StudentEnrollment).where(and_(*conditions)))
    return list(result.scalars().all())
