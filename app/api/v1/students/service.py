"""Students: admission, listing, status, archiving, transactional deletion and class changes."""

import logging
from datetime import date, datetime
from typing import List, Optional
from uuid import UUID

from fastapi import status
from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.v1.academic_years.service import get_writable_academic_year
from app.api.v1.classes.service import get_class_or_404
from app.api.v1.fees.ledger import student_has_ledger_entries
from app.api.v1.fees.service import assign_fee_records_for_student
from app.api.v1.security.service import log_security_event
from app.core.cache import year_cache
from app.core.enums import EnrollmentStatus, StudentStatus
from app.core.exceptions import ServiceError
from app.core.models import (
    DiscountHistory,
    FeeChangeHistory,
    SchoolClass,
    Student,
    StudentEnrollment,
    StudentFeeRecord,
    StudentPromotion,
)

from . import enrollment_service
from .schemas import (
    ClassChangeRequest,
    EnrollmentResponse,
    StudentArchiveRequest,
    StudentCreate,
    StudentResponse,
    StudentStatusUpdate,
)

logger = logging.getLogger(__name__)


def _to_response(s: Student, class_name: Optional[str] = None) -> StudentResponse:
    return StudentResponse(
        id=s.id,
        admission_number=s.admission_number,
        first_name=s.first_name,
        last_name=s.last_name,
        full_name=s.full_name,
        date_of_birth=s.date_of_birth,
        gender=s.gender,
        class_id=s.class_id,
        class_name=class_name,
        parent_phone=s.parent_phone,
        parent_email=s.parent_email,
        address=s.address,
        status=s.status,
        status_reason=s.status_reason,
        archived_at=s.archived_at,
        archive_reason=s.archive_reason,
        created_at=s.created_at,
        updated_at=s.updated_at,
    )


def _enrollment_to_response(e: StudentEnrollment, class_name: Optional[str] = None) -> EnrollmentResponse:
    return EnrollmentResponse(
        id=e.id,
        student_id=e.student_id,
        academic_year_id=e.academic_year_id,
        class_id=e.class_id,
        class_name=class_name,
        status=e.status,
        valid_from=e.valid_from,
        valid_to=e.valid_to,
        is_current=e.is_current,
        change_reason=e.change_reason,
        created_at=e.created_at,
    )


async def _class_name(db: AsyncSession, class_id: Optional[UUID]) -> Optional[str]:
    if class_id is None:
        return None
    result = await db.execute(select(SchoolClass.name).where(SchoolClass.id == class_id))
    return result.scalar_one_or_none()


async def get_student_or_404(db: AsyncSession, student_id: UUID) -> Student:
    student = await db.get(Student, student_id)
    if not student:
        raise ServiceError("Student not found", status.HTTP_404_NOT_FOUND)
    return student


async def create_student(
    db: AsyncSession,
    payload: StudentCreate,
    created_by: Optional[UUID] = None,
) -> StudentResponse:
    """Admit a student into a class for a year and assign that class's fees."""
    ay = await get_writable_academic_year(db, payload.academic_year_id)
    cl = await get_class_or_404(db, payload.class_id)
    admission_number = payload.admission_number.strip()
    existing = await db.execute(select(Student.id).where(Student.admission_number == admission_number))
    if existing.first():
        raise ServiceError(
            f"Admission number '{admission_number}' is already in use",
            status.HTTP_409_CONFLICT,
        )

    try:
        student = Student(
            admission_number=admission_number,
            first_name=payload.first_name.strip(),
            last_name=payload.last_name.strip(),
            date_of_birth=payload.date_of_birth,
            gender=payload.gender,
            class_id=cl.id,
            parent_phone=payload.parent_phone,
            parent_email=payload.parent_email,
            address=payload.address,
            status=StudentStatus.ACTIVE.value,
        )
        db.add(student)
        await db.flush()
        await enrollment_service.open_enrollment(
            db,
            student.id,
            ay.id,
            cl.id,
            payload.enrollment_date or ay.start_date,
            change_reason="admission",
        )
        records = await assign_fee_records_for_student(db, student.id, ay.id, cl.id, created_by)
        await db.commit()
    except ServiceError:
        await db.rollback()
        raise
    except IntegrityError:
        await db.rollback()
        raise ServiceError(
            f"Admission number '{admission_number}' is already in use",
            status.HTTP_409_CONFLICT,
        )

    await db.refresh(student)
    year_cache.invalidate_year(ay.id, ("student-enrollments", "fee-records", "fee-stats"))
    logger.info(
        "admitted student %s into %s for %s with %d fee records",
        student.admission_number, cl.name, ay.name, len(records),
    )
    return _to_response(student, cl.name)


async def list_students(
    db: AsyncSession,
    status_filter: Optional[str] = None,
    class_id: Optional[UUID] = None,
) -> List[StudentResponse]:
    """Active students by default; pass status to see INACTIVE or ARCHIVED ones."""
    stmt = select(Student, SchoolClass.name).outerjoin(SchoolClass, Student.class_id == SchoolClass.id)
    stmt = stmt.where(Student.status == (status_filter or StudentStatus.ACTIVE.value))
    if class_id is not None:
        stmt = stmt.where(Student.class_id == class_id)
    stmt = stmt.order_by(Student.first_name, Student.last_name)
    result = await db.execute(stmt)
    return [_to_response(s, class_name) for s, class_name in result.all()]


async def get_student(db: AsyncSession, student_id: UUID) -> StudentResponse:
    student = await get_student_or_404(db, student_id)
    return _to_response(student, await _class_name(db, student.class_id))


def _anonymize(student: Student) -> None:
    student.first_name = "Former"
    student.last_name = f"Student {str(student.id)[:8]}"
    student.date_of_birth = None
    student.parent_phone = None
    student.parent_email = None
    student.address = None


async def archive_student(
    db: AsyncSession,
    student_id: UUID,
    payload: StudentArchiveRequest,
    archived_by: Optional[UUID] = None,
) -> StudentResponse:
    """
    Hide a student from active lists. Fee records, payments and ledger entries are kept;
    the current enrollment is closed as ARCHIVED.
    """
    student = await get_student_or_404(db, student_id)
    if student.status == StudentStatus.ARCHIVED.value:
        raise ServiceError("Student is already archived", status.HTTP_400_BAD_REQUEST)

    current = await enrollment_service.get_current_enrollment(db, student_id)
    try:
        if current is not None:
            await enrollment_service.close_enrollment(
                db,
                student_id,
                max(date.today(), current.valid_from),
                EnrollmentStatus.ARCHIVED.value,
                change_reason=payload.reason,
            )
        student.status = StudentStatus.ARCHIVED.value
        student.status_reason = payload.reason
        student.archive_reason = payload.reason
        student.archived_at = datetime.utcnow()
        if payload.anonymize:
            _anonymize(student)
        log_security_event(
            db,
            "student_archived",
            user_id=archived_by,
            resource_type="student",
            resource_id=student.id,
            details={"reason": payload.reason, "anonymized": payload.anonymize},
        )
        await db.commit()
    except ServiceError:
        await db.rollback()
        raise

    await db.refresh(student)
    # fee-records lists of every year can hold the student, enrolled or not
    year_cache.invalidate("fee-records")
    if current is not None:
        year_cache.invalidate_year(current.academic_year_id, ("student-enrollments", "fee-stats"))
        year_cache.invalidate_student_year(student_id, current.academic_year_id)
    logger.info("archived student %s (%s, anonymized=%s)", student.id, payload.reason, payload.anonymize)
    return _to_response(student, await _class_name(db, student.class_id))


async def set_student_status(
    db: AsyncSession,
    student_id: UUID,
    payload: StudentStatusUpdate,
) -> StudentResponse:
    student = await get_student_or_404(db, student_id)
    if student.status == StudentStatus.ARCHIVED.value:
        raise ServiceError("Archived students cannot change status", status.HTTP_400_BAD_REQUEST)
    student.status = payload.status
    student.status_reason = payload.reason
    await db.commit()
    await db.refresh(student)
    year_cache.invalidate("fee-records")
    logger.info("student %s status -> %s", student.id, student.status)
    return _to_response(student, await _class_name(db, student.class_id))


async def delete_student(
    db: AsyncSession,
    student_id: UUID,
    deleted_by: Optional[UUID] = None,
) -> None:
    """
    Hard delete in one transaction. Refused once the student has ledger entries:
    financial history is immutable, archive the student instead.
    """
    student = await get_student_or_404(db, student_id)
    if await student_has_ledger_entries(db, student_id):
        logger.warning("refused to delete student %s with financial history", student_id)
        raise ServiceError(
            "Student has financial history and cannot be deleted; archive the student instead",
            status.HTTP_409_CONFLICT,
        )

    year_ids = set(
        (
            await db.execute(
                select(StudentEnrollment.academic_year_id).where(StudentEnrollment.student_id == student_id)
            )
        ).scalars().all()
    )
    record_ids = select(StudentFeeRecord.id).where(StudentFeeRecord.student_id == student_id)
    try:
        await db.execute(delete(FeeChangeHistory).where(FeeChangeHistory.fee_record_id.in_(record_ids)))
        await db.execute(delete(DiscountHistory).where(DiscountHistory.student_id == student_id))
        await db.execute(delete(StudentFeeRecord).where(StudentFeeRecord.student_id == student_id))
        await db.execute(delete(StudentPromotion).where(StudentPromotion.student_id == student_id))
        await db.execute(delete(StudentEnrollment).where(StudentEnrollment.student_id == student_id))
        await db.delete(student)
        log_security_event(
            db,
            "student_deleted",
            user_id=deleted_by,
            resource_type="student",
            resource_id=student_id,
            details={"admission_number": student.admission_number},
        )
        await db.commit()
    except SQLAlchemyError as e:
        await db.rollback()
        logger.exception("deleting student %s failed; rolled back", student_id)
        raise ServiceError("Failed to delete student", status.HTTP_500_INTERNAL_SERVER_ERROR) from e

    for year_id in year_ids:
        year_cache.invalidate_year(year_id, ("student-enrollments", "fee-records", "fee-stats"))
    logger.info("deleted student %s", student_id)


# --- Enrollment history ---
async def _enrollment_responses(db: AsyncSession, rows: List[StudentEnrollment]) -> List[EnrollmentResponse]:
    class_ids = {r.class_id for r in rows}
    names = {}
    if class_ids:
        result = await db.execute(select(SchoolClass.id, SchoolClass.name).where(SchoolClass.id.in_(class_ids)))
        names = dict(result.all())
    return [_enrollment_to_response(r, names.get(r.class_id)) for r in rows]


async def get_enrollment_history(db: AsyncSession, student_id: UUID) -> List[EnrollmentResponse]:
    await get_student_or_404(db, student_id)
    return await _enrollment_responses(db, await enrollment_service.enrollment_history(db, student_id))


async def list_year_enrollments(
    db: AsyncSession,
    academic_year_id: UUID,
    class_id: Optional[UUID] = None,
) -> List[EnrollmentResponse]:
    """Current enrollments of a year (class roster), cached under student-enrollments."""
    key = year_cache.make_key("student-enrollments", academic_year_id, class_id)

    async def _load() -> List[EnrollmentResponse]:
        rows = await enrollment_service.students_enrolled_in(db, academic_year_id, class_id)
        return await _enrollment_responses(db, rows)

    return await year_cache.get_or_load(key, _load)


async def get_enrollment_as_of(db: AsyncSession, student_id: UUID, as_of: date) -> EnrollmentResponse:
    await get_student_or_404(db, student_id)
    row = await enrollment_service.enrollment_as_of(db, student_id, as_of)
    if row is None:
        raise ServiceError(f"Student was not enrolled on {as_of.isoformat()}", status.HTTP_404_NOT_FOUND)
    return (await _enrollment_responses(db, [row]))[0]


async def change_class(
    db: AsyncSession,
    student_id: UUID,
    payload: ClassChangeRequest,
    changed_by: Optional[UUID] = None,
) -> EnrollmentResponse:
    """Transfer a student to another class from effective_date; fee types of the new class are added."""
    student = await get_student_or_404(db, student_id)
    if student.status != StudentStatus.ACTIVE.value:
        raise ServiceError("Only active students can change class", status.HTTP_400_BAD_REQUEST)
    current = await enrollment_service.get_current_enrollment(db, student_id)
    if current is None:
        raise ServiceError("Student has no current enrollment", status.HTTP_404_NOT_FOUND)
    year_id = payload.academic_year_id or current.academic_year_id
    ay = await get_writable_academic_year(db, year_id)
    cl = await get_class_or_404(db, payload.class_id)
    previous_year_id = current.academic_year_id

    try:
        row = await enrollment_service.change_enrollment(
            db,
            student_id,
            ay.id,
            cl.id,
            payload.effective_date,
            closing_status=EnrollmentStatus.TRANSFERRED.value,
            change_reason=payload.reason,
        )
        student.class_id = cl.id
        await assign_fee_records_for_student(db, student_id, ay.id, cl.id, changed_by)
        await db.commit()
    except ServiceError:
        await db.rollback()
        raise

    for year_id in {previous_year_id, ay.id}:
        year_cache.invalidate_year(year_id, ("student-enrollments", "fee-records", "fee-stats"))
        year_cache.invalidate_student_year(student_id, year_id)
    logger.info("student %s moved to class %s from %s", student_id, cl.name, payload.effective_date)
    return _enrollment_to_response(row, cl.name)
