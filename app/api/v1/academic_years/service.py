import logging
from datetime import date, datetime
from typing import List, Optional
from uuid import UUID

from fastapi import status
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.cache import year_cache
from app.core.enums import AcademicYearStatus
from app.core.exceptions import ServiceError
from app.core.models import AcademicYear

from .schemas import AcademicYearCreate, AcademicYearResponse

logger = logging.getLogger(__name__)


def _to_response(ay: AcademicYear) -> AcademicYearResponse:
    return AcademicYearResponse(
        id=ay.id,
        name=ay.name,
        start_date=ay.start_date,
        end_date=ay.end_date,
        is_current=ay.is_current,
        status=ay.status,
        created_at=ay.created_at,
        updated_at=ay.updated_at,
        closed_at=ay.closed_at,
        closed_by=ay.closed_by,
    )


def _validate_dates(start_date: date, end_date: date) -> None:
    if end_date <= start_date:
        raise ServiceError("end_date must be after start_date", status.HTTP_400_BAD_REQUEST)


async def get_academic_year_or_404(db: AsyncSession, academic_year_id: UUID) -> AcademicYear:
    ay = await db.get(AcademicYear, academic_year_id)
    if not ay:
        raise ServiceError("Academic year not found", status.HTTP_404_NOT_FOUND)
    return ay


async def get_writable_academic_year(db: AsyncSession, academic_year_id: UUID) -> AcademicYear:
    """Load a year that may still be modified. CLOSED years are read-only for every fee mutation."""
    ay = await get_academic_year_or_404(db, academic_year_id)
    if ay.status == AcademicYearStatus.CLOSED.value:
        raise ServiceError(
            f"Academic year '{ay.name}' is closed and cannot be modified",
            status.HTTP_403_FORBIDDEN,
        )
    return ay


async def create_academic_year(
    db: AsyncSession,
    payload: AcademicYearCreate,
) -> AcademicYearResponse:
    """Create academic year. If set_as_current=true, unset current on all other years (same transaction)."""
    _validate_dates(payload.start_date, payload.end_date)
    name = payload.name.strip()
    existing = await db.execute(select(AcademicYear).where(AcademicYear.name == name))
    if existing.scalar_one_or_none():
        raise ServiceError(
            f"Academic year with name '{payload.name}' already exists",
            status.HTTP_409_CONFLICT,
        )
    if payload.set_as_current:
        await db.execute(update(AcademicYear).values(is_current=False))
    ay = AcademicYear(
        name=name,
        start_date=payload.start_date,
        end_date=payload.end_date,
        is_current=payload.set_as_current,
        status=AcademicYearStatus.ACTIVE.value,
    )
    db.add(ay)
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise ServiceError(
            "Another academic year is already marked as current or name conflict",
            status.HTTP_409_CONFLICT,
        )
    await db.refresh(ay)
    logger.info("created academic year %s (current=%s)", ay.name, ay.is_current)
    return _to_response(ay)


async def list_academic_years(
    db: AsyncSession,
    status_filter: Optional[str] = None,
) -> List[AcademicYearResponse]:
    """List academic years, newest first, optionally filtered by status."""
    stmt = select(AcademicYear)
    if status_filter:
        stmt = stmt.where(AcademicYear.status == status_filter)
    stmt = stmt.order_by(AcademicYear.start_date.desc())
    result = await db.execute(stmt)
    return [_to_response(ay) for ay in result.scalars().all()]


async def get_academic_year(db: AsyncSession, academic_year_id: UUID) -> Optional[AcademicYearResponse]:
    ay = await db.get(AcademicYear, academic_year_id)
    return _to_response(ay) if ay else None


async def get_current_academic_year(db: AsyncSession) -> Optional[AcademicYearResponse]:
    """Get the current academic year (is_current=true). Default for data operations."""
    result = await db.execute(select(AcademicYear).where(AcademicYear.is_current.is_(True)))
    ay = result.scalar_one_or_none()
    return _to_response(ay) if ay else None


async def set_academic_year_current(db: AsyncSession, academic_year_id: UUID) -> AcademicYearResponse:
    """Mark one year as current; every other year becomes non-current."""
    ay = await get_academic_year_or_404(db, academic_year_id)
    if ay.status == AcademicYearStatus.CLOSED.value:
        raise ServiceError("Cannot set a CLOSED academic year as current", status.HTTP_400_BAD_REQUEST)
    await db.execute(update(AcademicYear).where(AcademicYear.id != academic_year_id).values(is_current=False))
    ay.is_current = True
    await db.commit()
    await db.refresh(ay)
    logger.info("academic year %s is now current", ay.name)
    return _to_response(ay)


async def close_academic_year(
    db: AsyncSession,
    academic_year_id: UUID,
    closed_by: Optional[UUID] = None,
) -> AcademicYearResponse:
    """Close academic year. It becomes read-only; cached views of the year are dropped."""
    ay = await get_academic_year_or_404(db, academic_year_id)
    if ay.status == AcademicYearStatus.CLOSED.value:
        raise ServiceError("Academic year is already closed", status.HTTP_400_BAD_REQUEST)
    ay.status = AcademicYearStatus.CLOSED.value
    ay.closed_at = datetime.utcnow()
    ay.closed_by = closed_by
    await db.commit()
    await db.refresh(ay)
    year_cache.invalidate_year(ay.id)
    logger.info("closed academic year %s", ay.name)
    return _to_response(ay)
