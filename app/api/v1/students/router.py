from datetime import date
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.auth.dependencies import get_current_user, require_writable_academic_year
from app.auth.rbac import check_permission
from app.auth.schemas import CurrentUser
from app.core.exceptions import ServiceError
from app.db.session import get_db

from .schemas import (
    ClassChangeRequest,
    EnrollmentResponse,
    StudentArchiveRequest,
    StudentCreate,
    StudentResponse,
    StudentStatusUpdate,
)
from . import service

router = APIRouter(prefix="/api/v1/students", tags=["students"])


@router.post(
    "",
    response_model=StudentResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[
        Depends(check_permission("students", "create")),
        Depends(require_writable_academic_year),
    ],
)
async def create_student(
    payload: StudentCreate,
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
) -> StudentResponse:
    """Admit a student. Opens the enrollment and assigns the class fees of the academic year."""
    try:
        return await service.create_student(db, payload, created_by=current_user.id)
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


@router.get(
    "",
    response_model=List[StudentResponse],
    dependencies=[Depends(check_permission("students", "read"))],
)
async def list_students(
    status_filter: Optional[str] = Query(None, alias="status", description="ACTIVE (default), INACTIVE, ARCHIVED"),
    class_id: Optional[UUID] = Query(None),
    db: AsyncSession = Depends(get_db),
) -> List[StudentResponse]:
    return await service.list_students(db, status_filter=status_filter, class_id=class_id)


@router.get(
    "/enrollments",
    response_model=List[EnrollmentResponse],
    dependencies=[Depends(check_permission("students", "read"))],
)
async def list_year_enrollments(
    academic_year_id: UUID,
    class_id: Optional[UUID] = Query(None),
    db: AsyncSession = Depends(get_db),
) -> List[EnrollmentResponse]:
    """Current enrollments of an academic year, optionally one class."""
    return await service.list_year_enrollments(db, academic_year_id, class_id)


@router.get(
    "/{student_id}",
    response_model=StudentResponse,
    dependencies=[Depends(check_permission("students", "read"))],
)
async def get_student(
    student_id: UUID,
    db: AsyncSession = Depends(get_db),
) -> StudentResponse:
    try:
        return await service.get_student(db, student_id)
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


@router.post(
    "/{student_id}/archive",
    response_model=StudentResponse,
    dependencies=[Depends(check_permission("students", "update"))],
)
async def archive_student(
    student_id: UUID,
    payload: StudentArchiveRequest,
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
) -> StudentResponse:
    """Archive (soft delete). All fee and payment data is preserved."""
    try:
        return await service.archive_student(db, student_id, payload, archived_by=current_user.id)
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


@router.post(
    "/{student_id}/status",
    response_model=StudentResponse,
    dependencies=[Depends(check_permission("students", "update"))],
)
async def set_student_status(
    student_id: UUID,
    payload: StudentStatusUpdate,
    db: AsyncSession = Depends(get_db),
) -> StudentResponse:
    try:
        return await service.set_student_status(db, student_id, payload)
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


@router.delete(
    "/{student_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    dependencies=[Depends(check_permission("students", "delete"))],
)
async def delete_student(
    student_id: UUID,
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
) -> None:
    """Permanently delete a student without financial history. Use archive otherwise."""
    try:
        await service.delete_student(db, student_id, deleted_by=current_user.id)
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


@router.get(
    "/{student_id}/enrollments",
    response_model=List[EnrollmentResponse],
    dependencies=[Depends(check_permission("students", "read"))],
)
async def get_enrollment_history(
    student_id: UUID,
    db: AsyncSession = Depends(get_db),
) -> List[EnrollmentResponse]:
    """Full enrollment history, oldest first."""
    try:
        return await service.get_enrollment_history(db, student_id)
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


@router.get(
    "/{student_id}/enrollments/as-of",
    response_model=EnrollmentResponse,
    dependencies=[Depends(check_permission("students", "read"))],
)
async def get_enrollment_as_of(
    student_id: UUID,
    on: date = Query(..., description="Date to look up (YYYY-MM-DD)"),
    db: AsyncSession = Depends(get_db),
) -> EnrollmentResponse:
    try:
        return await service.get_enrollment_as_of(db, student_id, on)
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


@router.post(
    "/{student_id}/class-change",
    response_model=EnrollmentResponse,
    dependencies=[
        Depends(check_permission("students", "update")),
        Depends(require_writable_academic_year),
    ],
)
async def change_class(
    student_id: UUID,
    payload: ClassChangeRequest,
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
) -> EnrollmentResponse:
    """Move a student to another class from effective_date. The previous enrollment is closed, not overwritten."""
    try:
        return await service.change_class(db, student_id, payload, changed_by=current_user.id)
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
