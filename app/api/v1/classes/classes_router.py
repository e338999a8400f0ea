from typing import List

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.auth.rbac import check_permission
from app.core.exceptions import ServiceError
from app.db.session import get_db

from .schemas import ClassBulkItem, ClassCreate, ClassResponse
from . import service

# Classes are shared across academic years; display_order decides the next class on promotion.
router = APIRouter(prefix="/api/v1/classes", tags=["classes"])


@router.post(
    "",
    response_model=ClassResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(check_permission("classes", "create"))],
)
async def create_class(
    payload: ClassCreate,
    db: AsyncSession = Depends(get_db),
) -> ClassResponse:
    """Unique per (name, section). A class without a section conflicts with another one of the same name."""
    try:
        return await service.create_class(db, payload)
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


@router.post(
    "/bulk",
    response_model=List[ClassResponse],
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(check_permission("classes", "create"))],
)
async def create_classes_bulk(
    payload: List[ClassBulkItem],
    db: AsyncSession = Depends(get_db),
) -> List[ClassResponse]:
    """Create a ladder of classes at once, e.g. [{"name": "Grade 1", "order": 1}, {"name": "Grade 2", "order": 2}]."""
    try:
        return await service.create_classes_bulk(db, payload)
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


@router.get(
    "",
    response_model=List[ClassResponse],
    dependencies=[Depends(check_permission("classes", "read"))],
)
async def list_classes(
    active_only: bool = Query(True, description="Return only is_active=true by default"),
    db: AsyncSession = Depends(get_db),
) -> List[ClassResponse]:
    """Ordered by display_order, then name and section, the order promotions walk."""
    return await service.list_classes(db, active_only=active_only)
