from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.auth.dependencies import get_current_user, require_writable_academic_year
from app.auth.rbac import check_permission
from app.auth.schemas import CurrentUser
from app.core.exceptions import MissingFeePlansError, ServiceError
from app.db.session import get_db

from .schemas import PromotionExecuteRequest, PromotionExecuteResponse, PromotionResponse
from . import service

router = APIRouter(prefix="/api/v1/promotions", tags=["promotions"])


@router.post(
    "/execute",
    response_model=PromotionExecuteResponse,
    dependencies=[
        Depends(check_permission("promotions", "create")),
        Depends(require_writable_academic_year),
    ],
)
async def execute_promotions(
    payload: PromotionExecuteRequest,
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
) -> PromotionExecuteResponse:
    """
    Promote, repeat or drop out a batch of students into the target academic year.

    Fails with 409 MISSING_FEE_PLANS (listing year and class) when a target class has no fee structures.
    Re-sending the same idempotency_key returns the original result with replayed=true.
    """
    try:
        return await service.execute_promotions(db, payload, promoted_by=current_user.id)
    except MissingFeePlansError as e:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"error": e.message, "missing": e.missing},
        )
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


@router.get(
    "/history",
    response_model=List[PromotionResponse],
    dependencies=[Depends(check_permission("promotions", "read"))],
)
async def list_promotion_history(
    academic_year_id: Optional[UUID] = Query(None),
    student_id: Optional[UUID] = Query(None),
    db: AsyncSession = Depends(get_db),
) -> List[PromotionResponse]:
    return await service.list_promotion_history(db, academic_year_id=academic_year_id, student_id=student_id)
