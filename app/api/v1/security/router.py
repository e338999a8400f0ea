from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.auth.dependencies import get_current_user
from app.auth.rbac import require_admin
from app.auth.schemas import CurrentUser
from app.db.session import get_db

from .schemas import SecurityEventCreate, SecurityEventResponse
from . import service

router = APIRouter(prefix="/api/v1/security", tags=["security"])


@router.post(
    "/events",
    response_model=SecurityEventResponse,
    status_code=status.HTTP_201_CREATED,
)
async def log_security_event(
    payload: SecurityEventCreate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
) -> SecurityEventResponse:
    """Record a client-side security event (login, logout, student access...) for the caller."""
    ip_address = request.client.host if request.client else None
    return await service.record_event(db, current_user.id, payload, ip_address=ip_address)


@router.get(
    "/events",
    response_model=List[SecurityEventResponse],
)
async def list_security_events(
    action: Optional[str] = Query(None),
    user_id: Optional[UUID] = Query(None),
    limit: int = Query(100, ge=1, le=1000),
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(require_admin),
) -> List[SecurityEventResponse]:
    return await service.list_events(db, action=action, user_id=user_id, limit=limit)
