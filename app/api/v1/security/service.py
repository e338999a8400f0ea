"""
Security audit events (log_security_event). Call on logins, payments and discounts.
"""

import logging
from typing import Any, Dict, List, Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.models import SecurityEvent

from .schemas import SecurityEventCreate, SecurityEventResponse

logger = logging.getLogger(__name__)


def log_security_event(
    db: AsyncSession,
    action: str,
    *,
    user_id: Optional[UUID] = None,
    resource_type: Optional[str] = None,
    resource_id: Optional[Any] = None,
    details: Optional[Dict[str, Any]] = None,
    ip_address: Optional[str] = None,
) -> SecurityEvent:
    """Append one security event. Caller must commit."""
    event = SecurityEvent(
        user_id=user_id,
        action=action,
        resource_type=resource_type,
        resource_id=str(resource_id) if resource_id is not None else None,
        details=details,
        ip_address=ip_address,
    )
    db.add(event)
    logger.info("security event %s user=%s resource=%s:%s", action, user_id, resource_type, resource_id)
    return event


def _to_response(event: SecurityEvent) -> SecurityEventResponse:
    return SecurityEventResponse(
        id=event.id,
        user_id=event.user_id,
        action=event.action,
        resource_type=event.resource_type,
        resource_id=event.resource_id,
        details=event.details,
        ip_address=event.ip_address,
        created_at=event.created_at,
    )


async def record_event(
    db: AsyncSession,
    user_id: UUID,
    payload: SecurityEventCreate,
    ip_address: Optional[str] = None,
) -> SecurityEventResponse:
    event = log_security_event(
        db,
        payload.action.strip(),
        user_id=user_id,
        resource_type=payload.resource_type,
        resource_id=payload.resource_id,
        details=payload.details,
        ip_address=ip_address,
    )
    await db.commit()
    await db.refresh(event)
    return _to_response(event)


async def list_events(
    db: AsyncSession,
    action: Optional[str] = None,
    user_id: Optional[UUID] = None,
    limit: int = 100,
) -> List[SecurityEventResponse]:
    stmt = select(SecurityEvent)
    if action:
        stmt = stmt.where(SecurityEvent.action == action)
    if user_id is not None:
        stmt = stmt.where(SecurityEvent.user_id == user_id)
    stmt = stmt.order_by(SecurityEvent.created_at.desc()).limit(limit)
    result = await db.execute(stmt)
    return [_to_response(e) for e in result.scalars().all()]
