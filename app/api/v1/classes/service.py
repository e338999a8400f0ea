from typing import List, Optional
from uuid import UUID

from fastapi import status
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import ServiceError
from app.core.models import SchoolClass

from .schemas import ClassBulkItem, ClassCreate, ClassResponse


def _class_to_response(c: SchoolClass) -> ClassResponse:
    return ClassResponse(
        id=c.id,
        name=c.name,
        section=c.section,
        display_order=c.display_order,
        is_active=c.is_active,
        created_at=c.created_at,
        updated_at=c.updated_at,
    )


async def get_class_or_404(db: AsyncSession, class_id: UUID) -> SchoolClass:
    obj = await db.get(SchoolClass, class_id)
    if not obj or not obj.is_active:
        raise ServiceError("Class not found", status.HTTP_404_NOT_FOUND)
    return obj


async def _class_exists(db: AsyncSession, name: str, section: Optional[str]) -> bool:
    # NULL sections never collide in the unique constraint
    stmt = select(SchoolClass.id).where(SchoolClass.name == name)
    stmt = stmt.where(SchoolClass.section.is_(None) if section is None else SchoolClass.section == section)
    return (await db.execute(stmt)).first() is not None


async def next_class(db: AsyncSession, current: SchoolClass) -> Optional[SchoolClass]:
    """Class with the smallest display_order above current's; None for the last class or unordered classes."""
    if current.display_order is None:
        return None
    result = await db.execute(
        select(SchoolClass)
        .where(
            SchoolClass.is_active.is_(True),
            SchoolClass.display_order > current.display_order,
        )
        .order_by(SchoolClass.display_order, SchoolClass.name)
        .limit(1)
    )
    return result.scalars().first()


async def create_class(db: AsyncSession, payload: ClassCreate) -> ClassResponse:
    name = payload.name.strip()
    section = payload.section.strip() if payload.section else None
    if await _class_exists(db, name, section):
        raise ServiceError("Class name already exists", status.HTTP_409_CONFLICT)
    try:
        obj = SchoolClass(
            name=name,
            section=section,
            display_order=payload.display_order,
            is_active=True,
        )
        db.add(obj)
        await db.commit()
        await db.refresh(obj)
        return _class_to_response(obj)
    except IntegrityError:
        await db.rollback()
        raise ServiceError("Class name already exists", status.HTTP_409_CONFLICT)


async def create_classes_bulk(db: AsyncSession, payload: List[ClassBulkItem]) -> List[ClassResponse]:
    """Create multiple classes in one request. All-or-nothing: rollback on first duplicate name."""
    if not payload:
        return []
    names = [item.name.strip() for item in payload]
    if len(set(names)) != len(names) or any([await _class_exists(db, n, None) for n in names]):
        raise ServiceError("One or more class names already exist", status.HTTP_409_CONFLICT)
    try:
        created = []
        for item in payload:
            obj = SchoolClass(name=item.name.strip(), display_order=item.order, is_active=True)
            db.add(obj)
            await db.flush()
            created.append(obj)
        await db.commit()
        for obj in created:
            await db.refresh(obj)
        return [_class_to_response(c) for c in created]
    except IntegrityError:
        await db.rollback()
        raise ServiceError("One or more class names already exist", status.HTTP_409_CONFLICT)


async def list_classes(db: AsyncSession, active_only: bool = True) -> List[ClassResponse]:
    stmt = select(SchoolClass)
    if active_only:
        stmt = stmt.where(SchoolClass.is_active.is_(True))
    stmt = stmt.order_by(SchoolClass.display_order.nullslast(), SchoolClass.name, SchoolClass.section.nullsfirst())
    result = await db.execute(stmt)
    return [_class_to_response(c) for c in result.scalars().all()]
