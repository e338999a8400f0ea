from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, Field


class ClassCreate(BaseModel):
    name: str = Field(..., max_length=50)
    section: Optional[str] = Field(None, max_length=20)
    display_order: Optional[int] = Field(None, description="Promotion moves a student to the class with the next display_order")


class ClassBulkItem(BaseModel):
    """Single item for bulk create: name and order (display_order)."""
    name: str = Field(..., max_length=50)
    order: int = Field(..., description="Display order (e.g. 1, 2, 3)")


class ClassResponse(BaseModel):
    id: UUID
    name: str
    section: Optional[str] = None
    display_order: Optional[int] = None
    is_active: bool
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True
