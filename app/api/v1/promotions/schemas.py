from datetime import date, datetime
from decimal import Decimal
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, Field

from app.core.enums import PromotionType


class PromotionItem(BaseModel):
    student_id: UUID
    promotion_type: PromotionType
    from_class_id: Optional[UUID] = Field(None, description="Defaults to the class of the current enrollment")
    to_class_id: Optional[UUID] = Field(
        None,
        description="Promoted only. Defaults to the next class by display order, or the same class if there is none.",
    )
    reason: Optional[str] = None
    notes: Optional[str] = None


class PromotionExecuteRequest(BaseModel):
    target_academic_year_id: UUID
    items: List[PromotionItem] = Field(..., min_length=1)
    promotion_date: Optional[date] = Field(None, description="Defaults to the target year start date")
    idempotency_key: Optional[str] = Field(None, max_length=100)


class PromotionResponse(BaseModel):
    id: UUID
    student_id: UUID
    from_academic_year_id: UUID
    to_academic_year_id: UUID
    from_class_id: UUID
    to_class_id: Optional[UUID] = None
    promotion_type: str
    promotion_date: date
    carried_forward_amount: Decimal
    reason: Optional[str] = None
    notes: Optional[str] = None
    idempotency_key: Optional[str] = None
    promoted_by: Optional[UUID] = None
    created_at: datetime

    class Config:
        from_attributes = True


class PromotionExecuteResponse(BaseModel):
    target_academic_year_id: UUID
    idempotency_key: Optional[str] = None
    replayed: bool = Field(False, description="True when the idempotency key was already processed")
    promoted_count: int
    repeated_count: int
    dropout_count: int
    total_carried_forward: Decimal
    promotions: List[PromotionResponse]
