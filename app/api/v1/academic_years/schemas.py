from datetime import date, datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, Field


class AcademicYearCreate(BaseModel):
    """A school year such as 2025-2026. Fee structures, fee records and enrollments all hang off one year."""

    name: str = Field(..., min_length=1, max_length=50, description="e.g. 2025-2026")
    start_date: date = Field(..., description="Academic year start date")
    end_date: date = Field(..., description="Academic year end date (must be after start_date)")
    set_as_current: bool = Field(
        False,
        description="Make this the working year for fee operations. Other years stop being current and a new access_token carrying this year is returned.",
    )


class AcademicYearResponse(BaseModel):
    """status is ACTIVE or CLOSED. A CLOSED year keeps its records readable but refuses every fee mutation."""

    id: UUID
    name: str
    start_date: date
    end_date: date
    is_current: bool
    status: str
    created_at: datetime
    updated_at: datetime
    closed_at: Optional[datetime] = None
    closed_by: Optional[UUID] = None

    class Config:
        from_attributes = True


class CreateAcademicYearResponse(BaseModel):
    """Created year, plus a token scoped to it when it was made current."""

    academic_year: AcademicYearResponse
    access_token: Optional[str] = Field(
        None,
        description="JWT whose academic_year_id and academic_year_status claims point at the new year. Only when set_as_current=true.",
    )
