from datetime import date, datetime
from typing import Literal, Optional
from uuid import UUID

from pydantic import BaseModel, EmailStr, Field


class StudentCreate(BaseModel):
    """Admit a student: creates the student, opens the enrollment and assigns the class fees of the year."""

    admission_number: str = Field(..., min_length=1, max_length=50)
    first_name: str = Field(..., min_length=1, max_length=100)
    last_name: str = Field(..., min_length=1, max_length=100)
    date_of_birth: Optional[date] = None
    gender: Optional[str] = Field(None, max_length=20)
    parent_phone: Optional[str] = Field(None, max_length=20)
    parent_email: Optional[EmailStr] = None
    address: Optional[str] = None
    academic_year_id: UUID
    class_id: UUID
    enrollment_date: Optional[date] = Field(None, description="Defaults to the academic year start date")


class StudentResponse(BaseModel):
    id: UUID
    admission_number: str
    first_name: str
    last_name: str
    full_name: str
    date_of_birth: Optional[date] = None
    gender: Optional[str] = None
    class_id: Optional[UUID] = None
    class_name: Optional[str] = None
    parent_phone: Optional[str] = None
    parent_email: Optional[str] = None
    address: Optional[str] = None
    status: str
    status_reason: Optional[str] = None
    archived_at: Optional[datetime] = None
    archive_reason: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class StudentArchiveRequest(BaseModel):
    reason: str = Field("user_request", min_length=1, max_length=100)
    anonymize: bool = Field(True, description="Replace the name and clear contact details")


class StudentStatusUpdate(BaseModel):
    status: Literal["ACTIVE", "INACTIVE"]
    reason: Optional[str] = None


class ClassChangeRequest(BaseModel):
    class_id: UUID
    academic_year_id: Optional[UUID] = Field(None, description="Defaults to the year of the current enrollment")
    effective_date: date
    reason: Optional[str] = None


class EnrollmentResponse(BaseModel):
    id: UUID
    student_id: UUID
    academic_year_id: UUID
    class_id: UUID
    class_name: Optional[str] = None
    status: str
    valid_from: date
    valid_to: Optional[date] = None
    is_current: bool
    change_reason: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True
