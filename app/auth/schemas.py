from datetime import datetime
from typing import Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, EmailStr, Field

from app.core.enums import UserRole


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class UserCreate(BaseModel):
    full_name: str = Field(..., min_length=1, max_length=255)
    email: EmailStr
    mobile: Optional[str] = None
    password: str = Field(..., min_length=8)
    role: UserRole


class UserInfo(BaseModel):
    id: UUID
    name: str
    email: EmailStr
    role: str


class AcademicYearContext(BaseModel):
    """Current academic year embedded in the session/token."""

    id: Optional[UUID] = None
    name: Optional[str] = None
    status: Optional[str] = None  # ACTIVE | CLOSED


class LoginResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user: UserInfo
    academic_year: Optional[AcademicYearContext] = None  # current year at login; None if admin and none set
    issued_at: datetime


class MeResponse(BaseModel):
    user: UserInfo
    permissions: Dict[str, Dict[str, bool]]
    capabilities: List[str]


class CurrentUser(BaseModel):
    """Lightweight representation of the authenticated user for RBAC checks.
    academic_year_id and academic_year_status come from the current academic year at login.
    """

    id: UUID
    role: str
    permissions: Dict[str, Dict[str, bool]]
    academic_year_id: Optional[UUID] = None
    academic_year_status: Optional[str] = None  # ACTIVE | CLOSED; CLOSED => read-only
