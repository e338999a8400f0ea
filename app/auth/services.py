import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import status
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.v1.security.service import log_security_event
from app.auth.models import User
from app.auth.roles import ADMIN, capabilities, role_permissions
from app.auth.schemas import (
    AcademicYearContext,
    LoginRequest,
    LoginResponse,
    MeResponse,
    UserCreate,
    UserInfo,
)
from app.auth.security import build_token_payload, create_access_token, hash_password, verify_password
from app.core.exceptions import ServiceError
from app.core.models import AcademicYear

logger = logging.getLogger(__name__)


def _user_info(user: User) -> UserInfo:
    return UserInfo(id=user.id, name=user.full_name, email=user.email, role=user.role)


async def login_user(
    db: AsyncSession, payload: LoginRequest, ip_address: Optional[str] = None
) -> LoginResponse:
    # 1. Find user by email (case-insensitive)
    user_stmt = select(User).where(func.lower(User.email) == func.lower(payload.email))
    user_result = await db.execute(user_stmt)
    user: Optional[User] = user_result.scalar_one_or_none()

    # 2. Verify password hash
    if not user or not verify_password(payload.password, user.password_hash):
        log_security_event(
            db,
            "login_failed",
            user_id=user.id if user else None,
            details={"email": payload.email},
            ip_address=ip_address,
        )
        await db.commit()
        logger.warning("failed login for %s", payload.email)
        raise ServiceError("Invalid credentials", status.HTTP_401_UNAUTHORIZED)

    # 3. Check user status
    if user.status != "ACTIVE":
        raise ServiceError("User is inactive", status.HTTP_403_FORBIDDEN)

    # 4. Fetch current academic year
    ay_result = await db.execute(select(AcademicYear).where(AcademicYear.is_current.is_(True)))
    current_ay: Optional[AcademicYear] = ay_result.scalar_one_or_none()

    if current_ay is None and user.role != ADMIN:
        raise ServiceError(
            "No current academic year found. Please contact administrator.",
            status.HTTP_403_FORBIDDEN,
        )
    # Admin can log in without a year; the token then has no academic_year_id

    issued_at = datetime.now(timezone.utc)
    access_token = create_access_token(
        subject=build_token_payload(
            user.id,
            user.role,
            academic_year_id=current_ay.id if current_ay else None,
            academic_year_status=current_ay.status if current_ay else None,
        )
    )

    log_security_event(db, "login", user_id=user.id, ip_address=ip_address)
    try:
        await db.commit()
    except Exception as e:
        await db.rollback()
        raise ServiceError(
            "Failed to persist authentication state",
            status.HTTP_500_INTERNAL_SERVER_ERROR,
        ) from e

    academic_year_ctx: Optional[AcademicYearContext] = None
    if current_ay:
        academic_year_ctx = AcademicYearContext(id=current_ay.id, name=current_ay.name, status=current_ay.status)

    return LoginResponse(
        access_token=access_token,
        user=_user_info(user),
        academic_year=academic_year_ctx,
        issued_at=issued_at,
    )


async def create_user(db: AsyncSession, payload: UserCreate) -> UserInfo:
    existing = await db.execute(select(User).where(func.lower(User.email) == payload.email.lower()))
    if existing.scalar_one_or_none():
        raise ServiceError("Email is already in use", status.HTTP_409_CONFLICT)
    user = User(
        full_name=payload.full_name.strip(),
        email=payload.email.lower(),
        mobile=payload.mobile,
        password_hash=hash_password(payload.password),
        role=payload.role.value,
        status="ACTIVE",
    )
    db.add(user)
    try:
        await db.commit()
    except IntegrityError as e:
        await db.rollback()
        raise ServiceError("Email is already in use", status.HTTP_409_CONFLICT) from e
    await db.refresh(user)
    logger.info("created user %s with role %s", user.email, user.role)
    return _user_info(user)


async def get_me(db: AsyncSession, user_id) -> MeResponse:
    user = await db.get(User, user_id)
    if not user:
        raise ServiceError("User not found", status.HTTP_404_NOT_FOUND)
    return MeResponse(
        user=_user_info(user),
        permissions=role_permissions(user.role),
        capabilities=sorted(capabilities(user.role)),
    )
