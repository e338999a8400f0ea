from typing import Optional
from uuid import UUID

from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.auth.models import User
from app.auth.roles import role_permissions
from app.auth.schemas import CurrentUser
from app.core.config import settings
from app.db.session import get_db


oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/v1/auth/login-oauth")


async def get_current_user(
    token: str = Depends(oauth2_scheme),
    db: AsyncSession = Depends(get_db),
) -> CurrentUser:
    """Resolve the authenticated user and their permissions from the access token."""
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret_key,
            algorithms=[settings.jwt_algorithm],
        )
    except JWTError:
        raise credentials_exception

    user_id_str = payload.get("user_id") or payload.get("sub")
    if not user_id_str:
        raise credentials_exception

    try:
        user_id = UUID(user_id_str)
    except ValueError:
        raise credentials_exception

    academic_year_id: Optional[UUID] = None
    ay_id_str = payload.get("academic_year_id")
    if ay_id_str:
        try:
            academic_year_id = UUID(ay_id_str)
        except ValueError:
            pass
    academic_year_status = payload.get("academic_year_status")

    result = await db.execute(select(User).where(User.id == user_id))
    user = result.scalar_one_or_none()
    if not user or user.status != "ACTIVE":
        raise credentials_exception

    # Role comes from the database so a role change takes effect without a new token
    return CurrentUser(
        id=user.id,
        role=user.role,
        permissions=role_permissions(user.role),
        academic_year_id=academic_year_id,
        academic_year_status=academic_year_status,
    )


CLOSED_ACADEMIC_YEAR_MESSAGE = "This academic year is closed and cannot be modified."


async def require_writable_academic_year(
    current_user: CurrentUser = Depends(get_current_user),
) -> CurrentUser:
    """Dependency: block CREATE/UPDATE/DELETE when the session's academic year is CLOSED.
    Services still check the year of the touched rows; this only short-circuits stale sessions.
    """
    if current_user.academic_year_status == "CLOSED":
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=CLOSED_ACADEMIC_YEAR_MESSAGE,
        )
    return current_user
