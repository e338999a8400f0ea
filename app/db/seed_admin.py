"""
Seed script to create the first admin user.

Run once (after init_db) with env set:
  ADMIN_EMAIL=admin@school.example
  ADMIN_PASSWORD=YourSecurePassword

Creates the user with role "admin" if the email is unknown, otherwise resets its
role and password.
"""
import asyncio
import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.auth.models import User
from app.auth.roles import ADMIN
from app.auth.security import hash_password
from app.core.config import settings
from app.core.logging_config import configure_logging
from app.db.session import AsyncSessionLocal

logger = logging.getLogger(__name__)

DEFAULT_ADMIN_FULL_NAME = "School Admin"


async def seed_admin(db: AsyncSession, email: str, password: str, full_name: str = DEFAULT_ADMIN_FULL_NAME) -> User:
    result = await db.execute(select(User).where(User.email == email))
    user = result.scalar_one_or_none()
    if not user:
        user = User(
            full_name=full_name,
            email=email,
            mobile=None,
            password_hash=hash_password(password),
            role=ADMIN,
            status="ACTIVE",
        )
        db.add(user)
        logger.info("created admin user %s", email)
    else:
        user.role = ADMIN
        user.status = "ACTIVE"
        user.password_hash = hash_password(password)
        logger.info("updated existing user %s to admin", email)
    await db.commit()
    return user


async def main() -> None:
    configure_logging()
    if not settings.admin_email or not settings.admin_password:
        logger.error("ADMIN_EMAIL and ADMIN_PASSWORD must be set")
        raise SystemExit(1)
    async with AsyncSessionLocal() as db:
        try:
            await seed_admin(db, settings.admin_email, settings.admin_password)
        except Exception:
            await db.rollback()
            logger.exception("admin seed failed")
            raise


if __name__ == "__main__":
    asyncio.run(main())
