"""
Create all tables for the configured DATABASE_URL.

Run once before first start:
  python -m app.db.init_db
"""
import asyncio
import logging

from app.auth import models as auth_models  # noqa: F401  (register users table)
from app.core import models  # noqa: F401  (register domain tables)
from app.core.logging_config import configure_logging
from app.db.session import Base, engine

logger = logging.getLogger(__name__)


async def init_db() -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("created %d tables", len(Base.metadata.tables))


async def main() -> None:
    configure_logging()
    try:
        await init_db()
    finally:
        await engine.dispose()


if __name__ == "__main__":
    asyncio.run(main())
