import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.api.v1.academic_years.router import router as academic_years_router
from app.api.v1.auth.router import router as auth_router
from app.api.v1.classes.classes_router import router as classes_router
from app.api.v1.fees.router import router as fees_router
from app.api.v1.promotions.router import router as promotions_router
from app.api.v1.security.router import router as security_router
from app.api.v1.students.router import router as students_router
from app.core.cache import configure_year_cache
from app.core.config import settings
from app.core.logging_config import configure_logging

logger = logging.getLogger(__name__)


def create_app() -> FastAPI:
    configure_logging()
    configure_year_cache(settings.cache_ttl_seconds)

    app = FastAPI(title="School Fee Ledger")

    # CORS: allow frontend to call this API
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Routers
    app.include_router(auth_router)
    app.include_router(academic_years_router)
    app.include_router(classes_router)
    app.include_router(students_router)
    app.include_router(fees_router)
    app.include_router(promotions_router)
    app.include_router(security_router)

    logger.info("application created (cache ttl %ss)", settings.cache_ttl_seconds)
    return app


app = create_app()
