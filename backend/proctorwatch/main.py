import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, APIRouter
from fastapi.middleware.cors import CORSMiddleware

from proctorwatch.config import settings
from proctorwatch.dependencies import get_services
from proctorwatch.api.v1.endpoints import (
    flags,
    monitoring,
    overrides,
    sessions,
)

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"{settings.APP_NAME} {settings.APP_VERSION} starting ({settings.ENVIRONMENT})")
    yield
    # Stop every enforcement loop, risk scanner and deadline timer
    provider = app.dependency_overrides.get(get_services)
    if provider is not None:
        await provider().shutdown()
    elif get_services.cache_info().currsize:
        await get_services().shutdown()
    logger.info(f"{settings.APP_NAME} stopped")


def get_application() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        debug=settings.DEBUG,
        lifespan=lifespan,
    )

    # Configure CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Register health endpoint
    @app.get("/health", tags=["health"])
    def health_check() -> dict:
        return {"status": "ok"}

    # API v1 routers
    api_router = APIRouter(prefix=settings.API_V1_PREFIX)

    api_router.include_router(overrides.router, prefix="/overrides", tags=["overrides"])
    api_router.include_router(sessions.router, prefix="/sessions", tags=["sessions"])
    api_router.include_router(flags.router, prefix="/flags", tags=["flags"])
    api_router.include_router(monitoring.router, prefix="/monitoring", tags=["monitoring"])

    app.include_router(api_router)

    return app


app = get_application()
