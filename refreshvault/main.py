"""refreshvault - FastAPI Application Factory."""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from refreshvault.api import api_router
from refreshvault.api.health import router as health_router
from refreshvault.core import settings, setup_logging
from refreshvault.core.logging import get_logger
from refreshvault.middleware import AdminAuthMiddleware

# Import all models to ensure they're registered with Base
from refreshvault.models import RefreshToken, User  # noqa: F401
from refreshvault.services.retention import TokenRetentionService

logger = get_logger("main")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler for startup/shutdown."""
    setup_logging(
        level=settings.log_level,
        format_type="structured" if not settings.debug else "dev",
    )
    logger.info(f"Starting {settings.app_name} v{settings.app_version}")

    retention_service = TokenRetentionService.get_instance()
    await retention_service.start()

    yield

    logger.info("Shutting down...")
    await retention_service.stop()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title=settings.app_name,
        description="Refresh token lifecycle and session administration",
        version=settings.app_version,
        lifespan=lifespan,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        openapi_url="/openapi.json" if settings.debug else None,
    )

    # Bearer key required on /api/*
    app.add_middleware(AdminAuthMiddleware)

    app.include_router(health_router)  # Health at root level
    app.include_router(api_router)  # API at /api

    return app


# Application instance
app = create_app()
