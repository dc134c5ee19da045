"""Health check endpoint.

Unhealthy (503) when the database is unreachable or no encryption key is
configured, since either one makes every issue and validate call fail. A
stopped retention loop is reported but does not fail the check.
"""

from fastapi import APIRouter, Response, status
from pydantic import BaseModel

from refreshvault.core import check_db_connection, settings
from refreshvault.services.retention import TokenRetentionService

router = APIRouter(tags=["health"])


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str
    database: str
    encryption: str
    retention: str


@router.get(
    "/health",
    response_model=HealthResponse,
    responses={
        status.HTTP_200_OK: {"description": "Service is healthy"},
        status.HTTP_503_SERVICE_UNAVAILABLE: {"description": "Service is unhealthy"},
    },
)
async def health_check(response: Response) -> HealthResponse:
    db_healthy = await check_db_connection()
    key_configured = bool(settings.refreshvault_encryption_key)
    healthy = db_healthy and key_configured

    if not healthy:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE

    return HealthResponse(
        status="healthy" if healthy else "unhealthy",
        version=settings.app_version,
        database="connected" if db_healthy else "disconnected",
        encryption="configured" if key_configured else "missing",
        retention="running" if TokenRetentionService.get_instance().is_running else "stopped",
    )
