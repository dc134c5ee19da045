"""Admin API authentication middleware using a static bearer key.

Every request to /api/* must carry ``Authorization: Bearer <key>`` where the
key equals REFRESHVAULT_ADMIN_API_KEY. With no key configured the admin API
refuses all requests. /health stays open for load balancers.
"""

import logging
import secrets

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import JSONResponse

from refreshvault.core.config import settings

logger = logging.getLogger(__name__)

PROTECTED_PREFIX = "/api"


def _unauthorized(detail: str) -> JSONResponse:
    return JSONResponse(
        status_code=401,
        content={"detail": detail},
        headers={"WWW-Authenticate": "Bearer"},
    )


class AdminAuthMiddleware(BaseHTTPMiddleware):
    """Middleware to authenticate admin API requests.

    - Key must be in: Authorization: Bearer <key>
    - Returns 401 Unauthorized if the key is missing, wrong or not configured
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        path = request.url.path

        # CORS preflight never carries credentials
        if request.method == "OPTIONS":
            return await call_next(request)

        if path != PROTECTED_PREFIX and not path.startswith(PROTECTED_PREFIX + "/"):
            return await call_next(request)

        expected_key = settings.refreshvault_admin_api_key
        if not expected_key:
            logger.error(f"Admin API key not configured; refused {request.method} {path}")
            return _unauthorized("Admin auth not configured")

        token = self._extract_token(request)
        if not token:
            logger.warning(f"Admin API request without token: {request.method} {path}")
            return _unauthorized(
                "Authentication required. Send Authorization: Bearer <admin key>."
            )

        if not secrets.compare_digest(token.encode(), expected_key.encode()):
            logger.warning(f"Admin API request with invalid key: {request.method} {path}")
            return _unauthorized("Invalid admin key")

        return await call_next(request)

    def _extract_token(self, request: Request) -> str | None:
        """Extract the bearer key from the Authorization header."""
        auth_header = request.headers.get("Authorization", "")
        if auth_header.startswith("Bearer "):
            return auth_header[7:]
        return None
