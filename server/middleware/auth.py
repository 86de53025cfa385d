"""Authentication middleware for route protection."""

from typing import Optional

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from core.container import container
from core.logging import get_logger

logger = get_logger(__name__)

# Public routes that don't require authentication
PUBLIC_PATHS = frozenset([
    "/health",
    "/docs",
    "/openapi.json",
    "/redoc",
    "/ws/realtime",  # authenticated by its own realtime token
])

# Path prefixes that are public (webhooks verify X-Secret instead)
PUBLIC_PREFIXES = (
    "/api/webhooks/",
)


def session_token(request: Request) -> Optional[str]:
    """Session JWT from `Authorization: Bearer` or the session cookie."""
    header = request.headers.get("authorization", "")
    scheme, _, credentials = header.partition(" ")
    if scheme.lower() == "bearer" and credentials.strip():
        return credentials.strip()
    return request.cookies.get(container.settings().jwt_cookie_name)


class AuthMiddleware(BaseHTTPMiddleware):
    """Middleware to protect routes requiring authentication."""

    async def dispatch(self, request: Request, call_next):
        path = request.url.path

        if self._is_public_path(path) or request.method == "OPTIONS":
            return await call_next(request)

        token = session_token(request)
        if not token:
            return JSONResponse(
                status_code=401,
                content={"success": False, "error": "Not authenticated"}
            )

        payload = container.user_auth_service().verify_token(token)
        if not payload or not payload.get("sub"):
            return JSONResponse(
                status_code=401,
                content={"success": False, "error": "Invalid or expired session"}
            )

        # Attach user info to request state for downstream handlers
        request.state.user_id = str(payload["sub"])
        return await call_next(request)

    def _is_public_path(self, path: str) -> bool:
        if path in PUBLIC_PATHS:
            return True
        return path.startswith(PUBLIC_PREFIXES)
