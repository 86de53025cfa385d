"""Rate limiting for public trigger endpoints (slowapi)."""

from fastapi import Request
from fastapi.responses import JSONResponse
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from core.container import container
from core.logging import get_logger

logger = get_logger(__name__)


def workflow_rate_key(request: Request) -> str:
    """Webhooks are limited per target workflow, not per caller."""
    workflow_id = request.query_params.get("workflowId")
    if workflow_id:
        return f"workflow:{workflow_id}"
    return get_remote_address(request)


def webhook_rate_limit() -> str:
    return container.settings().webhook_rate_limit


_settings = container.settings()

limiter = Limiter(
    key_func=workflow_rate_key,
    storage_uri=_settings.rate_limit_storage_uri,
    enabled=_settings.rate_limit_enabled,
)


def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded):
    logger.warning("Rate limit exceeded", path=request.url.path,
                   workflow_id=request.query_params.get("workflowId"), limit=str(exc.detail))
    return JSONResponse(
        status_code=429,
        content={"success": False, "error": "Too many requests"}
    )
