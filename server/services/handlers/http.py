"""HTTP Request node handler."""

import json
import time
from typing import Any, Dict

import httpx

from constants import NodeType
from core.config import Settings
from core.logging import get_logger, log_execution_time
from services.execution.errors import NonRetriableError, UpstreamServiceError
from services.execution.models import ExecutionContext
from services.parameter_resolver import render_template
from .common import reporting_status, require

logger = get_logger(__name__)

BODY_METHODS = ("POST", "PUT", "PATCH")


def _parse_headers(raw: Any) -> Dict[str, str]:
    if isinstance(raw, dict):
        return {str(k): str(v) for k, v in raw.items()}
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except (TypeError, json.JSONDecodeError):
        logger.warning("Ignoring unparseable headers", headers=str(raw)[:100])
        return {}
    return {str(k): str(v) for k, v in parsed.items()} if isinstance(parsed, dict) else {}


async def handle_http_request(*, node_type: NodeType, data, node_id: str, user_id: str,
                              context: ExecutionContext, step, publish,
                              settings: Settings) -> ExecutionContext:
    """Make an HTTP request and store `{status, statusText, data}` under `variableName`.

    Network errors and 5xx responses are retriable, 4xx responses are not.
    """
    async with reporting_status(publish, node_type, node_id):
        variable_name = require(data, "variableName",
                                "HTTP Request node: No variable name configured.", node_id)
        require(data, "endpoint", "HTTP Request node: No endpoint configured.", node_id)

        endpoint = render_template(data["endpoint"], context)
        method = str(data.get("method") or "GET").upper()
        headers = _parse_headers(data.get("headers"))
        body = render_template(data["body"], context) if data.get("body") else None

        async def send() -> Dict[str, Any]:
            request_kwargs: Dict[str, Any] = {"headers": headers}
            if method in BODY_METHODS and body is not None:
                request_kwargs["content"] = body if isinstance(body, str) else json.dumps(body)
                request_kwargs["headers"] = {"Content-Type": "application/json", **headers}

            start_time = time.time()
            try:
                async with httpx.AsyncClient(timeout=settings.http_timeout) as client:
                    response = await client.request(method, endpoint, **request_kwargs)
            except httpx.RequestError as e:
                raise UpstreamServiceError(f"HTTP Request node: {type(e).__name__}: {e}",
                                           node_id=node_id) from e
            log_execution_time(logger, "http_request", start_time, time.time(),
                               method=method, status=response.status_code)

            if response.status_code >= 500:
                raise UpstreamServiceError(
                    f"HTTP Request node: {response.status_code} {response.reason_phrase}",
                    node_id=node_id, status_code=response.status_code,
                )
            if response.status_code >= 400:
                raise NonRetriableError(
                    f"HTTP Request node: {response.status_code} {response.reason_phrase}",
                    node_id=node_id,
                )

            if "application/json" in response.headers.get("content-type", ""):
                try:
                    payload: Any = response.json()
                except ValueError:
                    payload = response.text
            else:
                payload = response.text

            return {
                "status": response.status_code,
                "statusText": response.reason_phrase,
                "data": payload,
            }

        result = await step.run("http-request", send)
        return context.with_values(**{variable_name: result})
