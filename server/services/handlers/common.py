"""Shared helpers for node executors."""

import html
from contextlib import asynccontextmanager
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional

from constants import NodeType, node_channel
from services.credentials import CredentialStore
from services.execution.errors import ConfigurationError
from services.parameter_resolver import render_template

# publish(channel, node_id, status)
StatusPublisher = Callable[[str, str, str], Awaitable[None]]


@asynccontextmanager
async def reporting_status(publish: StatusPublisher, node_type: NodeType, node_id: str):
    """Publish `loading` on entry, then `error` if the body raises, else `success`."""
    channel = node_channel(node_type)
    await publish(channel, node_id, "loading")
    try:
        yield
    except Exception:
        await publish(channel, node_id, "error")
        raise
    await publish(channel, node_id, "success")


def require(data: Mapping[str, Any], field: str, message: str, node_id: Optional[str] = None) -> Any:
    """Return a non-blank config value or raise ConfigurationError(message)."""
    value = data.get(field)
    if value is None or (isinstance(value, str) and not value.strip()):
        raise ConfigurationError(message, node_id=node_id)
    return value


def render_text(template: Any, context: Mapping[str, Any]) -> str:
    """Render a template and decode HTML entities left in the output."""
    rendered = render_template(template, context)
    return html.unescape(rendered if isinstance(rendered, str) else str(rendered))


async def load_credential(step, credentials: CredentialStore, step_name: str,
                          credential_id: str, user_id: str, label: str,
                          node_id: Optional[str] = None) -> Dict[str, Any]:
    """Fetch the encrypted credential record inside a step.

    Raises ConfigurationError when the credential is missing or not owned by
    the user.
    """
    record = await step.run(step_name, lambda: credentials.fetch(credential_id, user_id))
    if not record:
        raise ConfigurationError(f"{label}: Credential not found", node_id=node_id)
    return record
