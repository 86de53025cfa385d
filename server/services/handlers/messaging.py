"""Messaging node handlers.

Handles execution of outbound message nodes:
- SLACK: post to an incoming-webhook URL
- DISCORD: post to a channel webhook URL
- TELEGRAM: sendMessage through the Bot API
"""

from typing import Any, Dict

import httpx

from constants import NodeType
from core.config import Settings
from core.logging import get_logger
from services.execution.errors import NonRetriableError, UpstreamServiceError
from services.execution.models import ExecutionContext
from .common import render_text, reporting_status, require

logger = get_logger(__name__)

TELEGRAM_API_URL = "https://api.telegram.org/bot{token}/sendMessage"
TELEGRAM_MAX_LENGTH = 4096
DISCORD_MAX_LENGTH = 2000

# node type -> (label, step name)
WEBHOOK_TARGETS = {
    NodeType.SLACK: ("Slack", "slack-webhook"),
    NodeType.DISCORD: ("Discord", "discord-webhook"),
}


async def _post(url: str, payload: Dict[str, Any], timeout: int, label: str,
                node_id: str) -> httpx.Response:
    try:
        async with httpx.AsyncClient(timeout=timeout) as client:
            response = await client.post(url, json=payload)
    except httpx.RequestError as e:
        raise UpstreamServiceError(f"{label} Node: {type(e).__name__}: {e}", node_id=node_id) from e

    if response.status_code >= 500 or response.status_code == 429:
        raise UpstreamServiceError(f"{label} Node: {response.status_code} {response.reason_phrase}",
                                   node_id=node_id, status_code=response.status_code)
    if response.status_code >= 400:
        raise NonRetriableError(f"{label} Node: {response.status_code} {response.reason_phrase}",
                                node_id=node_id)
    return response


async def handle_webhook_message(*, node_type: NodeType, data, node_id: str, user_id: str,
                                 context: ExecutionContext, step, publish,
                                 settings: Settings) -> ExecutionContext:
    """SLACK / DISCORD node: render `content` and post it to `webhookUrl`."""
    label, step_name = WEBHOOK_TARGETS[node_type]

    async with reporting_status(publish, node_type, node_id):
        require(data, "content", f"{label} Node: Content is required", node_id)
        webhook_url = require(data, "webhookUrl", f"{label} Node: Webhook URL is required", node_id)
        variable_name = require(data, "variableName", f"{label} Node: Variable name is required", node_id)

        content = render_text(data["content"], context)
        if node_type == NodeType.DISCORD:
            content = content[:DISCORD_MAX_LENGTH]
            payload: Dict[str, Any] = {"content": content}
            if data.get("username"):
                payload["username"] = data["username"]
        else:
            payload = {"text": content}

        async def send() -> Dict[str, Any]:
            await _post(webhook_url, payload, settings.http_timeout, label, node_id)
            return {"messageContent": content, "messageSent": True}

        result = await step.run(step_name, send)
        logger.info(f"[{label}] Message sent", node_id=node_id, length=len(content))
        return context.with_values(**{variable_name: result})


async def handle_telegram(*, node_type: NodeType, data, node_id: str, user_id: str,
                          context: ExecutionContext, step, publish,
                          settings: Settings) -> ExecutionContext:
    """TELEGRAM node. Text is truncated to Telegram's 4096 character limit."""
    async with reporting_status(publish, node_type, node_id):
        require(data, "content", "Telegram Node: Content is required", node_id)
        variable_name = require(data, "variableName", "Telegram Node: Variable name is required", node_id)
        bot_token = require(data, "botToken", "Telegram Node: Bot Token is required", node_id)
        chat_id = require(data, "chatId", "Telegram Node: Chat ID is required", node_id)

        content = render_text(data["content"], context)[:TELEGRAM_MAX_LENGTH]
        payload: Dict[str, Any] = {"chat_id": chat_id, "text": content}
        if data.get("parseMode"):
            payload["parse_mode"] = data["parseMode"]

        async def send() -> Dict[str, Any]:
            response = await _post(TELEGRAM_API_URL.format(token=bot_token), payload,
                                   settings.http_timeout, "Telegram", node_id)
            body = response.json()
            return {
                "messageContent": content,
                "messageSent": bool(body.get("ok")),
                "messageId": (body.get("result") or {}).get("message_id"),
            }

        result = await step.run("telegram-send-message", send)
        logger.info("[Telegram] Message sent", node_id=node_id, chat_id=str(chat_id),
                    message_id=result.get("messageId"))
        return context.with_values(**{variable_name: result})
