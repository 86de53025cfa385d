"""MCP Tools node: call one tool on a Model Context Protocol server."""

import json
import shlex
from contextlib import AsyncExitStack
from datetime import timedelta
from typing import Any, Dict, List

from mcp import ClientSession, StdioServerParameters
from mcp.client.sse import sse_client
from mcp.client.stdio import stdio_client

from constants import NodeType
from core.config import Settings
from core.logging import get_logger
from services.execution.errors import ConfigurationError, NonRetriableError, WorkflowEngineError
from services.execution.models import ExecutionContext
from services.parameter_resolver import render_template
from .common import reporting_status, require

logger = get_logger(__name__)


def parse_tool_arguments(raw: Any, context) -> Dict[str, Any]:
    """Render `toolArguments` and parse it as a JSON object, `{}` on any failure."""
    if not raw:
        return {}
    if isinstance(raw, dict):
        return raw
    try:
        parsed = json.loads(render_template(raw, context))
    except (TypeError, ValueError):
        logger.debug("Tool arguments are not valid JSON, using {}")
        return {}
    return parsed if isinstance(parsed, dict) else {}


def parse_command_args(raw: Any) -> List[str]:
    """Split a stdio args string honouring shell quoting."""
    if isinstance(raw, list):
        return [str(arg) for arg in raw]
    if not raw or not str(raw).strip():
        return []
    return shlex.split(str(raw))


async def handle_mcp_tools(*, node_type: NodeType, data, node_id: str, user_id: str,
                           context: ExecutionContext, step, publish,
                           settings: Settings) -> ExecutionContext:
    async with reporting_status(publish, node_type, node_id):
        variable_name = require(data, "variableName", "MCP Tools Node: Variable name is required", node_id)
        tool_name = require(data, "toolName", "MCP Tools Node: Tool name is required", node_id)

        transport = data.get("transportType") or "sse"
        if transport == "sse":
            server_url = require(data, "serverUrl", "MCP Tools Node: Server URL is required for SSE", node_id)
        elif transport == "stdio":
            command = require(data, "command", "MCP Tools Node: Command is required for stdio", node_id)
        else:
            raise ConfigurationError(f"MCP Tools Node: Invalid transport: {transport}", node_id=node_id)

        arguments = parse_tool_arguments(data.get("toolArguments"), context)

        async def call_tool() -> Dict[str, Any]:
            stack = AsyncExitStack()
            try:
                if transport == "sse":
                    read, write = await stack.enter_async_context(
                        sse_client(server_url, timeout=settings.http_timeout)
                    )
                else:
                    params = StdioServerParameters(command=command, args=parse_command_args(data.get("args")))
                    read, write = await stack.enter_async_context(stdio_client(params))

                session = await stack.enter_async_context(ClientSession(read, write))
                await session.initialize()
                result = await session.call_tool(
                    tool_name, arguments,
                    read_timeout_seconds=timedelta(seconds=settings.http_timeout),
                )
                return result.model_dump(mode="json", by_alias=True, exclude_none=True)
            finally:
                try:
                    await stack.aclose()
                except Exception as e:
                    logger.warning("MCP client close failed", node_id=node_id, transport=transport, error=str(e))

        try:
            tool_result = await step.run("execute-mcp-tool", call_tool)
        except WorkflowEngineError:
            raise
        except Exception as e:
            logger.error("MCP tool call failed", node_id=node_id, tool=tool_name,
                         transport=transport, error=str(e))
            raise NonRetriableError("MCP Tools Node: Tool execution failed", node_id=node_id) from e

        logger.info("MCP tool called", node_id=node_id, tool=tool_name, transport=transport,
                    is_error=tool_result.get("isError", False))
        return context.with_values(**{variable_name: {"toolResult": tool_result}})
