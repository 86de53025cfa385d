"""AI Agent node.

The agent does not talk to a vendor itself. It drives the chat model wired
to its `ai-model` handle and, when present, the chat memory node wired to its
`database` handle:

    1. query history from memory
    2. save the rendered user prompt (role user)
    3. call the chat model with the history
    4. save the model's answer (role assistant)

Provider nodes are invoked in-process through the node registry, sharing the
agent's step runtime so every sub-call is memoized under the agent's scope.
"""

from typing import Any, Callable, Dict, Optional

from constants import (
    AGENT_SCRATCH_KEYS, AI_CHAT_MODEL_TYPES, AI_MODEL_HANDLE, CHAT_MEMORY_TYPES, CHAT_MODEL_PROVIDERS,
    DATABASE_HANDLE, PROVIDERS_KEY, NodeType,
)
from core.logging import get_logger
from services.ai import get_provider_config
from services.execution.errors import ConfigurationError, NonRetriableError, WorkflowEngineError
from services.execution.models import ExecutionContext
from .common import render_text, reporting_status, require

logger = get_logger(__name__)

# memory node type -> (operation key, result key)
_MEMORY_KEYS = {
    NodeType.POSTGRES: ("_postgresOperation", "_postgresResult"),
    NodeType.MONGODB: ("_mongodbOperation", "_mongodbResult"),
}


def _find_provider(providers: Dict[str, Any], handle: str, allowed) -> Optional[Dict[str, Any]]:
    """Provider on `handle`, else the first provider whose type fits."""
    provider = providers.get(handle)
    if provider:
        return provider
    for candidate in providers.values():
        try:
            if NodeType.parse(candidate.get("type")) in allowed:
                return candidate
        except ValueError:
            continue
    return None


def _merge_memory_results(query: Optional[Dict], save: Optional[Dict], name_key: str) -> Dict[str, Any]:
    return {
        "chatHistory": (query or {}).get("chatHistory") or [],
        "saved": bool((save or {}).get("saved")),
        name_key: (query or {}).get(name_key) or (save or {}).get(name_key) or "",
    }


async def handle_ai_agent(*, node_type: NodeType, data, node_id: str, user_id: str,
                          context: ExecutionContext, step, publish,
                          resolve_executor: Callable) -> ExecutionContext:
    async with reporting_status(publish, node_type, node_id):
        variable_name = require(data, "variableName", "AI Agent Node: Variable name is required", node_id)

        providers = context.get(PROVIDERS_KEY) or {}
        model_node = _find_provider(providers, AI_MODEL_HANDLE, AI_CHAT_MODEL_TYPES)
        if not model_node:
            raise ConfigurationError(
                "AI Agent Node: No AI Model node connected. Connect a Chat Model node.", node_id=node_id
            )
        memory_node = _find_provider(providers, DATABASE_HANDLE, CHAT_MEMORY_TYPES)

        try:
            model_type = NodeType.parse(model_node["type"])
            model_data = model_node.get("data") or {}
            working = context.with_values(
                _workflowId=model_node.get("workflowId") or context.get("_workflowId") or "",
                _agentNodeId=node_id,
            )

            user_prompt = render_text(model_data["userPrompt"], context) if model_data.get("userPrompt") else ""

            async def invoke(provider: Dict[str, Any], ctx: ExecutionContext) -> ExecutionContext:
                executor = resolve_executor(provider["type"])
                return await executor(
                    data=provider.get("data") or {},
                    node_id=provider["nodeId"],
                    user_id=user_id,
                    context=ctx,
                    step=step,
                    publish=publish,
                )

            memory_type = NodeType.parse(memory_node["type"]) if memory_node else None
            query_result = save_result = None
            chat_history = []

            if memory_node:
                operation_key, result_key = _MEMORY_KEYS[memory_type]
                working = await invoke(memory_node, working.with_values(**{operation_key: "query"}))
                query_result = working.get(result_key)
                chat_history = (query_result or {}).get("chatHistory") or []

                if user_prompt:
                    working = await invoke(memory_node, working.with_values(**{
                        operation_key: "save", "_messageToSave": user_prompt, "_messageRole": "user",
                    }))

            working = await invoke(model_node, working.with_values(_chatHistory=chat_history))
            response = working.get("_chatModelResponse") or ""

            if memory_node and response:
                operation_key, result_key = _MEMORY_KEYS[memory_type]
                working = await invoke(memory_node, working.with_values(**{
                    operation_key: "save", "_messageToSave": response, "_messageRole": "assistant",
                }))
                save_result = working.get(result_key)

            provider_name = CHAT_MODEL_PROVIDERS[model_type]
            agent_result: Dict[str, Any] = {
                "response": response,
                "model": model_data.get("model") or get_provider_config(provider_name).default_model,
                "provider": model_type.value,
                "chatHistoryLength": len(chat_history),
            }
            if memory_type == NodeType.POSTGRES:
                agent_result["postgresResult"] = _merge_memory_results(query_result, save_result, "tableName")
            elif memory_type == NodeType.MONGODB:
                agent_result["mongodbResult"] = _merge_memory_results(query_result, save_result, "collectionName")

        except WorkflowEngineError:
            raise
        except Exception as e:
            logger.error("Agent execution failed", node_id=node_id, error=str(e))
            raise NonRetriableError("AI Agent Node: Agent execution failed", node_id=node_id) from e

        logger.info("Agent completed", node_id=node_id, provider=agent_result["provider"],
                    history_length=agent_result["chatHistoryLength"])
        scratch = [key for key in AGENT_SCRATCH_KEYS if key in working]
        return working.remove(*scratch).with_values(**{variable_name: agent_result})
