"""AI node handlers: plain text generation and agent-attached chat models."""

from typing import Any, Dict

from constants import NodeType
from core.logging import get_logger
from services.ai import AIService, DEFAULT_SYSTEM_PROMPT, get_provider_config
from services.credentials import CredentialStore
from services.execution.models import ExecutionContext
from .common import load_credential, render_text, reporting_status, require

logger = get_logger(__name__)


def _sampling_options(data) -> Dict[str, Any]:
    options: Dict[str, Any] = {}
    if data.get("temperature") is not None:
        options["temperature"] = float(data["temperature"])
    if data.get("maxTokens"):
        options["max_tokens"] = int(data["maxTokens"])
    return options


async def handle_text_generation(*, provider: str, node_type: NodeType, data, node_id: str,
                                 user_id: str, context: ExecutionContext, step, publish,
                                 ai_service: AIService,
                                 credentials: CredentialStore) -> ExecutionContext:
    """OPENAI / ANTHROPIC / GEMINI / OPENROUTER text generation node.

    Stores `{<responseKey>: text, model}` under `variableName`.
    """
    config = get_provider_config(provider)
    label = f"{config.label} Node"

    async with reporting_status(publish, node_type, node_id):
        variable_name = require(data, "variableName", f"{label}: Variable name is required", node_id)
        require(data, "userPrompt", f"{label}: User prompt is required", node_id)
        credential_id = require(data, "credentialId", f"{label}: Credential is required", node_id)

        system_prompt = render_text(data["systemPrompt"], context) if data.get("systemPrompt") else DEFAULT_SYSTEM_PROMPT
        user_prompt = render_text(data["userPrompt"], context)

        record = await load_credential(step, credentials, f"get-{provider}-credential",
                                       credential_id, user_id, label, node_id)
        api_key = credentials.reveal(record)

        result = await step.run(
            f"{provider}-generate-text-{node_id}",
            lambda: ai_service.generate(
                provider, api_key, user_prompt,
                system_prompt=system_prompt,
                model=data.get("model") or None,
                **_sampling_options(data),
            ),
        )

        return context.with_values(**{
            variable_name: {config.response_key: result["text"], "model": result["model"]},
        })


async def handle_chat_model(*, provider: str, node_type: NodeType, data, node_id: str,
                            user_id: str, context: ExecutionContext, step, publish,
                            ai_service: AIService,
                            credentials: CredentialStore) -> ExecutionContext:
    """Chat model attached to an AI agent through the `ai-model` handle.

    Reads `_chatHistory` supplied by the agent, writes `_chatModelResponse`.
    Run standalone it simply answers the rendered user prompt.
    """
    config = get_provider_config(provider)
    label = f"{config.label} Chat Model Node"

    async with reporting_status(publish, node_type, node_id):
        credential_id = require(data, "credentialId", f"{label}: Credential is required", node_id)
        require(data, "userPrompt", f"{label}: User prompt is required", node_id)

        system_prompt = render_text(data["systemPrompt"], context) if data.get("systemPrompt") else DEFAULT_SYSTEM_PROMPT
        user_prompt = render_text(data["userPrompt"], context)
        history = list(context.get("_chatHistory") or [])

        record = await load_credential(step, credentials, f"get-{provider}-chat-credential",
                                       credential_id, user_id, label, node_id)
        api_key = credentials.reveal(record)

        agent_node_id = context.get("_agentNodeId")
        step_name = (f"{provider}-chat-model-generate-text-{agent_node_id}-{node_id}"
                     if agent_node_id else f"{provider}-chat-model-generate-text-{node_id}")

        result = await step.run(
            step_name,
            lambda: ai_service.generate(
                provider, api_key, user_prompt,
                system_prompt=system_prompt,
                model=data.get("model") or None,
                history=history,
                **_sampling_options(data),
            ),
        )
        logger.debug("Chat model responded", node_id=node_id, provider=provider,
                     history_length=len(history))

        return context.remove("_chatHistory").with_values(_chatModelResponse=result["text"])
