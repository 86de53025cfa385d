"""AI service: LangChain chat models behind a provider registry."""

import time
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Sequence, Type

from langchain_openai import ChatOpenAI
from langchain_anthropic import ChatAnthropic
from langchain_google_genai import ChatGoogleGenerativeAI
from langchain_core.messages import HumanMessage, SystemMessage, AIMessage, BaseMessage

from core.config import Settings
from core.logging import get_logger, log_execution_time, log_api_call
from services.execution.errors import ConfigurationError, UpstreamServiceError

logger = get_logger(__name__)


# =============================================================================
# AI PROVIDER REGISTRY - Single source of truth for provider configurations
# =============================================================================

@dataclass
class ProviderConfig:
    """Configuration for an AI provider."""
    name: str
    label: str  # used in user-facing error messages
    model_class: Type
    api_key_param: str
    max_tokens_param: str
    default_model: str
    response_key: str  # key used by the plain text-generation nodes
    base_url: Optional[str] = None


PROVIDER_CONFIGS: Dict[str, ProviderConfig] = {
    'openai': ProviderConfig(
        name='openai',
        label='OpenAI',
        model_class=ChatOpenAI,
        api_key_param='api_key',
        max_tokens_param='max_tokens',
        default_model='gpt-4o-mini',
        response_key='openAIResponse',
    ),
    'anthropic': ProviderConfig(
        name='anthropic',
        label='Anthropic',
        model_class=ChatAnthropic,
        api_key_param='api_key',
        max_tokens_param='max_tokens',
        default_model='claude-3-5-sonnet-20241022',
        response_key='anthropicResponse',
    ),
    'gemini': ProviderConfig(
        name='gemini',
        label='Gemini',
        model_class=ChatGoogleGenerativeAI,
        api_key_param='google_api_key',
        max_tokens_param='max_output_tokens',
        default_model='gemini-1.5-flash',
        response_key='geminiResponse',
    ),
    'openrouter': ProviderConfig(
        name='openrouter',
        label='OpenRouter',
        model_class=ChatOpenAI,
        api_key_param='api_key',
        max_tokens_param='max_tokens',
        default_model='openai/gpt-4o-mini',
        response_key='openRouterResponse',
        base_url='https://openrouter.ai/api/v1',
    ),
}

DEFAULT_SYSTEM_PROMPT = "You are a helpful assistant."

# Vendor exception names that will not heal on retry
_PERMANENT_ERROR_NAMES = ("Authentication", "PermissionDenied", "BadRequest", "NotFound", "InvalidArgument")


def get_provider_config(provider: str) -> ProviderConfig:
    config = PROVIDER_CONFIGS.get(provider)
    if not config:
        raise ConfigurationError(f"Unsupported provider: {provider}")
    return config


def build_messages(system_prompt: Optional[str], user_prompt: str,
                   history: Optional[Sequence[Mapping[str, Any]]] = None) -> List[BaseMessage]:
    """System prompt, prior chat turns ({role, content}), then the user prompt."""
    messages: List[BaseMessage] = []
    if system_prompt:
        messages.append(SystemMessage(content=system_prompt))
    for turn in history or []:
        content = str(turn.get("content", ""))
        if turn.get("role") == "assistant":
            messages.append(AIMessage(content=content))
        elif turn.get("role") == "system":
            messages.append(SystemMessage(content=content))
        else:
            messages.append(HumanMessage(content=content))
    messages.append(HumanMessage(content=user_prompt))
    return messages


def _message_text(content: Any) -> str:
    # Anthropic and Gemini may answer with a list of content blocks
    if isinstance(content, list):
        return "".join(
            block.get("text", "") if isinstance(block, dict) else str(block)
            for block in content
        )
    return str(content)


class AIService:
    """Creates LangChain chat models and generates text."""

    def __init__(self, settings: Settings):
        self.settings = settings

    def create_model(self, provider: str, api_key: str, model: Optional[str] = None,
                     temperature: Optional[float] = None, max_tokens: Optional[int] = None):
        """Create LangChain model instance using provider registry."""
        config = get_provider_config(provider)
        kwargs: Dict[str, Any] = {
            config.api_key_param: api_key,
            'model': model or config.default_model,
            'timeout': self.settings.ai_timeout,
            'max_retries': 0,  # retries belong to the workflow scheduler
        }
        if temperature is not None:
            kwargs['temperature'] = temperature
        if max_tokens:
            kwargs[config.max_tokens_param] = max_tokens
        if config.base_url:
            kwargs['base_url'] = config.base_url
        return config.model_class(**kwargs)

    async def generate(self, provider: str, api_key: str, user_prompt: str,
                       system_prompt: Optional[str] = None, model: Optional[str] = None,
                       history: Optional[Sequence[Mapping[str, Any]]] = None,
                       temperature: Optional[float] = None,
                       max_tokens: Optional[int] = None) -> Dict[str, Any]:
        """Run one chat completion. Returns {"text", "model", "provider"}.

        Raises:
            ConfigurationError: Rejected credentials or request
            UpstreamServiceError: Transient vendor failure (retriable)
        """
        config = get_provider_config(provider)
        model_name = model or config.default_model
        start_time = time.time()

        try:
            chat_model = self.create_model(provider, api_key, model_name, temperature, max_tokens)
            response = await chat_model.ainvoke(build_messages(system_prompt, user_prompt, history))
        except Exception as e:
            log_api_call(logger, provider, model_name, "chat", False, error=type(e).__name__)
            if any(name in type(e).__name__ for name in _PERMANENT_ERROR_NAMES):
                raise ConfigurationError(f"{config.label} rejected the request: {e}") from e
            raise UpstreamServiceError(f"{config.label} request failed: {e}") from e

        log_execution_time(logger, "ai_chat", start_time, time.time(), provider=provider)
        log_api_call(logger, provider, model_name, "chat", True)
        return {"text": _message_text(response.content), "model": model_name, "provider": provider}
