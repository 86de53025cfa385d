"""Node Registry - NodeType to executor lookup.

Uses a registry pattern for handler dispatch: every executor is bound to its
service dependencies via partial at construction time, and the table is
checked to cover every NodeType.
"""

from functools import partial
from types import MappingProxyType
from typing import Any, Callable, Mapping, Tuple

from constants import (
    AI_CHAT_MODEL_TYPES, CHAT_MODEL_PROVIDERS, TEXT_PROVIDERS, TRIGGER_NODE_TYPES, NodeType,
)
from core.config import Settings
from core.logging import get_logger
from services.ai import AIService
from services.credentials import CredentialStore
from services.execution.errors import UnknownNodeType
from services.handlers import (
    handle_trigger, handle_text_generation, handle_chat_model, handle_ai_agent,
    handle_postgres, handle_mongodb, handle_http_request,
    handle_webhook_message, handle_telegram, handle_email,
    handle_google_sheets, handle_mcp_tools,
)

logger = get_logger(__name__)

Executor = Callable[..., Any]


class NodeRegistry:
    """Immutable NodeType -> executor table."""

    def __init__(self, settings: Settings, ai_service: AIService, credentials: CredentialStore):
        self.settings = settings
        self.ai_service = ai_service
        self.credentials = credentials
        self._executors: Mapping[NodeType, Executor] = MappingProxyType(self._build_registry())

        missing = set(NodeType) - set(self._executors)
        if missing:
            raise RuntimeError(f"No executor registered for: {sorted(t.value for t in missing)}")
        logger.debug("Node registry built", executors=len(self._executors))

    def _build_registry(self) -> dict:
        """Build handler registry with service dependencies bound via partial."""
        registry = {}

        for node_type in TRIGGER_NODE_TYPES:
            registry[node_type] = partial(handle_trigger, node_type=node_type)

        for node_type, provider in TEXT_PROVIDERS.items():
            registry[node_type] = partial(
                handle_text_generation, node_type=node_type, provider=provider,
                ai_service=self.ai_service, credentials=self.credentials,
            )

        for node_type in AI_CHAT_MODEL_TYPES:
            registry[node_type] = partial(
                handle_chat_model, node_type=node_type, provider=CHAT_MODEL_PROVIDERS[node_type],
                ai_service=self.ai_service, credentials=self.credentials,
            )

        registry.update({
            NodeType.AI_AGENT: partial(handle_ai_agent, node_type=NodeType.AI_AGENT,
                                       resolve_executor=self.lookup),
            NodeType.POSTGRES: partial(handle_postgres, node_type=NodeType.POSTGRES,
                                       credentials=self.credentials, settings=self.settings),
            NodeType.MONGODB: partial(handle_mongodb, node_type=NodeType.MONGODB,
                                      credentials=self.credentials, settings=self.settings),
            NodeType.HTTP_REQUEST: partial(handle_http_request, node_type=NodeType.HTTP_REQUEST,
                                           settings=self.settings),
            NodeType.SLACK: partial(handle_webhook_message, node_type=NodeType.SLACK,
                                    settings=self.settings),
            NodeType.DISCORD: partial(handle_webhook_message, node_type=NodeType.DISCORD,
                                      settings=self.settings),
            NodeType.TELEGRAM: partial(handle_telegram, node_type=NodeType.TELEGRAM,
                                       settings=self.settings),
            NodeType.EMAIL: partial(handle_email, node_type=NodeType.EMAIL,
                                    credentials=self.credentials, settings=self.settings),
            NodeType.GOOGLE_SHEETS: partial(handle_google_sheets, node_type=NodeType.GOOGLE_SHEETS,
                                            credentials=self.credentials),
            NodeType.MCP_TOOLS: partial(handle_mcp_tools, node_type=NodeType.MCP_TOOLS,
                                        settings=self.settings),
        })
        return registry

    def lookup(self, node_type: Any) -> Executor:
        """Executor for a node type tag.

        Raises:
            UnknownNodeType: tag is not a NodeType
        """
        try:
            parsed = NodeType.parse(node_type)
        except ValueError:
            raise UnknownNodeType(f"No executor found for node type: {node_type}")
        return self._executors[parsed]

    def types(self) -> Tuple[NodeType, ...]:
        return tuple(self._executors)

    @staticmethod
    def is_trigger(node_type: Any) -> bool:
        try:
            return NodeType.parse(node_type) in TRIGGER_NODE_TYPES
        except ValueError:
            return False
