"""Centralized constants for node types, handles and realtime channels.

Single source of truth for the closed set of node type tags persisted in
`nodes.type` and for the groupings the engine derives from them.
"""

from enum import Enum
from typing import Dict, FrozenSet


class NodeType(str, Enum):
    """Closed enumeration of node type tags."""

    INITIAL = "INITIAL"
    MANUAL_TRIGGER = "MANUAL_TRIGGER"
    WEBHOOK_TRIGGER = "WEBHOOK_TRIGGER"
    GOOGLE_FORM_TRIGGER = "GOOGLE_FORM_TRIGGER"
    GOOGLE_SHEETS_TRIGGER = "GOOGLE_SHEETS_TRIGGER"
    STRIPE_TRIGGER = "STRIPE_TRIGGER"
    SCHEDULED_TRIGGER = "SCHEDULED_TRIGGER"
    HTTP_REQUEST = "HTTP_REQUEST"
    OPENAI = "OPENAI"
    ANTHROPIC = "ANTHROPIC"
    GEMINI = "GEMINI"
    OPENROUTER = "OPENROUTER"
    OPENAI_CHAT_MODEL = "OPENAI_CHAT_MODEL"
    ANTHROPIC_CHAT_MODEL = "ANTHROPIC_CHAT_MODEL"
    GEMINI_CHAT_MODEL = "GEMINI_CHAT_MODEL"
    OPENROUTER_CHAT_MODEL = "OPENROUTER_CHAT_MODEL"
    AI_AGENT = "AI_AGENT"
    POSTGRES = "POSTGRES"
    MONGODB = "MONGODB"
    MCP_TOOLS = "MCP_TOOLS"
    EMAIL = "EMAIL"
    GOOGLE_SHEETS = "GOOGLE_SHEETS"
    SLACK = "SLACK"
    DISCORD = "DISCORD"
    TELEGRAM = "TELEGRAM"

    @classmethod
    def parse(cls, value: str) -> "NodeType":
        """Raise ValueError for unknown tags."""
        return value if isinstance(value, cls) else cls(value)


# =============================================================================
# TRIGGER NODE TYPES (starting points for workflow graphs)
# =============================================================================

TRIGGER_NODE_TYPES: FrozenSet[NodeType] = frozenset([
    NodeType.INITIAL,
    NodeType.MANUAL_TRIGGER,
    NodeType.WEBHOOK_TRIGGER,
    NodeType.GOOGLE_FORM_TRIGGER,
    NodeType.GOOGLE_SHEETS_TRIGGER,
    NodeType.STRIPE_TRIGGER,
    NodeType.SCHEDULED_TRIGGER,
])

# Inbound trigger kind -> node types that can receive it
TRIGGER_SOURCES: Dict[str, FrozenSet[NodeType]] = {
    "manual": frozenset([NodeType.MANUAL_TRIGGER, NodeType.INITIAL]),
    "webhook": frozenset([NodeType.WEBHOOK_TRIGGER]),
    "google_form": frozenset([NodeType.GOOGLE_FORM_TRIGGER]),
    "google_sheets": frozenset([NodeType.GOOGLE_SHEETS_TRIGGER]),
    "stripe": frozenset([NodeType.STRIPE_TRIGGER]),
    "scheduled": frozenset([NodeType.SCHEDULED_TRIGGER]),
}

# =============================================================================
# AI NODE TYPES
# =============================================================================

AI_CHAT_MODEL_TYPES: FrozenSet[NodeType] = frozenset([
    NodeType.OPENAI_CHAT_MODEL,
    NodeType.ANTHROPIC_CHAT_MODEL,
    NodeType.GEMINI_CHAT_MODEL,
    NodeType.OPENROUTER_CHAT_MODEL,
])

AI_TEXT_TYPES: FrozenSet[NodeType] = frozenset([
    NodeType.OPENAI,
    NodeType.ANTHROPIC,
    NodeType.GEMINI,
    NodeType.OPENROUTER,
])

CHAT_MEMORY_TYPES: FrozenSet[NodeType] = frozenset([
    NodeType.POSTGRES,
    NodeType.MONGODB,
])

# Node type -> AI provider name
TEXT_PROVIDERS: Dict[NodeType, str] = {
    NodeType.OPENAI: "openai",
    NodeType.ANTHROPIC: "anthropic",
    NodeType.GEMINI: "gemini",
    NodeType.OPENROUTER: "openrouter",
}

CHAT_MODEL_PROVIDERS: Dict[NodeType, str] = {
    NodeType.OPENAI_CHAT_MODEL: "openai",
    NodeType.ANTHROPIC_CHAT_MODEL: "anthropic",
    NodeType.GEMINI_CHAT_MODEL: "gemini",
    NodeType.OPENROUTER_CHAT_MODEL: "openrouter",
}

# =============================================================================
# PROVIDER HANDLES (single-valued inputs on a consumer node)
# =============================================================================

MAIN_HANDLE = "main"
AI_MODEL_HANDLE = "ai-model"
DATABASE_HANDLE = "database"

PROVIDER_HANDLES: Dict[str, FrozenSet[NodeType]] = {
    AI_MODEL_HANDLE: AI_CHAT_MODEL_TYPES,
    DATABASE_HANDLE: CHAT_MEMORY_TYPES,
}

# Context key that carries provider contributions to the consumer
PROVIDERS_KEY = "_providers"

# Internal working keys exchanged between the agent and its providers
AGENT_SCRATCH_KEYS: FrozenSet[str] = frozenset([
    "_workflowId",
    "_agentNodeId",
    "_chatHistory",
    "_chatModelResponse",
    "_postgresOperation",
    "_mongodbOperation",
    "_messageToSave",
    "_messageRole",
    "_postgresResult",
    "_mongodbResult",
    PROVIDERS_KEY,
])

# =============================================================================
# CREDENTIAL TYPES
# =============================================================================

CREDENTIAL_TYPES: FrozenSet[str] = frozenset([
    "OPENAI", "ANTHROPIC", "GEMINI", "OPENROUTER", "POSTGRES", "MONGODB",
    "EMAIL_SMTP", "EMAIL_GMAIL", "GOOGLE_SHEETS",
])

# =============================================================================
# REALTIME CHANNELS
# =============================================================================

STATUS_TOPIC = "status"
EXECUTIONS_TOPIC = "executions"
NODE_STATUSES: FrozenSet[str] = frozenset(["loading", "success", "error"])


def node_channel(node_type: NodeType) -> str:
    """Status channel for a node type, e.g. OPENAI_CHAT_MODEL -> openai-chat-model-execution."""
    if node_type == NodeType.INITIAL:
        node_type = NodeType.MANUAL_TRIGGER
    return f"{node_type.value.lower().replace('_', '-')}-execution"


def user_channel(user_id: str) -> str:
    """Execution-level channel scoped to one user."""
    return f"user:{user_id}"


NODE_CHANNELS: FrozenSet[str] = frozenset(node_channel(t) for t in NodeType)
