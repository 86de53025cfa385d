"""Execution engine state models.

All models are JSON-serializable so they can be persisted on the Execution
row and shipped across the Temporal activity boundary.
"""

from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterator, Optional

from constants import NodeType
from services.execution.errors import is_retriable


class ExecutionStatus(str, Enum):
    """Execution lifecycle.

    State transitions:
        PENDING -> RUNNING -> SUCCESS
                           -> FAILED
    """
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in (ExecutionStatus.SUCCESS, ExecutionStatus.FAILED)


class NodeStatus(str, Enum):
    """Per-node status published on the realtime channel."""
    LOADING = "loading"
    SUCCESS = "success"
    ERROR = "error"


@dataclass
class RetryPolicy:
    """Retry configuration for node execution.

    Delay formula: min(initial_delay * (backoff_multiplier ^ attempt), max_delay)
    """
    max_attempts: int = 3
    initial_delay: float = 1.0       # seconds
    max_delay: float = 60.0          # seconds
    backoff_multiplier: float = 2.0

    def calculate_delay(self, attempt: int) -> float:
        """Delay before the retry that follows `attempt` (0-indexed)."""
        delay = self.initial_delay * (self.backoff_multiplier ** attempt)
        return min(delay, self.max_delay)

    def should_retry(self, error: BaseException, attempt: int) -> bool:
        """True when `error` is retriable and attempts remain after `attempt` (0-indexed)."""
        if attempt + 1 >= self.max_attempts:
            return False
        return is_retriable(error)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "max_attempts": self.max_attempts,
            "initial_delay": self.initial_delay,
            "max_delay": self.max_delay,
            "backoff_multiplier": self.backoff_multiplier,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RetryPolicy":
        return cls(
            max_attempts=data.get("max_attempts", 3),
            initial_delay=data.get("initial_delay", 1.0),
            max_delay=data.get("max_delay", 60.0),
            backoff_multiplier=data.get("backoff_multiplier", 2.0),
        )


# Triggers only echo their payload, a failure there will not heal on retry.
DEFAULT_RETRY_POLICIES: Dict[NodeType, RetryPolicy] = {
    NodeType.INITIAL: RetryPolicy(max_attempts=1),
    NodeType.MANUAL_TRIGGER: RetryPolicy(max_attempts=1),
    NodeType.WEBHOOK_TRIGGER: RetryPolicy(max_attempts=1),
    NodeType.GOOGLE_FORM_TRIGGER: RetryPolicy(max_attempts=1),
    NodeType.GOOGLE_SHEETS_TRIGGER: RetryPolicy(max_attempts=1),
    NodeType.STRIPE_TRIGGER: RetryPolicy(max_attempts=1),
    NodeType.SCHEDULED_TRIGGER: RetryPolicy(max_attempts=1),
    NodeType.HTTP_REQUEST: RetryPolicy(max_attempts=3, initial_delay=2.0),
    NodeType.AI_AGENT: RetryPolicy(max_attempts=2, initial_delay=5.0, max_delay=30.0),
    NodeType.OPENAI_CHAT_MODEL: RetryPolicy(max_attempts=2, initial_delay=5.0),
    NodeType.ANTHROPIC_CHAT_MODEL: RetryPolicy(max_attempts=2, initial_delay=5.0),
    NodeType.GEMINI_CHAT_MODEL: RetryPolicy(max_attempts=2, initial_delay=5.0),
    NodeType.OPENROUTER_CHAT_MODEL: RetryPolicy(max_attempts=2, initial_delay=5.0),
}


def get_retry_policy(node_type: NodeType, custom_policy: Optional[Dict] = None,
                     default: Optional[RetryPolicy] = None) -> RetryPolicy:
    """Retry policy for a node type, overridable per node via data['retryPolicy']."""
    if custom_policy:
        return RetryPolicy.from_dict(custom_policy)
    return DEFAULT_RETRY_POLICIES.get(node_type, default or RetryPolicy())


class ExecutionContext(Mapping):
    """Key/value bag threaded from node to node.

    Values are never mutated in place: `with_values`, `extend` and `remove`
    return a new context. Keys starting with "_" are internal working keys
    and are stripped by `public()`.
    """

    __slots__ = ("_data", "_removed")

    def __init__(self, data: Optional[Mapping] = None, removed: FrozenSet[str] = frozenset()):
        self._data: Dict[str, Any] = dict(data or {})
        self._removed: FrozenSet[str] = frozenset(removed)

    def __getitem__(self, key: str) -> Any:
        return self._data[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def __repr__(self) -> str:
        return f"ExecutionContext({self._data!r})"

    def __eq__(self, other: object) -> bool:
        if isinstance(other, Mapping):
            return dict(self._data) == dict(other)
        return NotImplemented

    @property
    def removed_keys(self) -> FrozenSet[str]:
        """Keys explicitly removed since this context's lineage was last reset."""
        return self._removed

    def with_values(self, **values: Any) -> "ExecutionContext":
        return self.extend(values)

    def extend(self, values: Mapping) -> "ExecutionContext":
        merged = dict(self._data)
        merged.update(values)
        return ExecutionContext(merged, self._removed - set(values))

    def remove(self, *keys: str) -> "ExecutionContext":
        """Drop keys and remember that the drop was intentional."""
        data = {k: v for k, v in self._data.items() if k not in keys}
        return ExecutionContext(data, self._removed | {k for k in keys if k in self._data})

    def reset_lineage(self) -> "ExecutionContext":
        return ExecutionContext(self._data)

    def public(self) -> Dict[str, Any]:
        return {k: v for k, v in self._data.items() if not k.startswith("_")}

    def to_dict(self) -> Dict[str, Any]:
        return dict(self._data)

    @classmethod
    def from_dict(cls, data: Optional[Mapping]) -> "ExecutionContext":
        return cls(data or {})
