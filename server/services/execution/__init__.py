"""Execution engine package.

Durable workflow execution with:
- Sequential graph walk with provider aggregation
- Step memoization and distributed locks (Redis, SQLite or memory)
- Per-node retry policies and a typed error taxonomy
- Heartbeats and a recovery sweeper for crash recovery
"""

from .models import (
    ExecutionStatus,
    NodeStatus,
    ExecutionContext,
    RetryPolicy,
    get_retry_policy,
    DEFAULT_RETRY_POLICIES,
)
from .errors import (
    WorkflowEngineError,
    RetriableError,
    NonRetriableError,
    UpstreamServiceError,
    ConfigurationError,
    UnauthorizedError,
    UnknownNodeType,
    MalformedGraph,
    TestNotSupported,
    NotFoundError,
    InvalidContextError,
)
from .cache import ExecutionCache
from .steps import DurableStep, ImmediateStep
from .graph import WorkflowGraph, validate_connection
from .executor import WorkflowExecutor
from .recovery import (
    RecoverySweeper,
    get_recovery_sweeper,
    set_recovery_sweeper,
)

__all__ = [
    # Models
    "ExecutionStatus",
    "NodeStatus",
    "ExecutionContext",
    "RetryPolicy",
    "get_retry_policy",
    "DEFAULT_RETRY_POLICIES",
    # Errors
    "WorkflowEngineError",
    "RetriableError",
    "NonRetriableError",
    "UpstreamServiceError",
    "ConfigurationError",
    "UnauthorizedError",
    "UnknownNodeType",
    "MalformedGraph",
    "TestNotSupported",
    "NotFoundError",
    "InvalidContextError",
    # Runtime
    "ExecutionCache",
    "DurableStep",
    "ImmediateStep",
    "WorkflowGraph",
    "validate_connection",
    "WorkflowExecutor",
    # Recovery
    "RecoverySweeper",
    "get_recovery_sweeper",
    "set_recovery_sweeper",
]
