"""Error taxonomy for workflow execution.

Retriability is a property of the exception class: the scheduler retries
anything that is not a NonRetriableError, up to the node type's retry policy.
"""

from typing import Any, Dict, Optional


class WorkflowEngineError(Exception):
    """Base class for engine errors."""

    retriable = True

    def __init__(self, message: str, node_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.node_id = node_id

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": type(self).__name__,
            "message": self.message,
            "node_id": self.node_id,
        }


class RetriableError(WorkflowEngineError):
    retriable = True


class NonRetriableError(WorkflowEngineError):
    retriable = False


class UpstreamServiceError(RetriableError):
    """Transient failure of a vendor API, database or network hop."""

    def __init__(self, message: str, node_id: Optional[str] = None,
                 status_code: Optional[int] = None):
        super().__init__(message, node_id)
        self.status_code = status_code


class ConfigurationError(NonRetriableError):
    """Missing or invalid node configuration or credential."""


class UnauthorizedError(NonRetriableError):
    pass


class UnknownNodeType(NonRetriableError):
    pass


class MalformedGraph(NonRetriableError):
    pass


class TestNotSupported(NonRetriableError):
    __test__ = False  # not a pytest class


class NotFoundError(NonRetriableError):
    pass


class InvalidContextError(NonRetriableError):
    """An executor dropped context keys without calling remove()."""


def is_retriable(error: BaseException) -> bool:
    return getattr(error, "retriable", True)


def error_payload(error: BaseException, node_id: Optional[str] = None) -> Dict[str, Any]:
    """Serializable error description persisted on the Execution row."""
    if isinstance(error, WorkflowEngineError):
        payload = error.to_dict()
        if payload["node_id"] is None:
            payload["node_id"] = node_id
        return payload
    return {"type": type(error).__name__, "message": str(error), "node_id": node_id}
