"""Temporal dispatcher for workflow executions.

Starts one ExecutionWorkflow per Execution row. The Temporal workflow id is
derived from the execution id, so a duplicate start is rejected by the
server and the execution still runs once.
"""

from temporalio.client import Client
from temporalio.common import WorkflowIDReusePolicy
from temporalio.exceptions import WorkflowAlreadyStartedError

from core.logging import get_logger
from .workflow import ExecutionWorkflow

logger = get_logger(__name__)


def temporal_workflow_id(execution_id: str) -> str:
    return f"execution-{execution_id}"


class TemporalExecutor:
    """Hands executions to Temporal for durable, distributed execution."""

    def __init__(self, client: Client, task_queue: str = "workflow-executions"):
        self.client = client
        self.task_queue = task_queue

    async def start_execution(self, execution_id: str) -> bool:
        """Start driving an execution. Returns False if it was already started."""
        try:
            await self.client.start_workflow(
                ExecutionWorkflow.run,
                execution_id,
                id=temporal_workflow_id(execution_id),
                task_queue=self.task_queue,
                id_reuse_policy=WorkflowIDReusePolicy.REJECT_DUPLICATE,
            )
        except WorkflowAlreadyStartedError:
            logger.info("Temporal workflow already started", execution_id=execution_id)
            return False

        logger.info("Temporal workflow started", execution_id=execution_id, task_queue=self.task_queue)
        return True
