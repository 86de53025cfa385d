"""Temporal activities for workflow execution.

Class-based activities following Temporal's dependency injection pattern:
the WorkflowExecutor is created once per worker and shared by every
activity invocation.
"""

import asyncio
from typing import Any, Dict

from temporalio import activity

from core.logging import get_logger
from services.execution.executor import WorkflowExecutor
from .workflow import RUN_EXECUTION_ACTIVITY

logger = get_logger(__name__)

HEARTBEAT_INTERVAL = 30  # seconds


class ExecutionActivities:
    """Activities bound to a shared WorkflowExecutor."""

    def __init__(self, executor: WorkflowExecutor):
        self.executor = executor

    @activity.defn(name=RUN_EXECUTION_ACTIVITY)
    async def run_execution(self, execution_id: str) -> Dict[str, Any]:
        """Walk one execution. A retried attempt resumes from memoized steps."""
        info = activity.info()
        logger.info("Execution activity started", execution_id=execution_id, attempt=info.attempt)

        heartbeat = asyncio.create_task(self._heartbeat(execution_id))
        try:
            return await self.executor.run_execution(execution_id)
        finally:
            heartbeat.cancel()
            try:
                await heartbeat
            except asyncio.CancelledError:
                pass

    @staticmethod
    async def _heartbeat(execution_id: str) -> None:
        while True:
            activity.heartbeat(execution_id)
            await asyncio.sleep(HEARTBEAT_INTERVAL)
