"""Temporal workflow - durable driver for one Execution.

The workflow holds no business logic. It schedules a single activity that
walks the execution's graph through WorkflowExecutor. If a worker dies
mid-run Temporal retries the activity, which re-drives the same execution;
memoized steps keep already-applied side effects from running again.
"""

from datetime import timedelta
from typing import Any, Dict

from temporalio import workflow
from temporalio.common import RetryPolicy

RUN_EXECUTION_ACTIVITY = "run_execution"


@workflow.defn(sandboxed=False)
class ExecutionWorkflow:
    """Runs one workflow execution to a terminal status."""

    @workflow.run
    async def run(self, execution_id: str) -> Dict[str, Any]:
        workflow.logger.info(f"Driving execution {execution_id}")

        return await workflow.execute_activity(
            RUN_EXECUTION_ACTIVITY,
            execution_id,
            start_to_close_timeout=timedelta(hours=1),
            heartbeat_timeout=timedelta(minutes=2),
            # Node-level retries happen inside the activity. These cover a
            # lost worker or a crash between nodes.
            retry_policy=RetryPolicy(
                initial_interval=timedelta(seconds=5),
                maximum_interval=timedelta(minutes=1),
                maximum_attempts=5,
            ),
        )
