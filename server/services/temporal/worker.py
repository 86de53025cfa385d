"""Temporal worker for durable execution.

The worker polls the task queue and executes:
- ExecutionWorkflow: schedules the run_execution activity
- ExecutionActivities: walks the execution graph with the shared executor

Workers run embedded in the API process (TEMPORAL_ENABLED=true) or
standalone via `python -m services.temporal.worker` for horizontal scaling.

References:
- https://docs.temporal.io/develop/python/python-sdk-sync-vs-async
- https://docs.temporal.io/develop/worker-performance
"""

import asyncio
from typing import Optional

from temporalio.client import Client
from temporalio.worker import Worker

from core.logging import get_logger
from services.execution.executor import WorkflowExecutor
from .activities import ExecutionActivities
from .workflow import ExecutionWorkflow

logger = get_logger(__name__)


class TemporalWorkerManager:
    """Manages the Temporal worker lifecycle with a shared executor."""

    def __init__(self, client: Client, executor: WorkflowExecutor,
                 task_queue: str = "workflow-executions", max_concurrent: int = 50):
        self.client = client
        self.task_queue = task_queue
        self.max_concurrent = max_concurrent
        self._activities = ExecutionActivities(executor)
        self._worker: Optional[Worker] = None
        self._worker_task: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self._worker_task is not None and not self._worker_task.done()

    async def start(self) -> None:
        """Start the Temporal worker in the background."""
        if self.is_running:
            logger.warning("Temporal worker already running")
            return

        self._worker = Worker(
            self.client,
            task_queue=self.task_queue,
            workflows=[ExecutionWorkflow],
            activities=[self._activities.run_execution],
            max_concurrent_activities=self.max_concurrent,
            max_concurrent_workflow_tasks=10,
        )
        logger.info("Starting Temporal worker", task_queue=self.task_queue,
                    max_concurrent=self.max_concurrent)
        self._worker_task = asyncio.create_task(self._run_worker(), name="temporal-worker")

    async def _run_worker(self) -> None:
        try:
            await self._worker.run()
        except asyncio.CancelledError:
            logger.info("Temporal worker cancelled")
        except Exception as e:
            logger.error("Temporal worker error", error=str(e))
            raise

    async def stop(self) -> None:
        if not self.is_running:
            return

        logger.info("Stopping Temporal worker")
        self._worker_task.cancel()
        try:
            await self._worker_task
        except asyncio.CancelledError:
            pass
        self._worker_task = None
        self._worker = None
        logger.info("Temporal worker stopped")


async def run_standalone_worker() -> None:
    """Run the worker as its own process, sharing the API's settings and stores."""
    from core.container import container
    from core.logging import configure_logging

    settings = container.settings()
    configure_logging(settings)

    await container.database().startup()
    await container.cache().startup()
    encryption = container.encryption_service()
    salt = await container.database().get_or_create_salt(encryption.generate_salt)
    encryption.initialize(settings.api_key_encryption_key, salt)

    client = await container.temporal_client().connect()
    manager = TemporalWorkerManager(client, container.workflow_executor(),
                                    task_queue=settings.temporal_task_queue)
    await manager.start()
    logger.info("Standalone Temporal worker running", server_address=settings.temporal_server_address,
                task_queue=settings.temporal_task_queue)
    try:
        await manager._worker_task
    finally:
        await manager.stop()
        await container.cache().shutdown()
        await container.database().shutdown()


if __name__ == "__main__":
    asyncio.run(run_standalone_worker())
