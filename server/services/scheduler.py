"""
Scheduled workflow runner using APScheduler.

An interval job checks for workflows whose next_run_at is due, advances
next_run_at atomically (only one process wins the claim) and starts an
execution from the workflow's scheduled trigger node.
"""
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, TYPE_CHECKING

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from apscheduler.jobstores.base import JobLookupError

from constants import NodeType
from core.logging import get_logger
from models.database import as_utc, utcnow
from services.execution import ConfigurationError
from services.handlers.triggers import validate_cron_expression

if TYPE_CHECKING:
    from core.database import Database
    from services.workflow import WorkflowService

logger = get_logger(__name__)

RUNNER_JOB_ID = "scheduled-workflow-runner"

_scheduler: Optional[AsyncIOScheduler] = None


def get_scheduler() -> AsyncIOScheduler:
    """Get or create the singleton scheduler instance."""
    global _scheduler
    if _scheduler is None:
        _scheduler = AsyncIOScheduler(timezone="UTC")
    return _scheduler


def start_scheduler():
    """Start the scheduler if not already running."""
    scheduler = get_scheduler()
    if not scheduler.running:
        scheduler.start()
        logger.info("Scheduler started")


def shutdown_scheduler():
    """Shutdown the scheduler gracefully."""
    scheduler = get_scheduler()
    if scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("Scheduler shutdown")


def next_fire_time(cron_expression: str, now: datetime) -> datetime:
    """First fire time strictly after `now`.

    Raises:
        ConfigurationError: invalid cron expression
    """
    trigger = validate_cron_expression(cron_expression)
    return trigger.get_next_fire_time(None, now + timedelta(seconds=1))


def scheduled_idempotency_key(workflow_id: str, node_id: str, now: datetime) -> str:
    return f"scheduled:{workflow_id}:{node_id}:{now.isoformat()}"


class ScheduledWorkflowRunner:
    """Starts executions for workflows carrying a SCHEDULED_TRIGGER node."""

    def __init__(self, database: "Database", workflow_service: "WorkflowService",
                 interval_seconds: int = 60):
        self.database = database
        self.workflow_service = workflow_service
        self.interval_seconds = interval_seconds

    def start(self) -> None:
        get_scheduler().add_job(
            self.run_once,
            trigger=IntervalTrigger(seconds=self.interval_seconds),
            id=RUNNER_JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        logger.info("Scheduled workflow runner registered", interval_seconds=self.interval_seconds)

    def stop(self) -> None:
        try:
            get_scheduler().remove_job(RUNNER_JOB_ID)
        except JobLookupError:
            pass

    async def _initialize(self, workflow_id: str, nodes, now: datetime) -> None:
        """Workflows saved without next_run_at get one from their first valid cron."""
        for node in nodes:
            try:
                next_run = next_fire_time((node.data or {}).get("cronExpression"), now)
            except ConfigurationError:
                continue
            await self.database.set_next_run_at(workflow_id, next_run)
            logger.info("Scheduled workflow initialized", workflow_id=workflow_id,
                        next_run_at=next_run.isoformat())
            return

    async def run_once(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """One check. Returns {checked, triggered, triggeredWorkflows}."""
        now = now or utcnow()
        grouped: Dict[str, Any] = {}
        for workflow, node in await self.database.get_scheduled_workflows(NodeType.SCHEDULED_TRIGGER.value):
            grouped.setdefault(workflow.id, (workflow, []))[1].append(node)

        checked = 0
        triggered: List[str] = []

        for workflow_id, (workflow, nodes) in grouped.items():
            if workflow.next_run_at is None:
                await self._initialize(workflow_id, nodes, now)
                continue
            if as_utc(workflow.next_run_at) > now:
                continue
            checked += 1

            for node in nodes:
                cron_expression = (node.data or {}).get("cronExpression")
                if not cron_expression:
                    logger.warning("Scheduled node without cronExpression",
                                   workflow_id=workflow_id, node_id=node.id)
                    continue
                try:
                    next_run = next_fire_time(cron_expression, now)
                except ConfigurationError as e:
                    logger.warning("Skipping scheduled node", workflow_id=workflow_id,
                                   node_id=node.id, error=str(e))
                    continue

                if not await self.database.claim_scheduled_run(workflow_id, now, next_run):
                    break

                try:
                    await self.workflow_service.start_execution(
                        workflow_id,
                        {"scheduled": {
                            "timestamp": now.isoformat(),
                            "cronExpression": cron_expression,
                            "nodeId": node.id,
                        }},
                        trigger_type="scheduled",
                        start_node_id=node.id,
                        idempotency_key=scheduled_idempotency_key(workflow_id, node.id, now),
                    )
                except Exception as e:
                    logger.error("Scheduled start failed", workflow_id=workflow_id,
                                 node_id=node.id, error=str(e))
                    break
                triggered.append(workflow_id)
                break

        if triggered:
            logger.info("Scheduled workflows triggered", count=len(triggered), workflow_ids=triggered)
        return {"checked": checked, "triggered": len(triggered), "triggeredWorkflows": triggered}
