"""Trigger node handlers.

Trigger payloads are placed in the initial context by the producer (webhook
route, scheduler, manual execute). The trigger executor records receipt in a
step and passes the context through unchanged.
"""

from apscheduler.triggers.cron import CronTrigger

from constants import NodeType
from core.logging import get_logger
from services.execution.errors import ConfigurationError
from services.execution.models import ExecutionContext
from .common import reporting_status

logger = get_logger(__name__)

# Node type -> step name recorded for the trigger
TRIGGER_STEPS = {
    NodeType.INITIAL: "manual-trigger",
    NodeType.MANUAL_TRIGGER: "manual-trigger",
    NodeType.WEBHOOK_TRIGGER: "webhook-trigger",
    NodeType.GOOGLE_FORM_TRIGGER: "google-form-trigger",
    NodeType.GOOGLE_SHEETS_TRIGGER: "google-sheets-trigger",
    NodeType.STRIPE_TRIGGER: "stripe-trigger",
    NodeType.SCHEDULED_TRIGGER: "scheduled-trigger",
}


def validate_cron_expression(expression) -> CronTrigger:
    """Parse a standard 5-field crontab expression.

    Raises:
        ConfigurationError: "Invalid cron expression" for anything else
    """
    if not isinstance(expression, str):
        raise ConfigurationError("Scheduled Trigger: cronExpression must be a string")
    if len(expression.split()) != 5:
        raise ConfigurationError("Invalid cron expression")
    try:
        return CronTrigger.from_crontab(expression, timezone="UTC")
    except ValueError as e:
        raise ConfigurationError("Invalid cron expression") from e


async def handle_trigger(*, node_type: NodeType, data, node_id: str, user_id: str,
                         context: ExecutionContext, step, publish) -> ExecutionContext:
    """Pass-through executor shared by every trigger type."""
    async with reporting_status(publish, node_type, node_id):
        if node_type == NodeType.SCHEDULED_TRIGGER:
            validate_cron_expression(data.get("cronExpression"))

        snapshot = await step.run(TRIGGER_STEPS[node_type], lambda: context.to_dict())
        logger.debug("Trigger received", node_id=node_id, node_type=node_type.value)
        return context.extend(snapshot)
