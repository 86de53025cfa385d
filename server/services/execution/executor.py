"""Workflow executor: sequential graph walk over durable steps.

Implements:
- Topological walk from the selected start node (Kahn, insertion-order ties)
- Provider aggregation: provider outputs recorded under `_providers` for the
  consumer wired to them
- Per-node retry with exponential backoff (RetryPolicy)
- Status guard: every invoked node ends with exactly one terminal status
- Context additivity check
- Idempotent resume: steps are memoized per execution, so re-driving an
  execution replays recorded results instead of repeating side effects
"""

import asyncio
import time
from collections import defaultdict
from typing import Any, Dict, Mapping, Optional, TYPE_CHECKING

from constants import PROVIDERS_KEY, NodeType, node_channel
from core.config import Settings
from core.database import Database
from core.logging import get_logger, log_node_event
from models.database import Execution
from services.status_broadcaster import StatusBroadcaster
from .cache import ExecutionCache
from .errors import InvalidContextError, NotFoundError, WorkflowEngineError, error_payload
from .graph import WorkflowGraph
from .models import ExecutionContext, ExecutionStatus, NodeStatus, RetryPolicy, get_retry_policy
from .steps import DurableStep

if TYPE_CHECKING:
    from services.node_registry import NodeRegistry

logger = get_logger(__name__)

TERMINAL_NODE_STATUSES = (NodeStatus.SUCCESS.value, NodeStatus.ERROR.value)


class StatusGuard:
    """Publisher handed to one executor invocation.

    Forwards every status, drops a repeated terminal status for the invoked
    node, and lets the executor's caller publish the terminal status the
    executor forgot.
    """

    def __init__(self, publish, node_id: str, node_type: NodeType):
        self._publish = publish
        self.node_id = node_id
        self.channel = node_channel(node_type)
        self.terminal: Optional[str] = None

    async def __call__(self, channel: str, node_id: str, status: str) -> None:
        if node_id == self.node_id and status in TERMINAL_NODE_STATUSES:
            if self.terminal is not None:
                return
            self.terminal = status
        await self._publish(channel, node_id, status)

    async def finish(self, status: str) -> None:
        if self.terminal is None:
            await self(self.channel, self.node_id, status)


def _delta(before: Mapping[str, Any], after: Mapping[str, Any]) -> Dict[str, Any]:
    """Keys a node added or changed."""
    return {k: v for k, v in after.items() if k not in before or before[k] != v}


class WorkflowExecutor:
    """Drives one Execution from PENDING to a terminal status.

    Features:
    - Isolated ExecutionContext per run, threaded node to node
    - Durable steps scoped per node for memoized side effects
    - Heartbeat and active-set bookkeeping for the recovery sweeper
    - Event history for debugging
    """

    def __init__(self, database: Database, cache: ExecutionCache, registry: "NodeRegistry",
                 broadcaster: StatusBroadcaster, settings: Settings):
        self.database = database
        self.cache = cache
        self.registry = registry
        self.broadcaster = broadcaster
        self.settings = settings

    # =========================================================================
    # Execution lifecycle
    # =========================================================================

    async def run_execution(self, execution_id: str) -> Dict[str, Any]:
        """Walk the execution's graph. Safe to call again for the same id.

        Returns the persisted execution as a dict.
        """
        execution = await self.database.get_execution(execution_id)
        if execution is None:
            raise NotFoundError(f"Execution not found: {execution_id}")
        if ExecutionStatus(execution.status).is_terminal:
            logger.info("Execution already finished", execution_id=execution_id, status=execution.status)
            return execution.to_dict()

        await self.database.mark_execution_running(execution_id)
        await self.cache.mark_active(execution_id)
        await self.cache.update_heartbeat(execution_id)
        await self.cache.add_event(execution_id, "workflow_started", {
            "workflow_id": execution.workflow_id,
            "trigger_node_id": execution.trigger_node_id,
        })
        logger.info("Starting workflow execution", execution_id=execution_id,
                    workflow_id=execution.workflow_id, trigger_node_id=execution.trigger_node_id)
        start_time = time.time()

        try:
            context = await self._walk(execution)
        except Exception as e:
            error = error_payload(e, getattr(e, "node_id", None))
            logger.error("Workflow execution failed", execution_id=execution_id,
                         error_type=error["type"], error=error["message"], node_id=error["node_id"])
            await self._finish(execution, ExecutionStatus.FAILED, error=error)
            await self.cache.add_event(execution_id, "workflow_failed", error)
        else:
            await self._finish(execution, ExecutionStatus.SUCCESS, result=context.public())
            await self.cache.add_event(execution_id, "workflow_completed", {
                "duration_seconds": round(time.time() - start_time, 4),
            })
            logger.info("Workflow execution completed", execution_id=execution_id,
                        duration_seconds=round(time.time() - start_time, 4))
        finally:
            await self.cache.mark_inactive(execution_id)
            await self.cache.clear_heartbeat(execution_id)
            self.cache.forget_local_locks(execution_id)

        stored = await self.database.get_execution(execution_id)
        return stored.to_dict()

    async def _finish(self, execution: Execution, status: ExecutionStatus,
                      result: Optional[Dict[str, Any]] = None,
                      error: Optional[Dict[str, Any]] = None) -> None:
        written = await self.database.complete_execution(execution.id, status.value,
                                                         result=result, error=error)
        if written:
            await self.broadcaster.publish_execution_status(
                execution.user_id, execution.id, execution.workflow_id, status.value, error=error
            )

    # =========================================================================
    # Graph walk
    # =========================================================================

    async def _walk(self, execution: Execution) -> ExecutionContext:
        nodes, edges = await self.database.get_workflow_graph(execution.workflow_id)
        graph = WorkflowGraph(nodes, edges)
        order = graph.execution_order(execution.trigger_node_id)

        context = ExecutionContext.from_dict(execution.initial_data)
        step = DurableStep(execution.id, self.cache, lock_timeout=self.settings.step_lock_timeout)
        contributions: Dict[str, Dict[str, Any]] = defaultdict(dict)

        async def publish(channel: str, node_id: str, status: str) -> None:
            await self.broadcaster.publish_node_status(execution.user_id, channel, node_id, status)

        logger.debug("Execution order", execution_id=execution.id, order=order)

        for node_id in order:
            node = graph.nodes[node_id]
            if graph.providers_for(node_id):
                context = context.with_values(**{PROVIDERS_KEY: dict(contributions[node_id])})

            before = context
            context = await self._run_node(execution, node, context, step, publish)

            consumers = graph.consumers_of(node_id)
            if consumers:
                output = _delta(before, context)
                for consumer_id, handle in consumers:
                    contributions[consumer_id][handle] = {
                        "nodeId": node_id,
                        "type": node.type,
                        "data": dict(node.data or {}),
                        "workflowId": execution.workflow_id,
                        "output": output,
                    }

        return context

    async def _run_node(self, execution: Execution, node, context: ExecutionContext,
                        step: DurableStep, publish) -> ExecutionContext:
        executor = self.registry.lookup(node.type)
        node_type = NodeType.parse(node.type)
        data = dict(node.data or {})
        policy = get_retry_policy(
            node_type,
            data.get("retryPolicy"),
            RetryPolicy(max_attempts=self.settings.node_max_retries,
                        initial_delay=self.settings.node_retry_delay),
        )
        node_input = context.reset_lineage()
        attempt = 0

        while True:
            await self.cache.update_heartbeat(execution.id)
            guard = StatusGuard(publish, node.id, node_type)
            log_node_event(logger, node.id, node_type.value, "started",
                           execution_id=execution.id, attempt=attempt + 1)
            try:
                result = await executor(
                    data=data,
                    node_id=node.id,
                    user_id=execution.user_id,
                    context=node_input,
                    step=step.for_node(node.id),
                    publish=guard,
                )
                output = result if isinstance(result, ExecutionContext) else ExecutionContext.from_dict(result)
                self._check_additive(node.id, node_input, output)
            except Exception as e:
                await guard.finish(NodeStatus.ERROR.value)
                if policy.should_retry(e, attempt):
                    delay = policy.calculate_delay(attempt)
                    logger.warning("Node failed, retrying", execution_id=execution.id, node_id=node.id,
                                   attempt=attempt + 1, max_attempts=policy.max_attempts,
                                   delay_seconds=delay, error=str(e))
                    await self.cache.add_event(execution.id, "node_retry", {
                        "node_id": node.id, "attempt": attempt + 1, "error": str(e),
                    })
                    await asyncio.sleep(delay)
                    attempt += 1
                    continue
                log_node_event(logger, node.id, node_type.value, "failed",
                               execution_id=execution.id, error=str(e))
                if isinstance(e, WorkflowEngineError) and e.node_id is None:
                    e.node_id = node.id
                raise
            await guard.finish(NodeStatus.SUCCESS.value)
            log_node_event(logger, node.id, node_type.value, "completed", execution_id=execution.id)
            await self.cache.add_event(execution.id, "node_completed", {"node_id": node.id})
            return output

    @staticmethod
    def _check_additive(node_id: str, before: ExecutionContext, after: ExecutionContext) -> None:
        dropped = [key for key in before if key not in after and key not in after.removed_keys]
        if dropped:
            raise InvalidContextError(
                f"Node dropped context keys without removing them: {sorted(dropped)}", node_id=node_id
            )
