"""Workflow Service - Facade for starting and inspecting executions.

Delegates to specialized modules:
- WorkflowExecutor: the sequential graph walk of one Execution
- TemporalExecutor: durable dispatch across workers (optional)
- NodeTestRunner: single-node test invocation
- event_waiter: delivery of external events to waiting steps

Every trigger producer (manual run, webhooks, the scheduled runner) goes
through start_execution, so start-node selection and idempotency live in
one place.
"""

import asyncio
import uuid
from typing import Any, Dict, List, Optional, TYPE_CHECKING

from constants import MAIN_HANDLE, TRIGGER_SOURCES
from core.logging import get_logger
from models.database import Edge, Execution, Node
from services import event_waiter
from services.execution import (
    ConfigurationError, NotFoundError, UnauthorizedError, WorkflowExecutor, validate_connection,
)
from services.node_test_runner import NodeTestRunner

if TYPE_CHECKING:
    from core.config import Settings
    from core.database import Database
    from services.node_registry import NodeRegistry
    from services.temporal import TemporalExecutor

logger = get_logger(__name__)


class WorkflowService:
    """Start-execution command handler and execution queries.

    Executions are dispatched to Temporal when a TemporalExecutor is set,
    otherwise to an asyncio task in this process. Dispatch is idempotent
    per execution id in both modes.
    """

    def __init__(
        self,
        database: "Database",
        executor: WorkflowExecutor,
        registry: "NodeRegistry",
        settings: "Settings",
    ):
        self.database = database
        self.executor = executor
        self.settings = settings
        self._test_runner = NodeTestRunner(database, registry)

        # Temporal executor (set via set_temporal_executor when enabled)
        self._temporal_executor: Optional["TemporalExecutor"] = None

        # execution id -> task driving it in this process
        self._inflight: Dict[str, asyncio.Task] = {}

    def set_temporal_executor(self, executor: Optional["TemporalExecutor"]) -> None:
        self._temporal_executor = executor
        if executor is not None:
            logger.info("Temporal executor configured for workflow execution")

    @property
    def inflight(self) -> List[str]:
        return [eid for eid, task in self._inflight.items() if not task.done()]

    # =========================================================================
    # Start-execution command
    # =========================================================================

    async def find_trigger_node(self, workflow_id: str, trigger_type: str) -> Optional[Node]:
        """First node (insertion order) able to receive `trigger_type`."""
        try:
            accepted = TRIGGER_SOURCES[trigger_type]
        except KeyError:
            raise ConfigurationError(f"Unknown trigger type: {trigger_type}")

        nodes, _ = await self.database.get_workflow_graph(workflow_id)
        accepted = {node_type.value for node_type in accepted}
        for node in nodes:
            if node.type in accepted:
                return node
        return None

    async def _select_start_node(self, workflow_id: str, trigger_type: Optional[str],
                                 start_node_id: Optional[str]) -> Optional[str]:
        if start_node_id is not None:
            node = await self.database.get_node(start_node_id)
            if node is None or node.workflow_id != workflow_id:
                raise NotFoundError("Start node not found", node_id=start_node_id)
            return node.id

        if trigger_type is None:
            return None

        node = await self.find_trigger_node(workflow_id, trigger_type)
        if node is not None:
            return node.id
        if trigger_type == "manual":
            # A manual run of a workflow without a manual trigger walks the whole graph
            return None
        raise NotFoundError(f"Workflow has no {trigger_type} trigger node")

    async def start_execution(
        self,
        workflow_id: str,
        initial_data: Optional[Dict[str, Any]] = None,
        *,
        user_id: Optional[str] = None,
        trigger_type: Optional[str] = None,
        start_node_id: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> Execution:
        """Create an Execution row and dispatch it.

        Args:
            workflow_id: Workflow to run
            initial_data: Seed for the execution context
            user_id: Caller, checked against the workflow owner when given
            trigger_type: Inbound trigger kind (key of TRIGGER_SOURCES)
            start_node_id: Explicit start node, wins over trigger_type
            idempotency_key: Repeating a key returns the existing execution

        Raises:
            NotFoundError: workflow or start node missing
            UnauthorizedError: workflow owned by someone else
        """
        workflow = await self.database.get_workflow(workflow_id)
        if workflow is None:
            raise NotFoundError("Workflow not found")
        if user_id is not None and workflow.user_id != user_id:
            raise UnauthorizedError("Not allowed to run this workflow")

        if idempotency_key:
            existing = await self.database.get_execution_by_idempotency_key(idempotency_key)
            if existing is not None:
                logger.info("Duplicate start ignored", execution_id=existing.id,
                            idempotency_key=idempotency_key)
                return existing

        trigger_node_id = await self._select_start_node(workflow.id, trigger_type, start_node_id)
        execution = await self.database.create_execution(Execution(
            id=str(uuid.uuid4()),
            workflow_id=workflow.id,
            user_id=workflow.user_id,
            trigger_node_id=trigger_node_id,
            initial_data=dict(initial_data or {}),
            idempotency_key=idempotency_key,
        ))
        logger.info("Execution created", execution_id=execution.id, workflow_id=workflow.id,
                    trigger_type=trigger_type, trigger_node_id=trigger_node_id)

        await self.dispatch(execution.id)
        return execution

    # =========================================================================
    # Dispatch
    # =========================================================================

    async def dispatch(self, execution_id: str) -> None:
        """Drive an execution. Also the recovery sweeper's callback."""
        if self._temporal_executor is not None:
            await self._temporal_executor.start_execution(execution_id)
            return

        task = self._inflight.get(execution_id)
        if task is not None and not task.done():
            logger.debug("Execution already running in this process", execution_id=execution_id)
            return

        task = asyncio.create_task(self._drive(execution_id), name=f"execution-{execution_id}")
        self._inflight[execution_id] = task
        task.add_done_callback(lambda _: self._inflight.pop(execution_id, None))

    async def _drive(self, execution_id: str) -> None:
        try:
            await self.executor.run_execution(execution_id)
        except Exception as e:
            logger.error("Execution driver failed", execution_id=execution_id, error=str(e))

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for executions running in this process."""
        tasks = [task for task in self._inflight.values() if not task.done()]
        if not tasks:
            return
        done, pending = await asyncio.wait(tasks, timeout=timeout)
        if pending:
            logger.warning("Executions still running at drain timeout", count=len(pending))

    # =========================================================================
    # Queries and graph edits
    # =========================================================================

    async def get_execution(self, execution_id: str, user_id: str) -> Dict[str, Any]:
        execution = await self.database.get_execution(execution_id)
        if execution is None:
            raise NotFoundError("Execution not found")
        if execution.user_id != user_id:
            raise UnauthorizedError("Not allowed to read this execution")
        return execution.to_dict()

    async def connect_nodes(self, workflow_id: str, user_id: str, source_node_id: str,
                            target_node_id: str, source_handle: str = MAIN_HANDLE,
                            target_handle: str = MAIN_HANDLE) -> Edge:
        """Add an edge, enforcing single-valued provider handles."""
        workflow = await self.database.get_workflow(workflow_id)
        if workflow is None:
            raise NotFoundError("Workflow not found")
        if workflow.user_id != user_id:
            raise UnauthorizedError("Not allowed to edit this workflow")

        nodes, edges = await self.database.get_workflow_graph(workflow_id)
        edge = Edge(
            id=str(uuid.uuid4()),
            workflow_id=workflow_id,
            source_node_id=source_node_id,
            source_handle=source_handle or MAIN_HANDLE,
            target_node_id=target_node_id,
            target_handle=target_handle or MAIN_HANDLE,
        )
        validate_connection({node.id: node for node in nodes}, edges, edge)
        return await self.database.add_edge(edge)

    async def test_node(self, node_id: str, user_id: str,
                        mock_context: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        return await self._test_runner.run(node_id, user_id, mock_context)

    async def dispatch_event(self, event_name: str, data: Dict[str, Any]) -> int:
        """Resolve steps waiting on `event_name`. Returns the number resolved."""
        resolved = await event_waiter.dispatch(event_name, data)
        logger.info("Event dispatched", event_name=event_name, resolved=resolved)
        return resolved
