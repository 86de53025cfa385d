"""Single-node test invocation.

Runs one node's executor against a caller-supplied mock context without
creating an Execution row: no memoization, no realtime fan-out.
"""

from typing import Any, Dict, Optional

from core.database import Database
from core.logging import get_logger
from services.execution.errors import (
    NotFoundError, TestNotSupported, UnauthorizedError, error_payload,
)
from services.execution.graph import WorkflowGraph
from services.execution.models import ExecutionContext
from services.execution.steps import ImmediateStep
from services.node_registry import NodeRegistry

logger = get_logger(__name__)


async def _discard_status(channel: str, node_id: str, status: str) -> None:
    return None


class NodeTestRunner:
    __test__ = False  # not a pytest class

    def __init__(self, database: Database, registry: NodeRegistry):
        self.database = database
        self.registry = registry

    async def _provider_context(self, workflow_id: str, node_id: str) -> Dict[str, Any]:
        """Provider wiring for consumer nodes, so an agent can be tested in isolation."""
        nodes, edges = await self.database.get_workflow_graph(workflow_id)
        graph = WorkflowGraph(nodes, edges)
        providers = {}
        for handle, provider_id in graph.providers_for(node_id).items():
            provider = graph.nodes[provider_id]
            providers[handle] = {
                "nodeId": provider.id,
                "type": provider.type,
                "data": dict(provider.data or {}),
                "workflowId": workflow_id,
                "output": {},
            }
        return providers

    async def run(self, node_id: str, user_id: str,
                  mock_context: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Execute one node.

        Returns:
            {"success": True, "output": {...}} or {"success": False, "error": {...}}

        Raises:
            NotFoundError: node (or its workflow) does not exist
            UnauthorizedError: the workflow belongs to another user
            TestNotSupported: trigger nodes only run as part of an execution
        """
        node = await self.database.get_node(node_id)
        if node is None:
            raise NotFoundError("Node not found", node_id=node_id)
        workflow = await self.database.get_workflow(node.workflow_id)
        if workflow is None:
            raise NotFoundError("Node not found", node_id=node_id)
        if workflow.user_id != user_id:
            raise UnauthorizedError("Not allowed to test this node", node_id=node_id)
        if self.registry.is_trigger(node.type):
            raise TestNotSupported("Trigger nodes cannot be tested individually", node_id=node_id)

        executor = self.registry.lookup(node.type)
        context = ExecutionContext.from_dict(mock_context)
        providers = await self._provider_context(workflow.id, node.id)
        if providers:
            context = context.with_values(_providers=providers)

        logger.info("Testing node", node_id=node_id, node_type=node.type, user_id=user_id)
        try:
            output = await executor(
                data=dict(node.data or {}),
                node_id=node.id,
                user_id=user_id,
                context=context,
                step=ImmediateStep(),
                publish=_discard_status,
            )
        except Exception as e:
            logger.info("Node test failed", node_id=node_id, error=str(e))
            return {"success": False, "error": error_payload(e, node_id)}

        return {"success": True, "output": ExecutionContext.from_dict(output).public()}
