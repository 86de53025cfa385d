"""Workflow execution routes."""

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from constants import MAIN_HANDLE
from core.container import container
from core.logging import get_logger
from services.execution import NotFoundError, UnauthorizedError, WorkflowEngineError
from services.workflow import WorkflowService

logger = get_logger(__name__)
router = APIRouter(prefix="/api", tags=["workflow"])


class ExecuteWorkflowRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    initial_data: Dict[str, Any] = Field(default_factory=dict, alias="initialData")
    start_node_id: Optional[str] = Field(default=None, alias="startNodeId")
    idempotency_key: Optional[str] = Field(default=None, alias="idempotencyKey")


class ConnectNodesRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    source_node_id: str = Field(alias="sourceNodeId")
    target_node_id: str = Field(alias="targetNodeId")
    source_handle: str = Field(default=MAIN_HANDLE, alias="sourceHandle")
    target_handle: str = Field(default=MAIN_HANDLE, alias="targetHandle")


class TestNodeRequest(BaseModel):
    context: Dict[str, Any] = Field(default_factory=dict)


def _error_response(error: WorkflowEngineError) -> JSONResponse:
    if isinstance(error, NotFoundError):
        status_code = 404
    elif isinstance(error, UnauthorizedError):
        status_code = 403
    else:
        status_code = 400
    return JSONResponse(status_code=status_code, content={"success": False, "error": error.to_dict()})


@router.post("/workflows/{workflow_id}/execute")
async def execute_workflow(
    workflow_id: str,
    body: ExecuteWorkflowRequest,
    request: Request,
    workflow_service: WorkflowService = Depends(lambda: container.workflow_service())
):
    """Manual run. Starts from the manual trigger unless a start node is given."""
    try:
        execution = await workflow_service.start_execution(
            workflow_id,
            body.initial_data,
            user_id=request.state.user_id,
            trigger_type=None if body.start_node_id else "manual",
            start_node_id=body.start_node_id,
            idempotency_key=body.idempotency_key,
        )
    except WorkflowEngineError as e:
        return _error_response(e)
    return {"success": True, "executionId": execution.id, "status": execution.status}


@router.post("/workflows/{workflow_id}/edges")
async def connect_nodes(
    workflow_id: str,
    body: ConnectNodesRequest,
    request: Request,
    workflow_service: WorkflowService = Depends(lambda: container.workflow_service())
):
    """Add an edge; a provider handle accepts a single provider."""
    try:
        edge = await workflow_service.connect_nodes(
            workflow_id,
            request.state.user_id,
            body.source_node_id,
            body.target_node_id,
            source_handle=body.source_handle,
            target_handle=body.target_handle,
        )
    except WorkflowEngineError as e:
        return _error_response(e)
    return {"success": True, "edgeId": edge.id}


@router.post("/workflows/nodes/{node_id}/test")
async def test_node(
    node_id: str,
    request: Request,
    body: Optional[TestNodeRequest] = None,
    workflow_service: WorkflowService = Depends(lambda: container.workflow_service())
):
    """Run one node against a mock context without creating an execution."""
    try:
        return await workflow_service.test_node(
            node_id, request.state.user_id, body.context if body else None
        )
    except WorkflowEngineError as e:
        return _error_response(e)


@router.get("/executions/{execution_id}")
async def get_execution(
    execution_id: str,
    request: Request,
    workflow_service: WorkflowService = Depends(lambda: container.workflow_service())
):
    """Persisted execution state, for reconciling missed realtime frames."""
    try:
        return await workflow_service.get_execution(execution_id, request.state.user_id)
    except WorkflowEngineError as e:
        return _error_response(e)


@router.post("/events/{event_name}")
async def dispatch_event(
    event_name: str,
    data: Dict[str, Any],
    workflow_service: WorkflowService = Depends(lambda: container.workflow_service())
):
    """Deliver an external event to steps waiting on it."""
    resolved = await workflow_service.dispatch_event(event_name, data)
    return {"success": True, "event": event_name, "resolved": resolved}
