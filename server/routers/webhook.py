"""Webhook trigger endpoints.

Each endpoint starts an execution of `?workflowId=` from the workflow's
matching trigger node. Callers authenticate with the node's shared secret
in the `X-Secret` header; a node without a secret accepts nothing.
"""

import hmac
from typing import Any, Callable, Dict, Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from core.container import container
from core.logging import get_logger
from middleware.rate_limit import limiter, webhook_rate_limit
from models.database import Node
from services.workflow import WorkflowService

logger = get_logger(__name__)
router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])

SECRET_HEADER = "X-Secret"
IDEMPOTENCY_HEADER = "Idempotency-Key"


def _failure(status_code: int, error: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "error": error})


def secret_matches(node: Node, provided: Optional[str]) -> bool:
    """Constant-time comparison against the node's configured secret."""
    expected = (node.data or {}).get("secret")
    if not expected or not provided:
        return False
    return hmac.compare_digest(str(expected).encode(), provided.encode())


# =============================================================================
# Payload shapes (stored under a per-source key of initialData)
# =============================================================================

def webhook_payload(body: Dict[str, Any]) -> Dict[str, Any]:
    return {"webhook": {"raw": body}}


def google_form_payload(body: Dict[str, Any]) -> Dict[str, Any]:
    return {"googleForm": {
        "formId": body.get("formId"),
        "formTitle": body.get("formTitle"),
        "responseId": body.get("responseId"),
        "timestamp": body.get("timestamp"),
        "respondentEmail": body.get("respondentEmail"),
        "responses": body.get("responses"),
        "raw": body,
    }}


GOOGLE_SHEETS_FIELDS = (
    "spreadsheetId", "spreadsheetName", "spreadsheetUrl", "sheetName", "range",
    "changeType", "changedRow", "changedColumn", "changedColumnName", "oldValue",
    "newValue", "changedBy", "timestamp", "rowData", "totalRows", "allData",
    "allDataTruncated",
)


def google_sheets_payload(body: Dict[str, Any]) -> Dict[str, Any]:
    sheet = {field: body.get(field) for field in GOOGLE_SHEETS_FIELDS}
    sheet["raw"] = body
    return {"googleSheets": sheet}


def stripe_payload(body: Dict[str, Any]) -> Dict[str, Any]:
    data = body.get("data") if isinstance(body.get("data"), dict) else {}
    return {"stripe": {
        "eventId": body.get("id"),
        "eventType": body.get("type"),
        "timestamp": body.get("created"),
        "livemode": body.get("livemode"),
        "raw": data.get("object"),
    }}


# =============================================================================
# Ingestion
# =============================================================================

async def ingest(request: Request, workflow_service: WorkflowService, trigger_type: str,
                 build_payload: Callable[[Dict[str, Any]], Dict[str, Any]], label: str) -> JSONResponse:
    workflow_id = request.query_params.get("workflowId")
    if not workflow_id:
        return _failure(400, "Workflow ID is required")

    try:
        body = await request.json()
    except ValueError:
        return _failure(400, "Invalid JSON body")
    if not isinstance(body, dict):
        return _failure(400, "Invalid JSON body")

    try:
        workflow = await workflow_service.database.get_workflow(workflow_id)
        if workflow is None:
            return _failure(404, "Workflow not found")
        node = await workflow_service.find_trigger_node(workflow_id, trigger_type)
        if node is None:
            return _failure(404, "Trigger node not found")

        if not secret_matches(node, request.headers.get(SECRET_HEADER)):
            logger.warning("Webhook secret rejected", workflow_id=workflow_id,
                           node_id=node.id, trigger_type=trigger_type)
            return _failure(401, "Invalid secret")

        idempotency = request.headers.get(IDEMPOTENCY_HEADER)
        execution = await workflow_service.start_execution(
            workflow_id,
            build_payload(body),
            trigger_type=trigger_type,
            start_node_id=node.id,
            idempotency_key=f"{trigger_type}:{workflow_id}:{idempotency}" if idempotency else None,
        )
    except Exception as e:
        logger.error("Webhook processing failed", workflow_id=workflow_id,
                     trigger_type=trigger_type, error=str(e), exc_info=True)
        return _failure(500, f"Failed to process {label}")

    return JSONResponse(status_code=200, content={
        "success": True,
        "message": f"{label} processed successfully",
        "executionId": execution.id,
    })


@router.post("/webhook-trigger")
@limiter.limit(webhook_rate_limit)
async def webhook_trigger(
    request: Request,
    workflow_service: WorkflowService = Depends(lambda: container.workflow_service())
):
    return await ingest(request, workflow_service, "webhook", webhook_payload, "Webhook trigger")


@router.post("/google-form")
@limiter.limit(webhook_rate_limit)
async def google_form_trigger(
    request: Request,
    workflow_service: WorkflowService = Depends(lambda: container.workflow_service())
):
    return await ingest(request, workflow_service, "google_form", google_form_payload,
                        "Google Form submission")


@router.post("/google-sheets")
@limiter.limit(webhook_rate_limit)
async def google_sheets_trigger(
    request: Request,
    workflow_service: WorkflowService = Depends(lambda: container.workflow_service())
):
    return await ingest(request, workflow_service, "google_sheets", google_sheets_payload,
                        "Google Sheets change")


@router.post("/stripe")
@limiter.limit(webhook_rate_limit)
async def stripe_trigger(
    request: Request,
    workflow_service: WorkflowService = Depends(lambda: container.workflow_service())
):
    return await ingest(request, workflow_service, "stripe", stripe_payload, "Stripe event")
