"""MongoDB chat memory node. Same protocol as the PostgreSQL node."""

from datetime import datetime, timezone
from typing import Any, Dict, List

from motor.motor_asyncio import AsyncIOMotorClient
from pymongo import ASCENDING, DESCENDING
from pymongo.errors import ConnectionFailure, PyMongoError

from constants import NodeType
from core.config import Settings
from core.logging import get_logger
from services.credentials import CredentialStore
from services.execution.errors import NonRetriableError, UpstreamServiceError, WorkflowEngineError
from services.execution.models import ExecutionContext
from .common import load_credential, reporting_status, require

logger = get_logger(__name__)

DEFAULT_COLLECTION = "nodebase_chat_histories"
DEFAULT_CONTEXT_WINDOW = 20
SCRATCH_KEYS = ("_mongodbOperation", "_messageToSave", "_messageRole")


async def _history(collection, workflow_id: str, node_id: str, limit: int) -> List[Dict[str, Any]]:
    cursor = collection.find(
        {"workflowId": workflow_id, "nodeId": node_id},
        {"_id": 0, "role": 1, "content": 1, "createdAt": 1},
    ).sort("createdAt", DESCENDING).limit(limit)
    documents = await cursor.to_list(length=limit)
    return [
        {
            "role": doc.get("role", "user"),
            "content": doc.get("content", ""),
            "createdAt": doc["createdAt"].isoformat() if doc.get("createdAt") else None,
        }
        for doc in reversed(documents)
    ]


async def handle_mongodb(*, node_type: NodeType, data, node_id: str, user_id: str,
                         context: ExecutionContext, step, publish,
                         credentials: CredentialStore, settings: Settings) -> ExecutionContext:
    async with reporting_status(publish, node_type, node_id):
        credential_id = require(data, "credentialId", "MongoDB Node: Credential is required", node_id)
        database = require(data, "database", "MongoDB Node: Database is required", node_id)

        record = await load_credential(step, credentials, f"get-mongodb-credential-{node_id}",
                                       credential_id, user_id, "MongoDB Node", node_id)

        collection_name = data.get("collectionName") or DEFAULT_COLLECTION
        context_window = int(data.get("contextWindow") or DEFAULT_CONTEXT_WINDOW)
        workflow_id = context.get("_workflowId") or ""
        agent_node_id = context.get("_agentNodeId") or node_id
        operation = context.get("_mongodbOperation") or "query"
        message = context.get("_messageToSave") or ""
        role = context.get("_messageRole") or "user"

        async def run_operation() -> Dict[str, Any]:
            timeout_ms = settings.db_connect_timeout * 1000
            client = AsyncIOMotorClient(
                credentials.reveal(record),
                serverSelectionTimeoutMS=timeout_ms,
                connectTimeoutMS=timeout_ms,
            )
            try:
                collection = client[database][collection_name]
                await collection.create_index(
                    [("workflowId", ASCENDING), ("nodeId", ASCENDING), ("createdAt", DESCENDING)]
                )
                if operation == "save" and message:
                    await collection.insert_one({
                        "workflowId": workflow_id,
                        "nodeId": agent_node_id,
                        "role": role,
                        "content": message,
                        "createdAt": datetime.now(timezone.utc),
                    })
                    return {"saved": True, "chatHistory": []}
                history = await _history(collection, workflow_id, agent_node_id, context_window)
                return {"saved": False, "chatHistory": history}
            finally:
                try:
                    client.close()
                except Exception as e:
                    logger.warning("MongoDB client close failed", node_id=node_id, error=str(e))

        try:
            result = await step.run(f"mongodb-{operation}-{role}-{node_id}", run_operation)
        except WorkflowEngineError:
            raise
        except ConnectionFailure as e:
            raise UpstreamServiceError(f"MongoDB Node: Connection failed: {e}", node_id=node_id) from e
        except PyMongoError as e:
            logger.error("MongoDB operation failed", node_id=node_id, operation=operation, error=str(e))
            raise NonRetriableError("MongoDB Node: Operation failed", node_id=node_id) from e

        present = [key for key in SCRATCH_KEYS if key in context]
        return context.remove(*present).with_values(_mongodbResult={
            "chatHistory": result["chatHistory"],
            "saved": result["saved"],
            "collectionName": collection_name,
        })
