"""PostgreSQL chat memory node.

Stores and reads an agent's conversation turns in a table keyed by
(workflow_id, node_id). The agent drives it through `_postgresOperation`,
`_messageToSave` and `_messageRole` context keys.
"""

from typing import Any, Dict, List

import psycopg
from psycopg import sql
from psycopg.rows import dict_row

from constants import NodeType
from core.config import Settings
from core.logging import get_logger
from services.credentials import CredentialStore
from services.execution.errors import NonRetriableError, UpstreamServiceError, WorkflowEngineError
from services.execution.models import ExecutionContext
from .common import load_credential, reporting_status, require

logger = get_logger(__name__)

DEFAULT_TABLE = "nodebase_chat_histories"
DEFAULT_CONTEXT_WINDOW = 20
SCRATCH_KEYS = ("_postgresOperation", "_messageToSave", "_messageRole")


async def _ensure_table(conn: psycopg.AsyncConnection, table: str) -> None:
    await conn.execute(sql.SQL(
        "CREATE TABLE IF NOT EXISTS {} ("
        " id SERIAL PRIMARY KEY,"
        " workflow_id TEXT NOT NULL,"
        " node_id TEXT NOT NULL,"
        " role TEXT NOT NULL DEFAULT 'user',"
        " content TEXT NOT NULL,"
        " created_at TIMESTAMPTZ NOT NULL DEFAULT NOW())"
    ).format(sql.Identifier(table)))
    await conn.execute(sql.SQL(
        "CREATE INDEX IF NOT EXISTS {} ON {} (workflow_id, node_id, created_at DESC)"
    ).format(sql.Identifier(f"idx_{table}_workflow_node"), sql.Identifier(table)))


async def _fetch_history(conn: psycopg.AsyncConnection, table: str, workflow_id: str,
                         node_id: str, limit: int) -> List[Dict[str, Any]]:
    """Last `limit` turns in chronological order."""
    cursor = await conn.execute(sql.SQL(
        "SELECT role, content, created_at FROM {} "
        "WHERE workflow_id = %s AND node_id = %s "
        "ORDER BY created_at DESC, id DESC LIMIT %s"
    ).format(sql.Identifier(table)), (workflow_id, node_id, limit))
    rows = await cursor.fetchall()
    return [
        {"role": row["role"], "content": row["content"], "createdAt": row["created_at"].isoformat()}
        for row in reversed(rows)
    ]


async def _save_message(conn: psycopg.AsyncConnection, table: str, workflow_id: str,
                        node_id: str, role: str, content: str) -> None:
    await conn.execute(sql.SQL(
        "INSERT INTO {} (workflow_id, node_id, role, content) VALUES (%s, %s, %s, %s)"
    ).format(sql.Identifier(table)), (workflow_id, node_id, role, content))


async def handle_postgres(*, node_type: NodeType, data, node_id: str, user_id: str,
                          context: ExecutionContext, step, publish,
                          credentials: CredentialStore, settings: Settings) -> ExecutionContext:
    async with reporting_status(publish, node_type, node_id):
        credential_id = require(data, "credentialId", "PostgreSQL Node: Credential is required", node_id)
        host = require(data, "host", "PostgreSQL Node: Host is required", node_id)

        record = await load_credential(step, credentials, "get-postgres-credential",
                                       credential_id, user_id, "PostgreSQL Node", node_id)

        table = data.get("tableName") or DEFAULT_TABLE
        context_window = int(data.get("contextWindow") or DEFAULT_CONTEXT_WINDOW)
        workflow_id = context.get("_workflowId") or ""
        agent_node_id = context.get("_agentNodeId") or node_id
        operation = context.get("_postgresOperation") or "query"
        message = context.get("_messageToSave") or ""
        role = context.get("_messageRole") or "user"

        async def run_operation() -> Dict[str, Any]:
            conn = await psycopg.AsyncConnection.connect(
                host=host,
                port=int(data.get("port") or 5432),
                dbname=data.get("database") or "postgres",
                user=record["name"],
                password=credentials.reveal(record),
                connect_timeout=settings.db_connect_timeout,
                autocommit=True,
                row_factory=dict_row,
            )
            try:
                await _ensure_table(conn, table)
                if operation == "save" and message:
                    await _save_message(conn, table, workflow_id, agent_node_id, role, message)
                    return {"saved": True, "chatHistory": []}
                history = await _fetch_history(conn, table, workflow_id, agent_node_id, context_window)
                return {"saved": False, "chatHistory": history}
            finally:
                try:
                    await conn.close()
                except Exception as e:
                    logger.warning("Postgres connection close failed", node_id=node_id, error=str(e))

        try:
            result = await step.run(f"postgres-{operation}-{role}-{node_id}", run_operation)
        except WorkflowEngineError:
            raise
        except psycopg.OperationalError as e:
            raise UpstreamServiceError(f"PostgreSQL Node: Connection failed: {e}", node_id=node_id) from e
        except Exception as e:
            logger.error("Postgres operation failed", node_id=node_id, operation=operation, error=str(e))
            raise NonRetriableError("PostgreSQL Node: Operation failed", node_id=node_id) from e

        logger.debug("Postgres memory operation", node_id=node_id, operation=operation,
                     saved=result["saved"], history_length=len(result["chatHistory"]))
        present = [key for key in SCRATCH_KEYS if key in context]
        return context.remove(*present).with_values(_postgresResult={
            "chatHistory": result["chatHistory"],
            "saved": result["saved"],
            "tableName": table,
        })
