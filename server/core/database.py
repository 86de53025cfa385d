"""Async database service with SQLModel and SQLAlchemy 2.0."""

import logging
import time
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple
from contextlib import asynccontextmanager

from sqlmodel import SQLModel, select
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker

from core.config import Settings
from core.logging import get_logger
from models.database import Workflow, Node, Edge, Execution, Credential, EncryptionSalt
from models.cache import CacheEntry

logger = get_logger(__name__)

TERMINAL_STATUSES = ("SUCCESS", "FAILED")


class Database:
    """Async database service with SQLModel."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.engine = None
        self.async_session = None

    async def startup(self):
        """Initialize database connection and create tables."""
        try:
            for name in ("aiosqlite", "sqlalchemy.engine", "sqlalchemy.pool"):
                logging.getLogger(name).setLevel(logging.WARNING)

            self.engine = create_async_engine(
                self.settings.database_url,
                echo=self.settings.database_echo,
                future=True
            )
            self.async_session = async_sessionmaker(
                bind=self.engine,
                class_=AsyncSession,
                expire_on_commit=False
            )

            async with self.engine.begin() as conn:
                await conn.run_sync(SQLModel.metadata.create_all)

            logger.info("Database initialized successfully")

        except Exception as e:
            logger.error("Database startup failed", error=str(e))
            raise

    async def shutdown(self):
        """Close database connections."""
        if self.engine:
            await self.engine.dispose()
            logger.info("Database connections closed")

    @asynccontextmanager
    async def get_session(self):
        """Get async database session."""
        if not self.async_session:
            raise RuntimeError("Database not initialized")

        async with self.async_session() as session:
            try:
                yield session
            except Exception:
                await session.rollback()
                raise

    # ============================================================================
    # Workflow Graph
    # ============================================================================

    async def save_workflow_graph(self, workflow: Workflow, nodes: Iterable[Node],
                                  edges: Iterable[Edge]) -> Workflow:
        """Insert a workflow together with its nodes and edges."""
        async with self.get_session() as session:
            session.add(workflow)
            await session.flush()
            for node in nodes:
                session.add(node)
            await session.flush()
            for edge in edges:
                session.add(edge)
            await session.commit()
            return workflow

    async def get_workflow(self, workflow_id: str) -> Optional[Workflow]:
        async with self.get_session() as session:
            return await session.get(Workflow, workflow_id)

    async def get_workflow_graph(self, workflow_id: str) -> Tuple[List[Node], List[Edge]]:
        """Load nodes and edges in insertion order."""
        async with self.get_session() as session:
            nodes = await session.execute(
                select(Node).where(Node.workflow_id == workflow_id).order_by(Node.position, Node.id)
            )
            edges = await session.execute(
                select(Edge).where(Edge.workflow_id == workflow_id).order_by(Edge.created_at, Edge.id)
            )
            return list(nodes.scalars().all()), list(edges.scalars().all())

    async def get_node(self, node_id: str) -> Optional[Node]:
        async with self.get_session() as session:
            return await session.get(Node, node_id)

    async def add_edge(self, edge: Edge) -> Edge:
        async with self.get_session() as session:
            session.add(edge)
            await session.commit()
            return edge

    # ============================================================================
    # Scheduled Workflows
    # ============================================================================

    async def get_scheduled_workflows(self, node_type: str) -> List[Tuple[Workflow, Node]]:
        """All (workflow, trigger node) pairs that carry a node of `node_type`."""
        async with self.get_session() as session:
            result = await session.execute(
                select(Workflow, Node)
                .join(Node, Node.workflow_id == Workflow.id)
                .where(Node.type == node_type)
                .order_by(Workflow.id, Node.position, Node.id)
            )
            return [(row[0], row[1]) for row in result.all()]

    async def set_next_run_at(self, workflow_id: str, next_run_at: Optional[datetime]) -> None:
        async with self.get_session() as session:
            await session.execute(
                update(Workflow).where(Workflow.id == workflow_id).values(next_run_at=next_run_at)
            )
            await session.commit()

    async def claim_scheduled_run(self, workflow_id: str, now: datetime,
                                  next_run_at: datetime) -> bool:
        """Advance next_run_at only if it is still due. True when this caller won."""
        async with self.get_session() as session:
            result = await session.execute(
                update(Workflow)
                .where(Workflow.id == workflow_id, Workflow.next_run_at <= now)
                .values(next_run_at=next_run_at)
            )
            await session.commit()
            return result.rowcount == 1

    # ============================================================================
    # Executions
    # ============================================================================

    async def create_execution(self, execution: Execution) -> Execution:
        """Insert an execution; on idempotency-key conflict return the existing row."""
        try:
            async with self.get_session() as session:
                session.add(execution)
                await session.commit()
                return execution
        except IntegrityError:
            if not execution.idempotency_key:
                raise
            existing = await self.get_execution_by_idempotency_key(execution.idempotency_key)
            if existing is None:
                raise
            logger.info("Execution already exists for idempotency key",
                        execution_id=existing.id, idempotency_key=execution.idempotency_key)
            return existing

    async def get_execution(self, execution_id: str) -> Optional[Execution]:
        async with self.get_session() as session:
            return await session.get(Execution, execution_id)

    async def get_execution_by_idempotency_key(self, key: str) -> Optional[Execution]:
        async with self.get_session() as session:
            result = await session.execute(select(Execution).where(Execution.idempotency_key == key))
            return result.scalar_one_or_none()

    async def mark_execution_running(self, execution_id: str) -> bool:
        """PENDING -> RUNNING. A re-drive of a RUNNING execution keeps its started_at."""
        async with self.get_session() as session:
            result = await session.execute(
                update(Execution)
                .where(Execution.id == execution_id, Execution.status == "PENDING")
                .values(status="RUNNING", started_at=datetime.now(timezone.utc))
            )
            await session.commit()
            return result.rowcount == 1

    async def complete_execution(self, execution_id: str, status: str,
                                 result: Optional[Dict[str, Any]] = None,
                                 error: Optional[Dict[str, Any]] = None) -> bool:
        """Write the terminal status once. Returns False if already terminal."""
        if status not in TERMINAL_STATUSES:
            raise ValueError(f"Not a terminal status: {status}")

        async with self.get_session() as session:
            outcome = await session.execute(
                update(Execution)
                .where(Execution.id == execution_id, Execution.status.not_in(TERMINAL_STATUSES))
                .values(
                    status=status,
                    result=result,
                    error=error,
                    completed_at=datetime.now(timezone.utc),
                )
            )
            await session.commit()
            written = outcome.rowcount == 1

        if not written:
            logger.warning("Terminal status already recorded", execution_id=execution_id, status=status)
        return written

    async def get_unfinished_executions(self, created_before: Optional[datetime] = None) -> List[Execution]:
        async with self.get_session() as session:
            stmt = select(Execution).where(Execution.status.in_(("PENDING", "RUNNING")))
            if created_before is not None:
                stmt = stmt.where(Execution.created_at < created_before)
            result = await session.execute(stmt.order_by(Execution.created_at))
            return list(result.scalars().all())

    # ============================================================================
    # Credentials
    # ============================================================================

    async def save_credential(self, credential: Credential) -> Credential:
        async with self.get_session() as session:
            session.add(credential)
            await session.commit()
            return credential

    async def get_credential(self, credential_id: str, user_id: str) -> Optional[Credential]:
        """Fetch a credential only if it belongs to the user."""
        async with self.get_session() as session:
            result = await session.execute(
                select(Credential).where(Credential.id == credential_id, Credential.user_id == user_id)
            )
            return result.scalar_one_or_none()

    async def get_or_create_salt(self, generate) -> bytes:
        """Return the persisted key-derivation salt, creating it on first use."""
        async with self.get_session() as session:
            row = await session.get(EncryptionSalt, 1)
            if row:
                return bytes.fromhex(row.salt)
            salt = generate()
            session.add(EncryptionSalt(id=1, salt=salt.hex()))
            await session.commit()
            logger.info("Created credential encryption salt")
            return salt

    # ============================================================================
    # Cache Entries (SQLite-backed Redis alternative)
    # ============================================================================

    async def get_cache_entry(self, key: str, strict: bool = False) -> Optional[str]:
        """Get cache value by key. Returns None if expired or not found.

        Storage errors are logged and read as a miss unless `strict`.
        """
        try:
            async with self.get_session() as session:
                entry = await session.get(CacheEntry, key)
                if not entry:
                    return None

                if entry.expires_at and entry.expires_at < time.time():
                    await session.delete(entry)
                    await session.commit()
                    return None

                return entry.value

        except Exception as e:
            logger.error("Failed to get cache entry", key=key, error=str(e))
            if strict:
                raise
            return None

    async def set_cache_entry(self, key: str, value: str, ttl: Optional[int] = None,
                              strict: bool = False) -> bool:
        """Set cache value with optional TTL in seconds."""
        try:
            expires_at = time.time() + ttl if ttl else None

            async with self.get_session() as session:
                existing = await session.get(CacheEntry, key)
                if existing:
                    existing.value = value
                    existing.expires_at = expires_at
                    existing.created_at = time.time()
                else:
                    session.add(CacheEntry(key=key, value=value, expires_at=expires_at))
                await session.commit()
                return True

        except Exception as e:
            logger.error("Failed to set cache entry", key=key, error=str(e))
            if strict:
                raise
            return False

    async def delete_cache_entry(self, key: str) -> bool:
        """Delete cache entry by key."""
        try:
            async with self.get_session() as session:
                entry = await session.get(CacheEntry, key)
                if entry:
                    await session.delete(entry)
                    await session.commit()
                return entry is not None

        except Exception as e:
            logger.error("Failed to delete cache entry", key=key, error=str(e))
            return False
