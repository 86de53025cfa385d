"""SQLModel database models and tables."""

from datetime import datetime, timezone
from typing import Optional, Dict, Any
from sqlmodel import SQLModel, Field, Column, DateTime, JSON
from sqlalchemy import func


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite drops tzinfo on round-trip; every stored timestamp is UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class Workflow(SQLModel, table=True):
    """Workflow definitions owned by a user."""

    __tablename__ = "workflows"

    id: str = Field(primary_key=True, max_length=255)
    user_id: str = Field(index=True, max_length=255)
    name: str = Field(max_length=255)
    next_run_at: Optional[datetime] = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), index=True, nullable=True)
    )
    created_at: datetime = Field(
        default_factory=utcnow,
        sa_column=Column(DateTime(timezone=True), server_default=func.now())
    )
    updated_at: datetime = Field(
        default_factory=utcnow,
        sa_column=Column(DateTime(timezone=True), onupdate=func.now())
    )


class Node(SQLModel, table=True):
    """A typed step inside a workflow graph."""

    __tablename__ = "nodes"

    id: str = Field(primary_key=True, max_length=255)
    workflow_id: str = Field(foreign_key="workflows.id", index=True, max_length=255)
    type: str = Field(index=True, max_length=64)
    name: str = Field(default="", max_length=255)
    data: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    position: int = Field(default=0)  # insertion order, used for deterministic tie-breaks
    created_at: datetime = Field(
        default_factory=utcnow,
        sa_column=Column(DateTime(timezone=True), server_default=func.now())
    )
    updated_at: datetime = Field(
        default_factory=utcnow,
        sa_column=Column(DateTime(timezone=True), onupdate=func.now())
    )


class Edge(SQLModel, table=True):
    """Directed connection between two node handles."""

    __tablename__ = "edges"

    id: str = Field(primary_key=True, max_length=255)
    workflow_id: str = Field(foreign_key="workflows.id", index=True, max_length=255)
    source_node_id: str = Field(max_length=255)
    source_handle: str = Field(default="main", max_length=64)
    target_node_id: str = Field(index=True, max_length=255)
    target_handle: str = Field(default="main", max_length=64)
    created_at: datetime = Field(
        default_factory=utcnow,
        sa_column=Column(DateTime(timezone=True), server_default=func.now())
    )


class Execution(SQLModel, table=True):
    """One run of a workflow."""

    __tablename__ = "executions"

    id: str = Field(primary_key=True, max_length=255)
    workflow_id: str = Field(foreign_key="workflows.id", index=True, max_length=255)
    user_id: str = Field(index=True, max_length=255)
    status: str = Field(default="PENDING", index=True, max_length=20)
    trigger_node_id: Optional[str] = Field(default=None, max_length=255)
    initial_data: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    idempotency_key: Optional[str] = Field(default=None, unique=True, max_length=512)
    result: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))
    error: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))
    started_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    completed_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    created_at: datetime = Field(
        default_factory=utcnow,
        sa_column=Column(DateTime(timezone=True), server_default=func.now())
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "workflowId": self.workflow_id,
            "status": self.status,
            "triggerNodeId": self.trigger_node_id,
            "result": self.result,
            "error": self.error,
            "startedAt": self.started_at.isoformat() if self.started_at else None,
            "completedAt": self.completed_at.isoformat() if self.completed_at else None,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }


class Credential(SQLModel, table=True):
    """Encrypted third-party credential owned by a user."""

    __tablename__ = "credentials"

    id: str = Field(primary_key=True, max_length=255)
    user_id: str = Field(index=True, max_length=255)
    name: str = Field(max_length=255)
    type: str = Field(max_length=50)
    value: str = Field(max_length=10000)  # Fernet ciphertext
    created_at: datetime = Field(
        default_factory=utcnow,
        sa_column=Column(DateTime(timezone=True), server_default=func.now())
    )
    updated_at: datetime = Field(
        default_factory=utcnow,
        sa_column=Column(DateTime(timezone=True), onupdate=func.now())
    )


class EncryptionSalt(SQLModel, table=True):
    """Persistent salt for credential key derivation."""

    __tablename__ = "encryption_salt"

    id: int = Field(default=1, primary_key=True)
    salt: str = Field(max_length=64)
    created_at: datetime = Field(
        default_factory=utcnow,
        sa_column=Column(DateTime(timezone=True), server_default=func.now())
    )
