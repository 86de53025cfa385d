"""SQLite-backed key-value table used when Redis is not configured."""

import time
from typing import Optional
from sqlmodel import SQLModel, Field


class CacheEntry(SQLModel, table=True):
    """Key-value row with optional expiration.

    Holds memoized step results, lock tokens and heartbeats for
    single-process deployments.
    """

    __tablename__ = "cache_entries"

    key: str = Field(primary_key=True, max_length=512)
    value: str = Field(max_length=5000000)  # JSON serialized step output
    expires_at: Optional[float] = Field(default=None, index=True)  # Unix timestamp
    created_at: float = Field(default_factory=time.time)
