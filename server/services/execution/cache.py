"""Execution cache: durable step memos, locks and heartbeats.

Key schema:
    step:{exec}:{key}            -> JSON {"output": <value>} (memoized step result)
    lock:step:{exec}:{key}       -> STRING (lock token, Redis only)
    heartbeat:execution:{exec}   -> STRING (unix timestamp)
    executions:active            -> SET {execution_ids}
    execution:{exec}:events      -> STREAM (node lifecycle log, Redis only)
"""

import asyncio
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional, Set

from core.cache import CacheService
from core.logging import get_logger
from services.execution.errors import UpstreamServiceError

logger = get_logger(__name__)

ACTIVE_EXECUTIONS_KEY = "executions:active"
_MISSING = object()


class ExecutionCache:
    """Cache-backed persistence for the durable step runtime."""

    def __init__(self, cache_service: CacheService, step_ttl: int = 604800,
                 heartbeat_ttl: int = 300):
        self.cache = cache_service
        self.step_ttl = step_ttl
        self.heartbeat_ttl = heartbeat_ttl
        self._local_locks: Dict[str, asyncio.Lock] = {}

    # =========================================================================
    # STEP RESULTS
    # =========================================================================

    @staticmethod
    def step_key(execution_id: str, key: str) -> str:
        return f"step:{execution_id}:{key}"

    async def get_step_result(self, execution_id: str, key: str) -> Any:
        """Return the memoized output, or the module sentinel `_MISSING`.

        The output is wrapped so that None and other falsy results still count
        as recorded. Backend failures raise UpstreamServiceError rather than
        reading as a miss.
        """
        try:
            entry = await self.cache.get(self.step_key(execution_id, key), strict=True)
        except Exception as e:
            raise UpstreamServiceError(f"Step memo read failed: {key}") from e
        if isinstance(entry, dict) and "output" in entry:
            logger.debug("Step memo hit", execution_id=execution_id, step=key)
            return entry["output"]
        return _MISSING

    async def save_step_result(self, execution_id: str, key: str, output: Any) -> None:
        """Record a step output. Raises UpstreamServiceError when the write is not stored."""
        try:
            saved = await self.cache.set(self.step_key(execution_id, key), {"output": output},
                                         ttl=self.step_ttl, strict=True)
        except Exception as e:
            raise UpstreamServiceError(f"Step memo write failed: {key}") from e
        if not saved:
            logger.error("Failed to memoize step result", execution_id=execution_id, step=key)
            raise UpstreamServiceError(f"Step memo write failed: {key}")

    @staticmethod
    def is_missing(value: Any) -> bool:
        return value is _MISSING

    # =========================================================================
    # DISTRIBUTED LOCKING
    # =========================================================================

    @asynccontextmanager
    async def distributed_lock(self, lock_name: str, timeout: int = 60,
                               poll_interval: float = 0.1):
        """Serialize concurrent holders of `lock_name`.

        Redis: SET NX EX with a random token, polled until `timeout`.
        Otherwise: a process-local asyncio.Lock.

        Raises:
            TimeoutError: If the lock cannot be acquired in time
        """
        lock_key = f"lock:{lock_name}"
        lock_token = str(uuid.uuid4())
        acquired = False

        try:
            if self.cache.is_redis_available():
                deadline = time.monotonic() + timeout
                while not acquired:
                    acquired = bool(await self.cache.redis.set(lock_key, lock_token, ex=timeout, nx=True))
                    if acquired:
                        break
                    if time.monotonic() >= deadline:
                        raise TimeoutError(f"Could not acquire lock: {lock_name}")
                    await asyncio.sleep(poll_interval)
            else:
                lock = self._local_locks.setdefault(lock_name, asyncio.Lock())
                try:
                    await asyncio.wait_for(lock.acquire(), timeout=timeout)
                except asyncio.TimeoutError:
                    raise TimeoutError(f"Could not acquire lock: {lock_name}")
                acquired = True

            logger.debug("Lock acquired", lock_name=lock_name, token=lock_token[:8])
            yield lock_token

        finally:
            if acquired:
                if self.cache.is_redis_available():
                    current = await self.cache.redis.get(lock_key)
                    if current == lock_token:
                        await self.cache.redis.delete(lock_key)
                else:
                    lock = self._local_locks.get(lock_name)
                    if lock is not None and lock.locked():
                        lock.release()

    def forget_local_locks(self, execution_id: str) -> None:
        """Drop process-local locks of a finished execution."""
        prefix = f"step:{execution_id}:"
        for name in [n for n in self._local_locks if n.startswith(prefix)]:
            if not self._local_locks[name].locked():
                del self._local_locks[name]

    # =========================================================================
    # HEARTBEATS AND ACTIVE SET (crash detection)
    # =========================================================================

    async def update_heartbeat(self, execution_id: str) -> bool:
        key = f"heartbeat:execution:{execution_id}"
        return await self.cache.set(key, time.time(), ttl=self.heartbeat_ttl)

    async def get_heartbeat(self, execution_id: str) -> Optional[float]:
        value = await self.cache.get(f"heartbeat:execution:{execution_id}")
        return float(value) if value is not None else None

    async def clear_heartbeat(self, execution_id: str) -> bool:
        return await self.cache.delete(f"heartbeat:execution:{execution_id}")

    async def mark_active(self, execution_id: str) -> bool:
        return await self.cache.set_add(ACTIVE_EXECUTIONS_KEY, execution_id)

    async def mark_inactive(self, execution_id: str) -> bool:
        return await self.cache.set_remove(ACTIVE_EXECUTIONS_KEY, execution_id)

    async def get_active_executions(self) -> Set[str]:
        return set(await self.cache.set_members(ACTIVE_EXECUTIONS_KEY))

    # =========================================================================
    # EVENT HISTORY (debugging and reconciliation)
    # =========================================================================

    async def add_event(self, execution_id: str, event_type: str,
                        data: Dict[str, Any]) -> Optional[str]:
        stream_key = f"execution:{execution_id}:events"
        event = {"type": event_type, "timestamp": time.time(), **data}
        return await self.cache.stream_add(stream_key, event, maxlen=1000)
