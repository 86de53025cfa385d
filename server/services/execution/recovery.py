"""Recovery sweeper for crash recovery.

Runs as background task to:
- Detect abandoned executions (PENDING or RUNNING with no fresh heartbeat)
- Re-drive them; memoized steps make the re-drive resume where the crash
  left off
"""

import asyncio
import time
from datetime import timedelta
from typing import Awaitable, Callable, List, Optional

from core.database import Database
from core.logging import get_logger
from models.database import as_utc, utcnow
from .cache import ExecutionCache

logger = get_logger(__name__)


class RecoverySweeper:
    """Background task that recovers abandoned workflow executions.

    Sweeper pattern:
    - Periodically scans unfinished Execution rows older than the heartbeat timeout
    - Skips executions whose heartbeat is still fresh
    - Hands the rest to the recovery callback (the dispatcher)
    """

    def __init__(self, database: Database, cache: ExecutionCache,
                 heartbeat_timeout: int = 300,
                 sweep_interval: int = 60):
        self.database = database
        self.cache = cache
        self.heartbeat_timeout = heartbeat_timeout
        self.sweep_interval = sweep_interval
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._on_recovery: Optional[Callable[[str], Awaitable[None]]] = None

    def set_recovery_callback(self, callback: Callable[[str], Awaitable[None]]) -> None:
        """Set callback to invoke with the id of an execution that needs re-driving."""
        self._on_recovery = callback

    async def start(self) -> None:
        if self._running:
            logger.warning("Recovery sweeper already running")
            return

        self._running = True
        self._task = asyncio.create_task(self._sweep_loop())
        logger.info("Recovery sweeper started",
                    heartbeat_timeout=self.heartbeat_timeout,
                    sweep_interval=self.sweep_interval)

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        logger.info("Recovery sweeper stopped")

    async def _sweep_loop(self) -> None:
        while self._running:
            try:
                await self.sweep_once()
            except Exception as e:
                logger.error("Sweep iteration failed", error=str(e))
            await asyncio.sleep(self.sweep_interval)

    async def find_abandoned(self) -> List[str]:
        """Unfinished executions with a missing or stale heartbeat."""
        cutoff = utcnow() - timedelta(seconds=self.heartbeat_timeout)
        candidates = await self.database.get_unfinished_executions(created_before=cutoff)
        now = time.time()
        abandoned = []

        for execution in candidates:
            last_heartbeat = await self.cache.get_heartbeat(execution.id)
            if last_heartbeat is not None and now - last_heartbeat <= self.heartbeat_timeout:
                continue
            age = (utcnow() - as_utc(execution.created_at)).total_seconds()
            logger.warning("Execution abandoned", execution_id=execution.id, status=execution.status,
                           age_seconds=round(age),
                           heartbeat_age=round(now - last_heartbeat) if last_heartbeat else None)
            abandoned.append(execution.id)

        return abandoned

    async def sweep_once(self) -> int:
        """Single sweep iteration. Returns the number of executions handed off."""
        if self._on_recovery is None:
            return 0

        recovered = 0
        for execution_id in await self.find_abandoned():
            try:
                await self._on_recovery(execution_id)
                recovered += 1
            except Exception as e:
                logger.error("Recovery callback failed", execution_id=execution_id, error=str(e))
        if recovered:
            logger.info("Recovery sweep re-drove executions", count=recovered)
        return recovered


# Global sweeper instance (initialized by main.py)
_sweeper: Optional[RecoverySweeper] = None


def get_recovery_sweeper() -> Optional[RecoverySweeper]:
    return _sweeper


def set_recovery_sweeper(sweeper: Optional[RecoverySweeper]) -> None:
    global _sweeper
    _sweeper = sweeper
