"""Durable step primitives handed to node executors.

A step's first successful result is memoized under `step:{execution}:{key}`.
Re-driving the same execution returns the recorded value instead of running
the side effect again. Concurrent attempts of one step serialize on the
execution cache's distributed lock; the loser reads the winner's memo.
"""

import asyncio
import inspect
import time
from collections import Counter
from typing import Any, Awaitable, Callable, Dict, Optional, Union

from core.logging import get_logger
from services import event_waiter
from services.execution.cache import ExecutionCache

logger = get_logger(__name__)

StepFn = Callable[[], Union[Any, Awaitable[Any]]]


async def _call(fn: StepFn) -> Any:
    result = fn()
    if inspect.isawaitable(result):
        result = await result
    return result


class DurableStep:
    """Memoizing step runtime scoped to one node of one execution.

    Keys are namespaced by node id, and a key reused within one invocation is
    suffixed with its occurrence count so replays stay deterministic.
    """

    def __init__(self, execution_id: str, cache: ExecutionCache, scope: str = "",
                 lock_timeout: int = 300):
        self.execution_id = execution_id
        self.cache = cache
        self.scope = scope
        self.lock_timeout = lock_timeout
        self._seen: Counter = Counter()

    def for_node(self, node_id: str) -> "DurableStep":
        return DurableStep(self.execution_id, self.cache, scope=node_id,
                           lock_timeout=self.lock_timeout)

    def _resolve_key(self, key: str) -> str:
        self._seen[key] += 1
        occurrence = self._seen[key]
        scoped = f"{self.scope}:{key}" if self.scope else key
        return scoped if occurrence == 1 else f"{scoped}:{occurrence - 1}"

    async def run(self, key: str, fn: StepFn) -> Any:
        """Run `fn` at most once per (execution, key) and return its result.

        Exceptions propagate unmemoized so the scheduler may retry.
        """
        step_key = self._resolve_key(key)

        recorded = await self.cache.get_step_result(self.execution_id, step_key)
        if not self.cache.is_missing(recorded):
            return recorded

        async with self.cache.distributed_lock(f"step:{self.execution_id}:{step_key}",
                                               timeout=self.lock_timeout):
            recorded = await self.cache.get_step_result(self.execution_id, step_key)
            if not self.cache.is_missing(recorded):
                return recorded

            started = time.monotonic()
            output = await _call(fn)
            await self.cache.save_step_result(self.execution_id, step_key, output)
            logger.debug("Step completed", execution_id=self.execution_id, step=step_key,
                         duration_seconds=round(time.monotonic() - started, 4))
            return output

    async def sleep(self, key: str, seconds: float) -> None:
        """Durable sleep: the wake-up time is memoized, a resume only waits the remainder."""
        wake_at = await self.run(key, lambda: time.time() + seconds)
        remaining = wake_at - time.time()
        if remaining > 0:
            await asyncio.sleep(remaining)

    async def wait_for_event(self, key: str, event: str, timeout: Optional[float] = None,
                             match: Optional[Dict[str, Any]] = None) -> Optional[Dict[str, Any]]:
        """Suspend until a matching `event` arrives. Returns None on timeout."""

        async def wait() -> Optional[Dict[str, Any]]:
            waiter = await event_waiter.register(event, execution_id=self.execution_id, match=match)
            try:
                return await event_waiter.wait_for_event(waiter, timeout)
            except asyncio.TimeoutError:
                logger.info("Event wait timed out", execution_id=self.execution_id, event_name=event)
                return None

        return await self.run(key, wait)


class ImmediateStep:
    """Non-durable stand-in used for single-node test runs."""

    async def run(self, key: str, fn: StepFn) -> Any:
        return await _call(fn)

    async def sleep(self, key: str, seconds: float) -> None:
        return None

    async def wait_for_event(self, key: str, event: str, timeout: Optional[float] = None,
                             match: Optional[Dict[str, Any]] = None) -> Optional[Dict[str, Any]]:
        return None

    def for_node(self, node_id: str) -> "ImmediateStep":
        return self
