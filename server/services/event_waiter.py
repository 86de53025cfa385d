"""Event Waiter Service - named events that suspended executions wait on.

`step.wait_for_event` registers a waiter here; `POST /api/events/{name}`
dispatches. Uses Redis Streams when available so events reach waiters in any
worker process, and falls back to asyncio.Future otherwise.

Architecture:
- Redis mode: events appended to `events:{name}`; each waiter owns a consumer
  group so every waiter sees every event (broadcast)
- Memory mode: events resolve in-process asyncio.Future waiters
"""
import asyncio
import json
import time
import uuid
from dataclasses import dataclass, field
from typing import Dict, Any, Optional, List, TYPE_CHECKING

from core.logging import get_logger

if TYPE_CHECKING:
    from core.cache import CacheService

logger = get_logger(__name__)


# =============================================================================
# CACHE SERVICE REFERENCE
# =============================================================================

_cache_service: Optional["CacheService"] = None


def set_cache_service(cache: Optional["CacheService"]) -> None:
    """Set the cache service for Redis Streams support. Called at startup."""
    global _cache_service
    _cache_service = cache
    logger.info("Event waiter initialized", backend=get_backend_mode())


def is_redis_mode() -> bool:
    return _cache_service is not None and _cache_service.is_streams_available()


# =============================================================================
# MATCHING
# =============================================================================

def _lookup(data: Dict[str, Any], path: str) -> Any:
    current: Any = data
    for part in path.split("."):
        if not isinstance(current, dict) or part not in current:
            return None
        current = current[part]
    return current


def matches(data: Dict[str, Any], match: Optional[Dict[str, Any]]) -> bool:
    """True when every dotted path in `match` equals the event's value."""
    if not match:
        return True
    return all(_lookup(data, path) == expected for path, expected in match.items())


# =============================================================================
# WAITER DATA STRUCTURES
# =============================================================================

@dataclass
class Waiter:
    """Single event waiter."""
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    event_name: str = ""
    execution_id: str = ""
    match: Dict[str, Any] = field(default_factory=dict)
    future: Optional[asyncio.Future] = None  # memory mode only
    cancelled: bool = False
    created_at: float = field(default_factory=time.time)


_waiters: Dict[str, Waiter] = {}

EVENTS_STREAM_PREFIX = "events:"
CONSUMER_GROUP_PREFIX = "waiter_group_"


def _stream_name(event_name: str) -> str:
    return f"{EVENTS_STREAM_PREFIX}{event_name}"


# =============================================================================
# REGISTRATION AND WAITING
# =============================================================================

async def register(event_name: str, execution_id: str = "",
                   match: Optional[Dict[str, Any]] = None) -> Waiter:
    """Register interest in the next `event_name` event matching `match`."""
    waiter = Waiter(event_name=event_name, execution_id=execution_id, match=dict(match or {}))

    if is_redis_mode():
        await _cache_service.stream_create_group(
            _stream_name(event_name), f"{CONSUMER_GROUP_PREFIX}{waiter.id}", start_id="$"
        )
    else:
        waiter.future = asyncio.get_running_loop().create_future()

    _waiters[waiter.id] = waiter
    logger.debug("Registered event waiter", waiter_id=waiter.id, event_name=event_name,
                 execution_id=execution_id)
    return waiter


async def wait_for_event(waiter: Waiter, timeout: Optional[float] = None) -> Dict[str, Any]:
    """Wait for a matching event.

    Raises:
        asyncio.TimeoutError: If timeout exceeded
        asyncio.CancelledError: If the waiter was cancelled
    """
    try:
        if is_redis_mode():
            return await _wait_redis(waiter, timeout)
        return await asyncio.wait_for(waiter.future, timeout)
    finally:
        await _cleanup_waiter(waiter)


async def _wait_redis(waiter: Waiter, timeout: Optional[float]) -> Dict[str, Any]:
    stream = _stream_name(waiter.event_name)
    group = f"{CONSUMER_GROUP_PREFIX}{waiter.id}"
    consumer = f"consumer_{waiter.id}"
    started = time.monotonic()

    while not waiter.cancelled:
        if timeout is not None and time.monotonic() - started > timeout:
            raise asyncio.TimeoutError(f"Waiter {waiter.id} timed out after {timeout}s")

        result = await _cache_service.stream_read_group(group, consumer, {stream: ">"},
                                                        count=10, block=1000)
        for _stream, messages in result or []:
            for msg_id, fields in messages:
                await _cache_service.stream_ack(stream, group, msg_id)
                event = {}
                for k, v in fields.items():
                    try:
                        event[k] = json.loads(v)
                    except (json.JSONDecodeError, TypeError):
                        event[k] = v
                if matches(event, waiter.match):
                    logger.info("Event waiter matched", waiter_id=waiter.id, message_id=msg_id)
                    return event

    raise asyncio.CancelledError(f"Waiter {waiter.id} cancelled")


async def _cleanup_waiter(waiter: Waiter) -> None:
    _waiters.pop(waiter.id, None)
    if is_redis_mode():
        await _cache_service.stream_destroy_group(_stream_name(waiter.event_name),
                                                  f"{CONSUMER_GROUP_PREFIX}{waiter.id}")


# =============================================================================
# EVENT DISPATCH
# =============================================================================

async def dispatch(event_name: str, data: Dict[str, Any]) -> int:
    """Deliver an event. Returns resolved waiter count (memory) or 1 if streamed (Redis)."""
    if is_redis_mode():
        msg_id = await _cache_service.stream_add(_stream_name(event_name), data)
        return 1 if msg_id else 0

    resolved = 0
    for waiter in list(_waiters.values()):
        if waiter.event_name != event_name or not waiter.future or waiter.future.done():
            continue
        if matches(data, waiter.match):
            waiter.future.set_result(data)
            resolved += 1

    logger.debug("Dispatched event", event_name=event_name, resolved=resolved)
    return resolved


def cancel_for_execution(execution_id: str) -> int:
    """Cancel all waiters belonging to an execution."""
    cancelled = 0
    for waiter in [w for w in _waiters.values() if w.execution_id == execution_id]:
        waiter.cancelled = True
        if waiter.future and not waiter.future.done():
            waiter.future.cancel()
        _waiters.pop(waiter.id, None)
        cancelled += 1
    return cancelled


def get_active_waiters() -> List[Dict[str, Any]]:
    return [
        {
            "id": w.id,
            "event_name": w.event_name,
            "execution_id": w.execution_id,
            "age_seconds": time.time() - w.created_at,
            "mode": get_backend_mode(),
        }
        for w in _waiters.values()
    ]


def clear_all() -> int:
    """Clear all waiters (tests and shutdown)."""
    count = len(_waiters)
    for waiter in _waiters.values():
        waiter.cancelled = True
        if waiter.future and not waiter.future.done():
            waiter.future.cancel()
    _waiters.clear()
    return count


def get_backend_mode() -> str:
    return "redis" if is_redis_mode() else "memory"
