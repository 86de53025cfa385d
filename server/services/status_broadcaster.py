"""WebSocket Status Broadcaster Service.

Fans out node and execution status events to subscribed WebSocket clients.
Every subscription belongs to one user, lists the channels its realtime token
grants, and expires with that token. Events reach a subscriber only if they
were published for that subscriber's user on a granted channel.
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, FrozenSet, List, Optional, Set

import orjson
from fastapi import WebSocket

from constants import NODE_STATUSES, STATUS_TOPIC, EXECUTIONS_TOPIC, user_channel
from core.logging import get_logger

logger = get_logger(__name__)

Listener = Callable[[str, Dict[str, Any]], Awaitable[None]]


@dataclass(eq=False)
class Subscription:
    websocket: WebSocket
    user_id: str
    channels: FrozenSet[str]
    expires_at: float
    send_lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    @property
    def expired(self) -> bool:
        return time.time() >= self.expires_at


class StatusBroadcaster:
    """Manages realtime subscriptions and publishes status events."""

    def __init__(self, send_timeout: float = 5.0):
        self.send_timeout = send_timeout
        self._subscriptions: Set[Subscription] = set()
        self._lock = asyncio.Lock()
        self._listeners: List[Listener] = []

    # =========================================================================
    # Subscriptions
    # =========================================================================

    async def subscribe(self, websocket: WebSocket, claims: Dict[str, Any]) -> Subscription:
        """Register an accepted WebSocket using verified realtime token claims."""
        subscription = Subscription(
            websocket=websocket,
            user_id=str(claims["sub"]),
            channels=frozenset(claims.get("channels", [])),
            expires_at=float(claims["exp"]),
        )
        async with self._lock:
            self._subscriptions.add(subscription)
        logger.info("Realtime client subscribed", user_id=subscription.user_id,
                    channels=len(subscription.channels), total=len(self._subscriptions))
        return subscription

    async def unsubscribe(self, subscription: Subscription) -> None:
        async with self._lock:
            self._subscriptions.discard(subscription)
        logger.info("Realtime client unsubscribed", user_id=subscription.user_id,
                    total=len(self._subscriptions))

    async def expire(self, subscription: Subscription) -> None:
        """Tell the client its token lapsed and close the socket."""
        await self.unsubscribe(subscription)

        async def notify_and_close():
            async with subscription.send_lock:
                await subscription.websocket.send_text(orjson.dumps({"type": "token_expired"}).decode())
                await subscription.websocket.close(code=4001)

        try:
            await asyncio.wait_for(notify_and_close(), timeout=self.send_timeout)
        except Exception as e:
            logger.debug("Expired subscription already closed", error=str(e))

    def add_listener(self, listener: Listener) -> None:
        """In-process observer of every published event (audit, tests)."""
        self._listeners.append(listener)

    # =========================================================================
    # Publishing
    # =========================================================================

    @staticmethod
    async def _send(subscription: Subscription, payload: str) -> None:
        async with subscription.send_lock:
            await subscription.websocket.send_text(payload)

    async def _deliver(self, user_id: str, channel: str, message: Dict[str, Any]) -> int:
        for listener in list(self._listeners):
            try:
                await listener(user_id, message)
            except Exception as e:
                logger.warning("Status listener failed", error=str(e))

        async with self._lock:
            targets = [s for s in self._subscriptions
                       if s.user_id == user_id and channel in s.channels]
        if not targets:
            return 0

        payload = orjson.dumps(message).decode()
        failed: Set[Subscription] = set()
        expired: List[Subscription] = []

        async def send(subscription: Subscription):
            if subscription.expired:
                expired.append(subscription)
                return
            try:
                await asyncio.wait_for(self._send(subscription, payload), timeout=self.send_timeout)
            except asyncio.TimeoutError:
                logger.warning("Realtime send timed out, dropping subscriber", user_id=user_id,
                               timeout=self.send_timeout)
                failed.add(subscription)
            except Exception as e:
                logger.warning("Realtime send failed", user_id=user_id, error=str(e))
                failed.add(subscription)

        try:
            async with asyncio.TaskGroup() as tg:
                for subscription in targets:
                    tg.create_task(send(subscription))
        except* Exception as eg:
            for exc in eg.exceptions:
                logger.warning("Realtime TaskGroup exception", error=str(exc))

        if failed:
            async with self._lock:
                self._subscriptions -= failed
        for subscription in expired:
            await self.expire(subscription)

        return len(targets) - len(failed) - len(expired)

    async def publish_node_status(self, user_id: str, channel: str, node_id: str, status: str) -> int:
        """Publish a `loading|success|error` transition on a node-type channel."""
        if status not in NODE_STATUSES:
            raise ValueError(f"Invalid node status: {status}")
        message = {
            "channel": channel,
            "topic": STATUS_TOPIC,
            "data": {"nodeId": node_id, "status": status},
        }
        return await self._deliver(user_id, channel, message)

    async def publish_execution_status(self, user_id: str, execution_id: str,
                                       workflow_id: str, status: str,
                                       error: Optional[Dict[str, Any]] = None) -> int:
        channel = user_channel(user_id)
        data: Dict[str, Any] = {"executionId": execution_id, "workflowId": workflow_id, "status": status}
        if error:
            data["error"] = error
        message = {"channel": channel, "topic": EXECUTIONS_TOPIC, "data": data}
        return await self._deliver(user_id, channel, message)

    @property
    def connection_count(self) -> int:
        return len(self._subscriptions)


_broadcaster: Optional[StatusBroadcaster] = None


def get_status_broadcaster(send_timeout: float = 5.0) -> StatusBroadcaster:
    global _broadcaster
    if _broadcaster is None:
        _broadcaster = StatusBroadcaster(send_timeout=send_timeout)
    return _broadcaster
