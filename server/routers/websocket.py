"""Realtime status channel.

Clients mint a short-lived token with POST /api/realtime/token, then
subscribe on WS /ws/realtime?token=... . The socket carries only the
channels the token grants and closes with {"type": "token_expired"} when
the token lapses; the client re-requests a token and reconnects.
"""

import asyncio
import time
from typing import List, Optional

import orjson
from fastapi import APIRouter, Depends, Request, WebSocket, WebSocketDisconnect
from pydantic import BaseModel

from core.container import container
from core.logging import get_logger
from services.status_broadcaster import StatusBroadcaster
from services.user_auth import UserAuthService

logger = get_logger(__name__)

router = APIRouter(tags=["realtime"])

# Close code for a missing or invalid realtime token
INVALID_TOKEN_CLOSE_CODE = 4401


class RealtimeTokenRequest(BaseModel):
    channels: Optional[List[str]] = None


@router.post("/api/realtime/token")
async def create_realtime_token(
    request: Request,
    body: Optional[RealtimeTokenRequest] = None,
    user_auth: UserAuthService = Depends(lambda: container.user_auth_service())
):
    """Mint a realtime token for the authenticated user."""
    channels = body.channels if body else None
    return user_auth.create_realtime_token(request.state.user_id, channels)


@router.websocket("/ws/realtime")
async def realtime_socket(websocket: WebSocket, token: Optional[str] = None):
    user_auth: UserAuthService = container.user_auth_service()
    broadcaster: StatusBroadcaster = container.status_broadcaster()

    claims = user_auth.verify_realtime_token(token) if token else None
    if claims is None:
        await websocket.close(code=INVALID_TOKEN_CLOSE_CODE)
        return

    await websocket.accept()
    subscription = await broadcaster.subscribe(websocket, claims)

    try:
        while True:
            remaining = subscription.expires_at - time.time()
            if remaining <= 0:
                await broadcaster.expire(subscription)
                return
            try:
                raw = await asyncio.wait_for(websocket.receive_text(), timeout=remaining)
            except asyncio.TimeoutError:
                continue
            try:
                message = orjson.loads(raw)
            except orjson.JSONDecodeError:
                continue
            if isinstance(message, dict) and message.get("type") == "ping":
                async with subscription.send_lock:
                    await websocket.send_json({"type": "pong", "timestamp": time.time()})
    except WebSocketDisconnect:
        logger.debug("Realtime client disconnected", user_id=subscription.user_id)
    finally:
        await broadcaster.unsubscribe(subscription)
