"""
Realtime tokens and status fan-out.
"""
import asyncio
import time

import orjson
import pytest

from constants import NODE_CHANNELS, user_channel
from conftest import USER_ID


class FakeWebSocket:
    def __init__(self, fail: bool = False, stall: bool = False):
        self.sent = []
        self.closed_with = None
        self.fail = fail
        self.stall = stall

    async def send_text(self, text):
        if self.stall:
            await asyncio.sleep(3600)
        if self.fail:
            raise RuntimeError("connection lost")
        self.sent.append(orjson.loads(text))

    async def close(self, code=1000):
        self.closed_with = code


def claims_for(user_id, channels, ttl=60):
    return {"sub": user_id, "channels": list(channels), "exp": time.time() + ttl}


class TestRealtimeTokens:

    def test_token_is_scoped_to_requested_channels(self, user_auth):
        issued = user_auth.create_realtime_token(USER_ID, ["openai-chat-model-execution", "bogus"])
        assert issued["channels"] == ["openai-chat-model-execution", user_channel(USER_ID)]

        claims = user_auth.verify_realtime_token(issued["token"])
        assert claims["sub"] == USER_ID
        assert claims["channels"] == issued["channels"]
        assert claims["exp"] - claims["iat"] == 60

    def test_default_grants_every_node_channel(self, user_auth):
        issued = user_auth.create_realtime_token(USER_ID)
        assert set(issued["channels"]) == NODE_CHANNELS | {user_channel(USER_ID)}

    def test_session_and_realtime_tokens_are_not_interchangeable(self, user_auth):
        session = user_auth.create_session_token(USER_ID)
        realtime = user_auth.create_realtime_token(USER_ID)["token"]

        assert user_auth.verify_token(session)["sub"] == USER_ID
        assert user_auth.verify_realtime_token(session) is None
        assert user_auth.verify_token(realtime) is None

    def test_expired_session_is_rejected(self, user_auth):
        assert user_auth.verify_token(user_auth.create_session_token(USER_ID, expires_minutes=-1)) is None

    def test_garbage_token(self, user_auth):
        assert user_auth.verify_token("not-a-jwt") is None
        assert user_auth.verify_realtime_token("not-a-jwt") is None


class TestBroadcaster:

    @pytest.mark.asyncio
    async def test_delivers_only_to_owner_on_granted_channel(self, broadcaster):
        mine = FakeWebSocket()
        other_user = FakeWebSocket()
        other_channel = FakeWebSocket()
        await broadcaster.subscribe(mine, claims_for(USER_ID, ["http-request-execution"]))
        await broadcaster.subscribe(other_user, claims_for("user-2", ["http-request-execution"]))
        await broadcaster.subscribe(other_channel, claims_for(USER_ID, ["slack-execution"]))

        delivered = await broadcaster.publish_node_status(USER_ID, "http-request-execution", "n1", "loading")

        assert delivered == 1
        assert mine.sent == [{
            "channel": "http-request-execution", "topic": "status",
            "data": {"nodeId": "n1", "status": "loading"},
        }]
        assert other_user.sent == []
        assert other_channel.sent == []

    @pytest.mark.asyncio
    async def test_execution_status_goes_to_user_channel(self, broadcaster):
        socket = FakeWebSocket()
        await broadcaster.subscribe(socket, claims_for(USER_ID, [user_channel(USER_ID)]))

        await broadcaster.publish_execution_status(USER_ID, "exec-1", "wf-1", "SUCCESS")

        assert socket.sent[0]["topic"] == "executions"
        assert socket.sent[0]["data"] == {"executionId": "exec-1", "workflowId": "wf-1", "status": "SUCCESS"}

    @pytest.mark.asyncio
    async def test_invalid_status_is_refused(self, broadcaster):
        with pytest.raises(ValueError):
            await broadcaster.publish_node_status(USER_ID, "slack-execution", "n1", "done")

    @pytest.mark.asyncio
    async def test_failed_socket_is_dropped(self, broadcaster):
        await broadcaster.subscribe(FakeWebSocket(fail=True), claims_for(USER_ID, ["slack-execution"]))
        assert broadcaster.connection_count == 1

        delivered = await broadcaster.publish_node_status(USER_ID, "slack-execution", "n1", "success")

        assert delivered == 0
        assert broadcaster.connection_count == 0

    @pytest.mark.asyncio
    async def test_expired_subscription_is_told_and_closed(self, broadcaster):
        socket = FakeWebSocket()
        await broadcaster.subscribe(socket, claims_for(USER_ID, ["slack-execution"], ttl=-1))

        delivered = await broadcaster.publish_node_status(USER_ID, "slack-execution", "n1", "success")

        assert delivered == 0
        assert socket.sent == [{"type": "token_expired"}]
        assert socket.closed_with == 4001
        assert broadcaster.connection_count == 0

    @pytest.mark.asyncio
    async def test_listeners_see_every_event(self, broadcaster, published):
        await broadcaster.publish_node_status(USER_ID, "slack-execution", "n1", "loading")
        assert published == [{
            "user_id": USER_ID, "channel": "slack-execution", "topic": "status",
            "data": {"nodeId": "n1", "status": "loading"},
        }]

    @pytest.mark.asyncio
    async def test_stalled_socket_does_not_block_publishing(self):
        from services.status_broadcaster import StatusBroadcaster

        broadcaster = StatusBroadcaster(send_timeout=0.05)
        healthy = FakeWebSocket()
        await broadcaster.subscribe(FakeWebSocket(stall=True), claims_for(USER_ID, ["slack-execution"]))
        await broadcaster.subscribe(healthy, claims_for(USER_ID, ["slack-execution"]))

        started = time.monotonic()
        delivered = await broadcaster.publish_node_status(USER_ID, "slack-execution", "n1", "loading")

        assert time.monotonic() - started < 5
        assert delivered == 1
        assert healthy.sent[0]["data"] == {"nodeId": "n1", "status": "loading"}
        assert broadcaster.connection_count == 1
