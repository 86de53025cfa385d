"""
Authenticated HTTP API, realtime token minting and the realtime socket.
"""
import pytest
from starlette.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from conftest import USER_ID
from constants import user_channel


@pytest.fixture
def passthrough(registry):
    async def record(*, context, **kwargs):
        return context.with_values(done=True)

    registry.overrides["HTTP_REQUEST"] = record


async def seed_simple(seed_workflow, workflow_id="wf-api", user_id=USER_ID):
    await seed_workflow(workflow_id, [
        (f"{workflow_id}-manual", "MANUAL_TRIGGER", {}),
        (f"{workflow_id}-request", "HTTP_REQUEST", {}),
    ], [(f"{workflow_id}-manual", f"{workflow_id}-request")], user_id=user_id)


# ===== Authentication =====

@pytest.mark.asyncio
async def test_protected_route_requires_session(api_client):
    response = await api_client.get("/api/executions/anything")
    assert response.status_code == 401
    assert response.json() == {"success": False, "error": "Not authenticated"}


@pytest.mark.asyncio
async def test_realtime_token_is_not_a_session(api_client, user_auth):
    realtime = user_auth.create_realtime_token(USER_ID)["token"]
    response = await api_client.get("/api/executions/anything", headers={"Authorization": f"Bearer {realtime}"})
    assert response.status_code == 401
    assert response.json()["error"] == "Invalid or expired session"


@pytest.mark.asyncio
async def test_session_cookie_is_accepted(api_client, user_auth, settings):
    api_client.cookies.set(settings.jwt_cookie_name, user_auth.create_session_token(USER_ID))
    response = await api_client.get("/api/executions/anything")
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_health_is_public(api_client):
    response = await api_client.get("/health")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "OK"
    assert body["event_waiter_mode"] == "memory"
    assert body["execution_engine"]["inflight_executions"] == 0


# ===== Executions =====

@pytest.mark.asyncio
async def test_execute_and_read_back(api_client, auth_headers, seed_workflow, workflow_service, passthrough):
    await seed_simple(seed_workflow)

    response = await api_client.post("/api/workflows/wf-api/execute", headers=auth_headers,
                                     json={"initialData": {"source": "api"}})
    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["status"] == "PENDING"

    await workflow_service.drain()
    execution = await api_client.get(f"/api/executions/{body['executionId']}", headers=auth_headers)

    assert execution.status_code == 200
    assert execution.json()["status"] == "SUCCESS"
    assert execution.json()["triggerNodeId"] == "wf-api-manual"
    assert execution.json()["result"] == {"source": "api", "done": True}


@pytest.mark.asyncio
async def test_execute_someone_elses_workflow(api_client, auth_headers, seed_workflow):
    await seed_simple(seed_workflow, user_id="user-2")
    response = await api_client.post("/api/workflows/wf-api/execute", headers=auth_headers, json={})
    assert response.status_code == 403
    assert response.json()["error"]["type"] == "UnauthorizedError"


@pytest.mark.asyncio
async def test_execute_from_explicit_node(api_client, auth_headers, seed_workflow, workflow_service, passthrough):
    await seed_simple(seed_workflow)
    response = await api_client.post("/api/workflows/wf-api/execute", headers=auth_headers,
                                     json={"startNodeId": "wf-api-request"})
    await workflow_service.drain()

    execution = await api_client.get(f"/api/executions/{response.json()['executionId']}", headers=auth_headers)
    assert execution.json()["triggerNodeId"] == "wf-api-request"


@pytest.mark.asyncio
async def test_unknown_execution(api_client, auth_headers):
    response = await api_client.get("/api/executions/missing", headers=auth_headers)
    assert response.status_code == 404
    assert response.json()["error"]["type"] == "NotFoundError"


@pytest.mark.asyncio
async def test_execution_of_another_user_is_forbidden(api_client, user_auth, seed_workflow, workflow_service, passthrough):
    await seed_simple(seed_workflow)
    execution = await workflow_service.start_execution("wf-api", trigger_type="manual")
    await workflow_service.drain()

    intruder = {"Authorization": f"Bearer {user_auth.create_session_token('user-2')}"}
    response = await api_client.get(f"/api/executions/{execution.id}", headers=intruder)
    assert response.status_code == 403


# ===== Graph edits and node tests =====

@pytest.mark.asyncio
async def test_connect_rejects_second_provider(api_client, auth_headers, seed_workflow):
    await seed_workflow("wf-agent", [
        ("m1", "OPENAI_CHAT_MODEL", {}), ("m2", "GEMINI_CHAT_MODEL", {}), ("agent", "AI_AGENT", {}),
    ])
    first = await api_client.post("/api/workflows/wf-agent/edges", headers=auth_headers, json={
        "sourceNodeId": "m1", "targetNodeId": "agent", "targetHandle": "ai-model",
    })
    second = await api_client.post("/api/workflows/wf-agent/edges", headers=auth_headers, json={
        "sourceNodeId": "m2", "targetNodeId": "agent", "targetHandle": "ai-model",
    })

    assert first.status_code == 200
    assert first.json()["success"] is True
    assert second.status_code == 400
    assert second.json()["error"]["type"] == "MalformedGraph"


@pytest.mark.asyncio
async def test_node_test_endpoint(api_client, auth_headers, seed_workflow, passthrough):
    await seed_simple(seed_workflow)

    response = await api_client.post("/api/workflows/nodes/wf-api-request/test", headers=auth_headers,
                                     json={"context": {"mock": 1}})
    trigger = await api_client.post("/api/workflows/nodes/wf-api-manual/test", headers=auth_headers, json={})

    assert response.json() == {"success": True, "output": {"mock": 1, "done": True}}
    assert trigger.status_code == 400
    assert trigger.json()["error"]["type"] == "TestNotSupported"


@pytest.mark.asyncio
async def test_event_dispatch(api_client, auth_headers):
    response = await api_client.post("/api/events/order.approved", headers=auth_headers, json={"orderId": 1})
    assert response.json() == {"success": True, "event": "order.approved", "resolved": 0}


# ===== Realtime =====

@pytest.mark.asyncio
async def test_mint_realtime_token(api_client, auth_headers, user_auth):
    response = await api_client.post("/api/realtime/token", headers=auth_headers,
                                     json={"channels": ["slack-execution"]})

    assert response.status_code == 200
    body = response.json()
    assert body["channels"] == ["slack-execution", user_channel(USER_ID)]
    assert user_auth.verify_realtime_token(body["token"])["sub"] == USER_ID


@pytest.fixture
def socket_client(settings, user_auth, broadcaster):
    """Synchronous client for the realtime WebSocket."""
    from dependency_injector import providers

    from core.container import container

    container.settings.override(providers.Object(settings))
    container.user_auth_service.override(providers.Object(user_auth))
    container.status_broadcaster.override(providers.Object(broadcaster))
    from main import app

    yield TestClient(app)
    container.reset_override()


@pytest.mark.parametrize("query", ["?token=garbage", ""])
def test_socket_rejects_invalid_token(socket_client, query):
    with pytest.raises(WebSocketDisconnect) as info:
        with socket_client.websocket_connect(f"/ws/realtime{query}") as websocket:
            websocket.receive_text()
    assert info.value.code == 4401


def test_socket_rejects_session_token(socket_client, user_auth):
    session = user_auth.create_session_token(USER_ID)
    with pytest.raises(WebSocketDisconnect) as info:
        with socket_client.websocket_connect(f"/ws/realtime?token={session}") as websocket:
            websocket.receive_text()
    assert info.value.code == 4401


def test_socket_answers_ping(socket_client, user_auth, broadcaster):
    token = user_auth.create_realtime_token(USER_ID)["token"]
    with socket_client.websocket_connect(f"/ws/realtime?token={token}") as websocket:
        websocket.send_text("not json")
        websocket.send_json({"type": "ping"})
        reply = websocket.receive_json()
        assert reply["type"] == "pong"
        assert broadcaster.connection_count == 1
