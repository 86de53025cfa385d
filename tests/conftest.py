"""
Shared fixtures: temporary SQLite database, in-memory cache, engine services
wired the way the container wires them, and a fake AI service.
"""
import os

os.environ.setdefault("JWT_SECRET_KEY", "test-jwt-secret-key-0123456789abcdef")
os.environ.setdefault("API_KEY_ENCRYPTION_KEY", "test-encryption-passphrase-0123456789")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("SCHEDULER_ENABLED", "false")
os.environ.setdefault("RECOVERY_ENABLED", "false")
os.environ.setdefault("LOG_FORMAT", "console")
os.environ.setdefault("LOG_LEVEL", "WARNING")

from datetime import timedelta
from typing import Any, Dict, List, Optional

import pytest
import pytest_asyncio

from core.cache import CacheService
from core.config import Settings
from core.database import Database
from core.encryption import EncryptionService
from models.database import Edge, Node, Workflow, utcnow
from services import event_waiter
from services.credentials import CredentialStore
from services.execution import ExecutionCache, WorkflowExecutor
from services.node_registry import NodeRegistry
from services.status_broadcaster import StatusBroadcaster
from services.user_auth import UserAuthService
from services.workflow import WorkflowService

USER_ID = "user-1"


class FakeAIService:
    """Stands in for AIService; records every generate() call."""

    def __init__(self, text: str = "Hello from the model"):
        self.text = text
        self.calls: List[Dict[str, Any]] = []
        self.error: Optional[Exception] = None

    async def generate(self, provider, api_key, user_prompt, system_prompt=None, model=None,
                       history=None, temperature=None, max_tokens=None):
        self.calls.append({
            "provider": provider,
            "api_key": api_key,
            "user_prompt": user_prompt,
            "system_prompt": system_prompt,
            "model": model,
            "history": list(history or []),
        })
        if self.error is not None:
            raise self.error
        return {"text": self.text, "model": model or f"{provider}-default", "provider": provider}


class RegistryWithOverrides:
    """Node registry whose executors can be replaced per node type."""

    def __init__(self, registry: NodeRegistry):
        self.registry = registry
        self.overrides: Dict[str, Any] = {}

    def lookup(self, node_type):
        key = getattr(node_type, "value", node_type)
        if key in self.overrides:
            return self.overrides[key]
        return self.registry.lookup(node_type)

    def is_trigger(self, node_type) -> bool:
        return self.registry.is_trigger(node_type)


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path}/test.db",
        redis_enabled=False,
        node_retry_delay=0.0,
        webhook_rate_limit="5/minute",
        realtime_token_ttl=60,
    )


@pytest_asyncio.fixture
async def database(settings):
    db = Database(settings)
    await db.startup()
    yield db
    await db.shutdown()


@pytest_asyncio.fixture
async def cache(settings):
    service = CacheService(settings)
    await service.startup()
    event_waiter.set_cache_service(service)
    yield service
    event_waiter.clear_all()
    event_waiter.set_cache_service(None)
    await service.shutdown()


@pytest.fixture
def execution_cache(cache):
    return ExecutionCache(cache)


@pytest.fixture
def encryption():
    service = EncryptionService(iterations=1000)
    service.initialize("test-encryption-passphrase-0123456789", b"0" * 32)
    return service


@pytest.fixture
def credentials(database, encryption):
    return CredentialStore(database, encryption)


@pytest.fixture
def ai_service():
    return FakeAIService()


@pytest.fixture
def registry(settings, ai_service, credentials):
    return RegistryWithOverrides(NodeRegistry(settings, ai_service, credentials))


@pytest.fixture
def broadcaster():
    return StatusBroadcaster()


@pytest.fixture
def published(broadcaster):
    """Every event the broadcaster publishes, in order."""
    events: List[Dict[str, Any]] = []

    async def listener(user_id: str, message: Dict[str, Any]) -> None:
        events.append({"user_id": user_id, **message})

    broadcaster.add_listener(listener)
    return events


@pytest.fixture
def executor(database, execution_cache, registry, broadcaster, settings):
    return WorkflowExecutor(database, execution_cache, registry, broadcaster, settings)


@pytest.fixture
def workflow_service(database, executor, registry, settings):
    return WorkflowService(database, executor, registry, settings)


@pytest.fixture
def user_auth(settings):
    return UserAuthService(settings)


@pytest.fixture
def seed_workflow(database):
    """Persist a workflow graph.

    nodes: [(id, type, data)], edges: [(source, target)] or
    [(source, target, target_handle)]. Insertion order is list order.
    """
    async def _seed(workflow_id: str, nodes, edges=(), user_id: str = USER_ID) -> Workflow:
        base = utcnow()
        node_rows = [
            Node(id=node_id, workflow_id=workflow_id, type=node_type, name=node_id,
                 data=dict(data or {}), position=index)
            for index, (node_id, node_type, data) in enumerate(nodes)
        ]
        edge_rows = []
        for index, edge in enumerate(edges):
            source, target = edge[0], edge[1]
            handle = edge[2] if len(edge) > 2 else "main"
            edge_rows.append(Edge(
                id=f"{workflow_id}-e{index}", workflow_id=workflow_id,
                source_node_id=source, target_node_id=target, target_handle=handle,
                created_at=base + timedelta(milliseconds=index),
            ))
        workflow = Workflow(id=workflow_id, user_id=user_id, name=workflow_id)
        return await database.save_workflow_graph(workflow, node_rows, edge_rows)

    return _seed


@pytest.fixture
def openai_credential(credentials):
    async def _create(credential_id: str = "cred-openai", user_id: str = USER_ID):
        return await credentials.create(credential_id, user_id, "OpenAI key", "OPENAI", "sk-test")
    return _create


# =============================================================================
# HTTP API
# =============================================================================

@pytest.fixture
def wired_container(settings, database, cache, user_auth, broadcaster, workflow_service):
    """Point the global container at the test services."""
    from dependency_injector import providers

    from core.container import container
    from middleware.rate_limit import limiter

    container.settings.override(providers.Object(settings))
    container.database.override(providers.Object(database))
    container.cache.override(providers.Object(cache))
    container.user_auth_service.override(providers.Object(user_auth))
    container.status_broadcaster.override(providers.Object(broadcaster))
    container.workflow_service.override(providers.Object(workflow_service))
    limiter.reset()
    yield container
    container.reset_override()


@pytest_asyncio.fixture
async def api_client(wired_container):
    import httpx

    from main import app

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
        yield client


@pytest.fixture
def auth_headers(user_auth):
    return {"Authorization": f"Bearer {user_auth.create_session_token(USER_ID)}"}
