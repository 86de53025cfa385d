"""Dependency injection container for the application."""

from dependency_injector import containers, providers

from core.config import Settings
from core.database import Database
from core.cache import CacheService
from core.encryption import EncryptionService
from services.ai import AIService
from services.credentials import CredentialStore
from services.execution import ExecutionCache, WorkflowExecutor
from services.node_registry import NodeRegistry
from services.status_broadcaster import get_status_broadcaster
from services.temporal import TemporalClientWrapper
from services.user_auth import UserAuthService
from services.workflow import WorkflowService


class Container(containers.DeclarativeContainer):
    """Application dependency injection container."""

    # Settings
    settings = providers.Singleton(
        Settings,
    )

    # Database (needed by CacheService for SQLite fallback)
    database = providers.Singleton(
        Database,
        settings=settings
    )

    # Cache service (uses Redis when available, SQLite otherwise)
    cache = providers.Singleton(
        CacheService,
        settings=settings,
        database=database
    )

    # Credential security (initialized with the stored salt at startup)
    encryption_service = providers.Singleton(
        EncryptionService,
    )

    credential_store = providers.Singleton(
        CredentialStore,
        database=database,
        encryption=encryption_service
    )

    # Services
    user_auth_service = providers.Singleton(
        UserAuthService,
        settings=settings
    )

    ai_service = providers.Singleton(
        AIService,
        settings=settings
    )

    node_registry = providers.Singleton(
        NodeRegistry,
        settings=settings,
        ai_service=ai_service,
        credentials=credential_store
    )

    # Execution engine
    execution_cache = providers.Singleton(
        ExecutionCache,
        cache_service=cache,
        step_ttl=settings.provided.step_result_ttl,
        heartbeat_ttl=settings.provided.heartbeat_timeout
    )

    status_broadcaster = providers.Singleton(
        get_status_broadcaster,
        send_timeout=settings.provided.realtime_send_timeout,
    )

    workflow_executor = providers.Singleton(
        WorkflowExecutor,
        database=database,
        cache=execution_cache,
        registry=node_registry,
        broadcaster=status_broadcaster,
        settings=settings
    )

    temporal_client = providers.Singleton(
        TemporalClientWrapper,
        server_address=settings.provided.temporal_server_address,
        namespace=settings.provided.temporal_namespace
    )

    workflow_service = providers.Singleton(
        WorkflowService,
        database=database,
        executor=workflow_executor,
        registry=node_registry,
        settings=settings
    )


# Global container instance
container = Container()
