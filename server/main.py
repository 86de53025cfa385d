"""
FastAPI backend for the workflow execution engine.

Wires the dependency container, the execution engine (in-process or
Temporal), the scheduled-workflow runner and the recovery sweeper.
"""

from datetime import datetime
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, ORJSONResponse
from slowapi.errors import RateLimitExceeded
from starlette.middleware.base import BaseHTTPMiddleware

from core.container import container
from core.logging import configure_logging, get_logger
from middleware.auth import AuthMiddleware
from middleware.rate_limit import limiter, rate_limit_exceeded_handler
from routers import webhook, websocket, workflow

# Initialize settings and logging
settings = container.settings()
configure_logging(settings)
logger = get_logger(__name__)

# Suppress noisy loggers
import logging
logging.getLogger("apscheduler").setLevel(logging.WARNING)
logging.getLogger("apscheduler.scheduler").setLevel(logging.WARNING)
logging.getLogger("apscheduler.executors").setLevel(logging.WARNING)
logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
logging.getLogger("temporalio").setLevel(logging.WARNING)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan management."""
    logger.info("Starting workflow engine")

    # Start services
    database = container.database()
    await database.startup()
    await container.cache().startup()

    # Credential encryption key derived from the server passphrase and stored salt
    encryption = container.encryption_service()
    salt = await database.get_or_create_salt(encryption.generate_salt)
    encryption.initialize(settings.api_key_encryption_key, salt)

    # Initialize event waiter with cache service for Redis Streams support
    from services import event_waiter
    event_waiter.set_cache_service(container.cache())

    workflow_service = container.workflow_service()

    # Durable dispatch through Temporal when enabled
    worker_manager = None
    if settings.temporal_enabled:
        from services.temporal import TemporalExecutor
        from services.temporal.worker import TemporalWorkerManager

        client = await container.temporal_client().connect()
        workflow_service.set_temporal_executor(
            TemporalExecutor(client, task_queue=settings.temporal_task_queue)
        )
        worker_manager = TemporalWorkerManager(client, container.workflow_executor(),
                                               task_queue=settings.temporal_task_queue)
        await worker_manager.start()

    # Scheduled-workflow runner on APScheduler
    from services.scheduler import ScheduledWorkflowRunner, start_scheduler, shutdown_scheduler
    runner = None
    if settings.scheduler_enabled:
        runner = ScheduledWorkflowRunner(database, workflow_service,
                                         interval_seconds=settings.scheduler_interval)
        runner.start()
        start_scheduler()

    # Recovery sweeper re-drives abandoned in-process executions
    from services.execution import RecoverySweeper, set_recovery_sweeper
    sweeper = None
    if settings.recovery_enabled and not settings.temporal_enabled:
        sweeper = RecoverySweeper(database, container.execution_cache(),
                                  heartbeat_timeout=settings.heartbeat_timeout,
                                  sweep_interval=settings.recovery_interval)
        sweeper.set_recovery_callback(workflow_service.dispatch)
        set_recovery_sweeper(sweeper)
        await sweeper.start()

    logger.info("Services started successfully",
                temporal_enabled=settings.temporal_enabled,
                scheduler_enabled=settings.scheduler_enabled,
                recovery_enabled=sweeper is not None)
    yield

    # Shutdown
    if sweeper is not None:
        await sweeper.stop()
        set_recovery_sweeper(None)
    if runner is not None:
        runner.stop()
        shutdown_scheduler()
    if worker_manager is not None:
        await worker_manager.stop()
        await container.temporal_client().disconnect()

    await workflow_service.drain(timeout=10)
    await container.cache().shutdown()
    await database.shutdown()
    logger.info("Services shutdown complete")


# Create FastAPI app
app = FastAPI(
    title="Workflow Execution Engine",
    version="1.0.0",
    description="Durable workflow execution with realtime node status",
    lifespan=lifespan,
    default_response_class=ORJSONResponse
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)


class CatchAllExceptionsMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        try:
            return await call_next(request)
        except Exception as e:
            logger.error("Unhandled exception", path=request.url.path,
                         error_type=type(e).__name__, error=str(e), exc_info=True)
            return JSONResponse(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                content={"success": False, "error": "Internal server error"}
            )


app.add_middleware(CatchAllExceptionsMiddleware)

# Checks the session JWT for protected routes
app.add_middleware(AuthMiddleware)

# Add CORS middleware (outermost, so preflight and error responses carry headers)
logger.info("Configuring CORS middleware", origins_count=len(settings.cors_origins))
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(workflow.router)
app.include_router(webhook.router)
app.include_router(websocket.router)


@app.get("/health")
async def health_check():
    """Detailed health check."""
    from services import event_waiter
    from services.execution import get_recovery_sweeper

    sweeper = get_recovery_sweeper()
    workflow_service = container.workflow_service()

    return {
        "status": "OK",
        "service": "workflow-engine",
        "version": app.version,
        "environment": "development" if settings.debug else "production",
        "cache_backend": container.cache().backend_name(),
        "event_waiter_mode": event_waiter.get_backend_mode(),
        "execution_engine": {
            "temporal_enabled": settings.temporal_enabled,
            "recovery_sweeper": sweeper is not None and sweeper._running,
            "inflight_executions": len(workflow_service.inflight),
            "realtime_connections": container.status_broadcaster().connection_count,
        },
        "timestamp": datetime.now().isoformat()
    }


if __name__ == "__main__":
    import uvicorn
    logger.info("Starting workflow engine", host=settings.host, port=settings.port, debug=settings.debug)
    uvicorn.run(
        "main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
    )
