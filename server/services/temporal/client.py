"""Temporal client wrapper.

Manages the Temporal client connection lifecycle.
"""

from typing import Optional

from temporalio.client import Client
from temporalio.runtime import Runtime, TelemetryConfig

from core.logging import get_logger

logger = get_logger(__name__)


def create_runtime() -> Runtime:
    """Runtime with worker heartbeating disabled (older servers warn about it)."""
    return Runtime(telemetry=TelemetryConfig(), worker_heartbeat_interval=None)


class TemporalClientWrapper:
    """Lazily connected Temporal client shared by the dispatcher and the worker."""

    def __init__(self, server_address: str, namespace: str = "default"):
        self.server_address = server_address
        self.namespace = namespace
        self._client: Optional[Client] = None

    @property
    def client(self) -> Optional[Client]:
        return self._client

    @property
    def is_connected(self) -> bool:
        return self._client is not None

    async def connect(self) -> Client:
        if self._client is not None:
            return self._client

        logger.info("Connecting to Temporal server",
                    server_address=self.server_address, namespace=self.namespace)
        self._client = await Client.connect(
            self.server_address,
            namespace=self.namespace,
            runtime=create_runtime(),
        )
        logger.info("Connected to Temporal server")
        return self._client

    async def disconnect(self) -> None:
        # The SDK client has no close(); dropping the reference releases it
        if self._client is not None:
            self._client = None
            logger.info("Disconnected from Temporal server")
