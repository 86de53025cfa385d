"""Temporal integration for durable execution dispatch.

When TEMPORAL_ENABLED=true:
- Each Execution row is driven by one ExecutionWorkflow
- The workflow schedules a single run_execution activity that walks the
  graph with the shared WorkflowExecutor, so any worker in the cluster can
  resume an execution after a crash

When TEMPORAL_ENABLED=false (default):
- Executions run as asyncio tasks in the API process and the recovery
  sweeper re-drives abandoned ones
"""

from .executor import TemporalExecutor
from .client import TemporalClientWrapper

__all__ = ["TemporalExecutor", "TemporalClientWrapper"]
