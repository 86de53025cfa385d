"""
Recovery sweeper: abandoned executions are re-driven through the dispatcher.
"""
import uuid
from datetime import timedelta

import pytest
import pytest_asyncio

from conftest import USER_ID
from models.database import Execution, utcnow
from services.execution import RecoverySweeper


async def add_execution(database, workflow_id, status="PENDING", age_seconds=600):
    return await database.create_execution(Execution(
        id=str(uuid.uuid4()),
        workflow_id=workflow_id,
        user_id=USER_ID,
        status=status,
        created_at=utcnow() - timedelta(seconds=age_seconds),
    ))


@pytest.fixture
def sweeper(database, execution_cache):
    return RecoverySweeper(database, execution_cache, heartbeat_timeout=60, sweep_interval=1)


@pytest_asyncio.fixture
async def workflow(seed_workflow, registry):
    async def passthrough(*, context, **kwargs):
        return context.with_values(recovered=True)

    registry.overrides["HTTP_REQUEST"] = passthrough
    await seed_workflow("wf-rec", [("t", "MANUAL_TRIGGER", {}), ("a", "HTTP_REQUEST", {})], [("t", "a")])
    return "wf-rec"


@pytest.mark.asyncio
async def test_finds_only_stale_unfinished_executions(sweeper, database, execution_cache, workflow):
    stale = await add_execution(database, workflow)
    running_stale = await add_execution(database, workflow, status="RUNNING")
    alive = await add_execution(database, workflow, status="RUNNING")
    await execution_cache.update_heartbeat(alive.id)
    await add_execution(database, workflow, age_seconds=5)
    await add_execution(database, workflow, status="SUCCESS")

    abandoned = await sweeper.find_abandoned()

    assert sorted(abandoned) == sorted([stale.id, running_stale.id])


@pytest.mark.asyncio
async def test_sweep_redrives_through_dispatcher(sweeper, database, workflow_service, workflow):
    stale = await add_execution(database, workflow)
    sweeper.set_recovery_callback(workflow_service.dispatch)

    assert await sweeper.sweep_once() == 1
    await workflow_service.drain()

    recovered = await database.get_execution(stale.id)
    assert recovered.status == "SUCCESS"
    assert recovered.result == {"recovered": True}


@pytest.mark.asyncio
async def test_without_callback_nothing_happens(sweeper, database, workflow):
    await add_execution(database, workflow)
    assert await sweeper.sweep_once() == 0


@pytest.mark.asyncio
async def test_failing_callback_does_not_stop_the_sweep(sweeper, database, workflow):
    await add_execution(database, workflow)
    await add_execution(database, workflow)
    seen = []

    async def flaky(execution_id):
        seen.append(execution_id)
        if len(seen) == 1:
            raise RuntimeError("dispatcher unavailable")

    sweeper.set_recovery_callback(flaky)

    assert await sweeper.sweep_once() == 1
    assert len(seen) == 2


@pytest.mark.asyncio
async def test_start_and_stop(sweeper):
    await sweeper.start()
    assert sweeper._running
    await sweeper.stop()
    assert not sweeper._running
