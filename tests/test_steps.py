"""
Durable step runtime and the event waiter it suspends on.
"""
import asyncio

import pytest

from services import event_waiter
from core.cache import CacheService
from services.execution import DurableStep, ImmediateStep, UpstreamServiceError


@pytest.mark.asyncio
async def test_step_result_is_memoized_across_invocations(execution_cache):
    calls = []

    async def side_effect():
        calls.append(1)
        return {"charged": True}

    first = await DurableStep("exec-1", execution_cache).for_node("pay").run("charge", side_effect)
    second = await DurableStep("exec-1", execution_cache).for_node("pay").run("charge", side_effect)

    assert first == second == {"charged": True}
    assert calls == [1]


@pytest.mark.asyncio
async def test_falsy_results_count_as_recorded(execution_cache):
    calls = []

    def nothing():
        calls.append(1)
        return None

    step = DurableStep("exec-1", execution_cache)
    assert await step.run("noop", nothing) is None
    assert await DurableStep("exec-1", execution_cache).run("noop", nothing) is None
    assert calls == [1]


@pytest.mark.asyncio
async def test_keys_are_scoped_per_node_and_execution(execution_cache):
    counter = {"n": 0}

    def bump():
        counter["n"] += 1
        return counter["n"]

    a = await DurableStep("exec-1", execution_cache).for_node("a").run("work", bump)
    b = await DurableStep("exec-1", execution_cache).for_node("b").run("work", bump)
    other = await DurableStep("exec-2", execution_cache).for_node("a").run("work", bump)

    assert (a, b, other) == (1, 2, 3)


@pytest.mark.asyncio
async def test_repeated_key_in_one_invocation_gets_a_suffix(execution_cache):
    step = DurableStep("exec-1", execution_cache).for_node("agent")
    assert await step.run("call", lambda: "first") == "first"
    assert await step.run("call", lambda: "second") == "second"

    replay = DurableStep("exec-1", execution_cache).for_node("agent")
    assert await replay.run("call", lambda: "changed") == "first"
    assert await replay.run("call", lambda: "changed") == "second"
    assert await execution_cache.get_step_result("exec-1", "agent:call:1") == "second"


@pytest.mark.asyncio
async def test_failed_step_is_not_memoized(execution_cache):
    attempts = []

    async def flaky():
        attempts.append(1)
        if len(attempts) == 1:
            raise ConnectionError("reset by peer")
        return "ok"

    with pytest.raises(ConnectionError):
        await DurableStep("exec-1", execution_cache).run("fetch", flaky)
    assert await DurableStep("exec-1", execution_cache).run("fetch", flaky) == "ok"
    assert len(attempts) == 2


@pytest.mark.asyncio
async def test_concurrent_attempts_run_the_side_effect_once(execution_cache):
    calls = []

    async def slow():
        calls.append(1)
        await asyncio.sleep(0.01)
        return "done"

    results = await asyncio.gather(*[
        DurableStep("exec-1", execution_cache).run("once", slow) for _ in range(5)
    ])

    assert results == ["done"] * 5
    assert calls == [1]


@pytest.mark.asyncio
async def test_sleep_resumes_with_the_remaining_time(execution_cache):
    await DurableStep("exec-1", execution_cache).sleep("pause", 0)
    recorded = await execution_cache.get_step_result("exec-1", "pause")
    assert isinstance(recorded, float)
    await DurableStep("exec-1", execution_cache).sleep("pause", 3600)


@pytest.mark.asyncio
async def test_wait_for_event_resolves_on_dispatch(execution_cache):
    step = DurableStep("exec-1", execution_cache)
    waiting = asyncio.create_task(
        step.wait_for_event("approval", "order.approved", timeout=5, match={"order.id": 7})
    )
    await asyncio.sleep(0.01)

    assert await event_waiter.dispatch("order.approved", {"order": {"id": 8}}) == 0
    assert await event_waiter.dispatch("order.approved", {"order": {"id": 7}, "by": "ops"}) == 1

    assert await waiting == {"order": {"id": 7}, "by": "ops"}
    assert await DurableStep("exec-1", execution_cache).wait_for_event("approval", "order.approved") == {
        "order": {"id": 7}, "by": "ops",
    }


@pytest.mark.asyncio
async def test_wait_for_event_timeout_returns_none(execution_cache):
    step = DurableStep("exec-1", execution_cache)
    assert await step.wait_for_event("never", "nothing.happens", timeout=0.01) is None
    assert event_waiter.get_active_waiters() == []


@pytest.mark.asyncio
async def test_immediate_step_does_not_memoize():
    step = ImmediateStep()
    calls = []
    await step.run("x", lambda: calls.append(1))
    await step.for_node("n").run("x", lambda: calls.append(1))
    assert calls == [1, 1]
    assert await step.wait_for_event("k", "e") is None


# ===== Cache backend failures =====

@pytest.mark.asyncio
async def test_unstored_result_raises_retriable_error(execution_cache, cache, monkeypatch):
    async def refuse(key, value, ttl=None, strict=False):
        return False

    monkeypatch.setattr(cache, "set", refuse)
    calls = []

    with pytest.raises(UpstreamServiceError, match="Step memo write failed"):
        await DurableStep("exec-1", execution_cache).run("send", lambda: calls.append(1))
    assert calls == [1]


@pytest.mark.asyncio
async def test_failing_write_backend_raises_retriable_error(execution_cache, cache, monkeypatch):
    async def broken(key, value, ttl=None, strict=False):
        raise ConnectionError("redis down")

    monkeypatch.setattr(cache, "set", broken)

    with pytest.raises(UpstreamServiceError):
        await DurableStep("exec-1", execution_cache).run("send", lambda: "sent")


@pytest.mark.asyncio
async def test_read_failure_does_not_rerun_completed_step(execution_cache, cache, monkeypatch):
    calls = []
    await DurableStep("exec-1", execution_cache).run("send", lambda: calls.append(1))

    async def broken(key, strict=False):
        raise ConnectionError("redis down")

    monkeypatch.setattr(cache, "get", broken)

    with pytest.raises(UpstreamServiceError, match="Step memo read failed"):
        await DurableStep("exec-1", execution_cache).run("send", lambda: calls.append(1))
    assert calls == [1]


@pytest.mark.asyncio
async def test_sqlite_cache_errors_propagate_only_when_strict(settings, database, monkeypatch):
    service = CacheService(settings, database)
    await service.startup()
    assert service.backend_name() == "sqlite"

    def unavailable():
        raise RuntimeError("database is locked")

    monkeypatch.setattr(database, "get_session", unavailable)

    assert await service.get("k") is None
    assert await service.set("k", 1) is False
    with pytest.raises(RuntimeError):
        await service.get("k", strict=True)
    with pytest.raises(RuntimeError):
        await service.set("k", 1, strict=True)
