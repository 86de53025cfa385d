"""
WorkflowService: start-node selection, idempotent starts, edge edits and
single-node test runs.
"""
import pytest

from conftest import USER_ID
from services.execution import (
    ConfigurationError, MalformedGraph, NotFoundError, TestNotSupported, UnauthorizedError,
)

TWO_TRIGGERS = [
    ("manual", "MANUAL_TRIGGER", {}),
    ("hook", "WEBHOOK_TRIGGER", {"secret": "s3cret"}),
    ("after-manual", "HTTP_REQUEST", {}),
    ("after-hook", "SLACK", {}),
]
TWO_TRIGGER_EDGES = [("manual", "after-manual"), ("hook", "after-hook")]


@pytest.fixture
def record_runs(registry):
    """Replace non-trigger executors with ones that record their node id."""
    ran = []

    async def record(*, context, node_id, **kwargs):
        ran.append(node_id)
        return context.with_values(**{f"ran_{node_id}": True})

    for node_type in ("HTTP_REQUEST", "SLACK", "DISCORD"):
        registry.overrides[node_type] = record
    return ran


class TestStartExecution:

    @pytest.mark.asyncio
    async def test_trigger_type_selects_its_subgraph(self, workflow_service, database, seed_workflow, record_runs):
        await seed_workflow("wf", TWO_TRIGGERS, TWO_TRIGGER_EDGES)

        execution = await workflow_service.start_execution("wf", {"webhook": {"raw": {}}}, trigger_type="webhook")
        await workflow_service.drain()

        assert execution.trigger_node_id == "hook"
        assert record_runs == ["after-hook"]
        stored = await database.get_execution(execution.id)
        assert stored.status == "SUCCESS"
        assert stored.result == {"webhook": {"raw": {}}, "ran_after-hook": True}

    @pytest.mark.asyncio
    async def test_manual_without_manual_trigger_runs_whole_graph(
        self, workflow_service, seed_workflow, record_runs
    ):
        await seed_workflow("wf", [("a", "HTTP_REQUEST", {}), ("b", "SLACK", {})], [("a", "b")])

        execution = await workflow_service.start_execution("wf", user_id=USER_ID, trigger_type="manual")
        await workflow_service.drain()

        assert execution.trigger_node_id is None
        assert record_runs == ["a", "b"]

    @pytest.mark.asyncio
    async def test_missing_trigger_of_other_kinds_is_not_found(self, workflow_service, seed_workflow):
        await seed_workflow("wf", [("manual", "MANUAL_TRIGGER", {})])
        with pytest.raises(NotFoundError, match="no stripe trigger"):
            await workflow_service.start_execution("wf", trigger_type="stripe")

    @pytest.mark.asyncio
    async def test_unknown_trigger_type(self, workflow_service, seed_workflow):
        await seed_workflow("wf", [("manual", "MANUAL_TRIGGER", {})])
        with pytest.raises(ConfigurationError):
            await workflow_service.start_execution("wf", trigger_type="carrier-pigeon")

    @pytest.mark.asyncio
    async def test_explicit_start_node_must_belong_to_workflow(self, workflow_service, seed_workflow):
        await seed_workflow("wf", TWO_TRIGGERS, TWO_TRIGGER_EDGES)
        await seed_workflow("other", [("elsewhere", "MANUAL_TRIGGER", {})])
        with pytest.raises(NotFoundError, match="Start node not found"):
            await workflow_service.start_execution("wf", start_node_id="elsewhere")

    @pytest.mark.asyncio
    async def test_explicit_start_node(self, workflow_service, seed_workflow, record_runs):
        await seed_workflow("wf", TWO_TRIGGERS, TWO_TRIGGER_EDGES)
        execution = await workflow_service.start_execution("wf", start_node_id="after-manual")
        await workflow_service.drain()
        assert execution.trigger_node_id == "after-manual"
        assert record_runs == ["after-manual"]

    @pytest.mark.asyncio
    async def test_owner_check(self, workflow_service, seed_workflow):
        await seed_workflow("wf", TWO_TRIGGERS, TWO_TRIGGER_EDGES)
        with pytest.raises(UnauthorizedError):
            await workflow_service.start_execution("wf", user_id="intruder", trigger_type="manual")
        with pytest.raises(NotFoundError, match="Workflow not found"):
            await workflow_service.start_execution("missing", trigger_type="manual")

    @pytest.mark.asyncio
    async def test_idempotency_key_returns_existing_execution(
        self, workflow_service, seed_workflow, record_runs
    ):
        await seed_workflow("wf", TWO_TRIGGERS, TWO_TRIGGER_EDGES)

        first = await workflow_service.start_execution("wf", trigger_type="webhook", idempotency_key="evt-1")
        second = await workflow_service.start_execution("wf", trigger_type="webhook", idempotency_key="evt-1")
        await workflow_service.drain()

        assert first.id == second.id
        assert record_runs == ["after-hook"]

    @pytest.mark.asyncio
    async def test_get_execution_is_owner_scoped(self, workflow_service, seed_workflow, record_runs):
        await seed_workflow("wf", TWO_TRIGGERS, TWO_TRIGGER_EDGES)
        execution = await workflow_service.start_execution("wf", trigger_type="manual")
        await workflow_service.drain()

        view = await workflow_service.get_execution(execution.id, USER_ID)
        assert view["status"] == "SUCCESS"
        assert view["workflowId"] == "wf"
        with pytest.raises(UnauthorizedError):
            await workflow_service.get_execution(execution.id, "intruder")
        with pytest.raises(NotFoundError):
            await workflow_service.get_execution("nope", USER_ID)


class TestConnectNodes:

    @pytest.mark.asyncio
    async def test_second_model_on_agent_is_rejected(self, workflow_service, database, seed_workflow):
        await seed_workflow("wf", [
            ("m1", "OPENAI_CHAT_MODEL", {}), ("m2", "ANTHROPIC_CHAT_MODEL", {}), ("agent", "AI_AGENT", {}),
        ], [("m1", "agent", "ai-model")])

        with pytest.raises(MalformedGraph, match="already has a provider"):
            await workflow_service.connect_nodes("wf", USER_ID, "m2", "agent", target_handle="ai-model")

        _, edges = await database.get_workflow_graph("wf")
        assert len(edges) == 1

    @pytest.mark.asyncio
    async def test_valid_edge_is_persisted(self, workflow_service, database, seed_workflow):
        await seed_workflow("wf", [("m1", "OPENAI_CHAT_MODEL", {}), ("agent", "AI_AGENT", {})])

        edge = await workflow_service.connect_nodes("wf", USER_ID, "m1", "agent", target_handle="ai-model")

        _, edges = await database.get_workflow_graph("wf")
        assert [e.id for e in edges] == [edge.id]
        assert edges[0].target_handle == "ai-model"

    @pytest.mark.asyncio
    async def test_only_owner_may_edit(self, workflow_service, seed_workflow):
        await seed_workflow("wf", [("m1", "OPENAI_CHAT_MODEL", {}), ("agent", "AI_AGENT", {})])
        with pytest.raises(UnauthorizedError):
            await workflow_service.connect_nodes("wf", "intruder", "m1", "agent")


class TestNodeTestRun:

    @pytest.mark.asyncio
    async def test_runs_with_mock_context_without_execution(
        self, workflow_service, database, registry, seed_workflow
    ):
        await seed_workflow("wf", [("n", "HTTP_REQUEST", {"tag": "x"})])
        seen = {}

        async def record_call(*, data, context, step, publish, **kwargs):
            seen["data"] = data
            await publish("http-request-execution", "n", "loading")
            value = await step.run("k", lambda: 1)
            return context.with_values(value=value, _hidden=True)

        registry.overrides["HTTP_REQUEST"] = record_call

        result = await workflow_service.test_node("n", USER_ID, {"input": 5})

        assert result == {"success": True, "output": {"input": 5, "value": 1}}
        assert seen["data"] == {"tag": "x"}

    @pytest.mark.asyncio
    async def test_executor_error_is_reported_not_raised(self, workflow_service, seed_workflow):
        await seed_workflow("wf", [("n", "HTTP_REQUEST", {})])

        result = await workflow_service.test_node("n", USER_ID, {})

        assert result["success"] is False
        assert result["error"]["type"] == "ConfigurationError"
        assert result["error"]["node_id"] == "n"

    @pytest.mark.asyncio
    async def test_agent_sees_wired_providers(
        self, workflow_service, seed_workflow, openai_credential, ai_service
    ):
        await openai_credential()
        await seed_workflow("wf", [
            ("model", "OPENAI_CHAT_MODEL", {"credentialId": "cred-openai", "userPrompt": "{{ q }}"}),
            ("agent", "AI_AGENT", {"variableName": "answer"}),
        ], [("model", "agent", "ai-model")])

        result = await workflow_service.test_node("agent", USER_ID, {"q": "ping"})

        assert result["success"] is True
        assert result["output"]["answer"]["response"] == "Hello from the model"
        assert ai_service.calls[0]["user_prompt"] == "ping"

    @pytest.mark.asyncio
    async def test_triggers_cannot_be_tested(self, workflow_service, seed_workflow):
        await seed_workflow("wf", [("t", "WEBHOOK_TRIGGER", {})])
        with pytest.raises(TestNotSupported):
            await workflow_service.test_node("t", USER_ID, {})

    @pytest.mark.asyncio
    async def test_ownership_and_existence(self, workflow_service, seed_workflow):
        await seed_workflow("wf", [("n", "HTTP_REQUEST", {})])
        with pytest.raises(UnauthorizedError):
            await workflow_service.test_node("n", "intruder", {})
        with pytest.raises(NotFoundError):
            await workflow_service.test_node("ghost", USER_ID, {})


@pytest.mark.asyncio
async def test_dispatch_event_counts_resolved_waiters(workflow_service, cache):
    assert await workflow_service.dispatch_event("nobody.listens", {}) == 0
