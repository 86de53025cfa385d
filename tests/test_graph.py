"""
Graph analysis: run order, provider resolution and connection validation.
"""
from datetime import datetime, timedelta, timezone

import pytest

from models.database import Edge, Node
from services.execution import MalformedGraph, WorkflowGraph, validate_connection

BASE = datetime(2024, 1, 1, tzinfo=timezone.utc)


def make_nodes(*specs):
    return [Node(id=node_id, workflow_id="wf", type=node_type, data={}, position=index)
            for index, (node_id, node_type) in enumerate(specs)]


def make_edge(edge_id, source, target, handle="main", offset=0):
    return Edge(id=edge_id, workflow_id="wf", source_node_id=source, target_node_id=target,
                target_handle=handle, created_at=BASE + timedelta(seconds=offset))


class TestExecutionOrder:

    def test_linear_chain(self):
        nodes = make_nodes(("t", "MANUAL_TRIGGER"), ("a", "HTTP_REQUEST"), ("b", "SLACK"))
        graph = WorkflowGraph(nodes, [make_edge("e1", "a", "b"), make_edge("e2", "t", "a")])
        assert graph.execution_order() == ["t", "a", "b"]

    def test_ties_follow_insertion_order(self):
        nodes = make_nodes(("t", "MANUAL_TRIGGER"), ("z", "SLACK"), ("y", "DISCORD"), ("x", "EMAIL"))
        edges = [make_edge("e1", "t", "x"), make_edge("e2", "t", "y"), make_edge("e3", "t", "z")]
        assert WorkflowGraph(nodes, edges).execution_order() == ["t", "z", "y", "x"]

    def test_start_node_limits_run_to_its_reach(self):
        nodes = make_nodes(
            ("manual", "MANUAL_TRIGGER"), ("hook", "WEBHOOK_TRIGGER"),
            ("a", "HTTP_REQUEST"), ("b", "SLACK"),
        )
        edges = [make_edge("e1", "manual", "a"), make_edge("e2", "hook", "b")]
        graph = WorkflowGraph(nodes, edges)
        assert graph.execution_order("hook") == ["hook", "b"]
        assert graph.run_set("manual") == {"manual", "a"}

    def test_run_set_pulls_in_providers_but_not_other_triggers(self):
        nodes = make_nodes(
            ("manual", "MANUAL_TRIGGER"), ("hook", "WEBHOOK_TRIGGER"),
            ("model", "OPENAI_CHAT_MODEL"), ("agent", "AI_AGENT"),
        )
        edges = [
            make_edge("e1", "manual", "agent"),
            make_edge("e2", "hook", "agent"),
            make_edge("e3", "model", "agent", handle="ai-model"),
        ]
        graph = WorkflowGraph(nodes, edges)
        assert graph.run_set("hook") == {"hook", "model", "agent"}
        assert graph.execution_order("hook") == ["hook", "model", "agent"]

    def test_unknown_start_node(self):
        graph = WorkflowGraph(make_nodes(("t", "MANUAL_TRIGGER")), [])
        with pytest.raises(MalformedGraph):
            graph.run_set("missing")

    def test_trigger_nodes_in_insertion_order(self):
        nodes = make_nodes(("a", "HTTP_REQUEST"), ("s", "SCHEDULED_TRIGGER"), ("m", "MANUAL_TRIGGER"))
        graph = WorkflowGraph(nodes, [])
        assert graph.trigger_nodes() == ["s", "m"]


class TestMalformedGraphs:

    def test_cycle_is_rejected(self):
        nodes = make_nodes(("t", "MANUAL_TRIGGER"), ("a", "HTTP_REQUEST"), ("b", "SLACK"))
        edges = [make_edge("e1", "t", "a"), make_edge("e2", "a", "b"), make_edge("e3", "b", "a")]
        with pytest.raises(MalformedGraph, match="Workflow contains a cycle"):
            WorkflowGraph(nodes, edges)

    def test_self_loop_is_a_cycle(self):
        nodes = make_nodes(("a", "HTTP_REQUEST"))
        with pytest.raises(MalformedGraph):
            WorkflowGraph(nodes, [make_edge("e1", "a", "a")])

    def test_dangling_edge_is_rejected(self):
        nodes = make_nodes(("t", "MANUAL_TRIGGER"))
        with pytest.raises(MalformedGraph, match="missing node"):
            WorkflowGraph(nodes, [make_edge("e1", "t", "ghost")])


class TestProviders:

    def test_explicit_handle_binds_provider(self):
        nodes = make_nodes(("model", "OPENAI_CHAT_MODEL"), ("memory", "POSTGRES"), ("agent", "AI_AGENT"))
        edges = [
            make_edge("e1", "model", "agent", handle="ai-model"),
            make_edge("e2", "memory", "agent", handle="database"),
        ]
        graph = WorkflowGraph(nodes, edges)
        assert graph.providers_for("agent") == {"ai-model": "model", "database": "memory"}
        assert graph.consumers_of("model") == [("agent", "ai-model")]

    def test_earliest_edge_wins_on_duplicate_handle(self):
        nodes = make_nodes(("first", "OPENAI_CHAT_MODEL"), ("second", "ANTHROPIC_CHAT_MODEL"),
                           ("agent", "AI_AGENT"))
        edges = [
            make_edge("e-b", "second", "agent", handle="ai-model", offset=5),
            make_edge("e-a", "first", "agent", handle="ai-model", offset=1),
        ]
        graph = WorkflowGraph(nodes, edges)
        assert graph.providers_for("agent") == {"ai-model": "first"}
        assert graph.consumers_of("second") == []

    def test_same_timestamp_falls_back_to_edge_id(self):
        nodes = make_nodes(("first", "OPENAI_CHAT_MODEL"), ("second", "GEMINI_CHAT_MODEL"),
                           ("agent", "AI_AGENT"))
        edges = [
            make_edge("edge-2", "first", "agent", handle="ai-model"),
            make_edge("edge-1", "second", "agent", handle="ai-model"),
        ]
        assert WorkflowGraph(nodes, edges).providers_for("agent") == {"ai-model": "second"}

    def test_main_edge_from_provider_type_is_inferred(self):
        nodes = make_nodes(("model", "GEMINI_CHAT_MODEL"), ("agent", "AI_AGENT"))
        graph = WorkflowGraph(nodes, [make_edge("e1", "model", "agent")])
        assert graph.providers_for("agent") == {"ai-model": "model"}

    def test_plain_nodes_have_no_providers(self):
        nodes = make_nodes(("t", "MANUAL_TRIGGER"), ("a", "HTTP_REQUEST"))
        graph = WorkflowGraph(nodes, [make_edge("e1", "t", "a")])
        assert graph.providers_for("a") == {}


class TestValidateConnection:

    def setup_method(self):
        self.nodes = {n.id: n for n in make_nodes(
            ("model", "OPENAI_CHAT_MODEL"), ("other", "ANTHROPIC_CHAT_MODEL"),
            ("agent", "AI_AGENT"), ("hook", "WEBHOOK_TRIGGER"),
        )}
        self.existing = [make_edge("e1", "model", "agent", handle="ai-model")]

    def test_second_provider_on_handle_is_rejected(self):
        new_edge = make_edge("e2", "other", "agent", handle="ai-model")
        with pytest.raises(MalformedGraph, match="already has a provider"):
            validate_connection(self.nodes, self.existing, new_edge)

    def test_provider_from_deleted_node_does_not_count(self):
        del self.nodes["model"]
        validate_connection(self.nodes, self.existing, make_edge("e2", "other", "agent", handle="ai-model"))

    def test_wrong_source_type_is_rejected(self):
        new_edge = make_edge("e2", "hook", "agent", handle="ai-model")
        with pytest.raises(MalformedGraph, match="cannot connect"):
            validate_connection(self.nodes, [], new_edge)

    def test_main_handle_accepts_many_edges(self):
        validate_connection(self.nodes, [make_edge("e1", "hook", "agent")],
                            make_edge("e2", "model", "agent"))

    def test_unknown_endpoint_is_rejected(self):
        with pytest.raises(MalformedGraph, match="does not exist"):
            validate_connection(self.nodes, [], make_edge("e2", "ghost", "agent"))
