"""
ExecutionContext, retry policies and error payloads.
"""
import pytest

from constants import NodeType
from services.execution import (
    ConfigurationError, ExecutionContext, NonRetriableError, RetryPolicy,
    UpstreamServiceError, get_retry_policy,
)
from services.execution.errors import error_payload, is_retriable


class TestExecutionContext:

    def test_with_values_returns_new_context(self):
        original = ExecutionContext({"a": 1})
        updated = original.with_values(b=2)
        assert dict(original) == {"a": 1}
        assert dict(updated) == {"a": 1, "b": 2}

    def test_remove_is_recorded(self):
        context = ExecutionContext({"a": 1, "b": 2}).remove("a", "missing")
        assert dict(context) == {"b": 2}
        assert context.removed_keys == frozenset({"a"})

    def test_re_adding_a_removed_key_clears_the_record(self):
        context = ExecutionContext({"a": 1}).remove("a").with_values(a=3)
        assert context.removed_keys == frozenset()

    def test_reset_lineage_forgets_removals(self):
        context = ExecutionContext({"a": 1}).remove("a").reset_lineage()
        assert context.removed_keys == frozenset()

    def test_public_hides_internal_keys(self):
        context = ExecutionContext({"answer": 42, "_providers": {}, "_chatHistory": []})
        assert context.public() == {"answer": 42}
        assert "_providers" in context.to_dict()

    def test_equality_with_mappings(self):
        assert ExecutionContext({"a": 1}) == {"a": 1}
        assert ExecutionContext.from_dict(None) == {}


class TestRetryPolicy:

    def test_delay_is_capped(self):
        policy = RetryPolicy(initial_delay=1.0, backoff_multiplier=2.0, max_delay=5.0)
        assert [policy.calculate_delay(n) for n in range(5)] == [1.0, 2.0, 4.0, 5.0, 5.0]

    def test_non_retriable_errors_stop(self):
        policy = RetryPolicy(max_attempts=5)
        assert policy.should_retry(UpstreamServiceError("503"), 0)
        assert not policy.should_retry(ConfigurationError("missing"), 0)
        assert not policy.should_retry(UpstreamServiceError("503"), 4)

    def test_plain_exceptions_are_retriable(self):
        assert is_retriable(RuntimeError("boom"))
        assert not is_retriable(NonRetriableError("no"))

    def test_triggers_do_not_retry(self):
        assert get_retry_policy(NodeType.WEBHOOK_TRIGGER).max_attempts == 1

    def test_node_override(self):
        policy = get_retry_policy(NodeType.HTTP_REQUEST, {"max_attempts": 7, "initial_delay": 0})
        assert policy.max_attempts == 7
        assert policy.initial_delay == 0

    def test_fallback_default(self):
        fallback = RetryPolicy(max_attempts=4)
        assert get_retry_policy(NodeType.SLACK, None, fallback) is fallback

    def test_round_trip(self):
        policy = RetryPolicy(max_attempts=2, initial_delay=0.5)
        assert RetryPolicy.from_dict(policy.to_dict()) == policy


class TestErrorPayload:

    def test_engine_error_keeps_its_node(self):
        error = ConfigurationError("bad", node_id="n1")
        assert error_payload(error, "other") == {"type": "ConfigurationError", "message": "bad", "node_id": "n1"}

    def test_engine_error_without_node_takes_fallback(self):
        assert error_payload(ConfigurationError("bad"), "n2")["node_id"] == "n2"

    def test_plain_exception(self):
        assert error_payload(KeyError("x")) == {"type": "KeyError", "message": "'x'", "node_id": None}

    @pytest.mark.parametrize("tag", ["NOT_A_NODE", ""])
    def test_unknown_node_type_tag(self, tag):
        with pytest.raises(ValueError):
            NodeType.parse(tag)
