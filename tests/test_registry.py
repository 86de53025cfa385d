"""
Node registry coverage and lookups.
"""
import pytest

from constants import NODE_CHANNELS, TRIGGER_NODE_TYPES, NodeType, node_channel
from services.execution import UnknownNodeType
from services.node_registry import NodeRegistry


@pytest.fixture
def node_registry(settings, ai_service, credentials):
    return NodeRegistry(settings, ai_service, credentials)


def test_every_node_type_has_an_executor(node_registry):
    assert set(node_registry.types()) == set(NodeType)
    for node_type in NodeType:
        assert callable(node_registry.lookup(node_type))


def test_lookup_accepts_tags(node_registry):
    assert node_registry.lookup("HTTP_REQUEST") is node_registry.lookup(NodeType.HTTP_REQUEST)


@pytest.mark.parametrize("tag", ["UNKNOWN", "http_request", None])
def test_unknown_tag_raises(node_registry, tag):
    with pytest.raises(UnknownNodeType):
        node_registry.lookup(tag)


def test_trigger_classification():
    assert all(NodeRegistry.is_trigger(t) for t in TRIGGER_NODE_TYPES)
    assert not NodeRegistry.is_trigger("AI_AGENT")
    assert not NodeRegistry.is_trigger("NOT_A_TYPE")


@pytest.mark.parametrize("node_type,channel", [
    (NodeType.OPENAI_CHAT_MODEL, "openai-chat-model-execution"),
    (NodeType.HTTP_REQUEST, "http-request-execution"),
    (NodeType.INITIAL, "manual-trigger-execution"),
])
def test_node_channels(node_type, channel):
    assert node_channel(node_type) == channel
    assert channel in NODE_CHANNELS
