"""Workflow graph analysis: validation, provider resolution and run order."""

import heapq
from collections import defaultdict
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Set, Tuple

from constants import NodeType, PROVIDER_HANDLES, TRIGGER_NODE_TYPES
from core.logging import get_logger
from models.database import Edge, Node, as_utc
from services.execution.errors import MalformedGraph

logger = get_logger(__name__)

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def edge_sort_key(edge: Edge) -> Tuple[datetime, str]:
    """Deterministic edge precedence: oldest first, then id."""
    return (as_utc(edge.created_at) or _EPOCH, edge.id)


def _node_type(node: Node) -> Optional[NodeType]:
    try:
        return NodeType.parse(node.type)
    except ValueError:
        return None


def validate_connection(nodes: Dict[str, Node], edges: Iterable[Edge], new_edge: Edge) -> None:
    """Reject an edge that would give a single-valued provider handle a second provider.

    An earlier provider edge whose source node no longer exists does not count.
    """
    if new_edge.source_node_id not in nodes or new_edge.target_node_id not in nodes:
        raise MalformedGraph("Edge references a node that does not exist")

    handle = new_edge.target_handle
    if handle not in PROVIDER_HANDLES:
        return

    source_type = _node_type(nodes[new_edge.source_node_id])
    if source_type not in PROVIDER_HANDLES[handle]:
        raise MalformedGraph(
            f"Node type {nodes[new_edge.source_node_id].type} cannot connect to the '{handle}' handle",
            node_id=new_edge.target_node_id,
        )

    for edge in edges:
        if (edge.id != new_edge.id
                and edge.target_node_id == new_edge.target_node_id
                and edge.target_handle == handle
                and edge.source_node_id in nodes):
            raise MalformedGraph(
                f"Handle '{handle}' already has a provider",
                node_id=new_edge.target_node_id,
            )


class WorkflowGraph:
    """Immutable view of one workflow's nodes and edges.

    Construction fails with MalformedGraph on dangling edges or cycles so a
    malformed graph never reaches an executor.
    """

    def __init__(self, nodes: Iterable[Node], edges: Iterable[Edge]):
        ordered = sorted(nodes, key=lambda n: (n.position, n.id))
        self.nodes: Dict[str, Node] = {node.id: node for node in ordered}
        self._rank: Dict[str, int] = {node_id: i for i, node_id in enumerate(self.nodes)}
        self.edges: List[Edge] = sorted(edges, key=edge_sort_key)

        self._outgoing: Dict[str, List[str]] = defaultdict(list)
        self._incoming: Dict[str, List[Edge]] = defaultdict(list)

        for edge in self.edges:
            if edge.source_node_id not in self.nodes or edge.target_node_id not in self.nodes:
                raise MalformedGraph(
                    f"Edge {edge.id} references a missing node "
                    f"({edge.source_node_id} -> {edge.target_node_id})"
                )
            self._outgoing[edge.source_node_id].append(edge.target_node_id)
            self._incoming[edge.target_node_id].append(edge)

        self._check_acyclic()
        self._providers = self._resolve_providers()

    # =========================================================================
    # VALIDATION
    # =========================================================================

    def _check_acyclic(self) -> None:
        in_degree = {node_id: len(self._incoming[node_id]) for node_id in self.nodes}
        queue = [node_id for node_id, degree in in_degree.items() if degree == 0]
        visited = 0

        while queue:
            node_id = queue.pop()
            visited += 1
            for target in self._outgoing[node_id]:
                in_degree[target] -= 1
                if in_degree[target] == 0:
                    queue.append(target)

        if visited != len(self.nodes):
            stuck = sorted(node_id for node_id, degree in in_degree.items() if degree > 0)
            logger.warning("Cycle detected in workflow graph", nodes=stuck)
            raise MalformedGraph("Workflow contains a cycle")

    def _resolve_providers(self) -> Dict[str, Dict[str, str]]:
        """consumer id -> {handle: provider node id}.

        An explicit handle edge wins. Without one, the first incoming edge from
        a node of a type that may serve the handle is used.
        """
        providers: Dict[str, Dict[str, str]] = {}

        for consumer_id, incoming in self._incoming.items():
            bound: Dict[str, str] = {}
            for handle, allowed in PROVIDER_HANDLES.items():
                explicit = [e for e in incoming if e.target_handle == handle]
                if explicit:
                    bound[handle] = explicit[0].source_node_id
                    if len(explicit) > 1:
                        logger.warning(
                            "Multiple providers on single-valued handle, using the earliest edge",
                            node_id=consumer_id,
                            handle=handle,
                            chosen_edge=explicit[0].id,
                            ignored_edges=[e.id for e in explicit[1:]],
                        )
                    continue

                for edge in incoming:
                    if edge.target_handle in PROVIDER_HANDLES:
                        continue
                    if _node_type(self.nodes[edge.source_node_id]) in allowed:
                        bound[handle] = edge.source_node_id
                        break

            if bound:
                providers[consumer_id] = bound

        return providers

    # =========================================================================
    # QUERIES
    # =========================================================================

    def node_type(self, node_id: str) -> str:
        return self.nodes[node_id].type

    def is_trigger(self, node_id: str) -> bool:
        return _node_type(self.nodes[node_id]) in TRIGGER_NODE_TYPES

    def providers_for(self, node_id: str) -> Dict[str, str]:
        return dict(self._providers.get(node_id, {}))

    def consumers_of(self, provider_id: str) -> List[Tuple[str, str]]:
        """(consumer id, handle) pairs this node is the bound provider for."""
        return [
            (consumer_id, handle)
            for consumer_id, bound in self._providers.items()
            for handle, source in bound.items()
            if source == provider_id
        ]

    def descendants(self, node_id: str) -> Set[str]:
        seen: Set[str] = set()
        stack = list(self._outgoing[node_id])
        while stack:
            current = stack.pop()
            if current in seen:
                continue
            seen.add(current)
            stack.extend(self._outgoing[current])
        return seen

    def trigger_nodes(self, node_types: Optional[Iterable[NodeType]] = None) -> List[str]:
        """Trigger node ids in insertion order, optionally limited to `node_types`."""
        allowed = set(node_types) if node_types is not None else TRIGGER_NODE_TYPES
        return [node_id for node_id, node in self.nodes.items() if _node_type(node) in allowed]

    def run_set(self, start_node_id: Optional[str] = None) -> Set[str]:
        """Nodes a run from `start_node_id` must execute.

        That is the start node, everything downstream of it, and the non-trigger
        ancestors those nodes depend on (providers feeding a consumer, for
        example). Without a start node the whole graph runs.
        """
        if start_node_id is None:
            return set(self.nodes)
        if start_node_id not in self.nodes:
            raise MalformedGraph(f"Start node {start_node_id} is not part of the workflow")

        selected = {start_node_id} | self.descendants(start_node_id)
        stack = list(selected)
        while stack:
            current = stack.pop()
            for edge in self._incoming[current]:
                source = edge.source_node_id
                if source in selected or self.is_trigger(source):
                    continue
                selected.add(source)
                stack.append(source)
        return selected

    def execution_order(self, start_node_id: Optional[str] = None) -> List[str]:
        """Topological order of the run set, ties broken by node insertion order."""
        selected = self.run_set(start_node_id)
        in_degree = {node_id: 0 for node_id in selected}
        for edge in self.edges:
            if edge.source_node_id in selected and edge.target_node_id in selected:
                in_degree[edge.target_node_id] += 1

        ready = [(self._rank[node_id], node_id) for node_id, degree in in_degree.items() if degree == 0]
        heapq.heapify(ready)
        order: List[str] = []

        while ready:
            _, node_id = heapq.heappop(ready)
            order.append(node_id)
            for target in self._outgoing[node_id]:
                if target not in selected:
                    continue
                in_degree[target] -= 1
                if in_degree[target] == 0:
                    heapq.heappush(ready, (self._rank[target], target))

        return order
