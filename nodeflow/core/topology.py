"""Dependency structure for workflow graphs.

``GraphTopology.build`` validates a graph and computes the data every
execution mode needs: a stable topological order, topological layers (the
unit of concurrency for parallel mode) and predecessor/successor maps.

Validation is fail-fast: a malformed graph raises a ``GraphValidationError``
subclass before any node runs.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

import networkx as nx

from nodeflow.core.graph_schema import WorkflowGraph

logger = logging.getLogger(__name__)


class GraphValidationError(Exception):
    """Structural problem that prevents building an execution plan."""

    pass


class EmptyGraphError(GraphValidationError):
    """Workflow has no nodes."""

    def __init__(self):
        super().__init__("Workflow must contain at least one node")


class DuplicateNodeError(GraphValidationError):
    """Two nodes share an id."""

    def __init__(self, node_id: str):
        self.node_id = node_id
        super().__init__(f"Duplicate node ID: '{node_id}'")


class DuplicateEdgeError(GraphValidationError):
    """Two edges share an id."""

    def __init__(self, edge_id: str):
        self.edge_id = edge_id
        super().__init__(f"Duplicate edge ID: '{edge_id}'")


class DanglingEdgeReference(GraphValidationError):
    """An edge endpoint names a node that does not exist."""

    def __init__(self, edge_index: int, missing_node_id: str):
        self.edge_index = edge_index
        self.missing_node_id = missing_node_id
        super().__init__(
            f"Edge #{edge_index} references non-existent node '{missing_node_id}'"
        )


class CircularDependencyError(GraphValidationError):
    """The graph contains a cycle (self-loops included)."""

    def __init__(self, cycle_node_ids: list[str]):
        self.cycle_node_ids = cycle_node_ids
        path = " -> ".join([*cycle_node_ids, cycle_node_ids[0]]) if cycle_node_ids else ""
        super().__init__(
            f"Circular dependency detected: {path}. "
            "Remove circular connections between nodes before executing the workflow."
        )


@dataclass
class Topology:
    """Validated dependency structure of a graph."""

    order: list[str]
    layers: list[list[str]]
    layer_of: dict[str, int]
    predecessors: dict[str, list[str]]
    successors: dict[str, list[str]]
    isolated: list[str] = field(default_factory=list)
    _graph: nx.DiGraph = field(default_factory=nx.DiGraph, repr=False)

    @property
    def roots(self) -> list[str]:
        """Nodes with no incoming edges (layer 0)."""
        return list(self.layers[0]) if self.layers else []

    @property
    def has_parallelism(self) -> bool:
        """True when at least one layer holds more than one node."""
        return any(len(layer) > 1 for layer in self.layers)

    def descendants(self, node_id: str) -> set[str]:
        """All nodes reachable from ``node_id`` through edges."""
        return nx.descendants(self._graph, node_id)

    def ancestors(self, node_id: str) -> set[str]:
        """All nodes from which ``node_id`` is reachable."""
        return nx.ancestors(self._graph, node_id)


class GraphTopology:
    """Builds and validates the dependency structure of a workflow graph."""

    @staticmethod
    def build(graph: WorkflowGraph) -> Topology:
        """
        Validate ``graph`` and compute its topology.

        Raises:
            EmptyGraphError: graph has no nodes
            DuplicateNodeError: two nodes share an id
            DuplicateEdgeError: two edges share an id
            DanglingEdgeReference: an edge endpoint does not exist
            CircularDependencyError: the graph has a cycle
        """
        if not graph.nodes:
            raise EmptyGraphError()

        index: dict[str, int] = {}
        for position, node in enumerate(graph.nodes):
            if node.id in index:
                raise DuplicateNodeError(node.id)
            index[node.id] = position

        seen_edge_ids: set[str] = set()
        for edge_index, edge in enumerate(graph.edges):
            if edge.id in seen_edge_ids:
                raise DuplicateEdgeError(edge.id)
            seen_edge_ids.add(edge.id)
            for endpoint in (edge.source, edge.target):
                if endpoint not in index:
                    raise DanglingEdgeReference(edge_index, endpoint)

        G = graph._to_networkx()

        # Depth-first search with a recursion stack; reports the first back-edge cycle
        try:
            cycle = nx.find_cycle(G)
        except nx.NetworkXNoCycle:
            cycle = None
        if cycle:
            raise CircularDependencyError([u for u, _v in cycle])

        def declared(node_id: str) -> int:
            return index[node_id]

        order = list(nx.lexicographical_topological_sort(G, key=declared))
        layers = [sorted(level, key=declared) for level in nx.topological_generations(G)]
        layer_of = {node_id: depth for depth, level in enumerate(layers) for node_id in level}

        predecessors = {node.id: [] for node in graph.nodes}
        successors = {node.id: [] for node in graph.nodes}
        for edge in graph.edges:
            if edge.source not in predecessors[edge.target]:
                predecessors[edge.target].append(edge.source)
            if edge.target not in successors[edge.source]:
                successors[edge.source].append(edge.target)

        isolated: list[str] = []
        if graph.edges:
            isolated = [n.id for n in graph.nodes if G.degree(n.id) == 0]
            if isolated:
                logger.warning(
                    f"Disconnected nodes detected: {', '.join(isolated)}. "
                    "They run without inputs from other nodes."
                )

        return Topology(
            order=order,
            layers=layers,
            layer_of=layer_of,
            predecessors=predecessors,
            successors=successors,
            isolated=isolated,
            _graph=G,
        )
