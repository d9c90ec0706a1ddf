"""Graph workflow schema definitions using Pydantic models.

Workflows are directed graphs of typed nodes. Each node carries a free-form
``config`` tree whose string leaves may contain ``{{label.property}}``
template references to the outputs of other nodes. Edges may carry a
structured condition that is evaluated in conditional execution mode.

Security-first design:
- No arbitrary code execution in conditions (structured operators only)
- Comprehensive validation before execution (see ``topology.GraphTopology``)
"""

from __future__ import annotations

import logging
import re
from enum import Enum
from typing import Any, Literal

import networkx as nx
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

logger = logging.getLogger(__name__)


class NodeStatus(str, Enum):
    """Execution status for nodes"""

    PENDING = "pending"  # Not yet started
    RUNNING = "running"  # Processor call in flight
    COMPLETED = "completed"  # Successfully completed
    FAILED = "failed"  # Terminal failure (retries exhausted or timeout)
    SKIPPED = "skipped"  # Upstream failure or unsatisfied conditions


class ExecutionMode(str, Enum):
    """Scheduling policy for a run"""

    SEQUENTIAL = "sequential"
    PARALLEL = "parallel"
    CONDITIONAL = "conditional"


class TransitionCondition(BaseModel):
    """
    Safe, declarative condition evaluation for edges.
    NO arbitrary code execution - only structured operators.

    ``field`` is a dotted path into the source node's result, e.g. ``"output"``,
    ``"output.score"`` or ``"status"``. A path whose first segment is not one
    of ``output``/``data``/``status``/``error`` is looked up inside ``output``.
    """

    field: str = "output"
    operator: Literal[
        "==",
        "!=",
        ">",
        "<",
        ">=",
        "<=",
        "in",
        "not_in",
        "contains",
        "starts_with",
        "ends_with",
        "truthy",
        "falsy",
    ]
    value: str | int | float | bool | list[str | int | float | bool] | None = None

    @field_validator("field")
    @classmethod
    def validate_field(cls, v):
        """Ensure field names are safe dot-separated identifiers.

        Valid: "output", "output.score", "a.b.c"
        Invalid: "..", "a..b", ".foo", "foo.", "a-b"
        """
        pattern = r"^[a-zA-Z_][a-zA-Z0-9_]*(\.[a-zA-Z_][a-zA-Z0-9_]*)*$"
        if not re.match(pattern, v):
            raise ValueError(f"Invalid field name: {v}")
        return v

    @model_validator(mode="after")
    def check_value_type_for_operator(self) -> "TransitionCondition":
        """Ensure value type is compatible with the operator."""
        list_operators = {"in", "not_in"}
        unary_operators = {"truthy", "falsy"}
        is_list_val = isinstance(self.value, list)

        if self.operator in unary_operators:
            return self
        if self.operator in list_operators and not is_list_val:
            raise ValueError(f"Operator '{self.operator}' requires value to be a list.")
        if self.operator not in list_operators and is_list_val:
            raise ValueError(f"Operator '{self.operator}' does not support list values.")
        return self

    def evaluate(self, result: dict[str, Any]) -> bool:
        """
        Evaluate against a node result of the shape
        ``{"output": ..., "data": ..., "status": ..., "error": ...}``.

        Type mismatches, missing fields and invalid comparisons return False
        instead of raising.
        """
        found, value = _lookup_field(result, self.field)
        if self.operator == "truthy":
            return found and bool(value)
        if self.operator == "falsy":
            return not found or not bool(value)
        # A missing field never satisfies a comparison. This keeps typos from
        # passing conditions like "status != 'failed'".
        if not found:
            return False

        expected = self.value
        try:
            if self.operator == "==":
                return value == expected
            elif self.operator == "!=":
                return value != expected
            elif self.operator in (">", "<", ">=", "<="):
                # bool is an int subclass; never order-compare booleans with numbers
                if value is None or isinstance(value, bool) != isinstance(expected, bool):
                    return False
                if not isinstance(value, type(expected)) and not (
                    isinstance(value, (int, float)) and isinstance(expected, (int, float))
                ):
                    return False
                if self.operator == ">":
                    return value > expected
                if self.operator == "<":
                    return value < expected
                if self.operator == ">=":
                    return value >= expected
                return value <= expected
            elif self.operator == "in":
                return value in expected
            elif self.operator == "not_in":
                return value not in expected
            elif self.operator == "contains":
                if isinstance(value, (dict, str, list)):
                    return expected in value
                return False
            elif self.operator == "starts_with":
                return value.startswith(expected) if isinstance(value, str) else False
            elif self.operator == "ends_with":
                return value.endswith(expected) if isinstance(value, str) else False
            return False
        except (TypeError, AttributeError):
            return False


_RESULT_FIELDS = ("output", "data", "status", "error")


def _lookup_field(result: Any, path: str) -> tuple[bool, Any]:
    """Resolve a dotted path inside a node result. Returns (found, value)."""
    if not isinstance(result, dict):
        return False, None
    parts = path.split(".")
    if parts[0] not in _RESULT_FIELDS:
        parts = ["output", *parts]
    current: Any = result
    for part in parts:
        if isinstance(current, dict) and part in current:
            current = current[part]
        else:
            return False, None
    return True, current


class Edge(BaseModel):
    """Directed edge between nodes with an optional condition"""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    source: str  # Source node ID
    target: str  # Target node ID
    source_handle: str | None = Field(default=None, alias="sourceHandle")
    target_handle: str | None = Field(default=None, alias="targetHandle")
    condition: TransitionCondition | None = None  # Used only in conditional mode


class Node(BaseModel):
    """Graph node: a typed processing step addressed in templates by its label"""

    id: str
    type: str  # Processor kind, opaque to the engine
    label: str | None = None
    config: dict[str, Any] = Field(default_factory=dict)

    # Extra top-level node properties (description, notes, ...). Scanned for
    # template references alongside config.
    data: dict[str, Any] = Field(default_factory=dict)

    # UI metadata for a visual editor
    position: dict[str, float] | None = None

    status: NodeStatus = NodeStatus.PENDING
    outputs: dict[str, Any] = Field(default_factory=dict)

    @field_validator("id")
    @classmethod
    def validate_node_id(cls, v):
        """Node ids are used as template addresses, so they cannot contain
        template delimiters, dots or surrounding whitespace."""
        if not v or v != v.strip():
            raise ValueError(f"Invalid node ID: '{v}'. Must be non-empty without padding.")
        if any(ch in v for ch in "{}."):
            raise ValueError(f"Invalid node ID: '{v}'. Must not contain '{{', '}}' or '.'.")
        return v

    @property
    def display_name(self) -> str:
        """Label when set, otherwise the node id."""
        return self.label or self.id


class WorkflowGraph(BaseModel):
    """Complete workflow definition"""

    id: str = "workflow"
    name: str | None = None
    description: str | None = None

    nodes: list[Node] = Field(default_factory=list)
    edges: list[Edge] = Field(default_factory=list)

    def get_node(self, node_id: str) -> Node | None:
        """Find a node by id."""
        return next((n for n in self.nodes if n.id == node_id), None)

    def label_to_id(self) -> dict[str, str]:
        """
        Map trimmed labels to node ids for template addressing.

        Labels are not unique. When two nodes share a label the first declared
        node wins and a warning is logged; ``LabelDependencyIndex.validate``
        reports the ambiguity.
        """
        mapping: dict[str, str] = {}
        for node in self.nodes:
            label = (node.label or "").strip()
            if not label:
                continue
            if label in mapping:
                logger.warning(
                    f"Duplicate label '{label}' on nodes '{mapping[label]}' and '{node.id}'; "
                    f"templates using it resolve to '{mapping[label]}'"
                )
                continue
            mapping[label] = node.id
        return mapping

    def predecessors_of(self, node_id: str) -> list[str]:
        """Source ids of edges entering ``node_id``, in edge order."""
        return [e.source for e in self.edges if e.target == node_id]

    def successors_of(self, node_id: str) -> list[str]:
        """Target ids of edges leaving ``node_id``, in edge order."""
        return [e.target for e in self.edges if e.source == node_id]

    def _to_networkx(self) -> nx.DiGraph:
        """Convert to NetworkX DiGraph for analysis"""
        G = nx.DiGraph()
        for node in self.nodes:
            G.add_node(node.id)
        for edge in self.edges:
            G.add_edge(edge.source, edge.target)
        return G
