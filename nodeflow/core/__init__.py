"""Core modules for the Nodeflow execution engine."""

from nodeflow.core.config import ExecutionOptions, RetryPolicy
from nodeflow.core.coordinator import (
    ExecutionCoordinator,
    ExecutionPlan,
    ExecutionStatus,
    NodeExecutionState,
)
from nodeflow.core.graph_schema import (
    Edge,
    ExecutionMode,
    Node,
    NodeStatus,
    TransitionCondition,
    WorkflowGraph,
)
from nodeflow.core.label_index import LabelDependencyIndex
from nodeflow.core.limiter import ConcurrencyLimiter
from nodeflow.core.processors import NodeProcessor, ProcessorRegistry
from nodeflow.core.topology import GraphTopology, GraphValidationError
from nodeflow.core.variables import NodeOutput, VariableResolver

__all__ = [
    "ConcurrencyLimiter",
    "Edge",
    "ExecutionCoordinator",
    "ExecutionMode",
    "ExecutionOptions",
    "ExecutionPlan",
    "ExecutionStatus",
    "GraphTopology",
    "GraphValidationError",
    "LabelDependencyIndex",
    "Node",
    "NodeExecutionState",
    "NodeOutput",
    "NodeProcessor",
    "NodeStatus",
    "ProcessorRegistry",
    "RetryPolicy",
    "TransitionCondition",
    "VariableResolver",
    "WorkflowGraph",
]
