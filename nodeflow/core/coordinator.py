"""Workflow graph execution coordinator.

Runs a validated graph to completion under one of three modes:

- sequential: strict topological order, one node at a time
- parallel: layer by layer; nodes within a layer share a ConcurrencyLimiter
- conditional: like parallel, but edges whose condition is false are dropped
  after their source completes and nodes left with no satisfied incoming
  edge are skipped

Per-node errors (processor failures, timeouts, exhausted retries) are
contained: the failing node is marked failed, its descendants skipped, and
the run carries on. A partially failed run is a normal return value.
Structural errors (cycles, dangling edges, unknown node types) fail the run
before any node executes.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable

from nodeflow.core.config import ExecutionOptions
from nodeflow.core.graph_schema import ExecutionMode, Node, NodeStatus, WorkflowGraph
from nodeflow.core.limiter import ConcurrencyLimiter
from nodeflow.core.processors import (
    NodeContext,
    NodeProcessor,
    ProcessorRegistry,
    default_registry,
)
from nodeflow.core.topology import GraphTopology, GraphValidationError, Topology
from nodeflow.core.variables import NodeOutput, VariableResolver

logger = logging.getLogger(__name__)

NodeUpdateCallback = Callable[[str, str, Any, "str | None"], None]


class NodeError(Exception):
    """Base class for per-node failures recorded in the execution plan."""

    retryable = True

    def __init__(self, node_id: str, message: str):
        self.node_id = node_id
        super().__init__(message)


class NodeExecutionError(NodeError):
    """The node's processor raised."""

    pass


class NodeTimeoutError(NodeError):
    """The processor call did not finish before its deadline."""

    def __init__(self, node_id: str, message: str, retryable: bool = True):
        super().__init__(node_id, message)
        self.retryable = retryable


class MaxRetriesExceededError(NodeError):
    """Every retry attempt failed."""

    retryable = False

    def __init__(self, node_id: str, attempts: int, last_error: BaseException):
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(node_id, f"Failed after {attempts} attempt(s): {last_error}")


class NodeCancelledError(NodeError):
    """The run was cancelled while the node was pending or in flight."""

    retryable = False


class ConcurrentExecutionError(Exception):
    """A run for the same graph is already in progress."""

    pass


class ExecutionStatus(str, Enum):
    """Overall run status"""

    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class NodeExecutionState:
    """Per-node record within one run."""

    node_id: str
    node_type: str
    label: str | None = None
    status: NodeStatus = NodeStatus.PENDING
    output: Any = None
    error: str | None = None
    error_type: str | None = None
    retry_count: int = 0
    started_at: datetime | None = None
    finished_at: datetime | None = None
    duration: float | None = None  # seconds
    resolved_config: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "node_id": self.node_id,
            "node_type": self.node_type,
            "label": self.label,
            "status": self.status.value,
            "output": self.output,
            "error": self.error,
            "error_type": self.error_type,
            "retry_count": self.retry_count,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "duration": self.duration,
            "resolved_config": self.resolved_config,
        }


@dataclass
class ExecutionPlan:
    """Transient record of one run: per-node states plus overall status."""

    id: str
    workflow_id: str
    mode: ExecutionMode | None
    status: ExecutionStatus = ExecutionStatus.RUNNING
    nodes: dict[str, NodeExecutionState] = field(default_factory=dict)
    order: list[str] = field(default_factory=list)
    layers: list[list[str]] = field(default_factory=list)
    errors: dict[str, str] = field(default_factory=dict)
    started_at: datetime = field(default_factory=_now)
    finished_at: datetime | None = None
    duration: float | None = None  # seconds

    @property
    def results(self) -> dict[str, Any]:
        """Outputs of completed nodes keyed by node id."""
        return {
            nid: state.output
            for nid, state in self.nodes.items()
            if state.status == NodeStatus.COMPLETED
        }

    def count(self, status: NodeStatus) -> int:
        return sum(1 for state in self.nodes.values() if state.status == status)

    @property
    def executed(self) -> list[str]:
        """Nodes whose processor was invoked at least once."""
        return [nid for nid, state in self.nodes.items() if state.started_at is not None]

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "workflow_id": self.workflow_id,
            "mode": self.mode.value if self.mode else None,
            "status": self.status.value,
            "order": list(self.order),
            "layers": [list(layer) for layer in self.layers],
            "errors": dict(self.errors),
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "duration": self.duration,
            "nodes": {nid: state.to_dict() for nid, state in self.nodes.items()},
        }


class _RunState:
    """Mutable bookkeeping owned by exactly one run."""

    def __init__(
        self,
        plan: ExecutionPlan,
        graph: WorkflowGraph,
        topology: Topology,
        processors: dict[str, NodeProcessor],
        options: ExecutionOptions,
        on_node_update: NodeUpdateCallback | None,
    ):
        self.plan = plan
        self.graph = graph
        self.topology = topology
        self.processors = processors
        self.options = options
        self.on_node_update = on_node_update
        self.nodes: dict[str, Node] = {n.id: n for n in graph.nodes}
        self.resolver = VariableResolver(graph.label_to_id())
        self.limiter = ConcurrencyLimiter(options.max_concurrency)
        # Append-only: written once per node on successful completion
        self.outputs: dict[str, NodeOutput] = {}
        # Edge ids that survived condition evaluation (conditional mode)
        self.live_edges: set[str] = set()
        self.cancel_event = asyncio.Event()
        self.inflight: set[asyncio.Task] = set()
        loop = asyncio.get_running_loop()
        self.deadline = loop.time() + options.timeout if options.timeout else None
        self.started = time.monotonic()

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def remaining(self) -> float | None:
        if self.deadline is None:
            return None
        return self.deadline - asyncio.get_running_loop().time()

    def cancel(self) -> None:
        self.cancel_event.set()
        for task in list(self.inflight):
            task.cancel()


class ExecutionCoordinator:
    """
    Orchestrates node execution for workflow graphs.

    USAGE:
        registry = ProcessorRegistry({"llmTask": call_llm}, fallback=PassthroughProcessor())
        coordinator = ExecutionCoordinator(registry)
        plan = await coordinator.run(graph, mode="parallel")
        if plan.status == ExecutionStatus.COMPLETED:
            print(plan.results)

    One coordinator may run many graphs, but never the same graph id twice at
    once: a second concurrent run raises ConcurrentExecutionError.
    """

    def __init__(
        self,
        registry: ProcessorRegistry | None = None,
        options: ExecutionOptions | None = None,
    ):
        self.registry = registry or default_registry()
        self.options = options or ExecutionOptions()
        self._active: dict[str, _RunState] = {}
        self._active_graphs: set[str] = set()
        self._history: deque[ExecutionPlan] = deque(maxlen=self.options.max_history or None)

    # ========== Public API ==========

    async def run(
        self,
        graph: WorkflowGraph,
        mode: ExecutionMode | str | None = None,
        options: ExecutionOptions | None = None,
        on_node_update: NodeUpdateCallback | None = None,
    ) -> ExecutionPlan:
        """
        Run ``graph`` to completion and return its execution plan.

        Args:
            graph: Workflow to execute
            mode: Overrides ``options.mode``; None picks a mode from the graph shape
            options: Per-run options (defaults to the coordinator's options)
            on_node_update: Called as ``cb(node_id, status, output, error)`` on
                every node status change

        Raises:
            ConcurrentExecutionError: this graph id is already running
        """
        options = options or self.options
        requested = mode if mode is not None else options.mode
        requested = ExecutionMode(requested) if requested is not None else None

        if graph.id in self._active_graphs:
            raise ConcurrentExecutionError(
                f"Workflow '{graph.id}' is already executing; concurrent runs are not supported"
            )

        execution_id = f"exec_{uuid.uuid4().hex[:12]}"
        plan = ExecutionPlan(id=execution_id, workflow_id=graph.id, mode=requested)
        logger.info(
            f"Starting workflow execution {execution_id} for '{graph.id}' "
            f"({len(graph.nodes)} nodes, {len(graph.edges)} edges)"
        )

        try:
            topology = GraphTopology.build(graph)
            processors = self.registry.resolve(graph)
        except GraphValidationError as e:
            logger.error(f"Workflow validation failed: {e}")
            plan.status = ExecutionStatus.FAILED
            plan.errors["validation"] = str(e)
            self._finish(plan, time.monotonic())
            return plan

        plan.mode = requested or self._determine_mode(graph, topology)
        plan.order = list(topology.order)
        plan.layers = [list(layer) for layer in topology.layers]
        for node in graph.nodes:
            plan.nodes[node.id] = NodeExecutionState(
                node_id=node.id, node_type=node.type, label=node.label
            )

        state = _RunState(plan, graph, topology, processors, options, on_node_update)
        self._active[execution_id] = state
        self._active_graphs.add(graph.id)
        try:
            if plan.mode == ExecutionMode.SEQUENTIAL:
                await self._run_sequential(state)
            else:
                await self._run_layered(state)
        except asyncio.CancelledError:
            # The caller abandoned the run; stop in-flight processor calls too
            state.cancel()
            self._settle(state)
            self._finish(plan, state.started)
            raise
        finally:
            self._active.pop(execution_id, None)
            self._active_graphs.discard(graph.id)

        self._settle(state)
        self._finish(plan, state.started)
        return plan

    def cancel(self, execution_id: str) -> bool:
        """
        Stop scheduling further nodes and cancel in-flight processor coroutines.

        Returns False if no such run is active.
        """
        state = self._active.get(execution_id)
        if state is None:
            return False
        logger.info(f"Cancelling execution {execution_id}")
        state.cancel()
        return True

    def get_execution(self, execution_id: str) -> ExecutionPlan | None:
        state = self._active.get(execution_id)
        if state is not None:
            return state.plan
        return next((p for p in self._history if p.id == execution_id), None)

    def get_active_executions(self) -> list[ExecutionPlan]:
        return [state.plan for state in self._active.values()]

    def get_execution_history(self) -> list[ExecutionPlan]:
        return list(self._history)

    def get_stats(self) -> dict[str, Any]:
        """Counts by status and the average duration over finished runs."""
        finished = list(self._history)
        durations = [p.duration for p in finished if p.duration is not None]
        return {
            "total": len(finished) + len(self._active),
            "active": len(self._active),
            "completed": sum(1 for p in finished if p.status == ExecutionStatus.COMPLETED),
            "failed": sum(1 for p in finished if p.status == ExecutionStatus.FAILED),
            "cancelled": sum(1 for p in finished if p.status == ExecutionStatus.CANCELLED),
            "average_duration": sum(durations) / len(durations) if durations else 0.0,
        }

    # ========== Scheduling ==========

    @staticmethod
    def _determine_mode(graph: WorkflowGraph, topology: Topology) -> ExecutionMode:
        if any(edge.condition is not None for edge in graph.edges):
            return ExecutionMode.CONDITIONAL
        if topology.has_parallelism:
            return ExecutionMode.PARALLEL
        return ExecutionMode.SEQUENTIAL

    async def _run_sequential(self, state: _RunState) -> None:
        for node_id in state.topology.order:
            if state.cancelled:
                break
            if state.plan.nodes[node_id].status != NodeStatus.PENDING:
                continue
            skip_reason = self._blocked_reason(state, node_id)
            if skip_reason:
                self._skip(state, node_id, skip_reason)
                continue
            # Every node sees the outputs of all nodes completed before it
            await self._execute_node(state, node_id, dict(state.outputs))

    async def _run_layered(self, state: _RunState) -> None:
        for depth, layer in enumerate(state.topology.layers):
            if state.cancelled:
                break
            runnable = []
            for node_id in layer:
                if state.plan.nodes[node_id].status != NodeStatus.PENDING:
                    continue
                skip_reason = self._blocked_reason(state, node_id)
                if skip_reason:
                    self._skip(state, node_id, skip_reason)
                else:
                    runnable.append(node_id)
            if not runnable:
                continue

            logger.debug(f"Layer {depth}: running {', '.join(runnable)}")
            # Snapshot taken once per layer so siblings never see each other's outputs
            snapshot = dict(state.outputs)
            await state.limiter.run_all(
                [
                    lambda nid=node_id: self._execute_node(state, nid, snapshot)
                    for node_id in runnable
                ]
            )

    def _blocked_reason(self, state: _RunState, node_id: str) -> str | None:
        """Why ``node_id`` cannot run, or None if it can."""
        incoming = [e for e in state.graph.edges if e.target == node_id]
        if not incoming:
            return None
        nodes = state.plan.nodes

        if state.plan.mode == ExecutionMode.CONDITIONAL:
            satisfied = [
                e
                for e in incoming
                if nodes[e.source].status == NodeStatus.COMPLETED and e.id in state.live_edges
            ]
            if not satisfied:
                return "no satisfied incoming edge"
            return None

        blocked = [e.source for e in incoming if nodes[e.source].status != NodeStatus.COMPLETED]
        if blocked:
            return f"upstream node(s) not completed: {', '.join(dict.fromkeys(blocked))}"
        return None

    # ========== Node Execution ==========

    async def _execute_node(
        self, state: _RunState, node_id: str, outputs: dict[str, NodeOutput]
    ) -> None:
        """
        Run one node through resolve -> invoke -> retry, recording its terminal state.

        Never raises for node failures; only caller cancellation propagates.
        """
        node = state.nodes[node_id]
        node_state = state.plan.nodes[node_id]
        policy = state.options.retry_policy

        if state.cancelled:
            self._skip(state, node_id, "execution cancelled", NodeCancelledError(node_id, "Cancelled"))
            return
        remaining = state.remaining()
        if remaining is not None and remaining <= 0:
            self._fail(
                state,
                node_id,
                NodeTimeoutError(
                    node_id,
                    f"Workflow timeout of {state.options.timeout}s exceeded before node started",
                    retryable=False,
                ),
                None,
            )
            return

        node_state.status = NodeStatus.RUNNING
        node_state.started_at = _now()
        started = time.monotonic()
        self._notify(state, node_id, NodeStatus.RUNNING.value)

        resolved = state.resolver.resolve(node.config, outputs)
        node_state.resolved_config = resolved
        logger.debug(f"Executing node {node_id} ({node.type}) with config {resolved}")

        while True:
            try:
                result = await self._invoke(state, node, resolved, node_state.retry_count)
                break
            except NodeCancelledError as e:
                self._skip(state, node_id, "execution cancelled", e, started)
                return
            except Exception as e:
                error = e if isinstance(e, NodeError) else NodeExecutionError(node_id, str(e) or type(e).__name__)
                if error.retryable and node_state.retry_count < policy.max_retries:
                    node_state.retry_count += 1
                    delay = policy.get_delay(node_state.retry_count)
                    logger.warning(
                        f"Node {node_id} failed ({error}); retry "
                        f"{node_state.retry_count}/{policy.max_retries} in {delay:.2f}s"
                    )
                    if not await self._backoff(state, delay):
                        self._skip(
                            state,
                            node_id,
                            "execution cancelled",
                            NodeCancelledError(node_id, "Cancelled during retry backoff"),
                            started,
                        )
                        return
                    continue
                if node_state.retry_count > 0 and error.retryable:
                    error = MaxRetriesExceededError(node_id, node_state.retry_count + 1, error)
                self._fail(state, node_id, error, started)
                return

        # Pydantic outputs are stored as plain data so templates can walk them
        if hasattr(result, "model_dump"):
            result = result.model_dump()

        node_state.output = result
        node_state.status = NodeStatus.COMPLETED
        node_state.finished_at = _now()
        node_state.duration = time.monotonic() - started
        state.outputs[node_id] = NodeOutput(
            node_id=node_id, output=result, data=result, status=NodeStatus.COMPLETED.value
        )
        self._update_live_edges(state, node_id)
        logger.info(f"Node {node_id} completed in {node_state.duration:.3f}s")
        self._notify(state, node_id, NodeStatus.COMPLETED.value, result)

    async def _invoke(
        self, state: _RunState, node: Node, config: dict[str, Any], attempt: int
    ) -> Any:
        """Call the node's processor once, racing it against the deadlines."""
        remaining = state.remaining()
        if remaining is not None and remaining <= 0:
            raise NodeTimeoutError(
                node.id, f"Workflow timeout of {state.options.timeout}s exceeded", retryable=False
            )
        node_timeout = state.options.node_timeout
        overall_bound = remaining is not None and (node_timeout is None or remaining <= node_timeout)
        timeout = remaining if overall_bound else node_timeout

        context = NodeContext(
            execution_id=state.plan.id,
            node=node,
            attempt=attempt,
            deadline=state.deadline,
            cancelled=state.cancel_event,
        )
        call = asyncio.ensure_future(state.processors[node.id].execute(config, context))
        state.inflight.add(call)
        deadline = asyncio.timeout(timeout)
        try:
            async with deadline:
                return await call
        except TimeoutError:
            # A TimeoutError raised by the processor itself is an ordinary failure
            if not deadline.expired():
                raise
            if overall_bound:
                raise NodeTimeoutError(
                    node.id, f"Workflow timeout of {state.options.timeout}s exceeded", retryable=False
                ) from None
            raise NodeTimeoutError(node.id, f"Node timed out after {node_timeout}s") from None
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if state.cancelled and not (current and current.cancelling()):
                raise NodeCancelledError(node.id, "Cancelled while running") from None
            raise
        finally:
            state.inflight.discard(call)

    @staticmethod
    async def _backoff(state: _RunState, delay: float) -> bool:
        """Sleep before a retry. Returns False if the run was cancelled meanwhile."""
        remaining = state.remaining()
        if remaining is not None:
            delay = min(delay, max(0.0, remaining))
        try:
            await asyncio.wait_for(state.cancel_event.wait(), timeout=delay)
        except TimeoutError:
            return True
        return False

    def _update_live_edges(self, state: _RunState, node_id: str) -> None:
        """Record which outgoing edges of a completed node stay live."""
        node_output = state.outputs[node_id]
        result = {
            "output": node_output.output,
            "data": node_output.data,
            "status": node_output.status,
            "error": node_output.error,
        }
        for edge in state.graph.edges:
            if edge.source != node_id:
                continue
            if (
                state.plan.mode != ExecutionMode.CONDITIONAL
                or edge.condition is None
                or edge.condition.evaluate(result)
            ):
                state.live_edges.add(edge.id)
            else:
                logger.info(f"Edge {edge.id} ({edge.source} -> {edge.target}) condition not met")

    # ========== Terminal Transitions ==========

    def _fail(
        self, state: _RunState, node_id: str, error: NodeError, started: float | None
    ) -> None:
        node_state = state.plan.nodes[node_id]
        node_state.status = NodeStatus.FAILED
        node_state.error = str(error)
        node_state.error_type = type(error).__name__
        node_state.finished_at = _now()
        if started is not None:
            node_state.duration = time.monotonic() - started
        state.plan.errors[node_id] = str(error)
        logger.error(f"Node {node_id} failed: {error}")
        self._notify(state, node_id, NodeStatus.FAILED.value, None, str(error))

        downstream = state.topology.descendants(node_id)
        for dependent in state.topology.order:
            if dependent not in downstream:
                continue
            if state.plan.nodes[dependent].status == NodeStatus.PENDING:
                self._skip(state, dependent, f"upstream node '{node_id}' failed")

    def _skip(
        self,
        state: _RunState,
        node_id: str,
        reason: str,
        error: NodeError | None = None,
        started: float | None = None,
    ) -> None:
        node_state = state.plan.nodes[node_id]
        node_state.status = NodeStatus.SKIPPED
        node_state.error = str(error) if error else reason
        node_state.error_type = type(error).__name__ if error else None
        node_state.finished_at = _now()
        if started is not None:
            node_state.duration = time.monotonic() - started
        logger.info(f"Node {node_id} skipped: {reason}")
        self._notify(state, node_id, NodeStatus.SKIPPED.value, None, node_state.error)

    def _settle(self, state: _RunState) -> None:
        """Close out nodes that never ran and compute the overall status."""
        plan = state.plan
        for node_id, node_state in plan.nodes.items():
            if node_state.status in (NodeStatus.PENDING, NodeStatus.RUNNING):
                reason = "execution cancelled" if state.cancelled else "not reached"
                error = NodeCancelledError(node_id, "Cancelled") if state.cancelled else None
                self._skip(state, node_id, reason, error)

        if state.cancelled:
            plan.status = ExecutionStatus.CANCELLED
        elif plan.count(NodeStatus.FAILED):
            plan.status = ExecutionStatus.FAILED
        else:
            plan.status = ExecutionStatus.COMPLETED

    def _finish(self, plan: ExecutionPlan, started: float) -> None:
        plan.finished_at = _now()
        plan.duration = time.monotonic() - started
        self._history.append(plan)
        logger.info(
            f"Execution {plan.id} {plan.status.value}: "
            f"{plan.count(NodeStatus.COMPLETED)} completed, "
            f"{plan.count(NodeStatus.FAILED)} failed, "
            f"{plan.count(NodeStatus.SKIPPED)} skipped in {plan.duration:.3f}s"
        )

    # ========== Notifications ==========

    def _notify(
        self,
        state: _RunState,
        node_id: str,
        status: str,
        output: Any = None,
        error: str | None = None,
    ) -> None:
        self._safe_notify(state.on_node_update, node_id, status, output, error)

    @staticmethod
    def _safe_notify(
        callback: NodeUpdateCallback | None,
        node_id: str,
        status: str,
        output: Any,
        error: str | None,
    ) -> None:
        if callback is None:
            return
        try:
            callback(node_id, status, output, error)
        except Exception as e:
            logger.error(f"Node update callback failed for {node_id}: {e}")
