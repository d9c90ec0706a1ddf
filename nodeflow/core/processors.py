"""Node processor capability and registry.

The engine never inspects what a processor does. It resolves one processor
per node type before the run starts and then calls
``await processor.execute(config, context)`` with the node's resolved config.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable

from nodeflow.core.graph_schema import Node, WorkflowGraph
from nodeflow.core.topology import GraphValidationError

logger = logging.getLogger(__name__)


class UnknownNodeTypeError(GraphValidationError):
    """No processor is registered for a node's type and there is no fallback."""

    def __init__(self, node_id: str, node_type: str, known: list[str]):
        self.node_id = node_id
        self.node_type = node_type
        super().__init__(
            f"No processor registered for node '{node_id}' of type '{node_type}'. "
            f"Known types: {', '.join(sorted(known)) or '(none)'}"
        )


@dataclass
class NodeContext:
    """Per-invocation information handed to a processor.

    ``cancelled`` is set when the run is cancelled or its deadline passes.
    Long-running processors that do blocking work can poll it; coroutine
    processors are also cancelled directly through asyncio.
    """

    execution_id: str
    node: Node
    attempt: int
    deadline: float | None = None  # event-loop time, None = no deadline
    cancelled: asyncio.Event = field(default_factory=asyncio.Event)

    @property
    def node_id(self) -> str:
        return self.node.id

    def remaining(self) -> float | None:
        """Seconds until the deadline, or None when there is none."""
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - asyncio.get_running_loop().time())


class NodeProcessor(ABC):
    """Type-specific executor invoked by the engine for a node."""

    @abstractmethod
    async def execute(self, config: dict[str, Any], context: NodeContext) -> Any:
        """Run the node with its resolved config. Raise on failure."""
        ...


class FunctionProcessor(NodeProcessor):
    """Adapts a plain callable ``fn(config)`` or ``fn(config, context)``.

    Coroutine functions are awaited. Synchronous functions run in a worker
    thread via ``asyncio.to_thread``; a thread cannot be pre-empted, so a
    timed-out synchronous call keeps running in the background.
    """

    def __init__(self, fn: Callable[..., Any]):
        self.fn = fn
        try:
            params = inspect.signature(fn).parameters
            self._wants_context = len(params) >= 2
        except (TypeError, ValueError):
            self._wants_context = False

    async def execute(self, config: dict[str, Any], context: NodeContext) -> Any:
        args = (config, context) if self._wants_context else (config,)
        if inspect.iscoroutinefunction(self.fn):
            return await self.fn(*args)
        result = await asyncio.to_thread(self.fn, *args)
        if inspect.isawaitable(result):
            result = await result
        return result


class PassthroughProcessor(NodeProcessor):
    """Returns the resolved config unchanged; used as the default fallback."""

    async def execute(self, config: dict[str, Any], context: NodeContext) -> Any:
        logger.debug(
            f"Passthrough processor used for node '{context.node_id}' of type '{context.node.type}'"
        )
        return config


class ProcessorRegistry:
    """Maps node types to processors."""

    def __init__(
        self,
        processors: dict[str, NodeProcessor | Callable[..., Any]] | None = None,
        fallback: NodeProcessor | Callable[..., Any] | None = None,
    ):
        self._processors: dict[str, NodeProcessor] = {}
        self.fallback = self._coerce(fallback) if fallback is not None else None
        for node_type, processor in (processors or {}).items():
            self.register(node_type, processor)

    @staticmethod
    def _coerce(processor: NodeProcessor | Callable[..., Any]) -> NodeProcessor:
        if isinstance(processor, NodeProcessor):
            return processor
        if callable(processor):
            return FunctionProcessor(processor)
        raise TypeError(f"Not a processor: {processor!r}")

    def register(self, node_type: str, processor: NodeProcessor | Callable[..., Any]) -> None:
        self._processors[node_type] = self._coerce(processor)

    def unregister(self, node_type: str) -> None:
        self._processors.pop(node_type, None)

    def get(self, node_type: str) -> NodeProcessor | None:
        return self._processors.get(node_type, self.fallback)

    @property
    def types(self) -> list[str]:
        return list(self._processors)

    def resolve(self, graph: WorkflowGraph) -> dict[str, NodeProcessor]:
        """
        Pick a processor for every node before execution starts.

        Raises:
            UnknownNodeTypeError: a node type has no processor and no fallback is set
        """
        resolved: dict[str, NodeProcessor] = {}
        for node in graph.nodes:
            processor = self._processors.get(node.type)
            if processor is None:
                if self.fallback is None:
                    raise UnknownNodeTypeError(node.id, node.type, self.types)
                logger.warning(
                    f"Using fallback processor for unknown node type '{node.type}' "
                    f"(node '{node.id}')"
                )
                processor = self.fallback
            resolved[node.id] = processor
        return resolved


def default_registry() -> ProcessorRegistry:
    """Registry with no type-specific processors and a passthrough fallback."""
    return ProcessorRegistry(fallback=PassthroughProcessor())
