# conftest.py - Shared pytest fixtures for all tests
"""Shared pytest fixtures for the Nodeflow test suite.

This module provides foundational fixtures used across all test modules:
- Sample workflow graphs (linear pipeline, diamond, conditional)
- Workflow files on disk for CLI tests
- Execution options tuned for fast tests (no retry delay)

Usage:
    Import fixtures implicitly via pytest's fixture discovery.
    All fixtures in this file are automatically available in test modules.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest
import yaml

from nodeflow.core.config import ExecutionOptions, RetryPolicy
from nodeflow.core.graph_schema import WorkflowGraph


# =============================================================================
# Graph Fixtures
# =============================================================================


def _make_graph(nodes: list[dict[str, Any]], edges: list[tuple] | None = None, **kwargs) -> WorkflowGraph:
    """Build a WorkflowGraph from compact node dicts and (source, target) edge tuples.

    Edge tuples may carry a third element: a condition dict.

    Example:
        _make_graph(
            [{"id": "a", "type": "t"}, {"id": "b", "type": "t"}],
            [("a", "b")],
        )
    """
    edge_dicts = []
    for index, edge in enumerate(edges or []):
        data = {"id": f"e{index}", "source": edge[0], "target": edge[1]}
        if len(edge) > 2:
            data["condition"] = edge[2]
        edge_dicts.append(data)
    return WorkflowGraph(nodes=nodes, edges=edge_dicts, **kwargs)


@pytest.fixture
def make_graph():
    """Factory fixture for compact graph construction (see ``_make_graph``)."""
    return _make_graph


@pytest.fixture
def pipeline_graph_data() -> dict[str, Any]:
    """Three-node pipeline: input -> processor -> output, wired by label templates.

    node-1 (dataInput, "Input Data")
        -> node-2 (llmTask, "AI Processor", prompt "Process {{Input Data.output}}")
        -> node-3 (dataOutput, content "{{AI Processor.output}}")
    """
    return {
        "id": "pipeline",
        "name": "Pipeline",
        "nodes": [
            {
                "id": "node-1",
                "type": "dataInput",
                "label": "Input Data",
                "config": {"value": "hello"},
            },
            {
                "id": "node-2",
                "type": "llmTask",
                "label": "AI Processor",
                "config": {"prompt": "Process {{Input Data.output}}"},
            },
            {
                "id": "node-3",
                "type": "dataOutput",
                "label": "Result",
                "config": {"content": "{{AI Processor.output}}"},
            },
        ],
        "edges": [
            {"id": "e1", "source": "node-1", "target": "node-2"},
            {"id": "e2", "source": "node-2", "target": "node-3"},
        ],
    }


@pytest.fixture
def pipeline_graph(pipeline_graph_data) -> WorkflowGraph:
    """The pipeline graph as a validated model."""
    return WorkflowGraph.model_validate(pipeline_graph_data)


@pytest.fixture
def diamond_graph() -> WorkflowGraph:
    """Diamond: A -> (B, C) -> D. B and C share a layer."""
    return _make_graph(
        [
            {"id": "A", "type": "task"},
            {"id": "B", "type": "task"},
            {"id": "C", "type": "task"},
            {"id": "D", "type": "task"},
        ],
        [("A", "B"), ("A", "C"), ("B", "D"), ("C", "D")],
    )


# =============================================================================
# Options Fixtures
# =============================================================================


@pytest.fixture
def fast_options() -> ExecutionOptions:
    """Options with zero retry delay so retry tests finish instantly."""
    return ExecutionOptions(
        max_concurrency=5,
        timeout=30,
        retry_policy=RetryPolicy(max_retries=0, retry_delay=0),
    )


# =============================================================================
# File Fixtures
# =============================================================================


@pytest.fixture
def workflow_file(tmp_path: Path, pipeline_graph_data) -> Path:
    """Pipeline graph written as YAML."""
    path = tmp_path / "pipeline.yaml"
    path.write_text(yaml.safe_dump(pipeline_graph_data, sort_keys=False))
    return path
