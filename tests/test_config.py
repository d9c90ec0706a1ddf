"""Tests for execution options, retry policy and workflow loading."""

from __future__ import annotations

import json

import pytest
from pydantic import ValidationError

from nodeflow.core.config import (
    ConfigError,
    ExecutionOptions,
    RetryPolicy,
    load_execution_options,
    load_workflow,
)
from nodeflow.core.graph_schema import ExecutionMode


class TestRetryPolicy:
    """Tests for RetryPolicy delay calculation."""

    def test_defaults(self):
        policy = RetryPolicy()
        assert policy.max_retries == 3
        assert policy.retry_delay == 1.0
        assert policy.backoff_multiplier == 2.0

    def test_exponential_backoff(self):
        policy = RetryPolicy(retry_delay=1.0, backoff_multiplier=2.0, max_delay=100)
        assert policy.get_delay(0) == 1.0
        assert policy.get_delay(1) == 2.0
        assert policy.get_delay(3) == 8.0

    def test_max_delay_cap(self):
        policy = RetryPolicy(retry_delay=10, backoff_multiplier=10, max_delay=15)
        assert policy.get_delay(2) == 15

    def test_jitter_bounds(self):
        policy = RetryPolicy(retry_delay=10, backoff_multiplier=1, jitter=0.1)
        for _ in range(20):
            assert 9.0 <= policy.get_delay(1) <= 11.0

    def test_camel_case_aliases(self):
        policy = RetryPolicy.model_validate({"maxRetries": 1, "retryDelay": 0.5})
        assert policy.max_retries == 1
        assert policy.retry_delay == 0.5

    def test_multiplier_below_one_rejected(self):
        with pytest.raises(ValidationError):
            RetryPolicy(backoff_multiplier=0.5)


class TestExecutionOptions:
    def test_defaults(self):
        options = ExecutionOptions()
        assert options.mode is None
        assert options.max_concurrency == 5
        assert options.timeout == 300.0
        assert options.max_history == 100

    def test_concurrency_clamped(self):
        assert ExecutionOptions(max_concurrency=0).max_concurrency == 1

    def test_non_positive_timeout_rejected(self):
        with pytest.raises(ValidationError):
            ExecutionOptions(timeout=0)

    def test_no_deadline(self):
        assert ExecutionOptions(timeout=None).timeout is None


class TestLoading:
    """Tests for YAML/JSON loaders."""

    def test_load_execution_options(self, tmp_path):
        path = tmp_path / "options.yaml"
        path.write_text(
            "mode: parallel\nmaxConcurrency: 2\nretryPolicy:\n  maxRetries: 1\n"
        )
        options = load_execution_options(path)
        assert options.mode == ExecutionMode.PARALLEL
        assert options.max_concurrency == 2
        assert options.retry_policy.max_retries == 1

    def test_empty_options_file(self, tmp_path):
        path = tmp_path / "options.yaml"
        path.write_text("")
        assert load_execution_options(path) == ExecutionOptions()

    def test_options_must_be_mapping(self, tmp_path):
        path = tmp_path / "options.yaml"
        path.write_text("- a\n- b\n")
        with pytest.raises(ConfigError, match="Expected a mapping"):
            load_execution_options(path)

    def test_load_workflow_yaml(self, workflow_file):
        graph = load_workflow(workflow_file)
        assert graph.id == "pipeline"
        assert len(graph.nodes) == 3

    def test_load_workflow_json_defaults_id(self, tmp_path, pipeline_graph_data):
        data = dict(pipeline_graph_data)
        del data["id"]
        path = tmp_path / "my-flow.json"
        path.write_text(json.dumps(data))
        assert load_workflow(path).id == "my-flow"

    def test_malformed_yaml(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("nodes: [unclosed\n")
        with pytest.raises(ConfigError, match="Error parsing"):
            load_workflow(path)

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError, match="Cannot read"):
            load_workflow(tmp_path / "nope.yaml")

    def test_schema_errors_surface(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("nodes:\n  - id: a\n")
        with pytest.raises(ValidationError):
            load_workflow(path)
