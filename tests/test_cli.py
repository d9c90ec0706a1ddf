"""Tests for CLI commands.

Tests all nodeflow CLI commands using Click's CliRunner:
- validate: Structure and reference checks
- visualize: Tree and layer rendering
- run: Workflow execution with options and processor factories
- refs: Reference audit table
- rename: Rename impact and rewrite
"""

from __future__ import annotations

import json
import sys
import types
from pathlib import Path

import pytest
import yaml
from click.testing import CliRunner

from nodeflow.cli import main
from nodeflow.core.config import load_workflow
from nodeflow.core.coordinator import ExecutionCoordinator
from nodeflow.core.processors import ProcessorRegistry


def _flat(output: str) -> str:
    """Collapse whitespace so assertions survive Rich line wrapping."""
    return " ".join(output.split())


@pytest.fixture
def cli_runner() -> CliRunner:
    """Create a Click CLI test runner."""
    return CliRunner()


@pytest.fixture
def cyclic_file(tmp_path: Path) -> Path:
    path = tmp_path / "cyclic.yaml"
    path.write_text(
        yaml.safe_dump(
            {
                "nodes": [{"id": "A", "type": "t"}, {"id": "B", "type": "t"}],
                "edges": [
                    {"id": "e1", "source": "A", "target": "B"},
                    {"id": "e2", "source": "B", "target": "A"},
                ],
            }
        )
    )
    return path


@pytest.fixture
def processor_module(monkeypatch):
    """Register an importable module exposing processor factories."""
    module = types.ModuleType("nodeflow_test_processors")
    module.registry = lambda: ProcessorRegistry(
        {
            "dataInput": lambda config: config["value"],
            "llmTask": lambda config: config["prompt"].upper(),
            "dataOutput": lambda config: config["content"],
        }
    )
    module.mapping = lambda: {"llmTask": lambda config: "mapped"}

    def failing():
        def boom(config):
            raise RuntimeError("processor exploded")

        return {"llmTask": boom}

    module.failing = failing
    module.not_a_registry = lambda: 42
    monkeypatch.setitem(sys.modules, "nodeflow_test_processors", module)
    return module


class TestValidateCommand:
    """Tests for 'nodeflow validate' command."""

    def test_valid_workflow(self, cli_runner, workflow_file):
        result = cli_runner.invoke(main, ["validate", str(workflow_file)])
        assert result.exit_code == 0
        assert "Workflow is valid" in _flat(result.output)
        assert "L0: node-1" in _flat(result.output)

    def test_cycle_fails(self, cli_runner, cyclic_file):
        result = cli_runner.invoke(main, ["validate", str(cyclic_file)])
        assert result.exit_code == 1
        assert "Circular dependency" in _flat(result.output)

    def test_broken_reference_fails(self, cli_runner, tmp_path):
        path = tmp_path / "broken.yaml"
        path.write_text(
            yaml.safe_dump(
                {"nodes": [{"id": "a", "type": "t", "config": {"x": "{{ghost.output}}"}}]}
            )
        )
        result = cli_runner.invoke(main, ["validate", str(path)])
        assert result.exit_code == 1
        assert "non-existent node 'ghost'" in _flat(result.output)

    def test_schema_error(self, cli_runner, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("nodes:\n  - id: a\n")
        result = cli_runner.invoke(main, ["validate", str(path)])
        assert result.exit_code == 1
        assert "Error validating workflow schema" in _flat(result.output)

    def test_non_mapping_file(self, cli_runner, tmp_path):
        path = tmp_path / "list.yaml"
        path.write_text("- 1\n- 2\n")
        result = cli_runner.invoke(main, ["validate", str(path)])
        assert result.exit_code == 1
        assert "Expected a dictionary" in _flat(result.output)


class TestVisualizeCommand:
    def test_tree(self, cli_runner, workflow_file):
        result = cli_runner.invoke(main, ["visualize", str(workflow_file)])
        assert result.exit_code == 0
        assert "Input Data" in _flat(result.output)
        assert "AI Processor" in _flat(result.output)
        assert "Nodes: 3" in _flat(result.output)

    def test_layers(self, cli_runner, workflow_file):
        result = cli_runner.invoke(main, ["visualize", str(workflow_file), "--layers"])
        assert result.exit_code == 0
        assert "L2" in _flat(result.output)

    def test_layers_reject_cycles(self, cli_runner, cyclic_file):
        result = cli_runner.invoke(main, ["visualize", str(cyclic_file), "--layers"])
        assert result.exit_code == 1


class TestRunCommand:
    """Tests for 'nodeflow run' command."""

    def test_run_with_default_processors(self, cli_runner, workflow_file):
        """The passthrough fallback echoes resolved configs."""
        result = cli_runner.invoke(main, ["run", str(workflow_file), "--json"])
        assert result.exit_code == 0
        report = json.loads(result.output)
        assert report["status"] == "completed"
        assert report["nodes"]["node-2"]["resolved_config"]["prompt"].startswith("Process ")

    def test_run_with_processor_factory(self, cli_runner, workflow_file, processor_module):
        result = cli_runner.invoke(
            main,
            ["run", str(workflow_file), "--processors", "nodeflow_test_processors:registry", "--json"],
        )
        assert result.exit_code == 0
        report = json.loads(result.output)
        assert report["nodes"]["node-3"]["output"] == "PROCESS HELLO"

    def test_run_with_mapping_factory(self, cli_runner, workflow_file, processor_module):
        result = cli_runner.invoke(
            main,
            ["run", str(workflow_file), "--processors", "nodeflow_test_processors:mapping", "--json"],
        )
        assert result.exit_code == 0
        assert json.loads(result.output)["nodes"]["node-2"]["output"] == "mapped"

    def test_failed_run_exits_nonzero(self, cli_runner, workflow_file, processor_module, tmp_path):
        config = tmp_path / "options.yaml"
        config.write_text("retryPolicy:\n  maxRetries: 0\n")
        result = cli_runner.invoke(
            main,
            [
                "run",
                str(workflow_file),
                "--processors",
                "nodeflow_test_processors:failing",
                "--config",
                str(config),
            ],
        )
        assert result.exit_code == 1
        assert "Workflow failed" in _flat(result.output)

    def test_bad_factory(self, cli_runner, workflow_file, processor_module):
        result = cli_runner.invoke(
            main, ["run", str(workflow_file), "--processors", "nodeflow_test_processors:not_a_registry"]
        )
        assert result.exit_code == 2
        assert "expected ProcessorRegistry or dict" in _flat(result.output)

    def test_malformed_factory_path(self, cli_runner, workflow_file):
        result = cli_runner.invoke(main, ["run", str(workflow_file), "--processors", "nocolon"])
        assert result.exit_code == 2

    def test_cycle_reports_validation(self, cli_runner, cyclic_file):
        result = cli_runner.invoke(main, ["run", str(cyclic_file)])
        assert result.exit_code == 1
        assert "Validation failed" in _flat(result.output)

    def test_options_file_and_overrides(self, cli_runner, workflow_file, tmp_path, mocker):
        config = tmp_path / "options.yaml"
        config.write_text("maxConcurrency: 2\ntimeout: 50\n")
        spy = mocker.patch("nodeflow.cli.ExecutionCoordinator", wraps=ExecutionCoordinator)

        result = cli_runner.invoke(
            main,
            [
                "run",
                str(workflow_file),
                "--config",
                str(config),
                "--mode",
                "parallel",
                "--timeout",
                "10",
                "--json",
            ],
        )
        assert result.exit_code == 0
        options = spy.call_args.args[1]
        assert options.max_concurrency == 2
        assert options.timeout == 10
        assert options.mode.value == "parallel"
        assert json.loads(result.output)["mode"] == "parallel"

    def test_invalid_options(self, cli_runner, workflow_file):
        result = cli_runner.invoke(main, ["run", str(workflow_file), "--timeout=-1"])
        assert result.exit_code == 1
        assert "Error validating execution options" in _flat(result.output)

    def test_status_table(self, cli_runner, workflow_file):
        result = cli_runner.invoke(main, ["run", str(workflow_file)])
        assert result.exit_code == 0
        assert "Workflow completed successfully" in _flat(result.output)


class TestRefsCommand:
    def test_lists_references(self, cli_runner, workflow_file):
        result = cli_runner.invoke(main, ["refs", str(workflow_file)])
        assert result.exit_code == 0
        assert "node-1" in _flat(result.output)
        assert "node-2" in _flat(result.output)

    def test_no_references(self, cli_runner, tmp_path):
        path = tmp_path / "plain.yaml"
        path.write_text(yaml.safe_dump({"nodes": [{"id": "a", "type": "t"}]}))
        result = cli_runner.invoke(main, ["refs", str(path)])
        assert result.exit_code == 0
        assert "No template references found" in _flat(result.output)


class TestRenameCommand:
    """Tests for 'nodeflow rename' command."""

    def test_preview(self, cli_runner, workflow_file):
        result = cli_runner.invoke(main, ["rename", str(workflow_file), "node-1", "Source"])
        assert result.exit_code == 0
        assert "will break 1 variable reference(s)" in _flat(result.output)
        assert "Affected nodes: node-2" in _flat(result.output)

    def test_no_dependents(self, cli_runner, workflow_file):
        result = cli_runner.invoke(main, ["rename", str(workflow_file), "node-3", "Final"])
        assert result.exit_code == 0
        assert "No other node references this label" in _flat(result.output)

    def test_unknown_node(self, cli_runner, workflow_file):
        result = cli_runner.invoke(main, ["rename", str(workflow_file), "ghost", "X"])
        assert result.exit_code == 1

    def test_writes_rewritten_graph(self, cli_runner, workflow_file, tmp_path):
        out = tmp_path / "renamed.yaml"
        result = cli_runner.invoke(
            main, ["rename", str(workflow_file), "node-1", "Source", "--output", str(out)]
        )
        assert result.exit_code == 0
        updated = load_workflow(out)
        assert updated.get_node("node-1").label == "Source"
        assert updated.get_node("node-2").config["prompt"] == "Process {{Source.output}}"

    def test_writes_json(self, cli_runner, workflow_file, tmp_path):
        out = tmp_path / "renamed.json"
        result = cli_runner.invoke(
            main, ["rename", str(workflow_file), "node-1", "Source", "-o", str(out)]
        )
        assert result.exit_code == 0
        data = json.loads(out.read_text())
        assert data["nodes"][0]["label"] == "Source"
        assert "status" not in data["nodes"][0]


class TestVersion:
    def test_version_option(self, cli_runner):
        result = cli_runner.invoke(main, ["--version"])
        assert result.exit_code == 0
        assert "0.1.0" in _flat(result.output)
