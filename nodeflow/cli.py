"""CLI entry point for Nodeflow.

Commands:
- nodeflow validate: Check a workflow file's structure and template references
- nodeflow visualize: Show a workflow graph in the terminal
- nodeflow run: Execute a workflow
- nodeflow refs: List every template reference in a workflow
- nodeflow rename: Preview or apply a node label change
"""

from __future__ import annotations

import asyncio
import importlib
import json
import logging
import sys
from pathlib import Path

import click
import pydantic
import yaml
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from nodeflow import __version__
from nodeflow.cli_ui.graph_renderer import StatusTableRenderer, TerminalGraphRenderer
from nodeflow.core.config import ConfigError, ExecutionOptions, load_execution_options, load_workflow
from nodeflow.core.coordinator import ExecutionCoordinator, ExecutionStatus
from nodeflow.core.graph_schema import ExecutionMode, WorkflowGraph
from nodeflow.core.label_index import LabelDependencyIndex
from nodeflow.core.processors import ProcessorRegistry, default_registry
from nodeflow.core.topology import GraphTopology, GraphValidationError

console = Console()


def _load_or_exit(workflow_file: str) -> WorkflowGraph:
    """Load a workflow file, printing errors and exiting 1 on failure."""
    try:
        return load_workflow(workflow_file)
    except ConfigError as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        sys.exit(1)
    except pydantic.ValidationError as e:
        console.print("[red]Error validating workflow schema:[/red]")
        for err in e.errors():
            loc = ".".join(str(x) for x in err["loc"])
            console.print(f"  - {escape(loc)}: {escape(err['msg'])}")
        sys.exit(1)


def _load_registry(factory_path: str | None) -> ProcessorRegistry:
    """Import ``module:factory`` and call it to get a processor registry.

    The factory may return a ``ProcessorRegistry`` or a mapping of node type
    to processor; a mapping gets the passthrough fallback.
    """
    if not factory_path:
        return default_registry()
    module_name, _, attr = factory_path.partition(":")
    if not module_name or not attr:
        raise click.BadParameter("expected 'module:factory'", param_hint="--processors")
    try:
        factory = getattr(importlib.import_module(module_name), attr)
    except (ImportError, AttributeError) as e:
        raise click.BadParameter(f"cannot load '{factory_path}': {e}", param_hint="--processors")

    registry = factory()
    if isinstance(registry, ProcessorRegistry):
        return registry
    if isinstance(registry, dict):
        return ProcessorRegistry(registry, fallback=default_registry().fallback)
    raise click.BadParameter(
        f"'{factory_path}' returned {type(registry).__name__}, expected ProcessorRegistry or dict",
        param_hint="--processors",
    )


@click.group()
@click.version_option(version=__version__)
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
def main(verbose: bool) -> None:
    """Nodeflow - graph workflow execution engine.

    Runs workflows whose nodes pass outputs to each other through
    {{label.property}} templates.
    """
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@main.command()
@click.argument("workflow_file", type=click.Path(exists=True))
def validate(workflow_file: str) -> None:
    """Validate graph structure and template references."""
    workflow = _load_or_exit(workflow_file)

    try:
        topology = GraphTopology.build(workflow)
    except GraphValidationError as e:
        console.print("[red]Validation errors:[/red]")
        console.print(f"  - {escape(str(e))}")
        sys.exit(1)

    console.print(f"[bold]Nodes:[/] {len(workflow.nodes)}")
    console.print(f"[bold]Edges:[/] {len(workflow.edges)}")
    console.print(f"[bold]Layers:[/] {len(topology.layers)}")
    for depth, layer in enumerate(topology.layers):
        console.print(f"  L{depth}: {escape(', '.join(layer))}")
    if topology.isolated:
        console.print(f"[yellow]Isolated nodes:[/] {escape(', '.join(topology.isolated))}")

    report = LabelDependencyIndex.validate(workflow)
    for warning in report.warnings:
        console.print(f"  [yellow]• {escape(warning)}[/]")
    if not report.is_valid:
        console.print("\n[red bold]Reference Errors:[/]")
        for error in report.errors:
            console.print(f"  [red]• {escape(error)}[/]")
        sys.exit(1)

    console.print("\n[green]✓ Workflow is valid[/]")


@main.command()
@click.argument("workflow_file", type=click.Path(exists=True))
@click.option("--layers", is_flag=True, help="Show topological layers instead of a tree")
def visualize(workflow_file: str, layers: bool) -> None:
    """Visualize a workflow graph in the terminal."""
    workflow = _load_or_exit(workflow_file)
    renderer = TerminalGraphRenderer(console)

    if layers:
        try:
            topology = GraphTopology.build(workflow)
        except GraphValidationError as e:
            console.print(f"[red]Cannot compute layers:[/] {escape(str(e))}")
            sys.exit(1)
        console.print(renderer.render_layers(workflow, topology))
    else:
        console.print(renderer.render_as_tree(workflow))

    console.print()
    console.print(f"[bold]Nodes:[/] {len(workflow.nodes)}")
    console.print(f"[bold]Edges:[/] {len(workflow.edges)}")


@main.command()
@click.argument("workflow_file", type=click.Path(exists=True))
@click.option(
    "--mode",
    type=click.Choice([m.value for m in ExecutionMode]),
    help="Execution mode (default: chosen from the graph shape)",
)
@click.option("--max-concurrency", type=int, help="Maximum nodes running at once")
@click.option("--timeout", type=float, help="Overall workflow timeout in seconds")
@click.option(
    "--config",
    "config_file",
    type=click.Path(exists=True),
    help="YAML file with execution options",
)
@click.option("--processors", help="Processor registry factory as 'module:function'")
@click.option("--json", "as_json", is_flag=True, help="Print the execution report as JSON")
def run(
    workflow_file: str,
    mode: str | None,
    max_concurrency: int | None,
    timeout: float | None,
    config_file: str | None,
    processors: str | None,
    as_json: bool,
) -> None:
    """Execute a workflow graph."""
    workflow = _load_or_exit(workflow_file)

    try:
        options = load_execution_options(config_file) if config_file else ExecutionOptions()
        overrides = {}
        if mode:
            overrides["mode"] = mode
        if max_concurrency is not None:
            overrides["max_concurrency"] = max_concurrency
        if timeout is not None:
            overrides["timeout"] = timeout
        if overrides:
            options = ExecutionOptions.model_validate({**options.model_dump(), **overrides})
    except ConfigError as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        sys.exit(1)
    except pydantic.ValidationError as e:
        console.print("[red]Error validating execution options:[/red]")
        for err in e.errors():
            loc = ".".join(str(x) for x in err["loc"])
            console.print(f"  - {escape(loc)}: {escape(err['msg'])}")
        sys.exit(1)

    registry = _load_registry(processors)
    coordinator = ExecutionCoordinator(registry, options)
    plan = asyncio.run(coordinator.run(workflow))

    if as_json:
        click.echo(json.dumps(plan.to_dict(), indent=2, default=str))
    elif "validation" in plan.errors:
        console.print(f"[red]Validation failed:[/] {escape(plan.errors['validation'])}")
    else:
        console.print(StatusTableRenderer(console).render_plan(workflow, plan))
        if plan.status == ExecutionStatus.COMPLETED:
            console.print("[green]Workflow completed successfully[/green]")
        else:
            console.print(f"[red]Workflow {plan.status.value}[/red]")

    if plan.status != ExecutionStatus.COMPLETED:
        sys.exit(1)


@main.command()
@click.argument("workflow_file", type=click.Path(exists=True))
def refs(workflow_file: str) -> None:
    """List every template reference in a workflow."""
    workflow = _load_or_exit(workflow_file)
    references = LabelDependencyIndex.all_references(workflow)

    if not references:
        console.print("[dim]No template references found[/]")
        return

    table = Table(title="Template References")
    table.add_column("Node", style="cyan")
    table.add_column("Field")
    table.add_column("Reference")
    table.add_column("Resolves To")
    for holder_id, node_refs in references.items():
        holder = workflow.get_node(holder_id)
        for ref in node_refs:
            target = (
                escape(ref.target_node_id)
                if ref.target_node_id
                else "[red]unresolved[/]"
            )
            table.add_row(
                escape(holder.display_name if holder else holder_id),
                escape(ref.context),
                escape(ref.full_reference),
                target,
            )
    console.print(table)


@main.command()
@click.argument("workflow_file", type=click.Path(exists=True))
@click.argument("node_id")
@click.argument("new_label")
@click.option(
    "--output",
    "-o",
    type=click.Path(dir_okay=False, writable=True),
    help="Write the relabelled workflow here (.json or .yaml)",
)
def rename(workflow_file: str, node_id: str, new_label: str, output: str | None) -> None:
    """Show the impact of relabelling NODE_ID, optionally writing the result."""
    workflow = _load_or_exit(workflow_file)
    node = workflow.get_node(node_id)
    if node is None:
        console.print(f"[red]Error: node '{escape(node_id)}' not found[/red]")
        sys.exit(1)

    old_label = node.label or node.id
    impact = LabelDependencyIndex.analyze_rename_impact(workflow, node_id, old_label, new_label)
    if impact.has_dependencies:
        for warning in impact.warnings:
            console.print(f"[yellow]• {escape(warning)}[/]")
        console.print(f"[bold]Affected nodes:[/] {escape(', '.join(impact.affected_node_ids))}")
    else:
        console.print("[green]No other node references this label[/]")

    if not output:
        return

    updated = LabelDependencyIndex.rewrite_references(workflow, node_id, old_label, new_label)
    data = updated.model_dump(
        mode="json",
        by_alias=True,
        exclude_none=True,
        exclude={"nodes": {"__all__": {"status", "outputs"}}},
    )
    path = Path(output)
    if path.suffix.lower() == ".json":
        path.write_text(json.dumps(data, indent=2) + "\n")
    else:
        path.write_text(yaml.safe_dump(data, sort_keys=False))
    console.print(f"[green]Wrote {escape(str(path))}[/]")


if __name__ == "__main__":
    main()
