"""Terminal graph rendering for workflow visualization.

Layer and tree views of workflow graphs plus a per-node status table, all
built with Rich.
"""

from typing import Any

from rich.console import Console
from rich.markup import escape
from rich.table import Table
from rich.tree import Tree

from nodeflow.core.coordinator import ExecutionPlan
from nodeflow.core.graph_schema import Edge, Node, NodeStatus, WorkflowGraph
from nodeflow.core.topology import Topology


def _normalize_status(status: NodeStatus | str | None) -> str:
    """Normalize status to string for consistent lookup."""
    if isinstance(status, NodeStatus):
        return status.value
    return str(status) if status else "pending"


def _condition_label(edge: Edge) -> str:
    condition = edge.condition
    safe_field = escape(str(condition.field))
    safe_op = escape(str(condition.operator))
    if condition.operator in ("truthy", "falsy"):
        return f"[dim]({safe_field} {safe_op})[/]"
    safe_val = escape(str(condition.value)[:50])  # Truncate long values
    return f"[dim]({safe_field} {safe_op} {safe_val})[/]"


class TerminalGraphRenderer:
    """
    Renders workflow graphs in the terminal.

    render_layers() shows one line per topological layer, which is exactly
    what parallel mode runs concurrently. render_as_tree() follows edges from
    every root and labels conditional edges.

    SECURITY: node labels come from workflow files and are escaped before
    being embedded in Rich markup.
    """

    STATUS_COLORS = {
        "pending": "dim",
        "running": "blue bold",
        "completed": "green",
        "failed": "red bold",
        "skipped": "dim strikethrough",
    }

    STATUS_MARKS = {
        "completed": " ✓",
        "failed": " ✗",
        "running": " ⟳",
        "skipped": " ⊘",
    }

    def __init__(self, console: Console | None = None):
        self.console = console or Console()

    def _node_text(self, node: Node, statuses: dict[str, NodeStatus | str] | None) -> str:
        safe_label = escape(node.display_name)
        safe_type = escape(node.type)
        status = _normalize_status(statuses.get(node.id)) if statuses else "pending"
        if status == "pending":
            return f"[cyan]{safe_label}[/] [dim]<{safe_type}>[/]"
        color = self.STATUS_COLORS.get(status, "white")
        mark = self.STATUS_MARKS.get(status, "")
        return f"[{color}]{safe_label}{mark}[/] [dim]<{safe_type}>[/]"

    def render_layers(
        self,
        workflow: WorkflowGraph,
        topology: Topology,
        statuses: dict[str, NodeStatus | str] | None = None,
    ) -> str:
        """
        Render one line per topological layer.

        Args:
            workflow: The workflow graph to render
            topology: Validated topology of ``workflow``
            statuses: Optional dict of node_id -> current status

        Returns:
            Rich markup string
        """
        node_map = {n.id: n for n in workflow.nodes}
        lines = []
        for depth, layer in enumerate(topology.layers):
            items = [self._node_text(node_map[nid], statuses) for nid in layer if nid in node_map]
            lines.append(f"[bold]L{depth}[/]  " + "  |  ".join(items))
            if depth < len(topology.layers) - 1:
                lines.append("     v")
        return "\n".join(lines)

    def render_as_tree(
        self,
        workflow: WorkflowGraph,
        statuses: dict[str, NodeStatus | str] | None = None,
        max_depth: int = 50,
    ) -> Tree:
        """
        Render workflow as a Rich Tree rooted at every node without incoming edges.

        Nodes reachable along several paths appear under each of them.
        """
        title = escape(workflow.name or workflow.id)
        tree = Tree(f"[bold]{title}[/]")

        node_map = {n.id: n for n in workflow.nodes}
        edge_map: dict[str, list[Edge]] = {n.id: [] for n in workflow.nodes}
        targets = set()
        for edge in workflow.edges:
            if edge.source in edge_map:
                edge_map[edge.source].append(edge)
            targets.add(edge.target)

        roots = [n for n in workflow.nodes if n.id not in targets]
        if not roots:
            tree.add("[red]Error: no root node (every node has an incoming edge)[/]")
            return tree

        for root in roots:
            self._add_node_to_tree(tree, root, statuses, node_map, edge_map, set(), 0, max_depth)
        return tree

    def _add_node_to_tree(
        self,
        parent: Tree,
        node: Node,
        statuses: dict[str, NodeStatus | str] | None,
        node_map: dict[str, Node],
        edge_map: dict[str, list[Edge]],
        visited: set,
        depth: int,
        max_depth: int,
    ):
        if depth >= max_depth:
            parent.add("[dim]... (max depth reached)[/]")
            return
        if node.id in visited:
            parent.add(f"[dim]↩ {escape(node.id)} (loop)[/]")
            return
        visited = visited | {node.id}

        branch = parent.add(self._node_text(node, statuses))
        for edge in edge_map.get(node.id, []):
            child = node_map.get(edge.target)
            if child is None:
                continue
            holder = branch.add(_condition_label(edge)) if edge.condition else branch
            self._add_node_to_tree(
                holder, child, statuses, node_map, edge_map, visited, depth + 1, max_depth
            )


class StatusTableRenderer:
    """Renders node execution status as a Rich table.

    SECURITY: All user-controlled strings (node labels, outputs, errors) are escaped
    to prevent Rich markup injection.
    """

    STATUS_TEXT = {
        "completed": "[green]✓ Completed[/]",
        "failed": "[red]✗ Failed[/]",
        "running": "[blue]⟳ Running[/]",
        "skipped": "[dim]⊘ Skipped[/]",
    }

    def __init__(self, console: Console | None = None):
        self.console = console or Console()

    @staticmethod
    def _truncate(value: Any, width: int = 40) -> str:
        text = escape(str(value))
        if len(text) > width:
            text = text[: width - 3] + "..."
        return text

    def render_plan(self, workflow: WorkflowGraph, plan: ExecutionPlan) -> Table:
        """Render the per-node outcome of a finished (or running) execution."""
        mode = plan.mode.value if plan.mode else "-"
        table = Table(
            title=f"Execution {escape(plan.id)} [{escape(mode)}]: {escape(plan.status.value)}"
        )
        table.add_column("Node", style="cyan")
        table.add_column("Type", style="magenta")
        table.add_column("Status", justify="center")
        table.add_column("Retries", justify="right")
        table.add_column("Time", justify="right")
        table.add_column("Output / Error", max_width=40)

        for node in workflow.nodes:
            state = plan.nodes.get(node.id)
            status = _normalize_status(state.status if state else None)
            status_text = self.STATUS_TEXT.get(status, "[dim]○ Pending[/]")
            if state is None:
                detail, retries, elapsed = "", "", ""
            else:
                raw = state.error if state.error else state.output
                detail = self._truncate(raw if raw is not None else "")
                if state.error and status == "failed":
                    detail = f"[red]{detail}[/]"
                retries = str(state.retry_count) if state.retry_count else ""
                elapsed = f"{state.duration:.2f}s" if state.duration is not None else ""
            table.add_row(
                escape(node.display_name),
                escape(node.type),
                status_text,
                retries,
                elapsed,
                detail,
            )
        return table
