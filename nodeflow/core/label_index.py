"""Label dependency tracking for rename safety.

Templates address other nodes by label (``{{Input Data.output}}``), so
renaming a node silently breaks every template that used the old label.
``LabelDependencyIndex`` finds those references, describes the impact of a
rename, rewrites them in a copy of the graph and audits the whole graph for
references that do not resolve.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field

from nodeflow.core.graph_schema import Node, WorkflowGraph
from nodeflow.core.tree import JsonValue, iter_strings, map_strings
from nodeflow.core.variables import VARIABLE_PATTERN, split_reference

logger = logging.getLogger(__name__)


@dataclass
class VariableReference:
    """A single ``{{...}}`` placeholder found in a node's config or data.

    ``target_node_label`` is the label-or-id text as written in the template;
    ``target_node_id`` is the node it resolves to, or None when it resolves
    to nothing.
    """

    target_node_id: str | None
    target_node_label: str
    property: str
    full_reference: str
    context: str


@dataclass
class LabelDependency:
    """All references one node holds to the label under analysis."""

    node_id: str
    node_label: str
    references: list[VariableReference] = field(default_factory=list)


@dataclass
class LabelChangeImpact:
    """What breaks if a node's label changes."""

    has_dependencies: bool
    dependencies: list[LabelDependency]
    affected_node_ids: list[str]
    warnings: list[str]
    suggestions: list[str]


@dataclass
class ReferenceValidation:
    """Result of auditing every template reference in a graph."""

    is_valid: bool
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


def _scan_node(node: Node, resolve) -> list[VariableReference]:
    """Collect references from ``node.config`` then ``node.data``.

    ``resolve(head)`` returns the target node id for a reference head, or
    ``False`` to skip the reference entirely.
    """
    references: list[VariableReference] = []
    for tree, default_context in ((node.config, "config"), (node.data, "data")):
        for context, text in iter_strings(tree):
            for match in VARIABLE_PATTERN.finditer(text):
                head, prop = split_reference(match.group(1))
                if not head:
                    continue
                target = resolve(head)
                if target is False:
                    continue
                references.append(
                    VariableReference(
                        target_node_id=target,
                        target_node_label=head,
                        property=prop,
                        full_reference=match.group(0),
                        context=context or default_context,
                    )
                )
    return references


def _rename_in_text(text: str, old_label: str, new_label: str) -> str:
    """Swap the label part of matching placeholders, keeping everything else byte-for-byte."""

    def replace(match: re.Match) -> str:
        inner = match.group(1)
        head, sep, rest = inner.partition(".")
        if head.strip() != old_label:
            return match.group(0)
        leading = head[: len(head) - len(head.lstrip())]
        trailing = head[len(head.rstrip()) :]
        return "{{" + leading + new_label + trailing + sep + rest + "}}"

    return VARIABLE_PATTERN.sub(replace, text)


class LabelDependencyIndex:
    """Indexes label references across a workflow graph."""

    @staticmethod
    def find_dependencies(
        graph: WorkflowGraph, node_id: str, label: str
    ) -> list[LabelDependency]:
        """
        Find every other node that references ``label`` in its config or data.

        The node being analysed is skipped; references it holds to itself do
        not count as dependencies.
        """
        label = label.strip()
        dependencies: list[LabelDependency] = []
        if not label:
            return dependencies

        def resolve(head: str):
            return node_id if head == label else False

        for node in graph.nodes:
            if node.id == node_id:
                continue
            references = _scan_node(node, resolve)
            if references:
                dependencies.append(
                    LabelDependency(
                        node_id=node.id,
                        node_label=node.display_name,
                        references=references,
                    )
                )
        return dependencies

    @classmethod
    def analyze_rename_impact(
        cls, graph: WorkflowGraph, node_id: str, old_label: str, new_label: str
    ) -> LabelChangeImpact:
        """Describe which references a rename from ``old_label`` to ``new_label`` would break."""
        dependencies = cls.find_dependencies(graph, node_id, old_label)
        warnings: list[str] = []
        suggestions: list[str] = []

        if dependencies:
            count = sum(len(dep.references) for dep in dependencies)
            warnings.append(
                f'Changing label "{old_label}" to "{new_label}" will break '
                f"{count} variable reference(s)"
            )
            for dep in dependencies:
                for ref in dep.references:
                    warnings.append(
                        f'node "{dep.node_label}" uses {{{{{old_label}.{ref.property}}}}} '
                        f"in {ref.context}"
                    )
            suggestions.append(
                f'Update references automatically to use "{new_label}"'
            )
            suggestions.append("Or manually update the variable references in the affected nodes")

        return LabelChangeImpact(
            has_dependencies=bool(dependencies),
            dependencies=dependencies,
            affected_node_ids=[dep.node_id for dep in dependencies],
            warnings=warnings,
            suggestions=suggestions,
        )

    @staticmethod
    def rewrite_references(
        graph: WorkflowGraph, node_id: str, old_label: str, new_label: str
    ) -> WorkflowGraph:
        """
        Return a copy of ``graph`` with node ``node_id`` relabelled and every
        other node's ``{{old_label...}}`` references pointing at ``new_label``.

        The input graph is never mutated. Placeholder formatting (whitespace,
        bare vs. explicit property) is preserved, so renaming back restores
        the original strings exactly.
        """
        old_label = old_label.strip()
        new_label = new_label.strip()
        updated = graph.model_copy(deep=True)

        def rewrite(tree: JsonValue) -> JsonValue:
            return map_strings(tree, lambda text: _rename_in_text(text, old_label, new_label))

        for node in updated.nodes:
            if node.id == node_id:
                node.label = new_label
                continue
            if not old_label:
                continue
            node.config = rewrite(node.config)
            node.data = rewrite(node.data)

        logger.debug(f"Relabelled node '{node_id}' from '{old_label}' to '{new_label}'")
        return updated

    @staticmethod
    def all_references(graph: WorkflowGraph) -> dict[str, list[VariableReference]]:
        """Every template reference in the graph, keyed by the node that holds it."""
        node_ids = {node.id for node in graph.nodes}
        label_to_id = graph.label_to_id()

        def resolve(head: str):
            # Labels take precedence over ids, matching substitution order
            if head in label_to_id:
                return label_to_id[head]
            if head in node_ids:
                return head
            return None

        result: dict[str, list[VariableReference]] = {}
        for node in graph.nodes:
            references = _scan_node(node, resolve)
            if references:
                result[node.id] = references
        return result

    @classmethod
    def validate(cls, graph: WorkflowGraph) -> ReferenceValidation:
        """
        Confirm every reference resolves to exactly one node.

        Unresolvable references are errors. References that could mean more
        than one node (an id that is also another node's label, or a label
        shared by several nodes) are warnings.
        """
        errors: list[str] = []
        warnings: list[str] = []
        node_ids = {node.id for node in graph.nodes}
        nodes_by_label: dict[str, list[str]] = {}
        for node in graph.nodes:
            label = (node.label or "").strip()
            if label:
                nodes_by_label.setdefault(label, []).append(node.id)

        for holder_id, references in cls.all_references(graph).items():
            holder = graph.get_node(holder_id)
            holder_name = holder.display_name if holder else holder_id
            for ref in references:
                head = ref.target_node_label
                label_matches = nodes_by_label.get(head, [])
                id_match = head in node_ids

                if not id_match and not label_matches:
                    errors.append(f"Node '{holder_name}' references non-existent node '{head}'")
                    continue

                others = [nid for nid in label_matches if nid != head]
                if id_match and others:
                    warnings.append(
                        f"Node '{holder_name}' uses ambiguous reference '{head}': it is the id "
                        f"of node '{head}' and the label of node '{others[0]}' "
                        f"(label wins)"
                    )
                elif len(label_matches) > 1:
                    warnings.append(
                        f"Node '{holder_name}' uses ambiguous reference '{head}': label is "
                        f"shared by nodes {', '.join(label_matches)} "
                        f"(resolves to '{label_matches[0]}')"
                    )

        return ReferenceValidation(is_valid=not errors, errors=errors, warnings=warnings)
