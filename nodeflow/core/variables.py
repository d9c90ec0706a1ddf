"""Template variable substitution for node configuration.

Handles placeholders of the form ``{{labelOrId}}`` and
``{{labelOrId.property.path}}``. The property defaults to ``output``; the
names ``output``, ``data``, ``error`` and ``status`` select the matching
``NodeOutput`` field and any further segments walk into nested dicts/lists.

Substitution never raises: unknown nodes leave the placeholder untouched and
log a diagnostic, missing nested keys resolve to an empty string.
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from nodeflow.core.tree import JsonValue, map_strings

logger = logging.getLogger(__name__)

VARIABLE_PATTERN = re.compile(r"\{\{([^}]+)\}\}")

OUTPUT_FIELDS = ("output", "data", "error", "status")
DEFAULT_PROPERTY = "output"


@dataclass
class NodeOutput:
    """Result of a completed node as seen by templates."""

    node_id: str
    output: Any = None
    data: Any = None
    error: str | None = None
    status: str | None = None


@dataclass
class VariableValidation:
    """Outcome of ``validate_variables``."""

    is_valid: bool
    missing_nodes: list[str] = field(default_factory=list)
    available_nodes: list[str] = field(default_factory=list)
    available_labels: list[str] = field(default_factory=list)


def split_reference(path: str) -> tuple[str, str]:
    """Split ``"label.prop.path"`` into ``("label", "prop.path")``.

    A bare reference gets the default ``output`` property.
    """
    head, _, prop = path.strip().partition(".")
    return head.strip(), prop.strip() or DEFAULT_PROPERTY


def _read_property(node_output: NodeOutput, prop: str) -> Any:
    segments = prop.split(".")
    if segments[0] in OUTPUT_FIELDS:
        value = getattr(node_output, segments[0])
        rest = segments[1:]
    else:
        # {{node.result.data}} is shorthand for {{node.output.result.data}}
        value = node_output.output
        rest = segments
    for segment in rest:
        if isinstance(value, Mapping) and segment in value:
            value = value[segment]
        elif isinstance(value, (list, tuple)) and segment.isdigit() and int(segment) < len(value):
            value = value[int(segment)]
        else:
            return None
    return value


def to_text(value: Any) -> str:
    """Render a resolved value for insertion into a template."""
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, (dict, list, tuple)):
        try:
            return json.dumps(value, default=str)
        except (TypeError, ValueError):
            return str(value)
    return str(value)


def substitute_variables(
    template: Any,
    outputs: Mapping[str, NodeOutput],
    label_to_id: Mapping[str, str] | None = None,
) -> Any:
    """
    Substitute ``{{...}}`` placeholders with node outputs.

    Args:
        template: String containing placeholders. Non-string input is returned unchanged.
        outputs: Completed node outputs keyed by node id
        label_to_id: Optional mapping from node labels to node ids

    Returns:
        The template with every resolvable placeholder replaced
    """
    if not isinstance(template, str) or "{{" not in template:
        return template

    def replace(match: re.Match) -> str:
        head, prop = split_reference(match.group(1))
        if not head:
            return match.group(0)

        node_id = head
        if label_to_id and head in label_to_id:
            node_id = label_to_id[head]

        node_output = outputs.get(node_id)
        if node_output is None:
            logger.warning(
                f"Node {head} ({node_id}) not found for variable {match.group(0)}. "
                f"Available nodes: {', '.join(outputs.keys()) or '(none)'}"
            )
            return match.group(0)

        return to_text(_read_property(node_output, prop))

    return VARIABLE_PATTERN.sub(replace, template)


def extract_variables(template: Any) -> list[str]:
    """Return the trimmed inner text of every placeholder in ``template``."""
    if not isinstance(template, str):
        return []
    return [m.group(1).strip() for m in VARIABLE_PATTERN.finditer(template)]


def has_variables(template: Any) -> bool:
    return isinstance(template, str) and VARIABLE_PATTERN.search(template) is not None


def validate_variables(
    template: Any,
    outputs: Mapping[str, NodeOutput],
    label_to_id: Mapping[str, str] | None = None,
) -> VariableValidation:
    """Check that every placeholder in ``template`` names an available node."""
    missing: list[str] = []
    for variable in extract_variables(template):
        head, _prop = split_reference(variable)
        if head in outputs:
            continue
        if label_to_id and label_to_id.get(head) in outputs:
            continue
        missing.append(head)

    return VariableValidation(
        is_valid=not missing,
        missing_nodes=missing,
        available_nodes=list(outputs.keys()),
        available_labels=list(label_to_id.keys()) if label_to_id else [],
    )


def resolve_config(
    config: JsonValue,
    outputs: Mapping[str, NodeOutput],
    label_to_id: Mapping[str, str] | None = None,
) -> JsonValue:
    """Return a copy of ``config`` with every string leaf substituted."""
    return map_strings(config, lambda text: substitute_variables(text, outputs, label_to_id))


class VariableResolver:
    """Resolves templates against node outputs for one graph's label index."""

    def __init__(self, label_to_id: Mapping[str, str] | None = None):
        self.label_to_id = dict(label_to_id or {})

    def substitute(self, template: Any, outputs: Mapping[str, NodeOutput]) -> Any:
        return substitute_variables(template, outputs, self.label_to_id)

    def resolve(self, config: JsonValue, outputs: Mapping[str, NodeOutput]) -> JsonValue:
        return resolve_config(config, outputs, self.label_to_id)
