"""Tests for workflow graph schema models and edge conditions."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from nodeflow.core.graph_schema import Edge, Node, TransitionCondition, WorkflowGraph


class TestNodeModel:
    """Tests for Node validation."""

    def test_minimal_node_defaults(self):
        """A node needs only id and type."""
        node = Node(id="a", type="task")
        assert node.label is None
        assert node.config == {}
        assert node.data == {}
        assert node.status.value == "pending"
        assert node.display_name == "a"

    def test_display_name_prefers_label(self):
        node = Node(id="a", type="task", label="Fetch")
        assert node.display_name == "Fetch"

    @pytest.mark.parametrize("bad_id", ["", " a", "a ", "a.b", "{{a}}"])
    def test_invalid_node_ids_rejected(self, bad_id):
        """Ids that could not be addressed by a template are rejected."""
        with pytest.raises(ValidationError):
            Node(id=bad_id, type="task")


class TestEdgeModel:
    """Tests for Edge parsing."""

    def test_handle_aliases(self):
        """Edges accept camelCase handle names from editor exports."""
        edge = Edge.model_validate(
            {"id": "e", "source": "a", "target": "b", "sourceHandle": "out", "targetHandle": "in"}
        )
        assert edge.source_handle == "out"
        assert edge.target_handle == "in"
        assert edge.condition is None


class TestTransitionCondition:
    """Tests for structured edge conditions."""

    def test_field_name_validation(self):
        with pytest.raises(ValidationError):
            TransitionCondition(field="a..b", operator="==", value=1)
        with pytest.raises(ValidationError):
            TransitionCondition(field="a-b", operator="==", value=1)

    def test_list_operator_requires_list(self):
        with pytest.raises(ValidationError):
            TransitionCondition(operator="in", value="x")
        with pytest.raises(ValidationError):
            TransitionCondition(operator="==", value=["x"])

    def test_equality_on_output(self):
        cond = TransitionCondition(operator="==", value="approved")
        assert cond.evaluate({"output": "approved"}) is True
        assert cond.evaluate({"output": "rejected"}) is False

    def test_nested_field_defaults_into_output(self):
        """A field not naming a result part is looked up inside output."""
        cond = TransitionCondition(field="score", operator=">=", value=0.5)
        assert cond.evaluate({"output": {"score": 0.9}}) is True
        assert cond.evaluate({"output": {"score": 0.1}}) is False

    def test_explicit_output_path(self):
        cond = TransitionCondition(field="output.result.ok", operator="truthy")
        assert cond.evaluate({"output": {"result": {"ok": True}}}) is True
        assert cond.evaluate({"output": {"result": {"ok": False}}}) is False

    def test_missing_field_is_false(self):
        """Comparisons on missing fields never pass, not even !=."""
        cond = TransitionCondition(field="missing", operator="!=", value="failed")
        assert cond.evaluate({"output": {}}) is False

    def test_falsy_on_missing_field(self):
        cond = TransitionCondition(field="missing", operator="falsy")
        assert cond.evaluate({"output": {}}) is True

    def test_type_mismatch_is_false(self):
        """Ordering comparisons across types evaluate to False instead of raising."""
        cond = TransitionCondition(operator=">", value=3)
        assert cond.evaluate({"output": "text"}) is False
        assert cond.evaluate({"output": True}) is False

    def test_string_operators(self):
        assert TransitionCondition(operator="contains", value="ell").evaluate({"output": "hello"})
        assert TransitionCondition(operator="starts_with", value="he").evaluate({"output": "hello"})
        assert TransitionCondition(operator="ends_with", value="lo").evaluate({"output": "hello"})
        assert not TransitionCondition(operator="starts_with", value="he").evaluate({"output": 5})

    def test_membership_operators(self):
        assert TransitionCondition(operator="in", value=["a", "b"]).evaluate({"output": "a"})
        assert TransitionCondition(operator="not_in", value=["a", "b"]).evaluate({"output": "c"})

    def test_non_dict_result_is_false(self):
        assert TransitionCondition(operator="truthy").evaluate(None) is False


class TestWorkflowGraph:
    """Tests for WorkflowGraph helpers."""

    def test_label_to_id_trims_labels(self, make_graph):
        graph = make_graph([{"id": "a", "type": "t", "label": "  Fetch  "}])
        assert graph.label_to_id() == {"Fetch": "a"}

    def test_label_to_id_first_declared_wins(self, make_graph, caplog):
        """Duplicate labels resolve to the first node and log a warning."""
        graph = make_graph(
            [
                {"id": "a", "type": "t", "label": "Same"},
                {"id": "b", "type": "t", "label": "Same"},
            ]
        )
        with caplog.at_level("WARNING"):
            assert graph.label_to_id() == {"Same": "a"}
        assert "Duplicate label" in caplog.text

    def test_unlabelled_nodes_not_mapped(self, make_graph):
        graph = make_graph([{"id": "a", "type": "t"}, {"id": "b", "type": "t", "label": "  "}])
        assert graph.label_to_id() == {}

    def test_neighbour_helpers(self, diamond_graph):
        assert diamond_graph.predecessors_of("D") == ["B", "C"]
        assert diamond_graph.successors_of("A") == ["B", "C"]
        assert diamond_graph.get_node("C").id == "C"
        assert diamond_graph.get_node("Z") is None

    def test_to_networkx(self, diamond_graph):
        G = diamond_graph._to_networkx()
        assert set(G.nodes) == {"A", "B", "C", "D"}
        assert G.has_edge("A", "B")
        assert not G.has_edge("B", "A")

    def test_defaults(self):
        graph = WorkflowGraph()
        assert graph.id == "workflow"
        assert graph.nodes == []
