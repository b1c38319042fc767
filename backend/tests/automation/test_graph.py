"""Unit tests for workflow definitions, validation and ordering

Tests cover:
- Parsing editor JSON (connections / edges)
- Structural validation errors (ids, types, endpoints, cardinality)
- Capability compatibility and cycle detection
- Node configuration schema errors
- Deterministic topological order
"""

import pytest

from automation.engine.graph import (
    WorkflowDefinition,
    detect_cycles,
    topological_sort,
    validate_workflow,
)

SCHEDULE = {"scheduleType": "interval", "interval": {"value": 5, "unit": "minutes"}}
ADULTS = {"conditions": [{"field": "age", "operator": "greater_than", "value": 18}]}


def _workflow(nodes, connections=None, **extra):
    return WorkflowDefinition.from_dict({
        "id": "wf-1",
        "name": "Test",
        "nodes": nodes,
        "connections": connections or [],
        **extra,
    })


def _codes(result):
    return [e.code for e in result.errors]


class TestWorkflowDefinition:
    """Test definition parsing."""

    def test_edges_alias(self):
        """Test ``edges`` is accepted in place of ``connections``."""
        definition = WorkflowDefinition.from_dict({
            "id": "wf",
            "nodes": [{"id": "a", "type": "schedule", "data": SCHEDULE}],
            "edges": [{"source": "a", "target": "b"}],
        })
        assert len(definition.connections) == 1
        assert definition.connections[0].id == "a->b#0"

    def test_incoming_and_outgoing(self):
        """Test connection lookups keep declaration order."""
        definition = _workflow(
            [{"id": "a", "type": "schedule"}, {"id": "b", "type": "schedule"}, {"id": "m", "type": "merge"}],
            [{"source": "b", "target": "m"}, {"source": "a", "target": "m"}],
        )
        assert [c.source for c in definition.incoming("m")] == ["b", "a"]
        assert [c.target for c in definition.outgoing("a")] == ["m"]

    def test_round_trip_dict(self):
        """Test to_dict keeps nodes and settings."""
        definition = _workflow([{"id": "a", "type": "schedule", "data": SCHEDULE}], settings={"tz": "UTC"})
        data = definition.to_dict()
        assert data["nodes"][0]["data"] == SCHEDULE
        assert data["settings"] == {"tz": "UTC"}


class TestValidateWorkflow:
    """Test validation rules."""

    def test_valid_linear_workflow(self):
        """Test schedule -> filter -> map -> webhook-output validates."""
        result = validate_workflow(_workflow(
            [
                {"id": "s", "type": "schedule", "data": SCHEDULE},
                {"id": "f", "type": "filter", "data": ADULTS},
                {"id": "m", "type": "map", "data": {"template": {"id": "{{id}}"}}},
                {"id": "w", "type": "webhook-output", "data": {"url": "https://example.com/hook"}},
            ],
            [
                {"source": "s", "target": "f"},
                {"source": "f", "target": "m"},
                {"source": "m", "target": "w"},
            ],
        ))
        assert result.valid, result.to_dict()
        assert result.warnings == []

    def test_cycle_is_rejected(self):
        """Test A -> B -> A fails with a cycle error."""
        result = validate_workflow(_workflow(
            [{"id": "a", "type": "filter", "data": ADULTS}, {"id": "b", "type": "filter", "data": ADULTS}],
            [{"source": "a", "target": "b"}, {"source": "b", "target": "a"}],
        ))
        assert not result.valid
        assert "CIRCULAR_DEPENDENCY" in _codes(result)

    def test_unknown_type_and_duplicate_id(self):
        """Test unregistered types and duplicate ids are reported."""
        result = validate_workflow(_workflow([
            {"id": "a", "type": "teleport"},
            {"id": "b", "type": "schedule", "data": SCHEDULE},
            {"id": "b", "type": "schedule", "data": SCHEDULE},
        ]))
        codes = _codes(result)
        assert "INVALID_NODE_TYPE" in codes
        assert "DUPLICATE_NODE_ID" in codes

    def test_unknown_connection_endpoint(self):
        """Test connections to missing nodes are reported per end."""
        result = validate_workflow(_workflow(
            [{"id": "a", "type": "schedule", "data": SCHEDULE}],
            [{"source": "a", "target": "ghost"}],
        ))
        assert _codes(result) == ["UNKNOWN_CONNECTION_TARGET"]

    def test_trigger_accepts_no_inputs(self):
        """Test a connection into a trigger violates maxInputs 0."""
        result = validate_workflow(_workflow(
            [{"id": "a", "type": "schedule", "data": SCHEDULE}, {"id": "b", "type": "schedule", "data": SCHEDULE}],
            [{"source": "a", "target": "b"}],
        ))
        codes = _codes(result)
        assert "TOO_MANY_INPUTS" in codes
        assert "INCOMPATIBLE_CONNECTION" in codes

    def test_output_node_is_terminal(self):
        """Test webhook-output may not feed another node."""
        result = validate_workflow(_workflow(
            [
                {"id": "w", "type": "webhook-output", "data": {"url": "https://example.com"}},
                {"id": "f", "type": "filter", "data": ADULTS},
            ],
            [{"source": "w", "target": "f"}],
        ))
        assert "TOO_MANY_OUTPUTS" in _codes(result)

    def test_output_node_takes_one_input(self):
        """Test two branches feeding one webhook-output is rejected."""
        result = validate_workflow(_workflow(
            [
                {"id": "s", "type": "schedule", "data": SCHEDULE},
                {"id": "a", "type": "filter", "data": ADULTS},
                {"id": "b", "type": "filter", "data": ADULTS},
                {"id": "w", "type": "webhook-output", "data": {"url": "https://example.com"}},
            ],
            [
                {"source": "s", "target": "a"},
                {"source": "s", "target": "b"},
                {"source": "a", "target": "w"},
                {"source": "b", "target": "w"},
            ],
        ))
        assert not result.valid
        assert _codes(result) == ["TOO_MANY_INPUTS"]
        assert result.errors[0].node_ids == ["w"]

    def test_invalid_node_config(self):
        """Test schema violations are reported with the field path."""
        result = validate_workflow(_workflow([
            {"id": "w", "type": "webhook-output", "data": {"url": "https://x", "method": "FETCH"}},
        ]))
        assert _codes(result) == ["INVALID_NODE_CONFIG"]
        assert result.errors[0].field == "nodes[0].data.method"

    def test_missing_required_field(self):
        """Test a missing required field names the field."""
        result = validate_workflow(_workflow([{"id": "w", "type": "webhook-output", "data": {}}]))
        assert result.errors[0].field == "nodes[0].data.url"

    def test_semantic_check(self):
        """Test check_config runs after the schema passes."""
        result = validate_workflow(_workflow([
            {"id": "w", "type": "webhook-output", "data": {"url": "ftp://example.com"}},
        ]))
        assert "url must start with http" in result.errors[0].message

    def test_dangling_node_is_warning(self):
        """Test an unconnected node only warns."""
        result = validate_workflow(_workflow([
            {"id": "a", "type": "schedule", "data": SCHEDULE},
            {"id": "b", "type": "schedule", "data": SCHEDULE},
        ]))
        assert result.valid
        assert {w.code for w in result.warnings} == {"DANGLING_NODE"}


class TestOrdering:
    """Test cycle detection and topological sort."""

    def test_topological_order_is_deterministic(self):
        """Test ties keep declaration order."""
        definition = _workflow(
            [
                {"id": "b", "type": "schedule"},
                {"id": "a", "type": "schedule"},
                {"id": "m", "type": "merge"},
                {"id": "z", "type": "filter"},
            ],
            [{"source": "a", "target": "m"}, {"source": "b", "target": "m"}, {"source": "m", "target": "z"}],
        )
        assert topological_sort(definition) == ["b", "a", "m", "z"]

    def test_detect_cycles_returns_closed_path(self):
        """Test the reported cycle ends where it starts."""
        definition = _workflow(
            [{"id": "a", "type": "filter"}, {"id": "b", "type": "filter"}],
            [{"source": "a", "target": "b"}, {"source": "b", "target": "a"}],
        )
        assert detect_cycles(definition) == [["a", "b", "a"]]

    def test_topological_sort_rejects_cycle(self):
        """Test sorting a cyclic graph raises ValueError."""
        definition = _workflow(
            [{"id": "a", "type": "filter"}, {"id": "b", "type": "filter"}],
            [{"source": "a", "target": "b"}, {"source": "b", "target": "a"}],
        )
        with pytest.raises(ValueError):
            topological_sort(definition)
