"""Unit tests for the executor registry

Tests cover:
- Built-in node types are registered with their categories
- Node definition validation
- create_node default merging and isolation
- Registry queries
"""

import pytest

from automation.engine.context import NodeResult
from automation.nodes import (
    CATEGORY_DATA,
    CATEGORY_OUTPUT,
    CATEGORY_TRANSFORM,
    CATEGORY_TRIGGERS,
    NODE_CLASSES,
    NODE_REGISTRY,
    BaseNodeImpl,
    ExecutorMetadata,
    NodeDefinition,
    create_node,
    get_node_definition,
    is_node_type_registered,
    list_node_types,
    list_node_types_by_category,
    register_node_type,
)

BUILT_IN = {
    "schedule": CATEGORY_TRIGGERS,
    "webhook": CATEGORY_TRIGGERS,
    "form": CATEGORY_TRIGGERS,
    "email-receive": CATEGORY_TRIGGERS,
    "database-change": CATEGORY_TRIGGERS,
    "filter": CATEGORY_TRANSFORM,
    "map": CATEGORY_TRANSFORM,
    "merge": CATEGORY_TRANSFORM,
    "code": CATEGORY_TRANSFORM,
    "webhook-output": CATEGORY_OUTPUT,
    "email-output": CATEGORY_OUTPUT,
    "database-output": CATEGORY_OUTPUT,
    "object-storage-output": CATEGORY_OUTPUT,
    "graph-db-output": CATEGORY_OUTPUT,
    "vector-db-output": CATEGORY_OUTPUT,
    "file-output": CATEGORY_OUTPUT,
    "storage": CATEGORY_DATA,
    "read-file": CATEGORY_DATA,
    "api-request": CATEGORY_DATA,
    "database-query": CATEGORY_DATA,
    "object-storage": CATEGORY_DATA,
}


@pytest.fixture
def scratch_type():
    """Register a throwaway node type and remove it afterwards."""

    @register_node_type(
        node_type="test-echo",
        display_name="Echo",
        description="Echo the input",
        category=CATEGORY_TRANSFORM,
        config_schema={"type": "object", "properties": {"nested": {"type": "object"}}},
        metadata=ExecutorMetadata(default_data={"nested": {"a": 1}, "flag": True}),
    )
    class EchoNode(BaseNodeImpl):
        async def execute(self, ctx):
            return NodeResult.ok(ctx.input)

    yield EchoNode
    NODE_REGISTRY.pop("test-echo", None)
    NODE_CLASSES.pop("test-echo", None)


class TestBuiltInTypes:
    """Test the built-in catalogue."""

    @pytest.mark.parametrize("node_type,category", sorted(BUILT_IN.items()))
    def test_registered(self, node_type, category):
        """Test each built-in type is registered under its category."""
        assert is_node_type_registered(node_type)
        assert get_node_definition(node_type).category == category

    def test_trigger_metadata(self):
        """Test triggers accept no inputs."""
        for node_type in list_node_types_by_category(CATEGORY_TRIGGERS):
            assert node_type.metadata.max_inputs == 0
            assert node_type.metadata.allowed_inputs == []

    def test_output_metadata(self):
        """Test outputs take exactly one input and feed nothing."""
        outputs = list_node_types_by_category(CATEGORY_OUTPUT)
        assert {d.node_type for d in outputs} == {t for t, c in BUILT_IN.items() if c == CATEGORY_OUTPUT}
        for node_type in outputs:
            assert node_type.metadata.max_inputs == 1, node_type.node_type
            assert node_type.metadata.max_outputs == 0, node_type.node_type

    def test_only_merge_reads_inputs(self):
        """Test merge is the only executor receiving the inputs list."""
        readers = [d.node_type for d in list_node_types() if d.metadata.reads_inputs]
        assert readers == ["merge"]

    def test_definition_to_dict(self):
        """Test the catalogue entry shape."""
        data = get_node_definition("filter").to_dict()
        assert data["type"] == "filter"
        assert data["metadata"]["maxInputs"] == -1
        assert "configSchema" in data


class TestNodeDefinition:
    """Test NodeDefinition validation."""

    def test_empty_node_type(self):
        """Test that empty node_type raises ValueError."""
        with pytest.raises(ValueError, match="node_type cannot be empty"):
            NodeDefinition(node_type="", display_name="X", description="", category="x", config_schema={})

    def test_invalid_schema(self):
        """Test that a malformed JSON schema raises ValueError."""
        with pytest.raises(ValueError, match="not a valid JSON schema"):
            NodeDefinition(
                node_type="x", display_name="X", description="", category="x",
                config_schema={"type": "not-a-type"},
            )

    def test_metadata_bounds(self):
        """Test negative limits other than -1 are rejected."""
        with pytest.raises(ValueError):
            ExecutorMetadata(max_inputs=-2)


class TestCreateNode:
    """Test the executor factory."""

    def test_defaults_merged_under_config(self, scratch_type):
        """Test defaults fill absent keys and node data wins (shallow)."""
        node = create_node("n1", "test-echo", {"nested": {"b": 2}})
        assert isinstance(node, scratch_type)
        assert node.config == {"nested": {"b": 2}, "flag": True}

    def test_config_is_copied(self, scratch_type):
        """Test executors never alias the definition's data or defaults."""
        data = {"nested": {"b": 2}}
        node = create_node("n1", "test-echo", data)
        node.config["nested"]["b"] = 99
        assert data["nested"]["b"] == 2

        fresh = create_node("n2", "test-echo")
        fresh.config["nested"]["a"] = 5
        assert get_node_definition("test-echo").metadata.default_data["nested"]["a"] == 1

    def test_unknown_type(self):
        """Test unknown types raise ValueError listing the available ones."""
        with pytest.raises(ValueError, match="Unknown node type: nope"):
            create_node("n1", "nope")

    def test_validate_config_reports_fields(self):
        """Test validate_config maps schema errors to field paths."""
        node = create_node("f", "filter", {"conditions": [{"field": "a", "operator": "bogus", "value": 1}]})
        errors = node.validate_config()
        assert errors and errors[0]["field"] == "conditions[0].operator"
