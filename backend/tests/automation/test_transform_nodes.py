"""Unit tests for the filter, map and merge executors

Tests cover:
- Filter simple/advanced modes, input shapes and output options
- Filter custom code and the kept-items invariant over mixed input
- Map template/fields/custom modes, transforms, flattening and length preservation
- Merge object/array/join/custom strategies and single-input passthrough
"""

import pytest

from automation.nodes.filter import evaluate_condition
from automation.nodes.map import apply_transform

PEOPLE = [
    {"id": 1, "name": "A", "age": 30, "city": "Paris"},
    {"id": 2, "name": "B", "age": 12, "city": "Lyon"},
    {"id": 3, "name": "C", "age": 45, "city": "paris"},
]


class TestEvaluateCondition:
    """Test single conditions."""

    @pytest.mark.parametrize(
        "condition,expected",
        [
            ({"field": "age", "operator": "greater_than", "value": "18"}, True),
            ({"field": "age", "operator": "equals", "value": "30"}, True),
            ({"field": "name", "operator": "equals", "value": "a"}, True),
            ({"field": "name", "operator": "equals", "value": "a", "caseSensitive": True}, False),
            ({"field": "city", "operator": "in", "value": "Paris, Rome"}, True),
            ({"field": "tags", "operator": "contains", "value": "vip"}, True),
            ({"field": "missing", "operator": "is_null"}, True),
            ({"field": "missing", "operator": "not_equals", "value": 1}, True),
            ({"field": "missing", "operator": "equals", "value": 1}, False),
            ({"field": "name", "operator": "regex", "value": "^a$"}, True),
            ({"field": "tags", "operator": "is_empty"}, False),
        ],
    )
    def test_operators(self, condition, expected):
        """Test operator semantics including coercion and case folding."""
        item = {"age": 30, "name": "A", "city": "Paris", "tags": ["vip"]}
        assert evaluate_condition(item, condition) is expected


class TestFilterNode:
    """Test the filter executor."""

    @pytest.mark.asyncio
    async def test_simple_and(self, node_context):
        """Test kept items satisfy every condition and counts add up."""
        executor, ctx = node_context("filter", {
            "conditions": [
                {"field": "age", "operator": "greater_than", "value": 18},
                {"field": "city", "operator": "equals", "value": "paris"},
            ],
        }, input=PEOPLE)
        result = await executor.execute(ctx)
        assert result.success
        assert [p["id"] for p in result.data] == [1, 3]
        assert result.metadata["inputCount"] == 3
        assert result.metadata["kept"] == 2
        assert result.metadata["filtered"] == 1

    @pytest.mark.asyncio
    async def test_simple_or(self, node_context):
        """Test logic 'or' keeps items matching any condition."""
        executor, ctx = node_context("filter", {
            "logic": "or",
            "conditions": [
                {"field": "age", "operator": "less_than", "value": 18},
                {"field": "name", "operator": "equals", "value": "C"},
            ],
        }, input=PEOPLE)
        result = await executor.execute(ctx)
        assert [p["id"] for p in result.data] == [2, 3]

    @pytest.mark.asyncio
    async def test_advanced_expression(self, node_context):
        """Test expression mode sees item fields, item and index."""
        executor, ctx = node_context("filter", {
            "filterType": "advanced",
            "expression": "age > 18 and index > 0",
        }, input=PEOPLE)
        result = await executor.execute(ctx)
        assert [p["id"] for p in result.data] == [3]

    @pytest.mark.asyncio
    async def test_object_input_gated(self, node_context):
        """Test an object is kept or replaced by null."""
        condition = {"conditions": [{"field": "age", "operator": "greater_than", "value": 18}]}
        executor, ctx = node_context("filter", condition, input=PEOPLE[0])
        assert (await executor.execute(ctx)).data == PEOPLE[0]
        executor, ctx = node_context("filter", condition, input=PEOPLE[1])
        assert (await executor.execute(ctx)).data is None

    @pytest.mark.asyncio
    async def test_scalar_passthrough(self, node_context):
        """Test scalars pass through untouched."""
        executor, ctx = node_context("filter", {
            "conditions": [{"field": "x", "operator": "is_not_null"}],
        }, input=42)
        result = await executor.execute(ctx)
        assert result.data == 42
        assert result.metadata["inputType"] == "scalar"

    @pytest.mark.asyncio
    async def test_output_options(self, node_context):
        """Test returnFirst and keepEmpty shape the output."""
        nobody = {"conditions": [{"field": "age", "operator": "greater_than", "value": 100}]}
        executor, ctx = node_context("filter", {**nobody, "keepEmpty": False}, input=PEOPLE)
        assert (await executor.execute(ctx)).data is None
        executor, ctx = node_context("filter", nobody, input=PEOPLE)
        assert (await executor.execute(ctx)).data == []
        executor, ctx = node_context("filter", {
            "returnFirst": True,
            "conditions": [{"field": "age", "operator": "greater_than", "value": 18}],
        }, input=PEOPLE)
        assert (await executor.execute(ctx)).data == PEOPLE[0]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("logic,expected_ids", [("and", [1, 3]), ("or", [1, 3, 4, 6, 7])])
    async def test_kept_items_satisfy_conditions(self, node_context, logic, expected_ids):
        """Test every kept item matches and every dropped item does not."""
        conditions = [
            {"field": "age", "operator": "greater_equal", "value": 18},
            {"field": "city", "operator": "contains", "value": "par"},
        ]
        mixed = PEOPLE + [
            {"id": 4, "age": "19", "city": None},
            {"id": 5, "name": "no age"},
            {"id": 6, "age": 17, "city": "PARMA"},
            {"id": 7, "age": None, "city": "Parthenay"},
        ]
        executor, ctx = node_context("filter", {"logic": logic, "conditions": conditions}, input=mixed)
        result = await executor.execute(ctx)

        combine = all if logic == "and" else any

        def matches(item):
            return combine(evaluate_condition(item, c) for c in conditions)

        kept_ids = [item["id"] for item in result.data]
        assert kept_ids == expected_ids
        assert kept_ids == [item["id"] for item in mixed if matches(item)]
        assert all(matches(item) for item in result.data)
        assert not any(matches(item) for item in mixed if item["id"] not in kept_ids)
        assert result.metadata["kept"] + result.metadata["filtered"] == len(mixed)

    @pytest.mark.asyncio
    async def test_custom_code_per_item(self, node_context):
        """Test custom mode calls the code with item, index and array."""
        executor, ctx = node_context("filter", {
            "filterType": "custom",
            "code": "return item['age'] > 18 and index < len(array) - 1",
        }, input=PEOPLE)
        result = await executor.execute(ctx)
        assert result.success
        assert [p["id"] for p in result.data] == [1]
        assert result.metadata["filtered"] == 2

    @pytest.mark.asyncio
    async def test_custom_code_error(self, node_context):
        """Test a raising predicate fails the node with the exception type."""
        executor, ctx = node_context("filter", {
            "filterType": "custom",
            "code": "return item['missing']",
        }, input=PEOPLE)
        result = await executor.execute(ctx)
        assert not result.success
        assert result.error_details["exceptionType"] == "KeyError"


class TestMapNode:
    """Test the map executor."""

    @pytest.mark.asyncio
    async def test_template_per_item(self, node_context):
        """Test n inputs give n outputs with typed placeholders."""
        executor, ctx = node_context("map", {
            "template": {"id": "{{id}}", "label": "#{{index}} {{name}}"},
        }, input=PEOPLE)
        result = await executor.execute(ctx)
        assert result.data == [
            {"id": 1, "label": "#0 A"},
            {"id": 2, "label": "#1 B"},
            {"id": 3, "label": "#2 C"},
        ]
        assert result.metadata["outputCount"] == 3

    @pytest.mark.asyncio
    async def test_preserve_original(self, node_context):
        """Test template output is merged over the original item."""
        executor, ctx = node_context("map", {
            "template": {"adult": "{{age}}"},
            "preserveOriginal": True,
        }, input=PEOPLE[0])
        result = await executor.execute(ctx)
        assert result.data == {**PEOPLE[0], "adult": 30}

    @pytest.mark.asyncio
    async def test_field_mappings(self, node_context):
        """Test source -> target copies with transforms and defaults."""
        executor, ctx = node_context("map", {
            "mapType": "fields",
            "mappings": [
                {"source": "name", "target": "person.name", "transform": "lowercase"},
                {"source": "age", "target": "person.age", "transform": "string"},
                {"source": "nickname", "target": "nick", "defaultValue": "n/a"},
            ],
        }, input=[PEOPLE[0]])
        result = await executor.execute(ctx)
        assert result.data == [{"person": {"name": "a", "age": "30"}, "nick": "n/a"}]

    @pytest.mark.asyncio
    async def test_flatten(self, node_context):
        """Test flattenResult concatenates list outputs."""
        executor, ctx = node_context("map", {
            "template": "{{tags}}",
            "flattenResult": True,
        }, input=[{"tags": ["a", "b"]}, {"tags": ["c"]}])
        result = await executor.execute(ctx)
        assert result.data == ["a", "b", "c"]

    def test_transforms(self):
        """Test individual transforms and failure to None."""
        assert apply_transform("number", "42") == 42
        assert apply_transform("number", "4.5") == 4.5
        assert apply_transform("number", "abc") is None
        assert apply_transform("boolean", "yes") is True
        assert apply_transform("date", 0) == "1970-01-01T00:00:00+00:00"
        assert apply_transform("base64", "hi") == "aGk="
        assert apply_transform("base64decode", "aGk=") == "hi"
        assert apply_transform("json", '{"a": 1}') == {"a": 1}
        assert apply_transform("none", "x") == "x"

    @pytest.mark.asyncio
    async def test_skip_null_keeps_array_length(self, node_context):
        """Test skipNull never removes elements: n items in, n items out."""
        executor, ctx = node_context("map", {
            "template": "{{v}}",
            "skipNull": True,
        }, input=[{"v": 1}, {"v": None}, {"v": 3}])
        result = await executor.execute(ctx)
        assert result.data == [1, None, 3]
        assert result.metadata["inputCount"] == result.metadata["outputCount"] == 3

    @pytest.mark.asyncio
    async def test_skip_null_drops_fields_only(self, node_context):
        """Test skipNull omits null fields from field mappings."""
        executor, ctx = node_context("map", {
            "mapType": "fields",
            "skipNull": True,
            "mappings": [{"source": "name"}, {"source": "nickname", "target": "nick"}],
        }, input=PEOPLE[:2])
        result = await executor.execute(ctx)
        assert result.data == [{"name": "A"}, {"name": "B"}]

    @pytest.mark.asyncio
    async def test_custom_code_per_item(self, node_context):
        """Test custom mode maps with item, index and array, keeping nulls."""
        executor, ctx = node_context("map", {
            "mapType": "custom",
            "skipNull": True,
            "code": (
                "if item['id'] == 2:\n"
                "    return None\n"
                "return {'id': item['id'], 'position': index, 'of': len(array)}"
            ),
        }, input=PEOPLE)
        result = await executor.execute(ctx)
        assert result.success
        assert result.data == [
            {"id": 1, "position": 0, "of": 3},
            None,
            {"id": 3, "position": 2, "of": 3},
        ]
        assert result.metadata["outputCount"] == 3

    @pytest.mark.asyncio
    async def test_custom_code_on_object(self, node_context):
        """Test an object input is mapped once."""
        executor, ctx = node_context("map", {
            "mapType": "custom",
            "code": "return item['name'].lower()",
        }, input=PEOPLE[0])
        result = await executor.execute(ctx)
        assert result.data == "a"


class TestMergeNode:
    """Test the merge executor."""

    @pytest.mark.asyncio
    async def test_single_input_unchanged(self, node_context):
        """Test a single input with object/shallow is returned unchanged."""
        value = {"a": [1, 2], "b": {"c": 1}}
        executor, ctx = node_context("merge", {}, inputs=[value])
        result = await executor.execute(ctx)
        assert result.data is value

    @pytest.mark.asyncio
    async def test_deep_merge(self, node_context):
        """Test deep strategy merges nested objects."""
        executor, ctx = node_context("merge", {"mergeStrategy": "deep"}, inputs=[
            {"user": {"name": "A", "tags": [1]}},
            {"user": {"age": 3, "tags": [2]}},
        ])
        result = await executor.execute(ctx)
        assert result.data == {"user": {"name": "A", "age": 3, "tags": [2]}}

    @pytest.mark.asyncio
    async def test_key_mapping(self, node_context):
        """Test keyMapping nests each input under its key."""
        executor, ctx = node_context("merge", {"keyMapping": ["left", "right"]}, inputs=[1, 2])
        result = await executor.execute(ctx)
        assert result.data == {"left": 1, "right": 2}

    @pytest.mark.asyncio
    async def test_array_strategies(self, node_context):
        """Test concat, unique and index-wise merge of arrays."""
        executor, ctx = node_context("merge", {"mergeType": "array", "arrayStrategy": "unique"},
                                     inputs=[[1, 2], [2, 3]])
        assert (await executor.execute(ctx)).data == [1, 2, 3]

        executor, ctx = node_context("merge", {"mergeType": "array", "arrayStrategy": "merge"},
                                     inputs=[[{"a": 1}], [{"b": 2}, {"c": 3}]])
        assert (await executor.execute(ctx)).data == [{"a": 1, "b": 2}, {"c": 3}]

    @pytest.mark.asyncio
    async def test_join(self, node_context):
        """Test join stringifies inputs with separator, prefix and suffix."""
        executor, ctx = node_context("merge", {
            "mergeType": "join", "separator": ", ", "prefix": "[", "suffix": "]",
        }, inputs=["a", 1, None, {"k": True}])
        result = await executor.execute(ctx)
        assert result.data == '[a, 1, {"k": true}]'
        assert result.metadata["inputCount"] == 4
        assert result.metadata["mergedCount"] == 3

    @pytest.mark.asyncio
    async def test_custom_code_receives_inputs(self, node_context):
        """Test custom mode binds the collected inputs in order."""
        executor, ctx = node_context("merge", {
            "mergeType": "custom",
            "code": (
                "totals = [sum(values) for values in inputs]\n"
                "return {'count': len(inputs), 'totals': totals}"
            ),
        }, inputs=[[1, 2], None, [10]])
        result = await executor.execute(ctx)
        assert result.success
        assert result.data == {"count": 2, "totals": [3, 10]}
        assert result.metadata["inputCount"] == 3
        assert result.metadata["mergedCount"] == 2

    @pytest.mark.asyncio
    async def test_custom_code_error(self, node_context):
        """Test a failing merge function fails the node."""
        executor, ctx = node_context("merge", {
            "mergeType": "custom",
            "code": "return inputs[5]",
        }, inputs=[{"a": 1}])
        result = await executor.execute(ctx)
        assert not result.success
        assert result.error_details["exceptionType"] == "IndexError"
