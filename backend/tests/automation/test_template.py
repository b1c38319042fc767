"""Unit tests for the template engine

Tests cover:
- Path lookup (dots, [index], numeric segments)
- String resolution and stringification
- Typed rendering of nested skeletons
- Passthrough detection and template contexts
"""

import pytest

from automation.engine.template import (
    MISSING,
    get_value,
    has_placeholders,
    is_passthrough,
    lookup,
    render,
    resolve,
    single_placeholder,
    split_path,
    stringify,
    template_context,
)


class TestLookup:
    """Test path walking."""

    def test_split_path(self):
        """Test dotted paths with indices split into segments."""
        assert split_path("user.orders[0].total") == ["user", "orders", 0, "total"]

    def test_nested_index(self):
        """Test ``a.b[1]`` resolves into a list."""
        assert lookup({"a": {"b": [10, 20]}}, "a.b[1]") == 20

    def test_numeric_segment_on_list(self):
        """Test ``items.0`` indexes a list."""
        assert lookup({"items": ["x", "y"]}, "items.1") == "y"

    def test_missing_path(self):
        """Test absent keys and out-of-range indices return MISSING."""
        assert lookup({"a": 1}, "b") is MISSING
        assert lookup({"a": [1]}, "a[3]") is MISSING
        assert lookup({"a": 1}, "a.b") is MISSING

    def test_none_value_is_not_missing(self):
        """Test a present None is returned, not treated as absent."""
        assert lookup({"a": None}, "a") is None

    def test_get_value_default(self):
        """Test get_value falls back to the default."""
        assert get_value({}, "x.y", default="fallback") == "fallback"


class TestResolve:
    """Test string resolution."""

    def test_spec_example(self):
        """Test ``{{a.b[1]}}`` against {a:{b:[10,20]}} gives "20"."""
        assert resolve("{{a.b[1]}}", {"a": {"b": [10, 20]}}) == "20"

    def test_unresolved_kept_verbatim(self):
        """Test unknown placeholders are left in place."""
        assert resolve("Hi {{name}} {{missing}}", {"name": "Ada"}) == "Hi Ada {{missing}}"

    def test_whitespace_inside_braces(self):
        """Test padding inside braces is ignored."""
        assert resolve("{{  name  }}", {"name": "Ada"}) == "Ada"

    @pytest.mark.parametrize(
        "value,expected",
        [
            (None, "null"),
            (True, "true"),
            (3.5, "3.5"),
            ({"k": 1}, '{"k": 1}'),
            ([1, 2], "[1, 2]"),
        ],
    )
    def test_stringify(self, value, expected):
        """Test each value kind stringifies to its template text."""
        assert stringify(value) == expected

    def test_idempotent(self):
        """Test resolving an already-resolved string changes nothing."""
        context = {"user": {"name": "Ada", "tags": ["a", "b"]}}
        once = resolve("{{user.name}} has {{user.tags}} and {{nope}}", context)
        assert resolve(once, context) == once

    def test_non_string_template(self):
        """Test non-string templates are stringified first."""
        assert resolve(42, {}) == "42"


class TestRender:
    """Test typed rendering."""

    def test_single_placeholder_keeps_type(self):
        """Test a string that is exactly one placeholder yields the raw value."""
        context = {"items": [1, 2], "count": 2}
        assert render("{{items}}", context) == [1, 2]
        assert render("{{count}}", context) == 2

    def test_nested_skeleton(self):
        """Test dicts and lists are rendered recursively."""
        skeleton = {"id": "{{user.id}}", "label": "User {{user.name}}", "raw": 5, "tags": ["{{user.id}}"]}
        result = render(skeleton, {"user": {"id": 7, "name": "Ada"}})
        assert result == {"id": 7, "label": "User Ada", "raw": 5, "tags": [7]}

    def test_missing_single_placeholder_stays_text(self):
        """Test an unresolvable single placeholder is kept as text."""
        assert render("{{missing}}", {}) == "{{missing}}"


class TestHelpers:
    """Test placeholder helpers and contexts."""

    def test_placeholder_detection(self):
        """Test has_placeholders / single_placeholder / is_passthrough."""
        assert has_placeholders("a {{b}}")
        assert not has_placeholders("plain")
        assert not has_placeholders(None)
        assert single_placeholder(" {{ a.b }} ") == "a.b"
        assert single_placeholder("x {{a}}") is None
        assert is_passthrough("{{input}}")
        assert not is_passthrough("{{input.id}}")

    def test_template_context(self):
        """Test dict inputs expose top-level keys and the whole input."""
        context = template_context({"name": "Ada"}, {"workflow": {"id": "wf"}})
        assert context["name"] == "Ada"
        assert context["input"] == {"name": "Ada"}
        assert context["workflow"] == {"id": "wf"}

    def test_template_context_list_input(self):
        """Test non-dict inputs are only reachable as ``input``."""
        context = template_context([1, 2])
        assert context == {"input": [1, 2]}
