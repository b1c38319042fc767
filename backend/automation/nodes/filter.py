"""Filter Node

Keeps the items of its input that satisfy a predicate.

Modes:
- simple: list of (field, operator, value) conditions combined with and/or
- advanced: one boolean expression per item via the restricted evaluator
- custom: a sandboxed function ``(item, index, array) -> bool``

Input shapes: an array is filtered to the kept items, an object is kept or
replaced by null, a scalar passes through untouched.
"""

from __future__ import annotations

import logging
import re
from typing import Any, Dict, List

from ..engine.context import NodeExecutionContext, NodeResult
from ..engine.safe_eval import SafeEvalError, safe_eval, validate_expression
from ..engine.template import MISSING, lookup
from ..errors import ExecutionError
from .registry import CATEGORY_TRANSFORM, BaseNodeImpl, ExecutorMetadata, register_node_type
from .utils import clamp_timeout, execution_failure

logger = logging.getLogger(__name__)

OPERATORS = [
    "equals", "not_equals",
    "contains", "not_contains",
    "starts_with", "ends_with",
    "greater_than", "less_than", "greater_equal", "less_equal",
    "in", "not_in",
    "is_empty", "is_not_empty",
    "is_null", "is_not_null",
    "regex",
]

# Operators that ignore the condition's value
UNARY_OPERATORS = {"is_empty", "is_not_empty", "is_null", "is_not_null"}


def input_type(data: Any) -> str:
    if data is None:
        return "null"
    if isinstance(data, list):
        return "array"
    if isinstance(data, dict):
        return "object"
    return "scalar"


def _to_number(value: Any):
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return value
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return None
    return None


def _fold(value: Any, case_sensitive: bool) -> Any:
    if isinstance(value, str) and not case_sensitive:
        return value.lower()
    return value


def _is_empty(value: Any) -> bool:
    if value is None or value is MISSING:
        return True
    if isinstance(value, (str, list, dict, tuple)):
        return len(value) == 0
    return False


def _as_list(value: Any) -> List[Any]:
    if isinstance(value, (list, tuple, set)):
        return list(value)
    if isinstance(value, str):
        return [part.strip() for part in value.split(",")]
    return [value]


def _equals(actual: Any, expected: Any, case_sensitive: bool) -> bool:
    if actual is MISSING:
        return False
    left, right = _to_number(actual), _to_number(expected)
    if left is not None and right is not None and not (isinstance(actual, str) and isinstance(expected, str)):
        return left == right
    return _fold(actual, case_sensitive) == _fold(expected, case_sensitive)


def evaluate_condition(item: Any, condition: Dict[str, Any]) -> bool:
    """Evaluate one simple-mode condition against an item."""
    operator = condition.get("operator", "equals")
    field = condition.get("field", "")
    expected = condition.get("value")
    case_sensitive = bool(condition.get("caseSensitive", False))

    actual = lookup(item, field) if field else item

    if operator == "is_null":
        return actual is None or actual is MISSING
    if operator == "is_not_null":
        return actual is not None and actual is not MISSING
    if operator == "is_empty":
        return _is_empty(actual)
    if operator == "is_not_empty":
        return not _is_empty(actual)

    if actual is MISSING:
        return operator in ("not_equals", "not_contains", "not_in")

    if operator == "equals":
        return _equals(actual, expected, case_sensitive)
    if operator == "not_equals":
        return not _equals(actual, expected, case_sensitive)

    if operator in ("contains", "not_contains"):
        if isinstance(actual, (list, tuple)):
            found = any(_equals(element, expected, case_sensitive) for element in actual)
        elif actual is None:
            found = False
        else:
            found = str(_fold(str(expected), case_sensitive)) in str(_fold(str(actual), case_sensitive))
        return found if operator == "contains" else not found

    if operator in ("starts_with", "ends_with"):
        if actual is None:
            return False
        text = _fold(str(actual), case_sensitive)
        needle = _fold(str(expected), case_sensitive)
        return text.startswith(needle) if operator == "starts_with" else text.endswith(needle)

    if operator in ("greater_than", "less_than", "greater_equal", "less_equal"):
        left, right = _to_number(actual), _to_number(expected)
        if left is None or right is None:
            if not (isinstance(actual, str) and isinstance(expected, str)):
                return False
            left, right = actual, expected
        if operator == "greater_than":
            return left > right
        if operator == "less_than":
            return left < right
        if operator == "greater_equal":
            return left >= right
        return left <= right

    if operator in ("in", "not_in"):
        found = any(_equals(actual, candidate, case_sensitive) for candidate in _as_list(expected))
        return found if operator == "in" else not found

    if operator == "regex":
        if actual is None:
            return False
        flags = 0 if case_sensitive else re.IGNORECASE
        return re.search(str(expected), str(actual), flags) is not None

    raise ValueError(f"Unsupported operator '{operator}'")


@register_node_type(
    node_type="filter",
    display_name="Filter",
    description="Keep only the items that match conditions, an expression or custom code",
    category=CATEGORY_TRANSFORM,
    config_schema={
        "type": "object",
        "properties": {
            "filterType": {"type": "string", "enum": ["simple", "advanced", "custom"]},
            "logic": {"type": "string", "enum": ["and", "or"]},
            "conditions": {
                "type": "array",
                "items": {
                    "type": "object",
                    "properties": {
                        "field": {"type": "string"},
                        "operator": {"type": "string", "enum": OPERATORS},
                        "value": {},
                        "caseSensitive": {"type": "boolean"},
                    },
                    "required": ["field", "operator"],
                },
            },
            "expression": {"type": "string"},
            "code": {"type": "string"},
            "timeout": {"type": "integer", "minimum": 100, "maximum": 30000},
            "keepEmpty": {"type": "boolean"},
            "returnFirst": {"type": "boolean"},
        },
        "allOf": [
            {
                "if": {"properties": {"filterType": {"const": "simple"}}},
                "then": {"required": ["conditions"], "properties": {"conditions": {"minItems": 1}}},
            },
            {
                "if": {"properties": {"filterType": {"const": "advanced"}}, "required": ["filterType"]},
                "then": {"required": ["expression"]},
            },
            {
                "if": {"properties": {"filterType": {"const": "custom"}}, "required": ["filterType"]},
                "then": {"required": ["code"]},
            },
        ],
    },
    metadata=ExecutorMetadata(
        default_data={
            "filterType": "simple",
            "logic": "and",
            "keepEmpty": True,
            "returnFirst": False,
            "timeout": 5000,
        },
    ),
    icon="filter",
    color="#8B5CF6",
)
class FilterNode(BaseNodeImpl):
    """Filter items of the input array (or gate a single object)."""

    def check_config(self) -> List[Dict[str, str]]:
        errors = []
        mode = self.config.get("filterType")
        if mode == "advanced":
            for problem in validate_expression(self.config.get("expression", "")):
                errors.append({"field": "expression", "error": problem})
        elif mode == "simple":
            for i, condition in enumerate(self.config.get("conditions", [])):
                if condition["operator"] not in UNARY_OPERATORS and "value" not in condition:
                    errors.append({"field": f"conditions[{i}].value", "error": "value is required for this operator"})
                if condition["operator"] == "regex":
                    try:
                        re.compile(str(condition.get("value", "")))
                    except re.error as e:
                        errors.append({"field": f"conditions[{i}].value", "error": f"Invalid regex: {e}"})
        return errors

    def _matches_simple(self, item: Any) -> bool:
        conditions = self.config.get("conditions", [])
        results = (evaluate_condition(item, c) for c in conditions)
        if self.config.get("logic", "and") == "or":
            return any(results)
        return all(results)

    def _matches_expression(self, item: Any, index: int) -> bool:
        context: Dict[str, Any] = dict(item) if isinstance(item, dict) else {}
        context.update({"item": item, "index": index})
        try:
            return bool(safe_eval(self.config["expression"], context))
        except SafeEvalError as e:
            logger.debug(f"Filter {self.node_id}: item {index} dropped: {e}")
            return False

    async def _custom_mask(self, ctx: NodeExecutionContext, items: List[Any]) -> List[bool]:
        result = await ctx.services.sandbox.run(
            self.config["code"],
            timeout_ms=clamp_timeout(self.config.get("timeout")),
            each=items,
            params=["item", "index", "array"],
            cancel_token=ctx.cancel_token,
            label=f"filter:{self.node_id}",
        )
        return [bool(value) for value in (result.value or [])]

    async def execute(self, ctx: NodeExecutionContext) -> NodeResult:
        data = ctx.input
        kind = input_type(data)
        mode = self.config.get("filterType", "simple")
        meta = {"filterType": mode, "inputType": kind, "logic": self.config.get("logic", "and")}

        if kind in ("scalar", "null"):
            return NodeResult.ok(data, inputCount=0, outputCount=0, filtered=0, kept=0, **meta)

        items = data if kind == "array" else [data]

        if mode == "custom":
            try:
                mask = await self._custom_mask(ctx, items)
            except ExecutionError as e:
                return execution_failure(e, **meta)
        elif mode == "advanced":
            mask = [self._matches_expression(item, i) for i, item in enumerate(items)]
        else:
            mask = [self._matches_simple(item) for item in items]

        kept = [item for item, keep in zip(items, mask) if keep]
        counts = {
            "inputCount": len(items),
            "outputCount": len(kept),
            "filtered": len(items) - len(kept),
            "kept": len(kept),
        }

        if kind == "object":
            output = kept[0] if kept else None
        elif self.config.get("returnFirst"):
            output = kept[0] if kept else None
        elif not kept and not self.config.get("keepEmpty", True):
            output = None
        else:
            output = kept

        logger.debug(f"Filter {self.node_id}: kept {counts['kept']}/{counts['inputCount']}")
        return NodeResult.ok(output, **counts, **meta)
