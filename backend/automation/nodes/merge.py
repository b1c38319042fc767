"""Merge Node

Combines the outputs of all predecessors. Merge is the only executor that
reads ``ctx.inputs``: the engine hands it the predecessor outputs ordered by
connection declaration, with None in place of a skipped or failed branch.
"""

from __future__ import annotations

import copy
import json
import logging
from typing import Any, Dict, List

from ..engine.context import NodeExecutionContext, NodeResult
from ..engine.template import stringify
from ..errors import ExecutionError
from .registry import CATEGORY_TRANSFORM, BaseNodeImpl, ExecutorMetadata, register_node_type
from .utils import clamp_timeout, execution_failure

logger = logging.getLogger(__name__)

MERGE_TYPES = ["object", "array", "concat", "join", "custom"]
OBJECT_STRATEGIES = ["shallow", "deep", "replace"]
ARRAY_STRATEGIES = ["concat", "merge", "replace", "unique"]


def deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Recursively merge ``override`` into a copy of ``base``; lists are replaced."""
    result = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = copy.deepcopy(value)
    return result


def _identity(value: Any) -> str:
    return json.dumps(value, sort_keys=True, default=str)


def unique(values: List[Any]) -> List[Any]:
    seen = set()
    result = []
    for value in values:
        key = _identity(value)
        if key not in seen:
            seen.add(key)
            result.append(value)
    return result


def _is_empty(value: Any) -> bool:
    return isinstance(value, (str, list, dict)) and len(value) == 0


@register_node_type(
    node_type="merge",
    display_name="Merge",
    description="Combine the outputs of several branches into one value",
    category=CATEGORY_TRANSFORM,
    config_schema={
        "type": "object",
        "properties": {
            "mergeType": {"type": "string", "enum": MERGE_TYPES},
            "mergeStrategy": {"type": "string", "enum": OBJECT_STRATEGIES},
            "arrayStrategy": {"type": "string", "enum": ARRAY_STRATEGIES},
            "keyMapping": {
                "oneOf": [
                    {"type": "array", "items": {"type": "string", "minLength": 1}},
                    {"type": "object", "additionalProperties": {"type": "string", "minLength": 1}},
                ],
            },
            "separator": {"type": "string"},
            "prefix": {"type": "string"},
            "suffix": {"type": "string"},
            "code": {"type": "string"},
            "timeout": {"type": "integer", "minimum": 100, "maximum": 30000},
            "options": {
                "type": "object",
                "properties": {
                    "skipNull": {"type": "boolean"},
                    "skipEmpty": {"type": "boolean"},
                    "removeDuplicates": {"type": "boolean"},
                },
            },
        },
        "if": {"properties": {"mergeType": {"const": "custom"}}, "required": ["mergeType"]},
        "then": {"required": ["code"]},
    },
    metadata=ExecutorMetadata(
        reads_inputs=True,
        default_data={
            "mergeType": "object",
            "mergeStrategy": "shallow",
            "arrayStrategy": "concat",
            "separator": "\n",
            "prefix": "",
            "suffix": "",
            "timeout": 5000,
            "options": {"skipNull": True, "skipEmpty": False, "removeDuplicates": False},
        },
    ),
    icon="git-merge",
    color="#14B8A6",
)
class MergeNode(BaseNodeImpl):
    """Merge predecessor outputs as object, array, joined text or custom code."""

    @property
    def options(self) -> Dict[str, Any]:
        return {"skipNull": True, "skipEmpty": False, "removeDuplicates": False, **(self.config.get("options") or {})}

    def _collect(self, inputs: List[Any]) -> List[Any]:
        options = self.options
        values = list(inputs)
        if options["skipNull"]:
            values = [v for v in values if v is not None]
        if options["skipEmpty"]:
            values = [v for v in values if not _is_empty(v)]
        return values

    def _merge_objects(self, values: List[Any]) -> Any:
        strategy = self.config.get("mergeStrategy", "shallow")
        key_mapping = self.config.get("keyMapping")

        if key_mapping:
            if isinstance(key_mapping, list):
                key_mapping = {str(i): key for i, key in enumerate(key_mapping)}
            result = {}
            for i, value in enumerate(values):
                result[key_mapping.get(str(i), f"input{i}")] = value
            return result

        if len(values) == 1 and strategy == "shallow":
            return values[0]

        objects = [v for v in values if isinstance(v, dict)]
        if len(objects) != len(values):
            logger.warning(
                f"Merge {self.node_id}: ignoring {len(values) - len(objects)} non-object input(s) in object mode"
            )
        if not objects:
            return {}

        if strategy == "replace":
            return objects[-1]

        result: Dict[str, Any] = {}
        for obj in objects:
            if strategy == "deep":
                result = deep_merge(result, obj)
            else:
                result.update(obj)
        return result

    def _merge_arrays(self, values: List[Any]) -> List[Any]:
        strategy = self.config.get("arrayStrategy", "concat")
        arrays = [v if isinstance(v, list) else [v] for v in values]

        if strategy == "replace":
            return arrays[-1] if arrays else []

        if strategy == "merge":
            length = max((len(a) for a in arrays), default=0)
            merged = []
            for index in range(length):
                elements = [a[index] for a in arrays if index < len(a)]
                if all(isinstance(e, dict) for e in elements):
                    combined: Dict[str, Any] = {}
                    for element in elements:
                        combined.update(element)
                    merged.append(combined)
                else:
                    merged.append(elements[-1])
            return merged

        flat = [item for array in arrays for item in array]
        if strategy == "unique":
            return unique(flat)
        return flat

    def _join(self, values: List[Any]) -> str:
        parts = []
        for value in values:
            if isinstance(value, list):
                parts.extend(stringify(v) for v in value)
            else:
                parts.append(stringify(value))
        separator = self.config.get("separator", "\n")
        return f"{self.config.get('prefix', '')}{separator.join(parts)}{self.config.get('suffix', '')}"

    async def execute(self, ctx: NodeExecutionContext) -> NodeResult:
        raw_inputs = ctx.inputs if ctx.inputs is not None else [ctx.input]
        values = self._collect(raw_inputs)
        merge_type = self.config.get("mergeType", "object")
        meta = {
            "mergeType": merge_type,
            "inputCount": len(raw_inputs),
            "mergedCount": len(values),
        }

        if merge_type == "custom":
            try:
                result = await ctx.services.sandbox.run(
                    self.config["code"],
                    bindings={"inputs": values},
                    timeout_ms=clamp_timeout(self.config.get("timeout")),
                    cancel_token=ctx.cancel_token,
                    label=f"merge:{self.node_id}",
                )
            except ExecutionError as e:
                return execution_failure(e, **meta)
            return NodeResult.ok(result.value, **meta)

        if merge_type == "join":
            return NodeResult.ok(self._join(values), **meta)

        if merge_type in ("array", "concat"):
            merged = self._merge_arrays(values)
            if self.options["removeDuplicates"]:
                merged = unique(merged)
            return NodeResult.ok(merged, strategy=self.config.get("arrayStrategy", "concat"), **meta)

        merged = self._merge_objects(values)
        return NodeResult.ok(merged, strategy=self.config.get("mergeStrategy", "shallow"), **meta)
