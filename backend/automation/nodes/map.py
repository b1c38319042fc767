"""Map Node

Reshapes each item of its input.

Modes:
- template: render a JSON skeleton with ``{{field}}`` placeholders per item
- fields: copy ``source`` paths to ``target`` paths with optional transforms
- custom: a sandboxed function ``(item, index, array) -> value``

Arrays are mapped element-wise, objects once, scalars pass through.
"""

from __future__ import annotations

import base64
import binascii
import copy
import json
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List

from dateutil import parser as date_parser

from ..engine.context import NodeExecutionContext, NodeResult
from ..engine.template import MISSING, lookup, render, template_context
from ..errors import ExecutionError
from .filter import input_type
from .registry import CATEGORY_TRANSFORM, BaseNodeImpl, ExecutorMetadata, register_node_type
from .utils import clamp_timeout, execution_failure, set_nested_value

logger = logging.getLogger(__name__)


def _to_number(value: Any) -> Any:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (int, float)):
        return value
    number = float(str(value).strip())
    return int(number) if number.is_integer() else number


def _to_boolean(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("true", "1", "yes", "on", "y")
    return bool(value)


def _to_string(value: Any) -> str:
    if isinstance(value, (dict, list)):
        return json.dumps(value, ensure_ascii=False)
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _to_date(value: Any) -> str:
    if isinstance(value, (int, float)):
        # Epoch seconds, or milliseconds when too large for seconds
        seconds = value / 1000 if value > 1e11 else value
        return datetime.fromtimestamp(seconds, tz=timezone.utc).isoformat()
    return date_parser.parse(str(value)).isoformat()


def _parse_json(value: Any) -> Any:
    return json.loads(value) if isinstance(value, str) else value


TRANSFORMS: Dict[str, Callable[[Any], Any]] = {
    "uppercase": lambda v: str(v).upper(),
    "lowercase": lambda v: str(v).lower(),
    "capitalize": lambda v: str(v).capitalize(),
    "trim": lambda v: str(v).strip(),
    "number": _to_number,
    "boolean": _to_boolean,
    "string": _to_string,
    "date": _to_date,
    "json": _parse_json,
    "stringify": lambda v: json.dumps(v, ensure_ascii=False, default=str),
    "base64": lambda v: base64.b64encode(_to_string(v).encode("utf-8")).decode("ascii"),
    "base64decode": lambda v: base64.b64decode(str(v)).decode("utf-8"),
}


def apply_transform(name: str, value: Any) -> Any:
    """Apply a named transform; an unconvertible value becomes None."""
    if not name or name == "none":
        return value
    if value is None:
        return None
    try:
        return TRANSFORMS[name](value)
    except (ValueError, TypeError, OverflowError, binascii.Error, UnicodeDecodeError) as e:
        logger.debug(f"Transform '{name}' failed for value {value!r}: {e}")
        return None


@register_node_type(
    node_type="map",
    display_name="Map",
    description="Transform each item using a template, field mappings or custom code",
    category=CATEGORY_TRANSFORM,
    config_schema={
        "type": "object",
        "properties": {
            "mapType": {"type": "string", "enum": ["template", "fields", "custom"]},
            "template": {"type": ["object", "array", "string"]},
            "mappings": {
                "type": "array",
                "items": {
                    "type": "object",
                    "properties": {
                        "source": {"type": "string", "minLength": 1},
                        "target": {"type": "string"},
                        "transform": {"type": "string", "enum": ["none"] + list(TRANSFORMS)},
                        "defaultValue": {},
                    },
                    "required": ["source"],
                },
            },
            "code": {"type": "string"},
            "timeout": {"type": "integer", "minimum": 100, "maximum": 30000},
            "preserveOriginal": {"type": "boolean"},
            "skipNull": {"type": "boolean"},
            "flattenResult": {"type": "boolean"},
        },
        "allOf": [
            {
                "if": {"properties": {"mapType": {"const": "template"}}},
                "then": {"required": ["template"]},
            },
            {
                "if": {"properties": {"mapType": {"const": "fields"}}, "required": ["mapType"]},
                "then": {"required": ["mappings"]},
            },
            {
                "if": {"properties": {"mapType": {"const": "custom"}}, "required": ["mapType"]},
                "then": {"required": ["code"]},
            },
        ],
    },
    metadata=ExecutorMetadata(
        default_data={
            "mapType": "template",
            "preserveOriginal": False,
            "skipNull": False,
            "flattenResult": False,
            "timeout": 5000,
        },
    ),
    icon="shuffle",
    color="#EC4899",
)
class MapNode(BaseNodeImpl):
    """Produce one output element per input element."""

    def _map_template(self, item: Any, index: int) -> Any:
        rendered = render(self.config["template"], template_context(item, {"index": index}))
        if self.config.get("preserveOriginal") and isinstance(item, dict) and isinstance(rendered, dict):
            merged = copy.deepcopy(item)
            merged.update(rendered)
            return merged
        return rendered

    def _map_fields(self, item: Any) -> Dict[str, Any]:
        output: Dict[str, Any] = (
            copy.deepcopy(item) if self.config.get("preserveOriginal") and isinstance(item, dict) else {}
        )
        for mapping in self.config.get("mappings", []):
            value = lookup(item, mapping["source"])
            if value is MISSING or value is None:
                value = mapping.get("defaultValue")
            value = apply_transform(mapping.get("transform"), value)
            if value is None and self.config.get("skipNull"):
                continue
            set_nested_value(output, mapping.get("target") or mapping["source"], value)
        return output

    async def _map_custom(self, ctx: NodeExecutionContext, items: List[Any]) -> List[Any]:
        result = await ctx.services.sandbox.run(
            self.config["code"],
            timeout_ms=clamp_timeout(self.config.get("timeout")),
            each=items,
            params=["item", "index", "array"],
            cancel_token=ctx.cancel_token,
            label=f"map:{self.node_id}",
        )
        return list(result.value or [])

    async def execute(self, ctx: NodeExecutionContext) -> NodeResult:
        data = ctx.input
        kind = input_type(data)
        mode = self.config.get("mapType", "template")
        meta = {"mapType": mode, "inputType": kind}

        if kind in ("scalar", "null"):
            return NodeResult.ok(data, inputCount=0, outputCount=0, **meta)

        items = data if kind == "array" else [data]

        if mode == "custom":
            try:
                mapped = await self._map_custom(ctx, items)
            except ExecutionError as e:
                return execution_failure(e, **meta)
        elif mode == "fields":
            mapped = [self._map_fields(item) for item in items]
        else:
            mapped = [self._map_template(item, i) for i, item in enumerate(items)]

        if kind == "object":
            return NodeResult.ok(mapped[0] if mapped else None, inputCount=1, outputCount=1, **meta)

        if self.config.get("flattenResult"):
            flat: List[Any] = []
            for value in mapped:
                if isinstance(value, list):
                    flat.extend(value)
                else:
                    flat.append(value)
            mapped = flat

        return NodeResult.ok(mapped, inputCount=len(items), outputCount=len(mapped), **meta)
