"""Data nodes: key-value storage and file reading.

Both go through the injected services (``services.storage``,
``services.files``, ``services.http``); neither touches the filesystem or a
database directly.
"""

from __future__ import annotations

import base64
import csv
import io
import json
import logging
from typing import Any, Dict, List

import httpx

from ..engine.context import NodeExecutionContext, NodeResult
from ..engine.template import is_passthrough, render, resolve, template_context
from .registry import CATEGORY_DATA, BaseNodeImpl, ExecutorMetadata, register_node_type

logger = logging.getLogger(__name__)


@register_node_type(
    node_type="storage",
    display_name="Storage",
    description="Get, set, delete or list values in the workflow key-value store",
    category=CATEGORY_DATA,
    config_schema={
        "type": "object",
        "properties": {
            "operation": {"type": "string", "enum": ["get", "set", "delete", "list"]},
            "key": {"type": "string", "minLength": 1, "maxLength": 255},
            "value": {},
            "namespace": {"type": "string", "minLength": 1, "maxLength": 100},
            "ttl": {"type": ["number", "null"], "minimum": 1, "maximum": 86400 * 365},
            "options": {
                "type": "object",
                "properties": {
                    "returnPrevious": {"type": "boolean"},
                    "createIfNotExists": {"type": "boolean"},
                    "overwrite": {"type": "boolean"},
                },
            },
        },
        "required": ["operation", "namespace"],
        "allOf": [
            {
                "if": {"properties": {"operation": {"enum": ["get", "set", "delete"]}}},
                "then": {"required": ["key"]},
            },
        ],
    },
    metadata=ExecutorMetadata(
        default_data={
            "operation": "get",
            "namespace": "default",
            "value": "{{input}}",
            "ttl": None,
            "options": {"returnPrevious": False, "createIfNotExists": True, "overwrite": True},
        },
    ),
    icon="hard-drive",
    color="#14B8A6",
)
class StorageNode(BaseNodeImpl):
    """Key-value operations scoped by namespace.

    ``get`` on a missing key returns the input when createIfNotExists is set.
    ``set`` refuses to replace an existing value when overwrite is off.
    """

    @property
    def options(self) -> Dict[str, Any]:
        defaults = {"returnPrevious": False, "createIfNotExists": True, "overwrite": True}
        return {**defaults, **(self.config.get("options") or {})}

    def _value(self, ctx: NodeExecutionContext, context: Dict[str, Any]) -> Any:
        template = self.config.get("value")
        if is_passthrough(template):
            return ctx.input
        if not isinstance(template, str):
            return render(template, context)
        text = resolve(template, context)
        # Plain text is a valid value; only JSON-looking text is decoded
        try:
            return json.loads(text)
        except ValueError:
            return text

    async def execute(self, ctx: NodeExecutionContext) -> NodeResult:
        storage = ctx.services.storage
        context = template_context(ctx.input, ctx.identifiers())
        operation = self.config.get("operation", "get")
        namespace = resolve(self.config.get("namespace", "default"), context)
        key = resolve(self.config["key"], context) if self.config.get("key") else None
        options = self.options
        meta: Dict[str, Any] = {"operation": operation, "namespace": namespace}
        if key is not None:
            meta["key"] = key

        if operation == "get":
            stored = await storage.get(namespace, key)
            meta["keyExists"] = stored is not None
            if stored is None and options["createIfNotExists"]:
                return NodeResult.ok(ctx.input, **meta)
            return NodeResult.ok(stored, **meta)

        if operation == "set":
            value = self._value(ctx, context)
            previous = await storage.get(namespace, key)
            if previous is not None and not options["overwrite"]:
                return NodeResult.fail(
                    f"Key '{key}' already exists in '{namespace}' and overwrite is disabled",
                    details={"key": key, "namespace": namespace},
                    **meta,
                )
            ttl = self.config.get("ttl")
            await storage.set(namespace, key, value, ttl=ttl)
            meta["ttl"] = ttl
            if options["returnPrevious"]:
                meta["previousValue"] = previous
                return NodeResult.ok(previous, **meta)
            return NodeResult.ok(value, **meta)

        if operation == "delete":
            previous = await storage.get(namespace, key) if options["returnPrevious"] else None
            deleted = await storage.delete(namespace, key)
            meta["deleted"] = deleted
            if options["returnPrevious"]:
                meta["previousValue"] = previous
                return NodeResult.ok(previous, **meta)
            return NodeResult.ok(deleted, **meta)

        keys = await storage.list_keys(namespace, prefix=key or "")
        return NodeResult.ok(keys, count=len(keys), **meta)


def _typed(value: str) -> Any:
    """Numeric/boolean coercion for CSV cells."""
    if value == "":
        return None
    lowered = value.lower()
    if lowered in ("true", "false"):
        return lowered == "true"
    try:
        return int(value)
    except ValueError:
        pass
    try:
        return float(value)
    except ValueError:
        return value


def parse_csv(text: str, delimiter: str = ",", has_headers: bool = True, skip_empty: bool = True) -> List[Any]:
    reader = csv.reader(io.StringIO(text), delimiter=delimiter)
    rows = [row for row in reader if not (skip_empty and not any(cell.strip() for cell in row))]
    if not has_headers:
        return [[_typed(cell) for cell in row] for row in rows]
    if not rows:
        return []
    header, body = rows[0], rows[1:]
    return [{name: _typed(cell) for name, cell in zip(header, row)} for row in body]


def detect_file_type(name: str, text: str) -> str:
    extension = name.rsplit(".", 1)[-1].lower() if "." in name else ""
    if extension in ("json", "csv"):
        return extension
    if extension in ("jsonl", "ndjson"):
        return "lines"
    try:
        json.loads(text)
        return "json"
    except ValueError:
        pass
    if "," in text and "\n" in text:
        return "csv"
    return "text"


@register_node_type(
    node_type="read-file",
    display_name="Read File",
    description="Read a file from the files root or a URL and parse it",
    category=CATEGORY_DATA,
    config_schema={
        "type": "object",
        "properties": {
            "source": {"type": "string", "enum": ["path", "url"]},
            "filePath": {"type": "string", "minLength": 1},
            "fileUrl": {"type": "string", "minLength": 1},
            "fileType": {"type": "string", "enum": ["auto", "text", "json", "csv", "lines", "binary"]},
            "encoding": {"type": "string", "enum": ["utf-8", "utf-16", "ascii", "latin-1"]},
            "parseOptions": {
                "type": "object",
                "properties": {
                    "csv": {
                        "type": "object",
                        "properties": {
                            "delimiter": {"type": "string", "minLength": 1, "maxLength": 1},
                            "hasHeaders": {"type": "boolean"},
                            "skipEmptyLines": {"type": "boolean"},
                        },
                    },
                    "json": {
                        "type": "object",
                        "properties": {"strict": {"type": "boolean"}},
                    },
                },
            },
        },
        "required": ["source", "fileType"],
        "allOf": [
            {"if": {"properties": {"source": {"const": "path"}}}, "then": {"required": ["filePath"]}},
            {"if": {"properties": {"source": {"const": "url"}}}, "then": {"required": ["fileUrl"]}},
        ],
    },
    metadata=ExecutorMetadata(
        is_async=True,
        default_data={"source": "path", "fileType": "auto", "encoding": "utf-8", "parseOptions": {}},
    ),
    icon="file-text",
    color="#6366F1",
)
class ReadFileNode(BaseNodeImpl):

    async def _load(self, ctx: NodeExecutionContext, context: Dict[str, Any]) -> bytes:
        if self.config.get("source") == "url":
            url = resolve(self.config["fileUrl"], context)
            response = await ctx.services.http.get(url)
            response.raise_for_status()
            return response.content
        return await ctx.services.files.read_bytes(resolve(self.config["filePath"], context))

    def _parse(self, text: str, file_type: str) -> Any:
        options = self.config.get("parseOptions") or {}
        if file_type == "json":
            if not (options.get("json") or {}).get("strict"):
                text = text.lstrip("\ufeff").strip()
            return json.loads(text)
        if file_type == "lines":
            return [json.loads(line) for line in text.splitlines() if line.strip()]
        if file_type == "csv":
            csv_options = options.get("csv") or {}
            return parse_csv(
                text,
                delimiter=csv_options.get("delimiter", ","),
                has_headers=csv_options.get("hasHeaders", True),
                skip_empty=csv_options.get("skipEmptyLines", True),
            )
        return text

    async def execute(self, ctx: NodeExecutionContext) -> NodeResult:
        context = template_context(ctx.input, ctx.identifiers())
        source = self.config.get("source", "path")
        name = self.config.get("filePath") or self.config.get("fileUrl") or ""
        meta: Dict[str, Any] = {"source": source, "file": name}

        try:
            raw = await self._load(ctx, context)
        except FileNotFoundError as e:
            return NodeResult.fail(str(e), error_type="not_found", **meta)
        except httpx.HTTPError as e:
            return NodeResult.fail(f"Failed to fetch file: {e}", details={"exception": type(e).__name__}, **meta)

        file_type = self.config.get("fileType", "auto")
        if file_type == "binary":
            return NodeResult.ok(
                {"content": base64.b64encode(raw).decode("ascii"), "encoding": "base64", "size": len(raw)},
                fileType="binary",
                size=len(raw),
                **meta,
            )

        encoding = self.config.get("encoding", "utf-8")
        try:
            text = raw.decode(encoding)
            if file_type == "auto":
                file_type = detect_file_type(name, text)
            data = self._parse(text, file_type)
        except (UnicodeDecodeError, ValueError) as e:
            logger.warning(f"Read file node {self.node_id}: could not parse {name} as {file_type}: {e}")
            return NodeResult.fail(
                f"Could not parse {name} as {file_type}: {e}",
                error_type="parse",
                **meta,
            )
        return NodeResult.ok(data, fileType=file_type, encoding=encoding, size=len(raw), **meta)
