"""File Output Node

Writes the input to a file under the files root (``services.files``) as
JSON, CSV or text, optionally gzipped. File names are templates with the
same variables as object keys (``{{timestamp}}``, ``{{date}}``, ...).
"""

from __future__ import annotations

import gzip
import json
import logging
import posixpath
from typing import Any, Dict

from ..engine.context import NodeExecutionContext, NodeResult
from ..engine.template import has_placeholders, resolve, stringify, template_context
from ..errors import ConfigurationError
from .object_storage import key_variables, to_csv
from .registry import CATEGORY_OUTPUT, BaseNodeImpl, ExecutorMetadata, register_node_type
from .utils import render_json_template

logger = logging.getLogger(__name__)


@register_node_type(
    node_type="file-output",
    display_name="File",
    description="Write data to a JSON, CSV or text file",
    category=CATEGORY_OUTPUT,
    config_schema={
        "type": "object",
        "properties": {
            "filePath": {"type": "string"},
            "fileName": {"type": "string", "minLength": 1},
            "fileFormat": {"type": "string", "enum": ["json", "csv", "txt"]},
            "encoding": {"type": "string", "enum": ["utf-8", "utf-16", "ascii", "latin-1"]},
            "writeMode": {"type": "string", "enum": ["overwrite", "append", "create"]},
            "createDirectories": {"type": "boolean"},
            "csvDelimiter": {"type": "string", "minLength": 1, "maxLength": 1},
            "csvHeaders": {"type": "boolean"},
            "jsonPretty": {"type": "boolean"},
            "jsonSpacing": {"type": "integer", "minimum": 0, "maximum": 8},
            "dataTemplate": {"type": ["string", "object", "array"]},
            "lineTemplate": {"type": "string"},
            "compression": {"type": "string", "enum": ["none", "gzip"]},
            "timestamp": {"type": "boolean"},
            "retryCount": {"type": "integer", "minimum": 0, "maximum": 10},
            "retryDelay": {"type": "integer", "minimum": 0},
            "errorHandling": {"type": "string", "enum": ["fail", "continue", "retry"]},
        },
        "required": ["fileName"],
    },
    output_schema={
        "type": "object",
        "properties": {
            "fileName": {"type": "string"},
            "filePath": {"type": "string"},
            "fileSize": {"type": "integer"},
            "recordsWritten": {"type": "integer"},
        },
    },
    metadata=ExecutorMetadata(
        allowed_outputs=[],
        max_inputs=1,
        max_outputs=0,
        is_async=True,
        default_data={
            "filePath": "",
            "fileName": "output-{{timestamp}}.json",
            "fileFormat": "json",
            "encoding": "utf-8",
            "writeMode": "overwrite",
            "createDirectories": True,
            "csvDelimiter": ",",
            "csvHeaders": True,
            "jsonPretty": True,
            "jsonSpacing": 2,
            "dataTemplate": "{{input}}",
            "compression": "none",
            "timestamp": False,
        },
    ),
    icon="file-output",
    color="#8B5CF6",
)
class FileOutputNode(BaseNodeImpl):
    """Serialize the input and write one file per run."""

    def _file_name(self, context: Dict[str, Any]) -> str:
        template = self.config["fileName"]
        if self.config.get("timestamp") and "{{timestamp}}" not in template:
            stem, dot, extension = template.rpartition(".")
            template = f"{stem}-{{{{timestamp}}}}.{extension}" if dot else f"{template}-{{{{timestamp}}}}"
        name = resolve(template, context)
        if has_placeholders(name):
            raise ConfigurationError(f"File name has unresolved placeholders: {name}", field="fileName")
        if self.config.get("compression") == "gzip" and not name.endswith(".gz"):
            name += ".gz"
        return name

    def _content(self, data: Any, ctx: NodeExecutionContext, continuing: bool) -> str:
        fmt = self.config.get("fileFormat", "json")
        if fmt == "csv":
            header = self.config.get("csvHeaders", True) and not continuing
            return to_csv(data, delimiter=self.config.get("csvDelimiter", ","), header=header)
        if fmt == "txt":
            items = data if isinstance(data, list) else [data]
            template = self.config.get("lineTemplate")
            if template:
                lines = [resolve(template, template_context(item, ctx.identifiers())) for item in items]
            else:
                lines = [stringify(item) for item in items]
            return "\n".join(lines) + "\n"
        indent = self.config.get("jsonSpacing", 2) if self.config.get("jsonPretty", True) else None
        text = json.dumps(data, ensure_ascii=False, indent=indent, default=str)
        return text + "\n" if self.config.get("writeMode") == "append" else text

    async def execute(self, ctx: NodeExecutionContext) -> NodeResult:
        files = ctx.services.files
        context = template_context(ctx.input, {**key_variables(), **ctx.identifiers()})
        file_name = self._file_name(context)
        path = posixpath.join(resolve(self.config.get("filePath") or "", context), file_name)
        mode = self.config.get("writeMode", "overwrite")
        meta = {"fileFormat": self.config.get("fileFormat", "json"), "writeMode": mode}

        data = render_json_template(self.config.get("dataTemplate", "{{input}}"), context, "dataTemplate", lenient=True)
        continuing = mode == "append" and await files.size(path) > 0
        encoding = self.config.get("encoding", "utf-8")
        try:
            body = self._content(data, ctx, continuing).encode(encoding)
        except UnicodeEncodeError as e:
            return NodeResult.fail(f"Content cannot be encoded as {encoding}: {e}", error_type="encoding", **meta)
        if self.config.get("compression") == "gzip":
            body = gzip.compress(body)

        try:
            size = await files.write_bytes(path, body, mode=mode, create_dirs=self.config.get("createDirectories", True))
        except FileExistsError:
            return NodeResult.fail(f"File already exists: {path}", error_type="conflict", filePath=path, **meta)
        except OSError as e:
            logger.error(f"File output {self.node_id}: writing {path} failed: {e}")
            return NodeResult.fail(f"Writing {path} failed: {e}", details={"exception": type(e).__name__}, **meta)

        records = len(data) if isinstance(data, list) else (0 if data is None else 1)
        logger.info(f"Wrote {len(body)} bytes to {path} ({mode})")
        result: Dict[str, Any] = {
            "fileName": file_name,
            "filePath": path,
            "fileSize": size,
            "recordsWritten": records,
        }
        return NodeResult.ok(result, bytesWritten=len(body), **meta)
