"""Helpers shared by the built-in executors."""

from __future__ import annotations

import json
import logging
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from motor.motor_asyncio import AsyncIOMotorClient

from .. import settings
from ..engine.context import NodeResult
from ..engine.template import has_placeholders, is_passthrough, render, resolve
from ..errors import ConfigurationError

logger = logging.getLogger(__name__)


def set_nested_value(target: Dict[str, Any], path: str, value: Any) -> None:
    """Assign ``value`` at dotted ``path``, creating intermediate dicts."""
    parts = [p for p in path.split(".") if p]
    if not parts:
        return
    current = target
    for part in parts[:-1]:
        child = current.get(part)
        if not isinstance(child, dict):
            child = {}
            current[part] = child
        current = child
    current[parts[-1]] = value


def render_json_template(
    template: Any,
    context: Dict[str, Any],
    field: str,
    lenient: bool = False,
) -> Any:
    """Render a JSON-ish template field (body, document, filter, ...).

    - ``{{input}}`` passes the input object through untouched
    - dict/list skeletons are rendered recursively, keeping raw types
    - strings are resolved and then parsed as JSON

    Raises:
        ConfigurationError: If a string template does not parse as JSON and
            ``lenient`` is off
    """
    if template is None:
        return None
    if is_passthrough(template):
        return context.get("input")
    if isinstance(template, (dict, list)):
        return render(template, context)
    if not isinstance(template, str):
        return template

    text = resolve(template, context)
    try:
        return json.loads(text)
    except json.JSONDecodeError as e:
        if lenient:
            logger.debug(f"{field}: template is not valid JSON, using raw string")
            return text
        raise ConfigurationError(
            f"{field} is not valid JSON after template resolution: {e.msg} (line {e.lineno}, column {e.colno})",
            field=field,
        ) from e


def render_text(template: Any, context: Dict[str, Any]) -> Optional[str]:
    """Resolve a plain-text template field; None stays None."""
    if template is None:
        return None
    return resolve(template, context) if has_placeholders(template) else str(template)


def render_mapping(mapping: Optional[Dict[str, Any]], context: Dict[str, Any]) -> Dict[str, str]:
    """Resolve every value of a flat string mapping (headers, query)."""
    return {str(k): render_text(v, context) or "" for k, v in (mapping or {}).items()}


def split_addresses(value: Any) -> List[str]:
    """Accept ``"a@x, b@y"`` or a list and return trimmed addresses."""
    if not value:
        return []
    if isinstance(value, str):
        return [part.strip() for part in value.split(",") if part.strip()]
    return [str(part).strip() for part in value if str(part).strip()]


def truncate(text: str, limit: int) -> str:
    return text if len(text) <= limit else text[:limit]


def execution_failure(exc, **metadata: Any):
    """Turn an ExecutionError (sandbox failure included) into a failed NodeResult."""
    details = dict(getattr(exc, "details", {}) or {})
    console = getattr(exc, "console", None)
    if console:
        details["console"] = console
    return NodeResult.fail(str(exc), details=details, error_type=exc.error_type, **metadata)


def clamp_timeout(value: Any) -> int:
    """Clamp a sandbox timeout (ms) to the configured range."""
    try:
        timeout = int(value)
    except (TypeError, ValueError):
        timeout = settings.SANDBOX_DEFAULT_TIMEOUT_MS
    return max(settings.SANDBOX_MIN_TIMEOUT_MS, min(settings.SANDBOX_MAX_TIMEOUT_MS, timeout))


def mongo_client(uri: str) -> AsyncIOMotorClient:
    return AsyncIOMotorClient(uri, serverSelectionTimeoutMS=5000)


def async_database_url(url: str) -> str:
    """Pin a SQL URL to its async driver (asyncpg, aiomysql, aiosqlite)."""
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql+asyncpg://", 1)
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    if url.startswith("mysql://"):
        return url.replace("mysql://", "mysql+aiomysql://", 1)
    if url.startswith("sqlite://"):
        return url.replace("sqlite://", "sqlite+aiosqlite://", 1)
    return url


def jsonable(value: Any) -> Any:
    """Convert driver values (datetime, Decimal, ObjectId, bytes) to JSON types."""
    if isinstance(value, dict):
        return {str(k): jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [jsonable(v) for v in value]
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return str(value)
