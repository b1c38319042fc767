"""Template Engine for ``{{path}}`` placeholders

Resolves placeholders against a data context. Paths are dot-separated and
support ``name[index]`` array indexing (``user.orders[0].total``), and numeric
segments (``items.0``) on lists.

Rules:
- Unresolved paths are left verbatim so partial templates stay inspectable
- ``resolve`` always returns a string; ``render`` walks dict/list skeletons
  and keeps the raw type of a string that is exactly one placeholder
- A template that is exactly ``{{input}}`` is a passthrough marker for
  callers that forward the input object untouched

All functions are pure and safe to call concurrently.
"""

from __future__ import annotations

import json
import re
from typing import Any, Dict, List, Optional, Union

PLACEHOLDER_PATTERN = re.compile(r"\{\{\s*([^{}]+?)\s*\}\}")
_SEGMENT_PATTERN = re.compile(r"([^.\[\]]+)|\[(\d+)\]")
_INDEX_ONLY = re.compile(r"^\d+$")


class _Missing:
    """Sentinel for a path that does not resolve."""

    _instance: Optional["_Missing"] = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "MISSING"


MISSING = _Missing()


def split_path(path: str) -> List[Union[str, int]]:
    """Split ``a.b[1].c`` into ``["a", "b", 1, "c"]``."""
    segments: List[Union[str, int]] = []
    for name, index in _SEGMENT_PATTERN.findall(path.strip()):
        if index:
            segments.append(int(index))
        else:
            segments.append(name.strip())
    return segments


def lookup(context: Any, path: str) -> Any:
    """Walk ``context`` along ``path``.

    Returns:
        The value found, or ``MISSING`` when any segment does not resolve
    """
    if not path or not path.strip():
        return MISSING

    current = context
    for segment in split_path(path):
        if isinstance(segment, int):
            if isinstance(current, (list, tuple)) and -len(current) <= segment < len(current):
                current = current[segment]
                continue
            if isinstance(current, dict) and str(segment) in current:
                current = current[str(segment)]
                continue
            return MISSING

        if isinstance(current, dict):
            if segment in current:
                current = current[segment]
                continue
            return MISSING

        if isinstance(current, (list, tuple)) and _INDEX_ONLY.match(segment):
            idx = int(segment)
            if idx < len(current):
                current = current[idx]
                continue
        return MISSING

    return current


def get_value(context: Any, path: str, default: Any = None) -> Any:
    """Like ``lookup`` but with a plain default for absent paths."""
    value = lookup(context, path)
    return default if value is MISSING else value


def stringify(value: Any) -> str:
    """Convert a resolved value to its template text."""
    if isinstance(value, str):
        return value
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list, tuple)):
        return json.dumps(value, ensure_ascii=False, default=str)
    return str(value)


def has_placeholders(text: Any) -> bool:
    return isinstance(text, str) and PLACEHOLDER_PATTERN.search(text) is not None


def single_placeholder(text: Any) -> Optional[str]:
    """Return the path if ``text`` is exactly one placeholder, else None."""
    if not isinstance(text, str):
        return None
    match = PLACEHOLDER_PATTERN.fullmatch(text.strip())
    return match.group(1).strip() if match else None


def is_passthrough(template: Any) -> bool:
    """True when the template is exactly ``{{input}}``."""
    return single_placeholder(template) == "input"


def resolve(template: Any, context: Any) -> str:
    """Replace every ``{{path}}`` in ``template`` with its stringified value.

    Args:
        template: Template text (non-strings are stringified first)
        context: Data the placeholders are resolved against

    Returns:
        Resolved text; unresolved placeholders are kept verbatim
    """
    text = template if isinstance(template, str) else stringify(template)

    def _replace(match: re.Match) -> str:
        value = lookup(context, match.group(1))
        if value is MISSING:
            return match.group(0)
        return stringify(value)

    return PLACEHOLDER_PATTERN.sub(_replace, text)


def render(value: Any, context: Any) -> Any:
    """Render a nested template skeleton (dict/list/str) against ``context``."""
    if isinstance(value, dict):
        return {key: render(item, context) for key, item in value.items()}
    if isinstance(value, list):
        return [render(item, context) for item in value]
    if isinstance(value, str):
        path = single_placeholder(value)
        if path is not None:
            resolved = lookup(context, path)
            if resolved is not MISSING:
                return resolved
        return resolve(value, context)
    return value


def template_context(input_data: Any, extra: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Build the lookup context output executors resolve templates against.

    Top-level keys of a dict input are addressable directly (``{{name}}``),
    the full input is always ``{{input}}``.
    """
    context: Dict[str, Any] = dict(input_data) if isinstance(input_data, dict) else {}
    if extra:
        context.update(extra)
    context["input"] = input_data
    return context
