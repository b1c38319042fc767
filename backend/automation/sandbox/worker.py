"""Sandbox worker process entry point.

Run as ``python -m automation.sandbox.worker``. Reads one JSON request from
stdin, compiles the user body with RestrictedPython, runs it against the
supplied bindings and writes one JSON response to stdout:

    {"ok": true, "result": ..., "console": [...]}
    {"ok": false, "error": {"type": ..., "message": ...}, "console": [...]}

The user body becomes the body of ``def sandbox_main(<params>)``. Only the
restricted builtins, the console, the enabled libraries and the call
arguments are reachable from it.
"""

from __future__ import annotations

import asyncio
import json
import operator
import sys
import textwrap
from datetime import date, datetime, timezone
from typing import Any, Dict, List

from RestrictedPython import RestrictingNodeTransformer, compile_restricted, safe_builtins
from RestrictedPython.Eval import default_guarded_getitem, default_guarded_getiter
from RestrictedPython.Guards import (
    full_write_guard,
    guarded_iter_unpack_sequence,
    guarded_unpack_sequence,
    safer_getattr,
)

from .libraries import load_libraries

FUNCTION_NAME = "sandbox_main"

_EXTRA_BUILTINS = {
    "dict": dict,
    "list": list,
    "set": set,
    "frozenset": frozenset,
    "min": min,
    "max": max,
    "sum": sum,
    "any": any,
    "all": all,
    "enumerate": enumerate,
    "map": map,
    "filter": filter,
    "reversed": reversed,
    "next": next,
    "iter": iter,
    "Exception": Exception,
}

_INPLACE_OPS = {
    "+=": operator.iadd,
    "-=": operator.isub,
    "*=": operator.imul,
    "/=": operator.itruediv,
    "//=": operator.ifloordiv,
    "%=": operator.imod,
    "**=": operator.ipow,
    "|=": operator.ior,
    "&=": operator.iand,
    "^=": operator.ixor,
    "<<=": operator.ilshift,
    ">>=": operator.irshift,
}


class AsyncRestrictingNodeTransformer(RestrictingNodeTransformer):
    """Policy that additionally permits ``async def`` and ``await``."""

    def visit_AsyncFunctionDef(self, node):
        return self.visit_FunctionDef(node)

    def visit_Await(self, node):
        return self.node_contents_visit(node)


class Console:
    """``console.log/info/warn/error/debug`` captured into ordered entries."""

    def __init__(self, message_limit: int = 2000):
        self.entries: List[Dict[str, Any]] = []
        self._limit = message_limit

    def _add(self, kind: str, args) -> None:
        parts = [a if isinstance(a, str) else json.dumps(a, default=_json_default) for a in args]
        self.entries.append({
            "type": kind,
            "message": " ".join(parts)[: self._limit],
            "timestamp": datetime.now(timezone.utc).isoformat(),
        })

    def log(self, *args):
        self._add("log", args)

    def info(self, *args):
        self._add("info", args)

    def warn(self, *args):
        self._add("warn", args)

    def error(self, *args):
        self._add("error", args)

    def debug(self, *args):
        self._add("debug", args)


class _ConsolePrinter:
    """Collector behind RestrictedPython's ``print`` rewrite."""

    def __init__(self, console: Console):
        self.console = console
        self.lines: List[str] = []

    def _call_print(self, *objects, **kwargs):
        self.lines.append(" ".join(str(o) for o in objects))
        self.console.log(*objects)

    def __call__(self):
        return "\n".join(self.lines)


def _inplacevar(op: str, target, value):
    return _INPLACE_OPS[op](target, value)


def _json_default(value: Any) -> Any:
    if isinstance(value, (set, frozenset, tuple)):
        return list(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return str(value)


def build_source(code: str, params: List[str], is_async: bool) -> str:
    body = textwrap.indent(textwrap.dedent(code).strip("\n"), "    ") or "    pass"
    prefix = "async def" if is_async else "def"
    return f"{prefix} {FUNCTION_NAME}({', '.join(params)}):\n{body}\n"


def restricted_globals(console: Console, libraries: List[str], is_async: bool) -> Dict[str, Any]:
    builtins = dict(safe_builtins)
    builtins.update(_EXTRA_BUILTINS)
    glb: Dict[str, Any] = {
        "__builtins__": builtins,
        "__name__": "sandbox",
        "__metaclass__": type,
        "_getattr_": safer_getattr,
        "_getitem_": default_guarded_getitem,
        "_getiter_": default_guarded_getiter,
        "_iter_unpack_sequence_": guarded_iter_unpack_sequence,
        "_unpack_sequence_": guarded_unpack_sequence,
        "_write_": full_write_guard,
        "_inplacevar_": _inplacevar,
        "_print_": lambda _getattr_=None: _ConsolePrinter(console),
        "console": console,
    }
    glb.update(load_libraries(libraries))
    if is_async:
        glb["sleep"] = asyncio.sleep
        glb["gather"] = asyncio.gather
    return glb


def run_request(request: Dict[str, Any], console: Console) -> Any:
    params = list(request.get("params") or [])
    is_async = bool(request.get("async"))
    policy = AsyncRestrictingNodeTransformer if is_async else RestrictingNodeTransformer

    source = build_source(request.get("code") or "", params, is_async)
    byte_code = compile_restricted(source, filename="<user-code>", mode="exec", policy=policy)

    glb = restricted_globals(console, request.get("libraries") or [], is_async)
    exec(byte_code, glb)
    fn = glb[FUNCTION_NAME]

    bindings = request.get("bindings") or {}
    if request.get("each"):
        items = request.get("items") or []
        calls = [
            {"item": item, "index": index, "array": items, **bindings}
            for index, item in enumerate(items)
        ]
    else:
        calls = [bindings]

    if is_async:
        async def _run_all():
            return [await fn(**kwargs) for kwargs in calls]
        results = asyncio.run(_run_all())
    else:
        results = [fn(**kwargs) for kwargs in calls]

    return results if request.get("each") else results[0]


def _apply_limits(memory_limit_mb: int, cpu_seconds: int) -> None:
    if sys.platform == "win32":
        return
    import resource

    limits = []
    if memory_limit_mb:
        size = memory_limit_mb * 1024 * 1024
        limits.append((resource.RLIMIT_AS, (size, size)))
    if cpu_seconds:
        limits.append((resource.RLIMIT_CPU, (cpu_seconds, cpu_seconds + 1)))
    for kind, value in limits:
        try:
            resource.setrlimit(kind, value)
        except (ValueError, OSError) as exc:
            sys.stderr.write(f"sandbox: could not apply resource limit {kind}: {exc}\n")


def main() -> int:
    request = json.loads(sys.stdin.read() or "{}")
    _apply_limits(int(request.get("memory_limit_mb") or 0), int(request.get("cpu_seconds") or 0))

    console = Console(int(request.get("console_limit") or 2000))
    try:
        response: Dict[str, Any] = {"ok": True, "result": run_request(request, console)}
    except Exception as exc:
        response = {"ok": False, "error": {"type": type(exc).__name__, "message": str(exc)}}
    response["console"] = console.entries

    sys.stdout.write(json.dumps(response, default=_json_default))
    sys.stdout.flush()
    return 0


if __name__ == "__main__":
    sys.exit(main())
