"""Sandbox Runner: executes user-supplied code in a separate process.

Each invocation spawns ``python -m automation.sandbox.worker`` with a scrubbed
environment and a temp working directory, sends the request on stdin and
reads one JSON response from stdout. The parent enforces the wall-clock
budget: when it expires the process is killed and SandboxTimeoutError is
raised, distinct from SandboxExecutionError (code raised or failed to
compile). Asynchronous bodies run inside the same process and therefore
share the same budget.
"""

from __future__ import annotations

import asyncio
import json
import logging
import math
import os
import tempfile
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from .. import settings
from ..errors import CancellationError, ConfigurationError, SandboxExecutionError, SandboxTimeoutError
from .libraries import normalize_library_selection, unknown_libraries

logger = logging.getLogger(__name__)
console_logger = logging.getLogger("automation.sandbox.console")

WORKER_MODULE = "automation.sandbox.worker"

# Directory containing the ``automation`` package, put on the worker's PYTHONPATH
PACKAGE_ROOT = str(Path(__file__).resolve().parents[2])

_CONSOLE_LEVELS = {
    "log": logging.INFO,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "error": logging.ERROR,
    "debug": logging.DEBUG,
}


@dataclass
class SandboxResult:
    """Outcome of a successful sandbox invocation.

    Attributes:
        value: JSON-compatible return value of the user body
        console: Ordered console entries ({type, message, timestamp})
        duration_ms: Wall-clock time including process start-up
    """

    value: Any
    console: List[Dict[str, Any]] = field(default_factory=list)
    duration_ms: int = 0


def _json_default(value: Any) -> Any:
    if isinstance(value, (set, frozenset, tuple)):
        return list(value)
    if hasattr(value, "isoformat"):
        return value.isoformat()
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return str(value)


class SandboxRunner:
    """Spawns one isolated worker process per invocation."""

    def __init__(
        self,
        python: str = settings.SANDBOX_PYTHON,
        memory_limit_mb: int = settings.SANDBOX_MEMORY_LIMIT_MB,
        forward_console: bool = settings.SANDBOX_FORWARD_CONSOLE,
    ):
        self.python = python
        self.memory_limit_mb = memory_limit_mb
        self.forward_console = forward_console

    def _env(self) -> Dict[str, str]:
        env = {
            "PYTHONPATH": PACKAGE_ROOT,
            "PYTHONIOENCODING": "utf-8",
            "PYTHONDONTWRITEBYTECODE": "1",
            "PYTHONHASHSEED": "0",
        }
        for name in ("PATH", "SYSTEMROOT"):
            if name in os.environ:
                env[name] = os.environ[name]
        return env

    async def run(
        self,
        code: str,
        bindings: Optional[Dict[str, Any]] = None,
        timeout_ms: int = settings.SANDBOX_DEFAULT_TIMEOUT_MS,
        allowed_libraries: Iterable[str] = (),
        *,
        async_allowed: bool = False,
        params: Optional[List[str]] = None,
        each: Optional[List[Any]] = None,
        cancel_token=None,
        label: str = "sandbox",
    ) -> SandboxResult:
        """Run ``code`` as a function body and return its value.

        Args:
            code: Function body; its ``return`` value is the result
            bindings: Keyword arguments passed to the body (JSON-compatible)
            timeout_ms: Hard wall-clock budget
            allowed_libraries: Optional libraries to bind (see libraries.py)
            async_allowed: Compile the body as ``async def`` (enables ``await``)
            params: Parameter names; defaults to the binding names
            each: When given, call the body once per element with
                ``(item, index, array)`` plus bindings; the result is the list
                of return values
            cancel_token: Run cancellation token; kills the process when fired
            label: Prefix for forwarded console lines

        Raises:
            SandboxTimeoutError: Budget exceeded, process killed
            SandboxExecutionError: User code raised or did not compile
            CancellationError: Cancellation token fired
            ConfigurationError: Unknown library requested
        """
        bindings = dict(bindings or {})
        libraries = normalize_library_selection(allowed_libraries)
        unknown = unknown_libraries(libraries)
        if unknown:
            raise ConfigurationError(f"Unknown sandbox libraries: {unknown}", field="libraries")

        if params is None:
            params = list(bindings)
            if each is not None:
                params = ["item", "index", "array"] + [p for p in params if p not in ("item", "index", "array")]

        request = {
            "code": code,
            "params": params,
            "bindings": bindings,
            "libraries": libraries,
            "async": async_allowed,
            "each": each is not None,
            "items": each if each is not None else [],
            "memory_limit_mb": self.memory_limit_mb,
            "cpu_seconds": math.ceil(timeout_ms / 1000) + 1,
            "console_limit": settings.SANDBOX_CONSOLE_MESSAGE_LIMIT,
        }
        payload = json.dumps(request, default=_json_default).encode("utf-8")

        started = time.monotonic()
        proc = await asyncio.create_subprocess_exec(
            self.python, "-m", WORKER_MODULE,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=self._env(),
            cwd=tempfile.gettempdir(),
        )
        communicate = asyncio.ensure_future(proc.communicate(payload))
        waiters = {communicate}
        cancel_waiter = None
        if cancel_token is not None:
            cancel_waiter = asyncio.ensure_future(cancel_token.wait())
            waiters.add(cancel_waiter)

        try:
            done, _ = await asyncio.wait(
                waiters, timeout=timeout_ms / 1000.0, return_when=asyncio.FIRST_COMPLETED,
            )
        except asyncio.CancelledError:
            await self._kill(proc, communicate)
            raise
        finally:
            if cancel_waiter is not None:
                cancel_waiter.cancel()

        if communicate not in done:
            await self._kill(proc, communicate)
            if cancel_waiter is not None and cancel_waiter in done:
                raise CancellationError(getattr(cancel_token, "reason", None) or "cancelled")
            logger.warning(f"{label}: sandbox timed out after {timeout_ms}ms, process killed")
            raise SandboxTimeoutError(timeout_ms)

        stdout, stderr = communicate.result()
        duration_ms = int((time.monotonic() - started) * 1000)
        response = self._parse(stdout, stderr, proc.returncode)

        console = response.get("console") or []
        if self.forward_console:
            self._forward(console, label)

        if not response.get("ok"):
            error = response.get("error") or {}
            raise SandboxExecutionError(
                error.get("message") or "Sandboxed code failed",
                exception_type=error.get("type") or "Exception",
                console=console,
            )

        return SandboxResult(value=response.get("result"), console=console, duration_ms=duration_ms)

    @staticmethod
    async def _kill(proc, communicate) -> None:
        if proc.returncode is None:
            try:
                proc.kill()
            except ProcessLookupError:
                pass
        # Reap the process; its output is discarded
        await asyncio.gather(communicate, return_exceptions=True)

    @staticmethod
    def _parse(stdout: bytes, stderr: bytes, returncode: Optional[int]) -> Dict[str, Any]:
        text = stdout.decode("utf-8", errors="replace").strip()
        try:
            response = json.loads(text) if text else None
        except json.JSONDecodeError:
            response = None
        if not isinstance(response, dict):
            tail = stderr.decode("utf-8", errors="replace").strip()[-500:]
            raise SandboxExecutionError(
                f"Sandbox process exited with code {returncode} without a result: {tail}",
                exception_type="SandboxCrash",
            )
        return response

    @staticmethod
    def _forward(console: List[Dict[str, Any]], label: str) -> None:
        for entry in console:
            level = _CONSOLE_LEVELS.get(entry.get("type"), logging.INFO)
            console_logger.log(level, f"[{label}] {entry.get('message', '')}")


_default_runner = SandboxRunner()


async def run_sandboxed(
    code: str,
    bindings: Optional[Dict[str, Any]] = None,
    timeout_ms: int = settings.SANDBOX_DEFAULT_TIMEOUT_MS,
    allowed_libraries: Iterable[str] = (),
    **kwargs: Any,
) -> SandboxResult:
    """Run code with the process-wide default runner."""
    return await _default_runner.run(code, bindings, timeout_ms, allowed_libraries, **kwargs)
