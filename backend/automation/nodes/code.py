"""Custom Code Node

Runs a user-written function body in the Sandbox Runner. The body sees
``input`` (the predecessor's output), ``context`` (workflow/node/execution
identifiers), ``console`` and the enabled libraries; its return value
becomes the node's output.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List

from RestrictedPython import RestrictingNodeTransformer, compile_restricted_exec

from ..engine.context import NodeExecutionContext, NodeResult
from ..errors import SandboxExecutionError, SandboxTimeoutError
from ..sandbox.libraries import AVAILABLE_LIBRARIES, normalize_library_selection, unknown_libraries
from ..sandbox.worker import AsyncRestrictingNodeTransformer, build_source
from .registry import CATEGORY_TRANSFORM, BaseNodeImpl, ExecutorMetadata, register_node_type
from .utils import clamp_timeout, execution_failure

logger = logging.getLogger(__name__)

CODE_PARAMS = ["input", "context"]


@register_node_type(
    node_type="code",
    display_name="Custom Code",
    description="Run custom Python code against the input",
    category=CATEGORY_TRANSFORM,
    config_schema={
        "type": "object",
        "properties": {
            "code": {"type": "string", "minLength": 1},
            "timeout": {"type": "integer", "minimum": 100, "maximum": 30000},
            "errorHandling": {"type": "string", "enum": ["throw", "returnError", "returnNull", "continue", "retry"]},
            "asyncAllowed": {"type": "boolean"},
            "preserveConsoleOutput": {"type": "boolean"},
            "libraries": {
                "oneOf": [
                    {"type": "array", "items": {"type": "string", "enum": AVAILABLE_LIBRARIES}},
                    {"type": "object", "additionalProperties": {"type": "boolean"}},
                ],
            },
            "retryCount": {"type": "integer", "minimum": 0, "maximum": 10},
            "retryDelay": {"type": "integer", "minimum": 0},
        },
        "required": ["code"],
    },
    metadata=ExecutorMetadata(
        is_async=True,
        default_data={
            "timeout": 5000,
            "errorHandling": "throw",
            "asyncAllowed": False,
            "preserveConsoleOutput": False,
            "libraries": [],
        },
    ),
    icon="code",
    color="#64748B",
)
class CodeNode(BaseNodeImpl):
    """Execute user code with a hard timeout.

    errorHandling decides what an exception raised by the code becomes:
    ``throw`` fails the node, ``returnError`` outputs ``{error, errorType}``,
    ``returnNull`` outputs null. A timeout always fails the node.
    """

    def check_config(self) -> List[Dict[str, str]]:
        errors = []
        unknown = unknown_libraries(normalize_library_selection(self.config.get("libraries")))
        if unknown:
            errors.append({"field": "libraries", "error": f"Unknown libraries: {unknown}"})

        is_async = bool(self.config.get("asyncAllowed"))
        policy = AsyncRestrictingNodeTransformer if is_async else RestrictingNodeTransformer
        compiled = compile_restricted_exec(
            build_source(self.config["code"], CODE_PARAMS, is_async),
            filename="<user-code>",
            policy=policy,
        )
        for message in compiled.errors:
            errors.append({"field": "code", "error": message})
        return errors

    async def execute(self, ctx: NodeExecutionContext) -> NodeResult:
        timeout_ms = clamp_timeout(self.config.get("timeout"))
        preserve_console = bool(self.config.get("preserveConsoleOutput"))
        error_handling = self.config.get("errorHandling", "throw")

        try:
            result = await ctx.services.sandbox.run(
                self.config["code"],
                bindings={"input": ctx.input, "context": ctx.identifiers()},
                timeout_ms=timeout_ms,
                allowed_libraries=self.config.get("libraries") or [],
                async_allowed=bool(self.config.get("asyncAllowed")),
                params=CODE_PARAMS,
                cancel_token=ctx.cancel_token,
                label=f"code:{self.node_id}",
            )
        except SandboxTimeoutError as e:
            logger.warning(f"Code node {self.node_id} timed out after {timeout_ms}ms")
            return execution_failure(e, timeoutMs=timeout_ms)
        except SandboxExecutionError as e:
            meta: Dict[str, Any] = {"timeoutMs": timeout_ms, "errorHandled": error_handling}
            if preserve_console:
                meta["consoleOutput"] = e.console
            if error_handling == "returnError":
                return NodeResult.ok({"error": str(e), "errorType": e.exception_type}, **meta)
            if error_handling == "returnNull":
                return NodeResult.ok(None, **meta)
            return execution_failure(e, **meta)

        meta = {"executionTime": result.duration_ms, "timeoutMs": timeout_ms}
        if preserve_console:
            meta["consoleOutput"] = result.console
        return NodeResult.ok(result.value, **meta)
