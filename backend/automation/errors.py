"""Error taxonomy for workflow runs.

- WorkflowValidationError: graph or node schema invalid, the run never starts
- ConfigurationError: node configuration unusable at run time (malformed
  JSON template, missing credential); aborts the run
- ExecutionError: an executor failed (HTTP non-2xx, database error,
  sandbox timeout); recovered per node by its errorHandling
- CancellationError: run or node cancelled externally
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Dict, List, Optional

if TYPE_CHECKING:
    from .engine.graph import ValidationResult


class AutomationError(Exception):
    """Base class for all engine errors."""

    error_type = "error"


class WorkflowValidationError(AutomationError):
    """Raised when a workflow definition fails validation."""

    error_type = "validation"

    def __init__(self, result: "ValidationResult"):
        self.result = result
        messages = [e.message for e in result.errors]
        super().__init__(f"Workflow validation failed: {'; '.join(messages)}")


class ConfigurationError(AutomationError):
    """Raised when a node's configuration cannot be used at run time."""

    error_type = "configuration"

    def __init__(self, message: str, field: Optional[str] = None):
        self.field = field
        super().__init__(message)


class ExecutionError(AutomationError):
    """Raised when an executor fails while doing its work."""

    error_type = "execution"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.details = details or {}
        super().__init__(message)


class SandboxTimeoutError(ExecutionError):
    """Sandboxed code exceeded its wall-clock budget and was killed."""

    error_type = "timeout"

    def __init__(self, timeout_ms: int, console: Optional[List[Dict[str, Any]]] = None):
        self.timeout_ms = timeout_ms
        self.console = console or []
        super().__init__(
            f"Execution timeout: code did not finish within {timeout_ms}ms",
            details={"timeoutMs": timeout_ms},
        )


class SandboxExecutionError(ExecutionError):
    """Sandboxed code raised (or failed to compile)."""

    def __init__(
        self,
        message: str,
        exception_type: str = "Exception",
        console: Optional[List[Dict[str, Any]]] = None,
    ):
        self.exception_type = exception_type
        self.console = console or []
        super().__init__(message, details={"exceptionType": exception_type})


class CancellationError(AutomationError):
    """Raised when a run or a node is cancelled externally."""

    error_type = "cancelled"

    def __init__(self, reason: str = "cancelled"):
        self.reason = reason
        super().__init__(reason)
