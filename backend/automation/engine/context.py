"""Execution context types shared by the engine and every executor.

- ExecutionContext: created once per run, read by all nodes
- NodeExecutionContext: the per-node view handed to an executor
- NodeResult: immutable outcome of one executor invocation
- CancellationToken: run-level cancellation signal
- TriggerEvent: inbound event that starts a run
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List, Mapping, Optional

from ..errors import CancellationError

if TYPE_CHECKING:
    from ..services import Services
    from .graph import Node


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def now_iso() -> str:
    return utcnow().isoformat()


class NodeStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self not in (NodeStatus.PENDING, NodeStatus.RUNNING)


class RunStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class NodeResult:
    """Outcome of a single executor invocation.

    Attributes:
        success: Whether the executor achieved its purpose
        data: Output handed to downstream nodes
        error: Human-readable error message (failures only)
        error_details: Structured failure facts (``type`` is always set)
        metadata: Node-specific facts, always including ``timestamp``
    """

    success: bool
    data: Any = None
    error: Optional[str] = None
    error_details: Optional[Dict[str, Any]] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def ok(cls, data: Any = None, **metadata: Any) -> "NodeResult":
        metadata.setdefault("timestamp", now_iso())
        return cls(success=True, data=data, metadata=metadata)

    @classmethod
    def fail(
        cls,
        error: str,
        details: Optional[Dict[str, Any]] = None,
        data: Any = None,
        error_type: str = "execution",
        **metadata: Any,
    ) -> "NodeResult":
        metadata.setdefault("timestamp", now_iso())
        error_details = {"type": error_type, **(details or {})}
        return cls(
            success=False,
            data=data,
            error=error,
            error_details=error_details,
            metadata=metadata,
        )

    @property
    def error_type(self) -> Optional[str]:
        if self.error_details:
            return self.error_details.get("type")
        return None

    def failure_payload(self) -> Dict[str, Any]:
        """Payload handed downstream when the node's errorHandling is 'continue'."""
        return {
            "success": False,
            "error": self.error,
            "errorDetails": self.error_details,
            "data": self.data,
        }

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "success": self.success,
            "data": self.data,
            "metadata": self.metadata,
        }
        if not self.success:
            result["error"] = self.error
            result["errorDetails"] = self.error_details
        return result


class CancellationToken:
    """Run-level cancellation signal observed by the engine and sandbox."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled by caller") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise CancellationError(self.reason or "cancelled")


@dataclass(frozen=True)
class TriggerEvent:
    """Inbound event that starts a run.

    ``node_id`` names the trigger node that fired; when None every trigger
    node in the graph is seeded with the payload.
    """

    workflow_id: str
    node_id: Optional[str] = None
    payload: Any = None
    received_at: datetime = field(default_factory=utcnow)


@dataclass
class ExecutionContext:
    """Per-run data shared read-only by all nodes of the run."""

    workflow_id: str
    execution_id: str
    services: "Services"
    workflow_name: str = ""
    environment: str = "development"
    started_at: datetime = field(default_factory=utcnow)
    env: Mapping[str, str] = field(default_factory=dict)
    cancel_token: CancellationToken = field(default_factory=CancellationToken)


@dataclass
class NodeExecutionContext:
    """The slice of a run an executor sees.

    ``inputs`` is only populated for executors whose metadata declares
    ``reads_inputs`` (merge); every other executor reads ``input``.
    """

    node: "Node"
    run: ExecutionContext
    input: Any = None
    inputs: Optional[List[Any]] = None
    attempt: int = 1

    @property
    def services(self) -> "Services":
        return self.run.services

    @property
    def env(self) -> Mapping[str, str]:
        return self.run.env

    @property
    def cancel_token(self) -> CancellationToken:
        return self.run.cancel_token

    def identifiers(self) -> Dict[str, Any]:
        """Workflow/node/execution identifiers exposed to user code."""
        return {
            "workflow": {"id": self.run.workflow_id, "name": self.run.workflow_name},
            "node": {"id": self.node.id, "type": self.node.type, "label": self.node.label},
            "execution": {
                "id": self.run.execution_id,
                "timestamp": self.run.started_at.isoformat(),
                "environment": self.run.environment,
            },
        }
