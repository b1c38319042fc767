"""Result sink interface: where the engine reports node and run outcomes.

The engine never persists results itself; the caller supplies a sink.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Dict, List, Protocol

if TYPE_CHECKING:
    from ..engine.executor import NodeRunRecord, RunResult


class ResultSink(Protocol):
    async def record_node_result(self, execution_id: str, node_id: str, record: "NodeRunRecord") -> None:
        ...

    async def record_run_completion(self, execution_id: str, result: "RunResult") -> None:
        ...


class InMemoryResultSink:
    """Collects results in memory; handy for tests and one-shot runs."""

    def __init__(self):
        self.node_results: Dict[str, List["NodeRunRecord"]] = {}
        self.completions: Dict[str, "RunResult"] = {}

    async def record_node_result(self, execution_id: str, node_id: str, record: "NodeRunRecord") -> None:
        self.node_results.setdefault(execution_id, []).append(record)

    async def record_run_completion(self, execution_id: str, result: "RunResult") -> None:
        self.completions[execution_id] = result
