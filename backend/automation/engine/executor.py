"""Execution Engine

Runs one workflow definition for one triggering event.

Key Components:
- ExecutionEngine: validates, orders and dispatches nodes
- NodeRunRecord: per-node outcome (status, result, retries, reason)
- RunResult: run-level outcome, obtainable for partially failed runs

Nodes run as asyncio tasks bounded by a semaphore; a node is dispatched only
once every predecessor is terminal. The results map is the only shared
mutable state and is written under the run's lock.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

from .. import config, nodes, settings
from ..errors import AutomationError, CancellationError, ConfigurationError, WorkflowValidationError
from .context import (
    CancellationToken,
    ExecutionContext,
    NodeExecutionContext,
    NodeResult,
    NodeStatus,
    RunStatus,
    TriggerEvent,
    utcnow,
)
from .graph import Node, WorkflowDefinition, topological_sort, validate_workflow
from .retry import RetryPolicy

logger = logging.getLogger(__name__)


@dataclass
class NodeRunRecord:
    """Outcome of one node within a run.

    Attributes:
        node_id: Node identifier
        node_type: Node type
        status: Terminal (or current) node status
        result: The executor's NodeResult, None for skipped nodes
        retries: Retries performed (engine retries plus the executor's own)
        reason: Why the node did not succeed
        continued: Failed with errorHandling "continue"; dependents still run
    """

    node_id: str
    node_type: str
    status: NodeStatus = NodeStatus.PENDING
    result: Optional[NodeResult] = None
    retries: int = 0
    reason: Optional[str] = None
    continued: bool = False
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @property
    def duration_ms(self) -> Optional[int]:
        if self.started_at is None or self.finished_at is None:
            return None
        return int((self.finished_at - self.started_at).total_seconds() * 1000)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "nodeId": self.node_id,
            "nodeType": self.node_type,
            "status": self.status.value,
            "result": self.result.to_dict() if self.result else None,
            "retries": self.retries,
            "reason": self.reason,
            "continued": self.continued,
            "startedAt": self.started_at.isoformat() if self.started_at else None,
            "finishedAt": self.finished_at.isoformat() if self.finished_at else None,
            "durationMs": self.duration_ms,
        }


@dataclass
class RunResult:
    execution_id: str
    workflow_id: str
    status: RunStatus
    nodes: Dict[str, NodeRunRecord] = field(default_factory=dict)
    started_at: datetime = field(default_factory=utcnow)
    finished_at: Optional[datetime] = None
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status == RunStatus.COMPLETED

    def output(self, node_id: str) -> Any:
        """Data produced by ``node_id``, or None if it produced nothing."""
        record = self.nodes.get(node_id)
        if record is None or record.result is None:
            return None
        return record.result.data

    def to_dict(self) -> Dict[str, Any]:
        return {
            "executionId": self.execution_id,
            "workflowId": self.workflow_id,
            "status": self.status.value,
            "nodes": {node_id: record.to_dict() for node_id, record in self.nodes.items()},
            "startedAt": self.started_at.isoformat(),
            "finishedAt": self.finished_at.isoformat() if self.finished_at else None,
            "error": self.error,
        }


@dataclass
class _RunState:
    definition: WorkflowDefinition
    run: ExecutionContext
    records: Dict[str, NodeRunRecord]
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    abort: Optional[str] = None


class ExecutionEngine:
    """Walks a workflow graph in dependency order.

    Args:
        services: Services bundle injected into every node context
        result_sink: Receives node results and the run completion
        max_concurrency: Max nodes running at once within one run
        environment: Reported to nodes as ``execution.environment``
        env: Environment mapping exposed as ``ctx.env``
    """

    def __init__(
        self,
        services,
        result_sink=None,
        max_concurrency: int = settings.ENGINE_MAX_CONCURRENCY,
        environment: str = config.ENVIRONMENT,
        env: Optional[Mapping[str, str]] = None,
    ):
        self.services = services
        self.result_sink = result_sink
        self.max_concurrency = max(1, max_concurrency)
        self.environment = environment
        self.env = dict(env or {})

    async def run(
        self,
        definition: Union[WorkflowDefinition, Dict[str, Any]],
        event: Optional[TriggerEvent] = None,
        *,
        execution_id: Optional[str] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> RunResult:
        """Execute ``definition`` once.

        Raises:
            WorkflowValidationError: If the definition fails validation; no
                node runs in that case
        """
        if isinstance(definition, dict):
            definition = WorkflowDefinition.from_dict(definition)

        validation = validate_workflow(definition)
        if not validation.valid:
            raise WorkflowValidationError(validation)
        order = topological_sort(definition)

        execution_id = execution_id or str(uuid.uuid4())
        token = cancel_token or CancellationToken()
        run_ctx = ExecutionContext(
            workflow_id=definition.id,
            execution_id=execution_id,
            services=self.services,
            workflow_name=definition.name,
            environment=self.environment,
            env=self.env,
            cancel_token=token,
        )
        state = _RunState(
            definition=definition,
            run=run_ctx,
            records={
                node_id: NodeRunRecord(node_id=node_id, node_type=definition.get_node(node_id).type)
                for node_id in order
            },
        )

        logger.info(
            f"Run {execution_id} started: workflow '{definition.name or definition.id}' "
            f"({len(order)} node(s))"
        )
        await self._dispatch(state, order, event)

        result = RunResult(
            execution_id=execution_id,
            workflow_id=definition.id,
            status=self._final_status(state),
            nodes=state.records,
            started_at=run_ctx.started_at,
            finished_at=utcnow(),
            error=state.abort or (token.reason if token.cancelled else None),
        )
        logger.info(f"Run {execution_id} finished: {result.status.value}")
        await self._report_completion(result)
        return result

    async def _dispatch(self, state: _RunState, order: List[str], event: Optional[TriggerEvent]) -> None:
        token = state.run.cancel_token
        semaphore = asyncio.Semaphore(self.max_concurrency)
        pending = list(order)
        running: Dict[asyncio.Task, str] = {}
        cancel_waiter = asyncio.ensure_future(token.wait())

        try:
            while pending or running:
                if token.cancelled or state.abort:
                    break

                for node_id in list(pending):
                    if not self._predecessors_terminal(state, node_id):
                        continue
                    pending.remove(node_id)
                    node = state.definition.get_node(node_id)
                    prepared = self._prepare(state, node, event)
                    if isinstance(prepared, str):
                        await self._skip(state, node_id, prepared)
                        continue
                    task = asyncio.create_task(self._run_node(state, node, prepared, semaphore))
                    running[task] = node_id

                if not running:
                    # Skips above may have unblocked more nodes
                    continue

                done, _ = await asyncio.wait(
                    set(running) | {cancel_waiter}, return_when=asyncio.FIRST_COMPLETED,
                )
                for task in done:
                    if task is cancel_waiter:
                        continue
                    node_id = running.pop(task)
                    if not task.cancelled() and task.exception() is not None:
                        await self._crashed(state, node_id, task.exception())
        finally:
            cancel_waiter.cancel()
            if running:
                for task in running:
                    task.cancel()
                await asyncio.gather(*running, return_exceptions=True)
                reason = state.abort or token.reason or "run cancelled"
                for node_id in running.values():
                    await self._finish(
                        state, node_id, NodeStatus.CANCELLED, reason=f"Cancelled: {reason}",
                    )

        if pending:
            reason = f"Run aborted: {state.abort}" if state.abort else f"Run cancelled: {token.reason}"
            for node_id in pending:
                await self._skip(state, node_id, reason)

    def _predecessors_terminal(self, state: _RunState, node_id: str) -> bool:
        return all(
            state.records[conn.source].status.terminal
            for conn in state.definition.incoming(node_id)
        )

    def _prepare(
        self,
        state: _RunState,
        node: Node,
        event: Optional[TriggerEvent],
    ) -> Union[str, Tuple[Any, NodeExecutionContext]]:
        """Build the executor and its context, or return a skip reason."""
        definition = nodes.get_node_definition(node.type)
        meta = definition.metadata
        executor = nodes.create_node(node.id, node.type, node.data)
        incoming = state.definition.incoming(node.id)

        if meta.max_inputs == 0:
            if event is not None and event.node_id and event.node_id != node.id:
                return f"Trigger not fired by this event (event targets '{event.node_id}')"
            payload = event.payload if event is not None else None
            return executor, NodeExecutionContext(node=node, run=state.run, input=payload)

        values: List[Any] = []
        blocked: List[str] = []
        for conn in incoming:
            upstream = state.records[conn.source]
            if upstream.status == NodeStatus.SUCCEEDED:
                values.append(upstream.result.data)
            elif upstream.status == NodeStatus.FAILED and upstream.continued:
                values.append(upstream.result.failure_payload())
            else:
                blocked.append(f"{conn.source} {upstream.status.value}")
                values.append(None)

        if meta.reads_inputs:
            tolerate = bool(getattr(executor, "options", {}).get("skipNull", True))
            if blocked and (not tolerate or len(blocked) == len(incoming)):
                return f"Upstream not succeeded: {', '.join(blocked)}"
            return executor, NodeExecutionContext(node=node, run=state.run, inputs=values)

        if blocked:
            return f"Upstream not succeeded: {', '.join(blocked)}"
        if len(values) > 1:
            # Fan-in on an ordinary node: predecessor outputs in connection order
            logger.debug(f"Node {node.id} has {len(values)} inputs, passing them as a list")
            return executor, NodeExecutionContext(node=node, run=state.run, input=values)
        return executor, NodeExecutionContext(
            node=node, run=state.run, input=values[0] if values else None,
        )

    async def _run_node(
        self,
        state: _RunState,
        node: Node,
        prepared: Tuple[Any, NodeExecutionContext],
        semaphore: asyncio.Semaphore,
    ) -> None:
        executor, ctx = prepared
        meta = nodes.get_node_definition(node.type).metadata
        policy = RetryPolicy() if meta.self_retrying else RetryPolicy.from_node_data(executor.config)

        async with semaphore:
            async with state.lock:
                record = state.records[node.id]
                record.status = NodeStatus.RUNNING
                record.started_at = utcnow()
            logger.info(f"Run {state.run.execution_id}: node {node.id} ({node.type}) started")

            attempt = 0
            while True:
                attempt += 1
                ctx.attempt = attempt
                try:
                    result = await executor.execute(ctx)
                except CancellationError as e:
                    await self._finish(state, node.id, NodeStatus.CANCELLED, reason=f"Cancelled: {e.reason}")
                    return
                except ConfigurationError as e:
                    result = NodeResult.fail(
                        str(e), details={"field": e.field}, error_type=e.error_type,
                    )
                except AutomationError as e:
                    result = NodeResult.fail(
                        str(e), details=getattr(e, "details", None), error_type=e.error_type,
                    )
                except Exception as e:
                    logger.exception(f"Node {node.id} ({node.type}) raised")
                    result = NodeResult.fail(
                        f"{type(e).__name__}: {e}", details={"exception": type(e).__name__},
                    )

                if result.success or result.error_type == "configuration" or attempt >= policy.max_attempts:
                    break
                delay = policy.delay_for(attempt)
                logger.warning(
                    f"Node {node.id} attempt {attempt}/{policy.max_attempts} failed "
                    f"({result.error}), retrying in {delay:.2f}s"
                )
                await asyncio.sleep(delay)

        retries = (attempt - 1) + int(result.metadata.get("retries") or 0)
        result = dataclasses.replace(result, metadata={**result.metadata, "retries": retries})

        if result.success:
            await self._finish(state, node.id, NodeStatus.SUCCEEDED, result=result, retries=retries)
            return

        continued = executor.config.get("errorHandling") == "continue"
        logger.warning(
            f"Run {state.run.execution_id}: node {node.id} failed after {attempt} attempt(s): {result.error}"
        )
        if result.error_type == "configuration":
            async with state.lock:
                state.abort = state.abort or f"node {node.id}: {result.error}"
            continued = False
        await self._finish(
            state, node.id, NodeStatus.FAILED,
            result=result, retries=retries, reason=result.error, continued=continued,
        )

    async def _finish(
        self,
        state: _RunState,
        node_id: str,
        status: NodeStatus,
        result: Optional[NodeResult] = None,
        retries: int = 0,
        reason: Optional[str] = None,
        continued: bool = False,
    ) -> None:
        async with state.lock:
            record = state.records[node_id]
            if record.status.terminal:
                return
            record.status = status
            record.result = result
            record.retries = retries
            record.reason = reason
            record.continued = continued
            record.finished_at = utcnow()
            if record.started_at is None:
                record.started_at = record.finished_at
        if status != NodeStatus.SUCCEEDED:
            logger.info(f"Run {state.run.execution_id}: node {node_id} {status.value}: {reason}")
        await self._report_node(state.run.execution_id, record)

    async def _skip(self, state: _RunState, node_id: str, reason: str) -> None:
        await self._finish(state, node_id, NodeStatus.SKIPPED, reason=reason)

    async def _crashed(self, state: _RunState, node_id: str, exc: BaseException) -> None:
        logger.error(f"Run {state.run.execution_id}: node task {node_id} crashed: {exc!r}")
        await self._finish(
            state, node_id, NodeStatus.FAILED,
            result=NodeResult.fail(str(exc), details={"exception": type(exc).__name__}),
            reason=str(exc),
        )

    def _final_status(self, state: _RunState) -> RunStatus:
        if state.run.cancel_token.cancelled:
            return RunStatus.CANCELLED
        if state.abort:
            return RunStatus.FAILED
        for record in state.records.values():
            if record.status == NodeStatus.FAILED and not record.continued:
                return RunStatus.FAILED
        return RunStatus.COMPLETED

    async def _report_node(self, execution_id: str, record: NodeRunRecord) -> None:
        if self.result_sink is None:
            return
        try:
            await self.result_sink.record_node_result(execution_id, record.node_id, record)
        except Exception:
            logger.exception(f"Result sink failed to record node {record.node_id} of run {execution_id}")

    async def _report_completion(self, result: RunResult) -> None:
        if self.result_sink is None:
            return
        try:
            await self.result_sink.record_run_completion(result.execution_id, result)
        except Exception:
            logger.exception(f"Result sink failed to record completion of run {result.execution_id}")
