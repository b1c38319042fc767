"""Run dispatch for the gateway.

``WorkflowDispatcher`` records an execution row, then runs the engine either
inline (caller waits for the ``RunResult``) or as a background task. Each
live run keeps its ``CancellationToken`` so it can be cancelled by id.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Dict, Optional

from automation.engine.context import CancellationToken, TriggerEvent
from automation.engine.executor import ExecutionEngine, RunResult
from automation.engine.graph import WorkflowDefinition
from automation.errors import WorkflowValidationError
from gateway import database
from gateway.repository import ExecutionRepository

logger = logging.getLogger(__name__)


class WorkflowDispatcher:
    """Starts, tracks and cancels workflow runs."""

    def __init__(self, engine: ExecutionEngine):
        self.engine = engine
        self._tokens: Dict[str, CancellationToken] = {}
        self._tasks: Dict[str, asyncio.Task] = {}

    @property
    def running(self) -> Dict[str, asyncio.Task]:
        return dict(self._tasks)

    def is_running(self, execution_id: str) -> bool:
        return execution_id in self._tokens

    async def _record(self, definition: WorkflowDefinition, event: Optional[TriggerEvent]) -> str:
        execution_id = str(uuid.uuid4())
        async with database.get_session_ctx() as session:
            await ExecutionRepository(session).create(
                execution_id,
                definition.id,
                trigger_node_id=event.node_id if event else None,
                payload=event.payload if event else None,
            )
        return execution_id

    async def _execute(
        self,
        definition: WorkflowDefinition,
        event: Optional[TriggerEvent],
        execution_id: str,
        token: CancellationToken,
    ) -> RunResult:
        try:
            return await self.engine.run(definition, event, execution_id=execution_id, cancel_token=token)
        except WorkflowValidationError as e:
            async with database.get_session_ctx() as session:
                await ExecutionRepository(session).finish(execution_id, "failed", str(e))
            raise
        finally:
            self._tokens.pop(execution_id, None)

    async def run(self, definition: WorkflowDefinition, event: Optional[TriggerEvent] = None) -> RunResult:
        """Run ``definition`` and wait for its result."""
        execution_id = await self._record(definition, event)
        token = self._tokens[execution_id] = CancellationToken()
        return await self._execute(definition, event, execution_id, token)

    async def start(self, definition: WorkflowDefinition, event: Optional[TriggerEvent] = None) -> str:
        """Start ``definition`` in the background and return its execution id."""
        execution_id = await self._record(definition, event)
        token = self._tokens[execution_id] = CancellationToken()
        task = asyncio.create_task(self._execute(definition, event, execution_id, token))
        self._tasks[execution_id] = task
        task.add_done_callback(lambda t: self._done(execution_id, t))
        return execution_id

    def _done(self, execution_id: str, task: asyncio.Task) -> None:
        self._tasks.pop(execution_id, None)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Background run {execution_id} raised: {exc!r}")

    def cancel(self, execution_id: str, reason: str = "cancelled by caller") -> bool:
        token = self._tokens.get(execution_id)
        if token is None:
            return False
        token.cancel(reason)
        logger.info(f"Cancellation requested for run {execution_id}: {reason}")
        return True

    async def wait(self, execution_id: str) -> Optional[RunResult]:
        task = self._tasks.get(execution_id)
        if task is None:
            return None
        return await task

    async def shutdown(self) -> None:
        """Cancel every live run and wait for it to wind down."""
        for execution_id in list(self._tokens):
            self.cancel(execution_id, "gateway shutting down")
        tasks = list(self._tasks.values())
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
