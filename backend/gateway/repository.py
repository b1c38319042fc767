"""Repository layer for workflows, executions and node results.

Also provides ``SqlResultSink``, the result sink the gateway hands to the
engine so every node outcome and run completion is persisted.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from automation.engine.executor import NodeRunRecord, RunResult
from automation.engine.graph import WorkflowDefinition
from automation.nodes.utils import jsonable
from gateway import database
from gateway.models import ExecutionModel, NodeResultModel, WorkflowModel

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WorkflowRepository:
    """Data access layer for saved workflow definitions."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, workflow_id: str) -> Optional[WorkflowModel]:
        return await self.session.get(WorkflowModel, workflow_id)

    async def list(self) -> List[WorkflowModel]:
        result = await self.session.execute(select(WorkflowModel).order_by(WorkflowModel.created_at))
        return list(result.scalars().all())

    async def save(self, workflow_id: str, definition: Dict[str, Any]) -> WorkflowModel:
        """Insert or replace a workflow definition."""
        definition = {**definition, "id": workflow_id}
        workflow = await self.get(workflow_id)
        if workflow is None:
            workflow = WorkflowModel(id=workflow_id)
            self.session.add(workflow)
        workflow.name = definition.get("name") or ""
        workflow.definition = definition
        await self.session.flush()
        return workflow

    async def delete(self, workflow_id: str) -> bool:
        workflow = await self.get(workflow_id)
        if workflow is None:
            return False
        await self.session.delete(workflow)
        await self.session.flush()
        return True

    async def get_workflow_definition(self, workflow_id: str) -> Optional[WorkflowDefinition]:
        workflow = await self.get(workflow_id)
        if workflow is None:
            return None
        return WorkflowDefinition.from_dict({**workflow.definition, "id": workflow.id})


class ExecutionRepository:
    """Data access layer for execution records."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(
        self,
        execution_id: str,
        workflow_id: str,
        trigger_node_id: Optional[str] = None,
        payload: Any = None,
        status: str = "running",
    ) -> ExecutionModel:
        execution = ExecutionModel(
            id=execution_id,
            workflow_id=workflow_id,
            status=status,
            trigger_node_id=trigger_node_id,
            payload=jsonable(payload),
        )
        self.session.add(execution)
        await self.session.flush()
        return execution

    async def get(self, execution_id: str) -> Optional[ExecutionModel]:
        """Get an execution with its node results loaded."""
        result = await self.session.execute(
            select(ExecutionModel)
            .options(selectinload(ExecutionModel.node_results))
            .where(ExecutionModel.id == execution_id)
        )
        return result.scalar_one_or_none()

    async def list_for_workflow(self, workflow_id: str, limit: int = 50) -> List[ExecutionModel]:
        result = await self.session.execute(
            select(ExecutionModel)
            .where(ExecutionModel.workflow_id == workflow_id)
            .order_by(ExecutionModel.started_at.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def record_node(self, execution_id: str, record: NodeRunRecord) -> NodeResultModel:
        """Upsert the node result row for ``record``."""
        result = await self.session.execute(
            select(NodeResultModel).where(
                NodeResultModel.execution_id == execution_id,
                NodeResultModel.node_id == record.node_id,
            )
        )
        row = result.scalar_one_or_none()
        if row is None:
            row = NodeResultModel(execution_id=execution_id, node_id=record.node_id)
            self.session.add(row)
        row.node_type = record.node_type
        row.status = record.status.value
        row.result = jsonable(record.result.to_dict()) if record.result else None
        row.retries = record.retries
        row.reason = record.reason
        row.started_at = record.started_at
        row.finished_at = record.finished_at
        row.duration_ms = record.duration_ms
        await self.session.flush()
        return row

    async def finish(self, execution_id: str, status: str, error: Optional[str] = None) -> Optional[ExecutionModel]:
        execution = await self.session.get(ExecutionModel, execution_id)
        if execution is None:
            return None
        execution.status = status
        execution.error = error
        execution.finished_at = _utcnow()
        await self.session.flush()
        return execution


class SqlResultSink:
    """Result sink persisting engine output through ``ExecutionRepository``."""

    async def record_node_result(self, execution_id: str, node_id: str, record: NodeRunRecord) -> None:
        async with database.get_session_ctx() as session:
            await ExecutionRepository(session).record_node(execution_id, record)

    async def record_run_completion(self, execution_id: str, result: RunResult) -> None:
        async with database.get_session_ctx() as session:
            execution = await ExecutionRepository(session).finish(
                execution_id, result.status.value, result.error,
            )
        if execution is None:
            logger.warning(f"Completion for unknown execution {execution_id}")
