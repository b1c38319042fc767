"""Execution status and cancellation endpoints."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from gateway.database import get_session
from gateway.dispatch import WorkflowDispatcher
from gateway.repository import ExecutionRepository
from gateway.runtime import get_dispatcher
from gateway.schemas import CancelResponse, ExecutionResponse, NodeResultResponse

router = APIRouter(prefix="/api/executions", tags=["executions"])


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@router.get("/{execution_id}", response_model=ExecutionResponse)
async def get_execution(execution_id: str, session: AsyncSession = Depends(get_session)):
    execution = await ExecutionRepository(session).get(execution_id)
    if not execution:
        raise HTTPException(status_code=404, detail=f"Execution {execution_id} not found")
    return ExecutionResponse(
        execution_id=execution.id,
        workflow_id=execution.workflow_id,
        status=execution.status,
        trigger_node_id=execution.trigger_node_id,
        error=execution.error,
        started_at=_iso(execution.started_at),
        finished_at=_iso(execution.finished_at),
        nodes=[
            NodeResultResponse(
                node_id=row.node_id,
                node_type=row.node_type,
                status=row.status,
                result=row.result,
                retries=row.retries,
                reason=row.reason,
                started_at=_iso(row.started_at),
                finished_at=_iso(row.finished_at),
                duration_ms=row.duration_ms,
            )
            for row in execution.node_results
        ],
    )


@router.post("/{execution_id}/cancel", response_model=CancelResponse)
async def cancel_execution(
    execution_id: str,
    session: AsyncSession = Depends(get_session),
    dispatcher: WorkflowDispatcher = Depends(get_dispatcher),
):
    """Request cancellation of a live run; 409 if it already finished."""
    if dispatcher.cancel(execution_id):
        return CancelResponse(execution_id=execution_id, cancelled=True)
    execution = await ExecutionRepository(session).get(execution_id)
    if not execution:
        raise HTTPException(status_code=404, detail=f"Execution {execution_id} not found")
    raise HTTPException(
        status_code=409,
        detail=f"Execution {execution_id} is not running (status: {execution.status})",
    )
