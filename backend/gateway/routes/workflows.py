"""Workflow CRUD, validation and manual run endpoints."""

from __future__ import annotations

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Response
from sqlalchemy.ext.asyncio import AsyncSession

from automation.engine.context import TriggerEvent
from automation.engine.graph import WorkflowDefinition, validate_workflow
from automation.errors import ConfigurationError
from automation.nodes import register_webhook_triggers
from automation.nodes.utils import jsonable
from automation.services import Services
from gateway.database import get_session
from gateway.dispatch import WorkflowDispatcher
from gateway.repository import WorkflowRepository
from gateway.runtime import get_dispatcher, get_services
from gateway.schemas import (
    RunRequest,
    RunResponse,
    ValidationIssue,
    ValidationResponse,
    WorkflowPayload,
    WorkflowResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/workflows", tags=["workflows"])


def _issues(items) -> List[ValidationIssue]:
    return [ValidationIssue(**item.to_dict()) for item in items]


def _webhook_urls(services: Services, workflow_id: str) -> List[str]:
    return [r.url for r in services.webhooks.list() if r.workflow_id == workflow_id]


@router.post("/validate", response_model=ValidationResponse)
async def validate_definition(body: WorkflowPayload):
    """Validate a definition without saving it."""
    result = validate_workflow(WorkflowDefinition.from_dict(body.definition()))
    return ValidationResponse(
        valid=result.valid,
        errors=_issues(result.errors),
        warnings=_issues(result.warnings),
    )


@router.get("", response_model=List[WorkflowResponse])
async def list_workflows(
    session: AsyncSession = Depends(get_session),
    services: Services = Depends(get_services),
):
    workflows = await WorkflowRepository(session).list()
    return [
        WorkflowResponse(
            id=w.id, name=w.name, definition=w.definition, webhooks=_webhook_urls(services, w.id),
        )
        for w in workflows
    ]


@router.put("/{workflow_id}", response_model=WorkflowResponse)
async def save_workflow(
    workflow_id: str,
    body: WorkflowPayload,
    session: AsyncSession = Depends(get_session),
    services: Services = Depends(get_services),
):
    """Validate, store and (re)register the webhook triggers of a workflow."""
    raw = body.definition(workflow_id)
    definition = WorkflowDefinition.from_dict(raw)
    result = validate_workflow(definition)
    if not result.valid:
        raise HTTPException(
            status_code=422,
            detail={"message": "Workflow validation failed", **result.to_dict()},
        )

    services.webhooks.unregister_workflow(workflow_id)
    try:
        urls = register_webhook_triggers(definition, services.webhooks)
    except ConfigurationError as e:
        services.webhooks.unregister_workflow(workflow_id)
        raise HTTPException(status_code=409, detail=str(e))

    workflow = await WorkflowRepository(session).save(workflow_id, raw)
    logger.info(f"Saved workflow {workflow_id} ({len(definition.nodes)} node(s), {len(urls)} webhook(s))")
    return WorkflowResponse(
        id=workflow.id,
        name=workflow.name,
        definition=workflow.definition,
        webhooks=urls,
        warnings=_issues(result.warnings),
    )


@router.get("/{workflow_id}", response_model=WorkflowResponse)
async def get_workflow(
    workflow_id: str,
    session: AsyncSession = Depends(get_session),
    services: Services = Depends(get_services),
):
    workflow = await WorkflowRepository(session).get(workflow_id)
    if not workflow:
        raise HTTPException(status_code=404, detail=f"Workflow {workflow_id} not found")
    return WorkflowResponse(
        id=workflow.id,
        name=workflow.name,
        definition=workflow.definition,
        webhooks=_webhook_urls(services, workflow_id),
    )


@router.delete("/{workflow_id}", status_code=204)
async def delete_workflow(
    workflow_id: str,
    session: AsyncSession = Depends(get_session),
    services: Services = Depends(get_services),
):
    if not await WorkflowRepository(session).delete(workflow_id):
        raise HTTPException(status_code=404, detail=f"Workflow {workflow_id} not found")
    services.webhooks.unregister_workflow(workflow_id)
    return Response(status_code=204)


@router.post("/{workflow_id}/run", response_model=RunResponse)
async def run_workflow(
    workflow_id: str,
    response: Response,
    body: Optional[RunRequest] = None,
    session: AsyncSession = Depends(get_session),
    dispatcher: WorkflowDispatcher = Depends(get_dispatcher),
):
    """Run a saved workflow.

    Returns 202 with the execution id, or 200 with the full result when
    ``wait`` is set. Invalid definitions are rejected with 422.
    """
    body = body or RunRequest()
    definition = await WorkflowRepository(session).get_workflow_definition(workflow_id)
    if definition is None:
        raise HTTPException(status_code=404, detail=f"Workflow {workflow_id} not found")
    if body.node_id and definition.get_node(body.node_id) is None:
        raise HTTPException(status_code=422, detail=f"Node {body.node_id} not found in workflow {workflow_id}")
    validation = validate_workflow(definition)
    if not validation.valid:
        raise HTTPException(
            status_code=422,
            detail={"message": "Workflow validation failed", **validation.to_dict()},
        )
    # The execution row is written in its own session; release ours first
    await session.commit()

    event = TriggerEvent(workflow_id=workflow_id, node_id=body.node_id, payload=body.payload)
    if body.wait:
        result = await dispatcher.run(definition, event)
        return RunResponse(
            execution_id=result.execution_id,
            workflow_id=workflow_id,
            status=result.status.value,
            result=jsonable(result.to_dict()),
        )

    execution_id = await dispatcher.start(definition, event)
    response.status_code = 202
    return RunResponse(execution_id=execution_id, workflow_id=workflow_id, status="running")
