"""Inbound webhook listener.

Every request below the webhook prefix is matched against the
``WebhookRegistry``. A match is authenticated, turned into a
``TriggerEvent`` for the owning trigger node and started in the background;
the caller gets the trigger's configured response immediately.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from automation import config
from automation.engine.context import TriggerEvent
from automation.services import Services, verify_authentication
from gateway.database import get_session
from gateway.dispatch import WorkflowDispatcher
from gateway.repository import WorkflowRepository
from gateway.runtime import get_dispatcher, get_services

logger = logging.getLogger(__name__)

router = APIRouter(prefix=config.WEBHOOK_PATH_PREFIX, tags=["hooks"])


async def _body(request: Request) -> Any:
    raw = await request.body()
    if not raw:
        return None
    try:
        return json.loads(raw)
    except ValueError:
        return raw.decode("utf-8", errors="replace")


@router.api_route("/{path:path}", methods=["GET", "POST", "PUT", "PATCH", "DELETE"])
async def receive_webhook(
    path: str,
    request: Request,
    session: AsyncSession = Depends(get_session),
    services: Services = Depends(get_services),
    dispatcher: WorkflowDispatcher = Depends(get_dispatcher),
):
    registration = services.webhooks.lookup(path, request.method)
    if registration is None:
        raise HTTPException(status_code=404, detail=f"No webhook registered for {request.method} /{path}")

    if not verify_authentication(registration.authentication, request.headers):
        logger.warning(f"Webhook {request.method} {registration.path}: authentication failed")
        raise HTTPException(status_code=401, detail="Webhook authentication failed")

    definition = await WorkflowRepository(session).get_workflow_definition(registration.workflow_id)
    if definition is None:
        raise HTTPException(status_code=404, detail=f"Workflow {registration.workflow_id} not found")
    await session.commit()

    payload = {
        "body": await _body(request),
        "headers": dict(request.headers),
        "query": dict(request.query_params),
        "method": request.method,
        "path": registration.path,
    }
    event = TriggerEvent(workflow_id=registration.workflow_id, node_id=registration.node_id, payload=payload)
    execution_id = await dispatcher.start(definition, event)
    logger.info(f"Webhook {request.method} {registration.path} started run {execution_id}")

    content = registration.response_body
    if content is None:
        content = {"executionId": execution_id, "status": "running"}
    return JSONResponse(status_code=registration.response_code, content=content)
