"""Engine wiring for the gateway.

``install_runtime`` puts the ``Services`` bundle and the ``WorkflowDispatcher``
on ``app.state``; route handlers reach them through the dependencies below.
"""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import FastAPI, Request

from automation.engine.executor import ExecutionEngine
from automation.errors import ConfigurationError
from automation.nodes import register_webhook_triggers
from automation.services import Services
from gateway import database
from gateway.dispatch import WorkflowDispatcher
from gateway.repository import SqlResultSink, WorkflowRepository
from gateway.storage import SqlKeyValueStore

logger = logging.getLogger(__name__)


def install_runtime(app: FastAPI, services: Optional[Services] = None, result_sink=None) -> WorkflowDispatcher:
    services = services or Services(storage=SqlKeyValueStore())
    engine = ExecutionEngine(services, result_sink=result_sink or SqlResultSink())
    dispatcher = WorkflowDispatcher(engine)
    app.state.services = services
    app.state.dispatcher = dispatcher
    return dispatcher


async def restore_webhooks(services: Services) -> int:
    """Register webhook triggers of every saved workflow; returns the count."""
    count = 0
    async with database.get_session_ctx() as session:
        repo = WorkflowRepository(session)
        for workflow in await repo.list():
            definition = await repo.get_workflow_definition(workflow.id)
            try:
                count += len(register_webhook_triggers(definition, services.webhooks))
            except ConfigurationError as e:
                logger.error(f"Could not restore webhooks of workflow {workflow.id}: {e}")
    return count


def get_services(request: Request) -> Services:
    return request.app.state.services


def get_dispatcher(request: Request) -> WorkflowDispatcher:
    return request.app.state.dispatcher
