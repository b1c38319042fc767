"""FastAPI Application Entry Point.

Configures the app, lifespan, CORS, and includes all route modules.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from automation import config
from automation.errors import WorkflowValidationError
from automation.logging_config import get_api_logger, get_engine_logger, get_sandbox_logger

from .database import close_db, init_db
from .runtime import install_runtime, restore_webhooks

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage database, engine runtime and webhook registrations."""
    get_engine_logger()
    get_api_logger()
    get_sandbox_logger()
    await init_db()
    dispatcher = install_runtime(app)
    restored = await restore_webhooks(app.state.services)
    logger.info(f"Gateway ready ({config.ENVIRONMENT}), {restored} webhook(s) restored")

    yield
    await dispatcher.shutdown()
    await app.state.services.aclose()
    await close_db()


app = FastAPI(title="Automation Gateway", version="1.0.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(WorkflowValidationError)
async def workflow_validation_error_handler(request: Request, exc: WorkflowValidationError):
    return JSONResponse(
        status_code=422,
        content={"detail": {"message": str(exc), **exc.result.to_dict()}},
    )


# Include routers
from .routes.workflows import router as workflows_router  # noqa: E402
from .routes.executions import router as executions_router  # noqa: E402
from .routes.node_types import router as node_types_router  # noqa: E402
from .routes.hooks import router as hooks_router  # noqa: E402

app.include_router(workflows_router)
app.include_router(executions_router)
app.include_router(node_types_router)
app.include_router(hooks_router)


@app.get("/health")
async def health():
    return {"status": "ok"}
