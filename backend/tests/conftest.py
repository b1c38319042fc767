"""Root conftest for gateway API and repository tests.

Provides:
- In-memory SQLite database swapped in for the gateway's engine
- Engine runtime installed on the FastAPI app with a mocked HTTP transport
- httpx AsyncClient talking to the app over ASGI
"""

from __future__ import annotations

from typing import AsyncGenerator, Callable, List, Optional

import httpx
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from automation.services import (
    EnvironmentSecrets,
    LocalFileAccessor,
    Services,
    WebhookRegistry,
    create_http_client,
)
import gateway.database as db_module
from gateway.database import Base

# Import all ORM models so they register with Base.metadata
import gateway.models  # noqa: F401
from gateway.main import app
from gateway.runtime import install_runtime
from gateway.storage import SqlKeyValueStore


# ---------------------------------------------------------------------------
# In-memory async SQLite engine (StaticPool shares one connection)
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def test_engine(monkeypatch) -> AsyncGenerator[AsyncEngine, None]:
    """Fresh in-memory database per test, installed as the gateway's engine."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    monkeypatch.setattr(db_module, "engine", engine)
    monkeypatch.setattr(db_module, "async_session_factory", factory)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def test_session(test_engine: AsyncEngine) -> AsyncGenerator[AsyncSession, None]:
    """Session on the test database; committed work is visible to the app."""
    async with db_module.async_session_factory() as session:
        yield session
        await session.rollback()


# ---------------------------------------------------------------------------
# App runtime
# ---------------------------------------------------------------------------

class OutboundHandler:
    """MockTransport handler recording node requests.

    ``respond`` may be set to a sync or async callable returning the response.
    """

    def __init__(self):
        self.requests: List[httpx.Request] = []
        self.respond: Optional[Callable] = None

    def __call__(self, request: httpx.Request):
        self.requests.append(request)
        if self.respond is not None:
            return self.respond(request)
        return httpx.Response(200, json={"ok": True})


@pytest_asyncio.fixture
async def gateway_runtime(test_engine, tmp_path):
    """Install engine services and dispatcher on the app.

    Outbound HTTP from nodes is answered by ``app.state.outbound``.
    """
    outbound = OutboundHandler()

    services = Services(
        storage=SqlKeyValueStore(),
        secrets=EnvironmentSecrets({}),
        http=create_http_client(transport=httpx.MockTransport(outbound)),
        files=LocalFileAccessor(str(tmp_path)),
        webhooks=WebhookRegistry("http://test", "/hooks"),
    )
    dispatcher = install_runtime(app, services)
    app.state.outbound = outbound
    yield app
    await dispatcher.shutdown()
    await services.aclose()


@pytest_asyncio.fixture
async def client(gateway_runtime) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP client wired to the gateway app (lifespan not run)."""
    transport = ASGITransport(app=gateway_runtime)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
