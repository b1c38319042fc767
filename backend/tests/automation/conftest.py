"""Shared fixtures for engine and executor tests.

``services`` is a Services bundle with an in-memory store, a files root under
``tmp_path`` and an HTTP client whose transport tests can swap through
``http_handler``. ``node_context`` builds an executor plus its
NodeExecutionContext without running a whole workflow.
"""

from typing import Any, Callable, Dict, List, Optional

import httpx
import pytest
import pytest_asyncio

from automation.engine.context import ExecutionContext, NodeExecutionContext
from automation.engine.graph import Node
from automation.nodes import create_node
from automation.services import (
    EnvironmentSecrets,
    InMemoryKeyValueStore,
    LocalFileAccessor,
    Services,
    WebhookRegistry,
    create_http_client,
)


class RecordingHandler:
    """MockTransport handler that records requests and replays queued responses."""

    def __init__(self):
        self.requests: List[httpx.Request] = []
        self.responses: List[Any] = []
        self.default = httpx.Response(200, json={"ok": True})

    def queue(self, *responses: Any) -> None:
        self.responses.extend(responses)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.responses:
            response = self.responses.pop(0)
            if isinstance(response, Exception):
                raise response
            if callable(response):
                return response(request)
            return response
        return self.default


@pytest.fixture
def http_handler() -> RecordingHandler:
    return RecordingHandler()


@pytest.fixture
def secrets() -> Dict[str, str]:
    """Mutable mapping backing ``services.secrets``."""
    return {}


@pytest_asyncio.fixture
async def services(tmp_path, http_handler, secrets):
    bundle = Services(
        storage=InMemoryKeyValueStore(),
        secrets=EnvironmentSecrets(secrets),
        http=create_http_client(transport=httpx.MockTransport(http_handler)),
        files=LocalFileAccessor(str(tmp_path)),
        webhooks=WebhookRegistry("http://test", "/hooks"),
    )
    yield bundle
    await bundle.aclose()


@pytest.fixture
def node_context(services) -> Callable:
    """Build ``(executor, ctx)`` for one node of a throwaway run."""

    def _build(
        node_type: str,
        data: Optional[Dict[str, Any]] = None,
        input: Any = None,
        inputs: Optional[List[Any]] = None,
        node_id: str = "node-1",
    ):
        run = ExecutionContext(
            workflow_id="wf-1",
            execution_id="exec-1",
            services=services,
            workflow_name="Test Workflow",
        )
        node = Node(id=node_id, type=node_type, data=dict(data or {}))
        executor = create_node(node_id, node_type, node.data)
        ctx = NodeExecutionContext(node=node, run=run, input=input, inputs=inputs)
        return executor, ctx

    return _build
