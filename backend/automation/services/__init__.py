"""Services bundle injected into every run.

Executors reach external capabilities only through ``ctx.services``:

- storage: namespaced key-value store with TTL
- secrets: env-style credential lookup
- http: shared ``httpx.AsyncClient``
- files: rooted file accessor
- webhooks: webhook endpoint registry
- sandbox: sandbox runner for user code
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

import httpx

from .. import config, settings
from ..sandbox.runner import SandboxRunner
from .files import LocalFileAccessor
from .secrets import EnvironmentSecrets
from .sinks import InMemoryResultSink, ResultSink
from .storage import InMemoryKeyValueStore, KeyValueStore
from .webhooks import WebhookRegistration, WebhookRegistry, verify_authentication


def create_http_client(transport: Optional[httpx.AsyncBaseTransport] = None) -> httpx.AsyncClient:
    """Build the shared outbound HTTP client."""
    return httpx.AsyncClient(
        timeout=httpx.Timeout(settings.HTTP_DEFAULT_TIMEOUT),
        limits=httpx.Limits(
            max_connections=settings.HTTP_MAX_CONNECTIONS,
            max_keepalive_connections=settings.HTTP_MAX_KEEPALIVE,
        ),
        follow_redirects=True,
        transport=transport,
    )


@dataclass
class Services:
    """Shared, read-only capabilities for one engine instance."""

    storage: KeyValueStore = field(default_factory=InMemoryKeyValueStore)
    secrets: EnvironmentSecrets = field(default_factory=EnvironmentSecrets)
    http: httpx.AsyncClient = field(default_factory=create_http_client)
    files: LocalFileAccessor = field(default_factory=lambda: LocalFileAccessor(config.FILES_ROOT))
    webhooks: WebhookRegistry = field(
        default_factory=lambda: WebhookRegistry(config.PUBLIC_BASE_URL, config.WEBHOOK_PATH_PREFIX)
    )
    sandbox: SandboxRunner = field(default_factory=SandboxRunner)

    async def aclose(self) -> None:
        await self.http.aclose()


__all__ = [
    "EnvironmentSecrets",
    "InMemoryKeyValueStore",
    "InMemoryResultSink",
    "KeyValueStore",
    "LocalFileAccessor",
    "ResultSink",
    "Services",
    "WebhookRegistration",
    "WebhookRegistry",
    "create_http_client",
    "verify_authentication",
]
