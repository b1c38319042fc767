"""Webhook endpoint registry shared by webhook triggers and the HTTP listener.

Webhook trigger nodes register ``(path, method)``; the gateway looks up an
inbound request here to find the workflow and node it should start.
"""

from __future__ import annotations

import base64
import hmac
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple

from ..errors import ConfigurationError

logger = logging.getLogger(__name__)


def normalize_path(path: str) -> str:
    path = "/" + (path or "").strip().strip("/")
    return path if path != "/" else "/"


@dataclass
class WebhookRegistration:
    """One registered endpoint.

    Attributes:
        path: Normalized path below the listener prefix
        method: Upper-case HTTP method
        workflow_id: Workflow to start
        node_id: Webhook trigger node that receives the delivery
        url: Public URL of the endpoint
        authentication: Auth requirement ({type, ...})
        response_code: Status code returned to the caller
        response_body: Body returned to the caller
    """

    path: str
    method: str
    workflow_id: str
    node_id: str
    url: str
    authentication: Dict[str, Any] = field(default_factory=dict)
    response_code: int = 200
    response_body: Any = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "path": self.path,
            "method": self.method,
            "workflowId": self.workflow_id,
            "nodeId": self.node_id,
            "url": self.url,
        }


class WebhookRegistry:
    """In-process map of ``(method, path)`` to webhook registrations."""

    def __init__(self, base_url: str, prefix: str = "/hooks"):
        self.base_url = base_url.rstrip("/")
        self.prefix = "/" + prefix.strip("/")
        self._routes: Dict[Tuple[str, str], WebhookRegistration] = {}

    def url_for(self, path: str) -> str:
        return f"{self.base_url}{self.prefix}{normalize_path(path)}"

    def register(
        self,
        path: str,
        method: str,
        workflow_id: str,
        node_id: str,
        authentication: Optional[Dict[str, Any]] = None,
        response_code: int = 200,
        response_body: Any = None,
    ) -> str:
        """Register an endpoint and return its public URL.

        Re-registering the same node is idempotent.

        Raises:
            ConfigurationError: If another workflow/node already owns the route
        """
        key = (method.upper(), normalize_path(path))
        existing = self._routes.get(key)
        if existing and (existing.workflow_id, existing.node_id) != (workflow_id, node_id):
            raise ConfigurationError(
                f"Webhook {key[0]} {key[1]} is already registered by workflow "
                f"{existing.workflow_id} (node {existing.node_id})",
                field="path",
            )

        registration = WebhookRegistration(
            path=key[1],
            method=key[0],
            workflow_id=workflow_id,
            node_id=node_id,
            url=self.url_for(key[1]),
            authentication=dict(authentication or {}),
            response_code=response_code,
            response_body=response_body,
        )
        self._routes[key] = registration
        logger.info(f"Registered webhook {key[0]} {registration.url} -> {workflow_id}/{node_id}")
        return registration.url

    def lookup(self, path: str, method: str) -> Optional[WebhookRegistration]:
        return self._routes.get((method.upper(), normalize_path(path)))

    def unregister_workflow(self, workflow_id: str) -> int:
        keys = [k for k, reg in self._routes.items() if reg.workflow_id == workflow_id]
        for key in keys:
            del self._routes[key]
        return len(keys)

    def list(self) -> List[WebhookRegistration]:
        return list(self._routes.values())


def verify_authentication(auth: Mapping[str, Any], headers: Mapping[str, str]) -> bool:
    """Check an inbound request's headers against a registration's auth rule.

    ``headers`` must be case-insensitive (e.g. Starlette/httpx Headers).
    """
    auth_type = (auth or {}).get("type", "none")
    if auth_type == "none":
        return True

    if auth_type == "basic":
        expected = f"{auth.get('username', '')}:{auth.get('password', '')}".encode()
        header = headers.get("authorization", "")
        if not header.lower().startswith("basic "):
            return False
        try:
            supplied = base64.b64decode(header[6:].strip())
        except ValueError:
            return False
        return hmac.compare_digest(supplied, expected)

    if auth_type == "bearer":
        header = headers.get("authorization", "")
        return header.lower().startswith("bearer ") and hmac.compare_digest(
            header[7:].strip(), str(auth.get("token", ""))
        )

    if auth_type == "header":
        supplied = headers.get(str(auth.get("headerName", "")).lower(), "")
        return bool(supplied) and hmac.compare_digest(supplied, str(auth.get("headerValue", "")))

    logger.warning(f"Unknown webhook authentication type '{auth_type}', rejecting request")
    return False
