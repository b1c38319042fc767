"""API Request Node

Fetches data from an HTTP API mid-workflow. Requests are built like the
webhook output (templated url, headers, query, body and authentication), but
the node is a data source: the decoded response body is its output and it may
feed further nodes. Any non-2xx response or network error is a failure;
failures are retried ``retryCount`` times with exponential backoff.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Dict

import httpx

from ..engine.context import NodeExecutionContext, NodeResult
from ..engine.retry import RetryPolicy
from .registry import CATEGORY_DATA, ExecutorMetadata, register_node_type
from .webhook import WebhookOutputNode, _decode_response, _is_success

logger = logging.getLogger(__name__)

MAX_TIMEOUT_MS = 300000


@register_node_type(
    node_type="api-request",
    display_name="API Request",
    description="Fetch data from an HTTP API",
    category=CATEGORY_DATA,
    config_schema={
        "type": "object",
        "properties": {
            "url": {"type": "string", "minLength": 1},
            "method": {"type": "string", "enum": ["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"]},
            "headers": {"type": "object", "additionalProperties": {"type": ["string", "number", "boolean"]}},
            "queryParams": {"type": "object", "additionalProperties": {"type": ["string", "number", "boolean"]}},
            "body": {"type": ["string", "object", "array", "null"]},
            "bodyType": {"type": "string", "enum": ["json", "form", "raw"]},
            "authentication": {
                "type": "object",
                "properties": {
                    "type": {"type": "string", "enum": ["none", "basic", "bearer", "apikey"]},
                    "username": {"type": "string"},
                    "password": {"type": "string"},
                    "token": {"type": "string"},
                    "apiKey": {"type": "string"},
                    "apiKeyName": {"type": "string"},
                    "apiKeyLocation": {"type": "string", "enum": ["header", "query"]},
                },
            },
            "timeout": {"type": "integer", "minimum": 1, "maximum": MAX_TIMEOUT_MS},
            "responseType": {"type": "string", "enum": ["json", "text", "binary"]},
            "retryCount": {"type": "integer", "minimum": 0, "maximum": 5},
            "retryDelay": {"type": "integer", "minimum": 0},
            "errorHandling": {"type": "string", "enum": ["fail", "continue", "retry"]},
            "lenientTemplates": {"type": "boolean"},
        },
        "required": ["url"],
    },
    metadata=ExecutorMetadata(
        is_async=True,
        self_retrying=True,
        default_data={
            "method": "GET",
            "headers": {},
            "queryParams": {},
            "body": None,
            "bodyType": "json",
            "authentication": {"type": "none"},
            "timeout": 30000,
            "responseType": "json",
            "retryCount": 0,
            "retryDelay": 1000,
            "lenientTemplates": False,
        },
    ),
    icon="globe",
    color="#3B82F6",
)
class ApiRequestNode(WebhookOutputNode):
    """HTTP request whose response body becomes the node output."""

    async def execute(self, ctx: NodeExecutionContext) -> NodeResult:
        request = self._build_request(ctx)
        client: httpx.AsyncClient = ctx.services.http
        policy = RetryPolicy.from_node_data(self.config)
        response_type = self.config.get("responseType", "json")
        meta: Dict[str, Any] = {"url": request["url"], "method": request["method"]}
        started = time.monotonic()

        failure = None
        for attempt in range(policy.max_attempts):
            if attempt:
                delay = policy.delay_for(attempt)
                logger.warning(
                    f"API request {self.node_id} failed ({failure.error}), "
                    f"retrying in {delay:.2f}s ({attempt}/{policy.retry_count})"
                )
                await asyncio.sleep(delay)

            try:
                response = await client.request(**request)
            except httpx.TimeoutException as e:
                failure = NodeResult.fail(
                    f"Request to {request['url']} timed out: {e}",
                    details={"exception": type(e).__name__},
                    error_type="timeout",
                    retries=attempt,
                    **meta,
                )
                continue
            except httpx.HTTPError as e:
                failure = NodeResult.fail(
                    f"Request to {request['url']} failed: {e}",
                    details={"exception": type(e).__name__},
                    retries=attempt,
                    **meta,
                )
                continue

            body = _decode_response(response, response_type)
            response_meta = {
                "status": response.status_code,
                "statusText": response.reason_phrase,
                "headers": dict(response.headers),
                "retries": attempt,
            }
            if _is_success(response.status_code, None):
                duration = int((time.monotonic() - started) * 1000)
                return NodeResult.ok(body, duration=duration, **response_meta, **meta)
            failure = NodeResult.fail(
                f"HTTP {response.status_code} {response.reason_phrase} from {request['url']}",
                details={"statusCode": response.status_code, "body": body},
                **response_meta,
                **meta,
            )

        logger.warning(f"API request {self.node_id} failed after {policy.max_attempts} attempt(s): {failure.error}")
        return failure
