"""Webhook Output Node

Sends the input (or a templated body) to an HTTP endpoint through the
shared ``httpx.AsyncClient``. The node retries on its own: network errors
and 5xx/429 responses are retried up to ``retryCount`` times (3 by default) with
exponential backoff; 4xx responses are retried only when errorHandling is
``retry``. The engine never retries this node again.
"""

from __future__ import annotations

import asyncio
import base64
import logging
import time
from typing import Any, Dict, List, Optional

import httpx

from ..engine.context import NodeExecutionContext, NodeResult
from ..engine.retry import RetryPolicy, backoff_delay
from ..engine.template import has_placeholders, resolve, template_context
from .registry import CATEGORY_OUTPUT, BaseNodeImpl, ExecutorMetadata, register_node_type
from .utils import render_json_template, render_mapping, render_text

logger = logging.getLogger(__name__)

BODYLESS_METHODS = {"GET", "HEAD", "DELETE"}


def _is_success(status_code: int, success_codes: Optional[List[int]]) -> bool:
    if success_codes:
        return status_code in success_codes
    return 200 <= status_code < 300


def _retryable(status_code: int, error_handling: str) -> bool:
    if status_code >= 500 or status_code == 429:
        return True
    return error_handling == "retry" and 400 <= status_code < 500


def _decode_response(response: httpx.Response, handling: str) -> Any:
    if handling == "binary":
        return base64.b64encode(response.content).decode("ascii")
    if handling == "json":
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            return response.text
    return response.text


@register_node_type(
    node_type="webhook-output",
    display_name="Webhook",
    description="Send data to an HTTP endpoint",
    category=CATEGORY_OUTPUT,
    config_schema={
        "type": "object",
        "properties": {
            "url": {"type": "string", "minLength": 1},
            "method": {"type": "string", "enum": ["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD"]},
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
                "allOf": [
                    {
                        "if": {"properties": {"type": {"const": "basic"}}, "required": ["type"]},
                        "then": {"required": ["username", "password"]},
                    },
                    {
                        "if": {"properties": {"type": {"const": "bearer"}}, "required": ["type"]},
                        "then": {"required": ["token"]},
                    },
                    {
                        "if": {"properties": {"type": {"const": "apikey"}}, "required": ["type"]},
                        "then": {"required": ["apiKey"]},
                    },
                ],
            },
            "timeout": {"type": "integer", "minimum": 1},
            "responseHandling": {"type": "string", "enum": ["json", "text", "binary"]},
            "successCodes": {"type": "array", "items": {"type": "integer", "minimum": 100, "maximum": 599}},
            "retryCount": {"type": "integer", "minimum": 0, "maximum": 10},
            "retryDelay": {"type": "integer", "minimum": 0},
            "errorHandling": {"type": "string", "enum": ["fail", "continue", "retry"]},
            "lenientTemplates": {"type": "boolean"},
        },
        "required": ["url"],
    },
    output_schema={
        "type": "object",
        "properties": {
            "statusCode": {"type": "integer"},
            "headers": {"type": "object"},
            "body": {},
        },
    },
    metadata=ExecutorMetadata(
        allowed_outputs=[],
        max_inputs=1,
        max_outputs=0,
        is_async=True,
        self_retrying=True,
        default_data={
            "method": "POST",
            "headers": {},
            "queryParams": {},
            "body": "{{input}}",
            "bodyType": "json",
            "authentication": {"type": "none"},
            "timeout": 30000,
            "responseHandling": "json",
            "retryCount": 3,
            "retryDelay": 1000,
            "errorHandling": "fail",
            "lenientTemplates": False,
        },
    ),
    icon="send",
    color="#10B981",
)
class WebhookOutputNode(BaseNodeImpl):
    """HTTP request with templating, auth and self-managed retries."""

    def check_config(self) -> List[Dict[str, str]]:
        url = self.config["url"]
        if not has_placeholders(url) and not url.lower().startswith(("http://", "https://")):
            return [{"field": "url", "error": "url must start with http:// or https://"}]
        return []

    def _build_request(self, ctx: NodeExecutionContext) -> Dict[str, Any]:
        context = template_context(ctx.input, ctx.identifiers())
        method = self.config.get("method", "POST").upper()

        request: Dict[str, Any] = {
            "method": method,
            "url": resolve(self.config["url"], context),
            "headers": render_mapping(self.config.get("headers"), context),
            "params": render_mapping(self.config.get("queryParams"), context),
            "timeout": self.config.get("timeout", 30000) / 1000.0,
        }

        auth = self.config.get("authentication") or {}
        auth_type = auth.get("type", "none")
        if auth_type == "basic":
            request["auth"] = httpx.BasicAuth(auth["username"], auth["password"])
        elif auth_type == "bearer":
            request["headers"]["Authorization"] = f"Bearer {render_text(auth['token'], context)}"
        elif auth_type == "apikey":
            name = auth.get("apiKeyName") or "X-API-Key"
            key = render_text(auth["apiKey"], context)
            if auth.get("apiKeyLocation") == "query":
                request["params"][name] = key
            else:
                request["headers"][name] = key

        body_template = self.config.get("body")
        if method in BODYLESS_METHODS or body_template is None:
            return request

        body_type = self.config.get("bodyType", "json")
        lenient = bool(self.config.get("lenientTemplates"))
        if body_type == "raw":
            content = render_text(body_template, context)
            request["content"] = content.encode("utf-8") if content is not None else b""
        elif body_type == "form":
            data = render_json_template(body_template, context, "body", lenient=lenient)
            if not isinstance(data, dict):
                data = {"data": data}
            request["data"] = {k: v if isinstance(v, str) else str(v) for k, v in data.items()}
        else:
            body = render_json_template(body_template, context, "body", lenient=lenient)
            if isinstance(body, str) and lenient:
                request["content"] = body.encode("utf-8")
                request["headers"].setdefault("Content-Type", "application/json")
            else:
                request["json"] = body
        return request

    async def execute(self, ctx: NodeExecutionContext) -> NodeResult:
        request = self._build_request(ctx)
        client: httpx.AsyncClient = ctx.services.http
        policy = RetryPolicy.from_node_data(self.config)
        retry_count = policy.retry_count
        retry_delay = policy.retry_delay_ms
        error_handling = self.config.get("errorHandling", "fail")
        success_codes = self.config.get("successCodes")
        handling = self.config.get("responseHandling", "json")

        meta = {"url": request["url"], "method": request["method"]}
        started = time.monotonic()
        retries = 0
        attempt = 0

        while True:
            attempt += 1
            try:
                response = await client.request(**request)
            except httpx.TimeoutException as e:
                failure = NodeResult.fail(
                    f"Request to {request['url']} timed out: {e}",
                    details={"exception": type(e).__name__},
                    error_type="timeout",
                    retries=retries,
                    **meta,
                )
                retry_allowed = True
            except httpx.HTTPError as e:
                failure = NodeResult.fail(
                    f"Request to {request['url']} failed: {e}",
                    details={"exception": type(e).__name__},
                    retries=retries,
                    **meta,
                )
                retry_allowed = True
            else:
                body = _decode_response(response, handling)
                headers = dict(response.headers)
                if _is_success(response.status_code, success_codes):
                    duration = int((time.monotonic() - started) * 1000)
                    if retries:
                        logger.info(f"Webhook {self.node_id} succeeded after {retries} retr{'y' if retries == 1 else 'ies'}")
                    return NodeResult.ok(
                        {"statusCode": response.status_code, "headers": headers, "body": body},
                        statusCode=response.status_code,
                        headers=headers,
                        retries=retries,
                        duration=duration,
                        **meta,
                    )
                failure = NodeResult.fail(
                    f"HTTP {response.status_code} from {request['url']}",
                    details={"statusCode": response.status_code, "body": body},
                    data={"statusCode": response.status_code, "headers": headers, "body": body},
                    statusCode=response.status_code,
                    headers=headers,
                    retries=retries,
                    **meta,
                )
                retry_allowed = _retryable(response.status_code, error_handling)

            if not retry_allowed or retries >= retry_count:
                logger.warning(f"Webhook {self.node_id} failed after {attempt} attempt(s): {failure.error}")
                return failure

            retries += 1
            delay = backoff_delay(retry_delay, retries)
            logger.warning(
                f"Webhook {self.node_id} attempt {attempt} failed ({failure.error}), "
                f"retrying in {delay:.2f}s ({retries}/{retry_count})"
            )
            await asyncio.sleep(delay)
