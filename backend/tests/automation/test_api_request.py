"""Tests for the API request data node."""

import json

import httpx
import pytest

from automation.engine.context import RunStatus
from automation.engine.executor import ExecutionEngine


class TestApiRequest:
    """Test requests and response decoding."""

    @pytest.mark.asyncio
    async def test_get_outputs_response_body(self, node_context, http_handler):
        """Test the decoded body is the output and status lands in metadata."""
        http_handler.queue(httpx.Response(200, json=[{"id": 1}, {"id": 2}]))
        executor, ctx = node_context("api-request", {
            "url": "https://api.example.com/users",
            "queryParams": {"team": "{{team}}"},
            "authentication": {"type": "apikey", "apiKey": "k-1", "apiKeyName": "key", "apiKeyLocation": "query"},
        }, input={"team": "ops"})
        result = await executor.execute(ctx)
        assert result.success
        assert result.data == [{"id": 1}, {"id": 2}]
        assert result.metadata["status"] == 200
        assert result.metadata["statusText"] == "OK"
        assert result.metadata["method"] == "GET"
        request = http_handler.requests[0]
        assert request.method == "GET"
        assert request.url.params["team"] == "ops"
        assert request.url.params["key"] == "k-1"
        assert request.content == b""

    @pytest.mark.asyncio
    async def test_post_body_and_text_response(self, node_context, http_handler):
        """Test a templated JSON body is sent and responseType text keeps the raw body."""
        http_handler.queue(httpx.Response(201, text="created"))
        executor, ctx = node_context("api-request", {
            "url": "https://api.example.com/items",
            "method": "POST",
            "body": {"name": "{{name}}"},
            "responseType": "text",
        }, input={"name": "Ada"})
        result = await executor.execute(ctx)
        assert result.data == "created"
        assert json.loads(http_handler.requests[0].content) == {"name": "Ada"}

    @pytest.mark.asyncio
    async def test_error_status_fails(self, node_context, http_handler):
        """Test a non-2xx response is a failure carrying status and body."""
        http_handler.queue(httpx.Response(404, json={"error": "missing"}))
        executor, ctx = node_context("api-request", {"url": "https://api.example.com/x"})
        result = await executor.execute(ctx)
        assert not result.success
        assert result.metadata["status"] == 404
        assert result.metadata["statusText"] == "Not Found"
        assert result.error_details["body"] == {"error": "missing"}
        assert len(http_handler.requests) == 1

    @pytest.mark.asyncio
    async def test_retries_any_failure(self, node_context, http_handler):
        """Test failures of any kind are retried up to retryCount."""
        http_handler.queue(
            httpx.ConnectError("refused"),
            httpx.Response(404),
            httpx.Response(200, json={"ok": 1}),
        )
        executor, ctx = node_context("api-request", {
            "url": "https://api.example.com/x", "retryCount": 2, "retryDelay": 1,
        })
        result = await executor.execute(ctx)
        assert result.success
        assert result.metadata["retries"] == 2
        assert len(http_handler.requests) == 3

    @pytest.mark.asyncio
    async def test_retries_exhausted(self, node_context, http_handler):
        """Test the last failure is returned once retries run out."""
        http_handler.queue(httpx.ConnectError("refused"), httpx.ConnectError("refused"))
        executor, ctx = node_context("api-request", {
            "url": "https://api.example.com/x", "retryCount": 1, "retryDelay": 1,
        })
        result = await executor.execute(ctx)
        assert not result.success
        assert result.error_details["exception"] == "ConnectError"
        assert result.metadata["retries"] == 1
        assert len(http_handler.requests) == 2

    def test_url_scheme_checked(self, node_context):
        """Test a literal url must be http(s)."""
        executor, _ = node_context("api-request", {"url": "file:///etc/passwd"})
        assert executor.validate_config() == [
            {"field": "url", "error": "url must start with http:// or https://"}
        ]


class TestApiRequestWorkflow:
    """Test an API fetch feeding further nodes."""

    @pytest.mark.asyncio
    async def test_fetch_filter_deliver(self, services, http_handler):
        """Test schedule -> api-request -> filter -> webhook-output."""
        http_handler.queue(httpx.Response(200, json=[{"id": 1, "age": 30}, {"id": 2, "age": 12}]))
        engine = ExecutionEngine(services)
        result = await engine.run({
            "id": "wf-api",
            "nodes": [
                {"id": "s", "type": "schedule", "data": {
                    "scheduleType": "interval", "interval": {"value": 1, "unit": "hours"}, "payload": {},
                }},
                {"id": "fetch", "type": "api-request", "data": {"url": "https://api.example.com/people"}},
                {"id": "adults", "type": "filter", "data": {
                    "conditions": [{"field": "age", "operator": "greater_than", "value": 18}],
                }},
                {"id": "deliver", "type": "webhook-output", "data": {"url": "https://hooks.example.com/in"}},
            ],
            "connections": [
                {"source": "s", "target": "fetch"},
                {"source": "fetch", "target": "adults"},
                {"source": "adults", "target": "deliver"},
            ],
        })
        assert result.status == RunStatus.COMPLETED
        assert [r.url.host for r in http_handler.requests] == ["api.example.com", "hooks.example.com"]
        assert json.loads(http_handler.requests[1].content) == [{"id": 1, "age": 30}]
