"""Tests for the subprocess sandbox runner.

These spawn the real worker process, so each test pays interpreter start-up.
"""

import asyncio

import pytest

from automation.engine.context import CancellationToken
from automation.errors import (
    CancellationError,
    ConfigurationError,
    SandboxExecutionError,
    SandboxTimeoutError,
)
from automation.sandbox import SandboxRunner


@pytest.fixture
def runner():
    return SandboxRunner(forward_console=False)


class TestSandboxRunner:
    """Test value, console, error and timeout handling."""

    @pytest.mark.asyncio
    async def test_returns_value(self, runner):
        """Test the body's return value is the result."""
        result = await runner.run(
            "total = 0\nfor n in numbers:\n    total += n\nreturn {'total': total}",
            bindings={"numbers": [1, 2, 3]},
        )
        assert result.value == {"total": 6}
        assert result.duration_ms >= 0

    @pytest.mark.asyncio
    async def test_console_and_print_captured(self, runner):
        """Test console calls and print are collected in order."""
        result = await runner.run("console.log('hello', 1)\nconsole.warn('careful')\nreturn None")
        assert [(e["type"], e["message"]) for e in result.console] == [
            ("log", "hello 1"),
            ("warn", "careful"),
        ]

    @pytest.mark.asyncio
    async def test_each_calls_per_item(self, runner):
        """Test per-item mode passes item, index and array."""
        result = await runner.run("return item * 10 + index + len(array)", each=[1, 2, 3])
        assert result.value == [13, 24, 35]

    @pytest.mark.asyncio
    async def test_user_exception(self, runner):
        """Test a raised exception carries its type name."""
        with pytest.raises(SandboxExecutionError) as exc_info:
            await runner.run("raise ValueError('boom')")
        assert exc_info.value.exception_type == "ValueError"
        assert "boom" in str(exc_info.value)

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "code",
        [
            "return open('/etc/passwd').read()",
            "return input.__class__",
            "import os\nreturn os.getcwd()",
        ],
    )
    async def test_forbidden_access(self, runner, code):
        """Test filesystem, dunder and import access are refused."""
        with pytest.raises(SandboxExecutionError):
            await runner.run(code, bindings={"input": {}})

    @pytest.mark.asyncio
    async def test_optional_library(self, runner):
        """Test enabled libraries are bound and base libraries always are."""
        result = await runner.run(
            "return [statistics.mean(values), math.floor(2.7), json.dumps(values)]",
            bindings={"values": [1, 2, 3]},
            allowed_libraries=["statistics"],
        )
        assert result.value == [2, 2, "[1, 2, 3]"]

    @pytest.mark.asyncio
    async def test_unknown_library(self, runner):
        """Test unknown libraries are a configuration error."""
        with pytest.raises(ConfigurationError):
            await runner.run("return 1", allowed_libraries=["subprocess"])

    @pytest.mark.asyncio
    async def test_async_body(self, runner):
        """Test async bodies can await the bound helpers."""
        result = await runner.run("await sleep(0)\nreturn 'done'", async_allowed=True)
        assert result.value == "done"

    @pytest.mark.asyncio
    async def test_infinite_loop_times_out(self, runner):
        """Test a runaway loop is killed at the budget."""
        with pytest.raises(SandboxTimeoutError) as exc_info:
            await runner.run("while True:\n    pass", timeout_ms=500)
        assert exc_info.value.timeout_ms == 500

    @pytest.mark.asyncio
    async def test_cancellation_kills_process(self, runner):
        """Test a fired cancellation token stops the invocation."""
        token = CancellationToken()

        async def fire():
            await asyncio.sleep(0.3)
            token.cancel("user stop")

        asyncio.ensure_future(fire())
        with pytest.raises(CancellationError, match="user stop"):
            await runner.run("while True:\n    pass", timeout_ms=10000, cancel_token=token)
