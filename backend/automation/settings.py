"""Automation runtime settings: tunable parameters for workflow execution.

All values read from environment variables with sensible defaults.
Import from here instead of hardcoding.

Infrastructure config (API host, public URL, files root) stays in
automation/config.py.
"""

from __future__ import annotations

import os
import sys


def _int(key: str, default: int) -> int:
    return int(os.getenv(key, str(default)))


def _float(key: str, default: float) -> float:
    return float(os.getenv(key, str(default)))


def _str(key: str, default: str) -> str:
    return os.getenv(key, default)


def _bool(key: str, default: bool) -> bool:
    return os.getenv(key, str(default)).lower() in ("true", "1", "yes")


# =====================================================================
# Execution Engine
# =====================================================================

# Max node executors running at once within a single run
ENGINE_MAX_CONCURRENCY = _int("ENGINE_MAX_CONCURRENCY", 8)

# Retry count applied when a node sets errorHandling="retry" without retryCount
ENGINE_DEFAULT_RETRY_COUNT = _int("ENGINE_DEFAULT_RETRY_COUNT", 3)

# Base delay (ms) for exponential backoff: delay = base * 2^(attempt-1)
ENGINE_DEFAULT_RETRY_DELAY_MS = _int("ENGINE_DEFAULT_RETRY_DELAY_MS", 1000)


# =====================================================================
# Sandbox Runner
# =====================================================================

SANDBOX_DEFAULT_TIMEOUT_MS = _int("SANDBOX_DEFAULT_TIMEOUT_MS", 5000)
SANDBOX_MIN_TIMEOUT_MS = _int("SANDBOX_MIN_TIMEOUT_MS", 100)
SANDBOX_MAX_TIMEOUT_MS = _int("SANDBOX_MAX_TIMEOUT_MS", 30000)

# Address-space limit for the sandbox process (0 disables the limit)
SANDBOX_MEMORY_LIMIT_MB = _int("SANDBOX_MEMORY_LIMIT_MB", 512)

# Interpreter used to spawn sandbox workers
SANDBOX_PYTHON = _str("SANDBOX_PYTHON", sys.executable)

# Forward captured console output to the host logger
SANDBOX_FORWARD_CONSOLE = _bool("SANDBOX_FORWARD_CONSOLE", True)

# Max characters kept per console message
SANDBOX_CONSOLE_MESSAGE_LIMIT = _int("SANDBOX_CONSOLE_MESSAGE_LIMIT", 2000)


# =====================================================================
# HTTP / Output executors
# =====================================================================

HTTP_DEFAULT_TIMEOUT = _float("HTTP_DEFAULT_TIMEOUT", 30.0)
HTTP_MAX_CONNECTIONS = _int("HTTP_MAX_CONNECTIONS", 50)
HTTP_MAX_KEEPALIVE = _int("HTTP_MAX_KEEPALIVE", 10)

# Object storage multipart thresholds (bytes); S3 rejects parts below 5 MiB
OBJECT_STORAGE_PART_SIZE = _int("OBJECT_STORAGE_PART_SIZE", 5 * 1024 * 1024)
OBJECT_STORAGE_QUEUE_SIZE = _int("OBJECT_STORAGE_QUEUE_SIZE", 4)

# Vector output defaults
VECTOR_DEFAULT_BATCH_SIZE = _int("VECTOR_DEFAULT_BATCH_SIZE", 100)
VECTOR_SOURCE_TEXT_LIMIT = _int("VECTOR_SOURCE_TEXT_LIMIT", 1000)

# Email trigger polling
EMAIL_POLL_MAX_MESSAGES = _int("EMAIL_POLL_MAX_MESSAGES", 50)
