"""Retry policy with exponential backoff.

delay(attempt) = retryDelay * 2^(attempt-1), attempt counted from 1 for the
first retry. Attempts are strictly sequential.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict

from .. import settings


def backoff_delay(base_delay_ms: float, attempt: int) -> float:
    """Delay in seconds before retry number ``attempt`` (1-based)."""
    if attempt < 1:
        return 0.0
    return (base_delay_ms * (2 ** (attempt - 1))) / 1000.0


@dataclass(frozen=True)
class RetryPolicy:
    """Per-node retry configuration.

    Attributes:
        retry_count: Retries after the first attempt (0 = no retry)
        retry_delay_ms: Base delay for exponential backoff
    """

    retry_count: int = 0
    retry_delay_ms: int = settings.ENGINE_DEFAULT_RETRY_DELAY_MS

    @property
    def max_attempts(self) -> int:
        return 1 + max(0, self.retry_count)

    def delay_for(self, attempt: int) -> float:
        return backoff_delay(self.retry_delay_ms, attempt)

    @classmethod
    def from_node_data(cls, data: Dict[str, Any]) -> "RetryPolicy":
        """Read ``retryCount``/``retryDelay`` from a node's data.

        ``errorHandling == "retry"`` without an explicit count falls back to
        ENGINE_DEFAULT_RETRY_COUNT.
        """
        count = data.get("retryCount")
        if count is None:
            count = settings.ENGINE_DEFAULT_RETRY_COUNT if data.get("errorHandling") == "retry" else 0
        delay = data.get("retryDelay")
        if delay is None:
            delay = settings.ENGINE_DEFAULT_RETRY_DELAY_MS
        return cls(retry_count=max(0, int(count)), retry_delay_ms=max(0, int(delay)))
