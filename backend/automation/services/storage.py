"""Key-value storage service used by storage nodes and polling triggers.

Keys are scoped by namespace; entries may carry a TTL in seconds.
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, Dict, List, Optional, Protocol, Tuple


class KeyValueStore(Protocol):
    """Interface every storage backend implements."""

    async def get(self, namespace: str, key: str) -> Any:
        ...

    async def set(self, namespace: str, key: str, value: Any, ttl: Optional[float] = None) -> None:
        ...

    async def delete(self, namespace: str, key: str) -> bool:
        ...

    async def list_keys(self, namespace: str, prefix: str = "") -> List[str]:
        ...


class InMemoryKeyValueStore:
    """Process-local store; expired entries are dropped lazily on access."""

    def __init__(self, clock=time.monotonic):
        self._data: Dict[Tuple[str, str], Tuple[Any, Optional[float]]] = {}
        self._lock = asyncio.Lock()
        self._clock = clock

    def _alive(self, entry: Tuple[Any, Optional[float]]) -> bool:
        _, expires_at = entry
        return expires_at is None or expires_at > self._clock()

    async def get(self, namespace: str, key: str) -> Any:
        async with self._lock:
            entry = self._data.get((namespace, key))
            if entry is None:
                return None
            if not self._alive(entry):
                del self._data[(namespace, key)]
                return None
            return entry[0]

    async def set(self, namespace: str, key: str, value: Any, ttl: Optional[float] = None) -> None:
        expires_at = self._clock() + ttl if ttl else None
        async with self._lock:
            self._data[(namespace, key)] = (value, expires_at)

    async def delete(self, namespace: str, key: str) -> bool:
        async with self._lock:
            entry = self._data.pop((namespace, key), None)
            return entry is not None and self._alive(entry)

    async def list_keys(self, namespace: str, prefix: str = "") -> List[str]:
        async with self._lock:
            expired = [k for k, entry in self._data.items() if not self._alive(entry)]
            for k in expired:
                del self._data[k]
            return sorted(
                key for (ns, key) in self._data
                if ns == namespace and key.startswith(prefix)
            )
