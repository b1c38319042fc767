"""Database-backed key-value store for storage nodes.

Implements the same interface as ``InMemoryKeyValueStore`` so it can be
dropped into ``Services.storage``. Expired entries are deleted lazily.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, List, Optional

from sqlalchemy import delete, select

from automation.nodes.utils import jsonable
from gateway import database
from gateway.models import KeyValueEntryModel


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _expired(entry: KeyValueEntryModel, now: datetime) -> bool:
    if entry.expires_at is None:
        return False
    expires_at = entry.expires_at
    # SQLite hands back naive datetimes
    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    return expires_at <= now


class SqlKeyValueStore:

    async def get(self, namespace: str, key: str) -> Any:
        async with database.get_session_ctx() as session:
            entry = await session.get(KeyValueEntryModel, (namespace, key))
            if entry is None:
                return None
            if _expired(entry, _utcnow()):
                await session.delete(entry)
                return None
            return entry.value

    async def set(self, namespace: str, key: str, value: Any, ttl: Optional[float] = None) -> None:
        expires_at = _utcnow() + timedelta(seconds=ttl) if ttl else None
        async with database.get_session_ctx() as session:
            entry = await session.get(KeyValueEntryModel, (namespace, key))
            if entry is None:
                entry = KeyValueEntryModel(namespace=namespace, key=key)
                session.add(entry)
            entry.value = jsonable(value)
            entry.expires_at = expires_at

    async def delete(self, namespace: str, key: str) -> bool:
        async with database.get_session_ctx() as session:
            entry = await session.get(KeyValueEntryModel, (namespace, key))
            if entry is None:
                return False
            alive = not _expired(entry, _utcnow())
            await session.delete(entry)
            return alive

    async def list_keys(self, namespace: str, prefix: str = "") -> List[str]:
        now = _utcnow()
        async with database.get_session_ctx() as session:
            result = await session.execute(
                select(KeyValueEntryModel).where(KeyValueEntryModel.namespace == namespace)
            )
            entries = list(result.scalars().all())
            expired = [e.key for e in entries if _expired(e, now)]
            if expired:
                await session.execute(
                    delete(KeyValueEntryModel).where(
                        KeyValueEntryModel.namespace == namespace,
                        KeyValueEntryModel.key.in_(expired),
                    )
                )
            return sorted(e.key for e in entries if e.key not in expired and e.key.startswith(prefix))
