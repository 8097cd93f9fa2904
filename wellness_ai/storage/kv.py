"""Durable key-value store shared by the gateway components.

Each component owns one key namespace:

    ratelimit:{provider}:{window}   quota window counters
    circuit:{provider}              circuit breaker record
    cache:{fingerprint}             response cache (durable tier)
    queue:{provider}:{item_id}      pending durability queue items
    deadletter:{provider}:{item_id} dead-lettered items

Values are JSON-compatible dicts. Every write replaces a whole key in a single
statement, so writes are atomic at the key level.
"""

from __future__ import annotations

import asyncio
import copy
import json
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from wellness_ai.db.base import Base
from wellness_ai.models.kv_entry import KvEntry

logger = logging.getLogger(__name__)

MEMORY_URL = "memory://"


class KeyValueStore(ABC):
    """Async key-value store holding JSON-compatible dict values."""

    async def init(self) -> None:
        """Prepare the backing storage (create tables, open files)."""

    async def close(self) -> None:
        """Release connections."""

    @abstractmethod
    async def get(self, key: str) -> dict[str, Any] | None: ...

    @abstractmethod
    async def set(self, key: str, value: dict[str, Any]) -> None: ...

    @abstractmethod
    async def delete(self, key: str) -> None: ...

    @abstractmethod
    async def scan(self, prefix: str) -> list[tuple[str, dict[str, Any]]]:
        """Return all (key, value) pairs whose key starts with prefix, sorted by key."""
        ...


class MemoryKeyValueStore(KeyValueStore):
    """Process-local store. Used in tests and for ephemeral gateways."""

    def __init__(self):
        self._data: dict[str, dict[str, Any]] = {}
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> dict[str, Any] | None:
        value = self._data.get(key)
        return copy.deepcopy(value) if value is not None else None

    async def set(self, key: str, value: dict[str, Any]) -> None:
        async with self._lock:
            self._data[key] = copy.deepcopy(value)

    async def delete(self, key: str) -> None:
        async with self._lock:
            self._data.pop(key, None)

    async def scan(self, prefix: str) -> list[tuple[str, dict[str, Any]]]:
        return [(k, copy.deepcopy(v)) for k, v in sorted(self._data.items()) if k.startswith(prefix)]

    def __len__(self) -> int:
        return len(self._data)


class SqlKeyValueStore(KeyValueStore):
    """SQLAlchemy-backed store (SQLite via aiosqlite on device, PostgreSQL via asyncpg)."""

    def __init__(self, url: str, echo: bool = False):
        self.url = url
        self._engine = create_async_engine(url, echo=echo)
        self._session_factory = async_sessionmaker(self._engine, expire_on_commit=False)

    async def init(self) -> None:
        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Key-value store ready (%s)", self._engine.dialect.name)

    async def close(self) -> None:
        await self._engine.dispose()

    async def get(self, key: str) -> dict[str, Any] | None:
        async with self._session_factory() as session:
            row = await session.get(KvEntry, key)
            if row is None:
                return None
            return json.loads(row.value)

    async def set(self, key: str, value: dict[str, Any]) -> None:
        stmt = self._upsert(key, json.dumps(value, separators=(",", ":"), ensure_ascii=False))
        async with self._session_factory() as session:
            await session.execute(stmt)
            await session.commit()

    async def delete(self, key: str) -> None:
        async with self._session_factory() as session:
            await session.execute(delete(KvEntry).where(KvEntry.key == key))
            await session.commit()

    async def scan(self, prefix: str) -> list[tuple[str, dict[str, Any]]]:
        stmt = select(KvEntry).where(KvEntry.key.startswith(prefix, autoescape=True)).order_by(KvEntry.key)
        async with self._session_factory() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [(row.key, json.loads(row.value)) for row in rows]

    def _upsert(self, key: str, encoded: str):
        """Single-statement INSERT ... ON CONFLICT DO UPDATE for the active dialect."""
        dialect = self._engine.dialect.name
        if dialect == "sqlite":
            from sqlalchemy.dialects.sqlite import insert
        elif dialect == "postgresql":
            from sqlalchemy.dialects.postgresql import insert
        else:
            raise ValueError(f"Unsupported store dialect: {dialect}")

        stmt = insert(KvEntry).values(key=key, value=encoded, updated_at=datetime.now(timezone.utc))
        return stmt.on_conflict_do_update(
            index_elements=[KvEntry.key],
            set_={"value": stmt.excluded.value, "updated_at": stmt.excluded.updated_at},
        )


def build_store(url: str) -> KeyValueStore:
    """Create a store from a URL. ``memory://`` selects the in-process store."""
    if url.startswith(MEMORY_URL):
        return MemoryKeyValueStore()
    return SqlKeyValueStore(url)
