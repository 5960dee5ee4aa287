# -*- coding: utf-8 -*-
"""
Durable Snapshot Storage
========================

Key/value stores that mirror the in-memory metering and aggregation state.

All backends expose the same async contract:
- upsert by key (single and batched)
- point lookup and delete
- prefix listing, used to rehydrate state at startup

Backends:
- SqlStore: SQLAlchemy async session over the ``meterflow_snapshots`` table
- RedisStore: redis.asyncio with JSON string values
- MemoryStore: process-local dict, for development and tests
"""

import json
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional

import redis.asyncio as aioredis
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncEngine

from meterflow import config
from meterflow.database.connection import create_engine_for_url, get_session_factory, session_scope, init_db
from meterflow.database.models import SnapshotRecord

logger = logging.getLogger(__name__)


class DurableStore(ABC):
    """Async key/value store contract."""

    async def init(self) -> None:
        """Prepare the backend (create tables, ping, ...)."""
        return None

    @abstractmethod
    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        ...

    async def put(self, key: str, value: Dict[str, Any]) -> None:
        await self.put_many({key: value})

    @abstractmethod
    async def put_many(self, items: Mapping[str, Dict[str, Any]]) -> None:
        """Upsert every item in one round trip / transaction."""
        ...

    @abstractmethod
    async def delete_many(self, keys: Iterable[str]) -> int:
        ...

    async def delete(self, key: str) -> bool:
        return await self.delete_many([key]) > 0

    @abstractmethod
    async def items(self, prefix: str) -> Dict[str, Dict[str, Any]]:
        """All key/value pairs whose key starts with ``prefix``."""
        ...

    async def keys(self, prefix: str) -> List[str]:
        return sorted((await self.items(prefix)).keys())

    async def close(self) -> None:
        return None


# =============================================================================
# SQL
# =============================================================================

class SqlStore(DurableStore):
    """
    Store backed by a relational database through SQLAlchemy async.

    Exemplo:
        store = SqlStore(url="sqlite+aiosqlite:///:memory:")
        await store.init()
        await store.put("metering:tenant:t1", snapshot.to_dict())
    """

    def __init__(self, engine: Optional[AsyncEngine] = None, url: Optional[str] = None):
        self._owns_engine = engine is None
        self._engine = engine or create_engine_for_url(url or config.DATABASE_URL)
        self._sessions = get_session_factory(self._engine)

    async def init(self) -> None:
        await init_db(self._engine)

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        async with session_scope(self._sessions) as session:
            record = await session.get(SnapshotRecord, key)
            return record.value if record else None

    async def put_many(self, items: Mapping[str, Dict[str, Any]]) -> None:
        if not items:
            return
        now = datetime.utcnow()
        async with session_scope(self._sessions) as session:
            for key, value in items.items():
                await session.merge(SnapshotRecord(key=key, value=value, updated_at=now))

    async def delete_many(self, keys: Iterable[str]) -> int:
        keys = list(keys)
        if not keys:
            return 0
        async with session_scope(self._sessions) as session:
            result = await session.execute(
                delete(SnapshotRecord).where(SnapshotRecord.key.in_(keys))
            )
            return result.rowcount or 0

    async def items(self, prefix: str) -> Dict[str, Dict[str, Any]]:
        async with session_scope(self._sessions) as session:
            result = await session.execute(
                select(SnapshotRecord).where(SnapshotRecord.key.startswith(prefix, autoescape=True))
            )
            return {record.key: record.value for record in result.scalars()}

    async def close(self) -> None:
        if self._owns_engine:
            await self._engine.dispose()


# =============================================================================
# REDIS
# =============================================================================

class RedisStore(DurableStore):
    """
    Store backed by Redis. Values are JSON strings under ``namespace + key``.
    """

    def __init__(
        self,
        url: Optional[str] = None,
        client: Optional[aioredis.Redis] = None,
        namespace: str = "meterflow:"
    ):
        self._client = client or aioredis.from_url(
            url or config.REDIS_URL,
            encoding="utf-8",
            decode_responses=True
        )
        self._namespace = namespace

    def _key(self, key: str) -> str:
        return f"{self._namespace}{key}"

    async def init(self) -> None:
        await self._client.ping()

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        raw = await self._client.get(self._key(key))
        return json.loads(raw) if raw is not None else None

    async def put_many(self, items: Mapping[str, Dict[str, Any]]) -> None:
        if not items:
            return
        pipe = self._client.pipeline()
        for key, value in items.items():
            pipe.set(self._key(key), json.dumps(value, default=str))
        await pipe.execute()

    async def delete_many(self, keys: Iterable[str]) -> int:
        full_keys = [self._key(k) for k in keys]
        if not full_keys:
            return 0
        return await self._client.delete(*full_keys)

    async def items(self, prefix: str) -> Dict[str, Dict[str, Any]]:
        full_keys = [k async for k in self._client.scan_iter(match=f"{self._key(prefix)}*")]
        if not full_keys:
            return {}
        values = await self._client.mget(full_keys)
        offset = len(self._namespace)
        return {
            full_key[offset:]: json.loads(raw)
            for full_key, raw in zip(full_keys, values)
            if raw is not None
        }

    async def close(self) -> None:
        await self._client.aclose()


# =============================================================================
# MEMORY
# =============================================================================

class MemoryStore(DurableStore):
    """Process-local store. Values are round-tripped through JSON like the real backends."""

    def __init__(self):
        self._data: Dict[str, str] = {}

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        raw = self._data.get(key)
        return json.loads(raw) if raw is not None else None

    async def put_many(self, items: Mapping[str, Dict[str, Any]]) -> None:
        for key, value in items.items():
            self._data[key] = json.dumps(value, default=str)

    async def delete_many(self, keys: Iterable[str]) -> int:
        count = 0
        for key in keys:
            if self._data.pop(key, None) is not None:
                count += 1
        return count

    async def items(self, prefix: str) -> Dict[str, Dict[str, Any]]:
        return {k: json.loads(v) for k, v in self._data.items() if k.startswith(prefix)}

    def __len__(self) -> int:
        return len(self._data)


def build_store(backend: Optional[str] = None) -> DurableStore:
    """Instantiate the configured backend (``STORE_BACKEND``)."""
    backend = backend or config.STORE_BACKEND
    if backend == "sql":
        return SqlStore()
    if backend == "redis":
        return RedisStore()
    if backend == "memory":
        return MemoryStore()
    raise ValueError(f"Unknown store backend: {backend}")
