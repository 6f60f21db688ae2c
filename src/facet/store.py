"""Key/value storage of opaque session, coordination and metrics records."""

from __future__ import annotations

import json
import time
from typing import Any, Protocol

import redis.asyncio as redis


class RecordStore(Protocol):
    """Upsert/get of JSON records addressed by kind and id."""

    async def put(
        self, kind: str, record_id: str, payload: dict[str, Any], ttl_seconds: int | None = None
    ) -> None:
        """Insert or replace a record."""
        ...

    async def get(self, kind: str, record_id: str) -> dict[str, Any] | None:
        """Fetch a record, or None if absent or expired."""
        ...

    async def delete(self, kind: str, record_id: str) -> None:
        """Remove a record if present."""
        ...


class InMemoryRecordStore:
    """Process-local record store with optional expiry."""

    def __init__(self, clock=time.monotonic):
        self._clock = clock
        self._records: dict[tuple[str, str], tuple[dict[str, Any], float | None]] = {}

    async def put(
        self, kind: str, record_id: str, payload: dict[str, Any], ttl_seconds: int | None = None
    ) -> None:
        expires_at = self._clock() + ttl_seconds if ttl_seconds else None
        # Stored copy is JSON-detached from the caller
        self._records[(kind, record_id)] = (json.loads(json.dumps(payload, default=str)), expires_at)

    async def get(self, kind: str, record_id: str) -> dict[str, Any] | None:
        entry = self._records.get((kind, record_id))
        if entry is None:
            return None
        payload, expires_at = entry
        if expires_at is not None and self._clock() >= expires_at:
            del self._records[(kind, record_id)]
            return None
        return payload

    async def delete(self, kind: str, record_id: str) -> None:
        self._records.pop((kind, record_id), None)

    def __len__(self) -> int:
        return len(self._records)


class RedisRecordStore:
    """Record store keyed as ``{prefix}{kind}:{id}`` in Redis."""

    def __init__(self, client: redis.Redis, key_prefix: str = "facet:"):
        self._client = client
        self.key_prefix = key_prefix

    def _key(self, kind: str, record_id: str) -> str:
        return f"{self.key_prefix}{kind}:{record_id}"

    async def put(
        self, kind: str, record_id: str, payload: dict[str, Any], ttl_seconds: int | None = None
    ) -> None:
        data = json.dumps(payload, default=str)
        if ttl_seconds:
            await self._client.setex(self._key(kind, record_id), ttl_seconds, data)
        else:
            await self._client.set(self._key(kind, record_id), data)

    async def get(self, kind: str, record_id: str) -> dict[str, Any] | None:
        data = await self._client.get(self._key(kind, record_id))
        if data is None:
            return None
        return json.loads(data)

    async def delete(self, kind: str, record_id: str) -> None:
        await self._client.delete(self._key(kind, record_id))
