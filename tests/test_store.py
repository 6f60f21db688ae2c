"""Tests for record stores."""

import json
from unittest.mock import AsyncMock

import pytest

from facet.store import InMemoryRecordStore, RedisRecordStore


@pytest.mark.asyncio
async def test_in_memory_put_and_get():
    """Test records are stored per kind and id."""
    store = InMemoryRecordStore()
    await store.put("session", "s1", {"current_agent": "a"})
    await store.put("coordination", "s1", {"status": "started"})

    assert await store.get("session", "s1") == {"current_agent": "a"}
    assert await store.get("coordination", "s1") == {"status": "started"}
    assert await store.get("session", "missing") is None
    assert len(store) == 2


@pytest.mark.asyncio
async def test_in_memory_copy_is_detached():
    """Test later mutation of the caller's payload does not leak into the store."""
    store = InMemoryRecordStore()
    payload = {"turns": [{"agent_id": "a"}]}
    await store.put("session", "s1", payload)
    payload["turns"].append({"agent_id": "b"})

    stored = await store.get("session", "s1")
    assert stored == {"turns": [{"agent_id": "a"}]}


@pytest.mark.asyncio
async def test_in_memory_expiry(clock):
    """Test records expire after their TTL."""
    store = InMemoryRecordStore(clock=clock)
    await store.put("session", "s1", {"x": 1}, ttl_seconds=10)

    clock.advance(9)
    assert await store.get("session", "s1") == {"x": 1}

    clock.advance(1)
    assert await store.get("session", "s1") is None
    assert len(store) == 0


@pytest.mark.asyncio
async def test_in_memory_delete():
    """Test deleting present and absent records."""
    store = InMemoryRecordStore()
    await store.put("session", "s1", {"x": 1})

    await store.delete("session", "s1")
    await store.delete("session", "s1")

    assert await store.get("session", "s1") is None


class TestRedisRecordStore:
    @pytest.fixture
    def client(self):
        client = AsyncMock()
        client.get.return_value = None
        return client

    @pytest.mark.asyncio
    async def test_put_with_ttl_uses_setex(self, client):
        store = RedisRecordStore(client, key_prefix="test:")
        await store.put("session", "s1", {"current_agent": "a"}, ttl_seconds=60)

        client.setex.assert_awaited_once_with(
            "test:session:s1", 60, json.dumps({"current_agent": "a"})
        )
        client.set.assert_not_called()

    @pytest.mark.asyncio
    async def test_put_without_ttl_uses_set(self, client):
        store = RedisRecordStore(client)
        await store.put("session", "s1", {"x": 1})

        client.set.assert_awaited_once_with("facet:session:s1", json.dumps({"x": 1}))

    @pytest.mark.asyncio
    async def test_get_decodes_json(self, client):
        client.get.return_value = '{"turns": [1, 2]}'
        store = RedisRecordStore(client)

        assert await store.get("session", "s1") == {"turns": [1, 2]}
        client.get.assert_awaited_once_with("facet:session:s1")

    @pytest.mark.asyncio
    async def test_get_missing_returns_none(self, client):
        store = RedisRecordStore(client)

        assert await store.get("session", "s1") is None

    @pytest.mark.asyncio
    async def test_delete(self, client):
        store = RedisRecordStore(client)
        await store.delete("session", "s1")

        client.delete.assert_awaited_once_with("facet:session:s1")
