# -*- coding: utf-8 -*-
"""
Tests for snapshot stores
"""

import pytest

from meterflow.storage import MemoryStore, build_store


class TestMemoryStore:
    @pytest.mark.asyncio
    async def test_put_and_get(self, memory_store):
        await memory_store.put("metering:tenant:t1", {"value": 1})
        assert await memory_store.get("metering:tenant:t1") == {"value": 1}
        assert await memory_store.get("missing") is None

    @pytest.mark.asyncio
    async def test_values_are_copied(self, memory_store):
        value = {"items": [1]}
        await memory_store.put("k", value)
        value["items"].append(2)
        assert await memory_store.get("k") == {"items": [1]}

    @pytest.mark.asyncio
    async def test_items_by_prefix(self, memory_store):
        await memory_store.put_many({
            "metering:tenant:a": {"n": 1},
            "metering:tenant:b": {"n": 2},
            "aggregation:bucket:a": {"n": 3},
        })
        items = await memory_store.items("metering:tenant:")
        assert set(items) == {"metering:tenant:a", "metering:tenant:b"}
        assert await memory_store.keys("aggregation:") == ["aggregation:bucket:a"]

    @pytest.mark.asyncio
    async def test_delete(self, memory_store):
        await memory_store.put("k", {})
        assert await memory_store.delete("k") is True
        assert await memory_store.delete("k") is False
        assert len(memory_store) == 0


class TestSqlStore:
    @pytest.mark.asyncio
    async def test_upsert_overwrites(self, sql_store):
        await sql_store.put("metering:tenant:t1", {"v": 1})
        await sql_store.put("metering:tenant:t1", {"v": 2})
        assert await sql_store.get("metering:tenant:t1") == {"v": 2}

    @pytest.mark.asyncio
    async def test_prefix_is_literal(self, sql_store):
        await sql_store.put_many({
            "aggregation:bucket:tenant_1:api_calls": {"v": 1},
            "aggregation:bucket:tenantX1:api_calls": {"v": 2},
        })
        items = await sql_store.items("aggregation:bucket:tenant_1")
        assert list(items) == ["aggregation:bucket:tenant_1:api_calls"]

    @pytest.mark.asyncio
    async def test_delete_many(self, sql_store):
        await sql_store.put_many({"a": {}, "b": {}, "c": {}})
        assert await sql_store.delete_many(["a", "b", "zzz"]) == 2
        assert await sql_store.keys("") == ["c"]


class TestBuildStore:
    def test_memory_backend(self):
        assert isinstance(build_store("memory"), MemoryStore)

    def test_unknown_backend(self):
        with pytest.raises(ValueError):
            build_store("cassandra")
