"""Tests for the fast store in its in-process mode and its Redis fallback."""

import asyncio

import pytest

from conftest import BrokenRedis
from tutor_pipeline.core.errors import FastStoreUnavailable
from tutor_pipeline.memory.fast_store import FastStore, FastStoreConfig


class TestLocalMode:
    async def test_starts_degraded_without_redis_url(self, store):
        assert store.degraded is True
        assert await store.ping() is False

    async def test_string_roundtrip_and_delete(self, store):
        await store.set("k", "v")
        assert await store.get("k") == "v"
        await store.delete("k")
        assert await store.get("k") is None

    async def test_ttl_expires_entries(self, store):
        await store.set("short", "lived", ttl=0.05)
        await asyncio.sleep(0.1)
        assert await store.get("short") is None

    async def test_scan_by_prefix(self, store):
        await store.set("quota:a", "1")
        await store.set("quota:b", "2")
        await store.set("other", "3")
        assert sorted(await store.scan("quota:")) == ["quota:a", "quota:b"]

    async def test_sets(self, store):
        await store.add_to_set("s", "a")
        await store.add_to_set("s", "b")
        await store.remove_from_set("s", "a")
        assert await store.set_members("s") == {"b"}

    async def test_hash_merge(self, store):
        await store.set_hash("h", {"a": 1})
        await store.set_hash("h", {"b": "two"})
        assert await store.get_hash("h") == {"a": "1", "b": "two"}


class TestAtomicOps:
    async def test_increment_clamps_at_ceiling(self, store):
        assert await store.increment_with_ceiling("c", 3, 4) == (3, 0)
        assert await store.increment_with_ceiling("c", 3, 4) == (4, 2)

    async def test_increment_unlimited(self, store):
        assert await store.increment_with_ceiling("c", 7, None) == (7, 0)

    async def test_concurrent_increments_never_exceed_limit(self, store):
        results = await asyncio.gather(*(store.increment_with_ceiling("c", 1, 5) for _ in range(8)))
        assert max(used for used, _ in results) == 5
        data = await store.get_hash("c")
        assert data == {"used": "5", "overage": "3"}

    async def test_compare_and_set_create_if_absent(self, store):
        assert await store.compare_and_set_hash("h", "period_end", None, {"period_end": "10"}) is True
        assert await store.compare_and_set_hash("h", "period_end", None, {"period_end": "20"}) is False
        assert await store.compare_and_set_hash("h", "period_end", "10", {"period_end": "20"}) is True
        assert (await store.get_hash("h"))["period_end"] == "20"


class TestRedisFallback:
    async def test_errors_fall_back_to_local_map(self):
        store = FastStore(FastStoreConfig(redis_url=""), client=BrokenRedis())
        assert store.degraded is False

        await store.set("k", "v")
        assert store.degraded is True
        assert await store.get("k") == "v"
        assert await store.get_hash("missing") == {}

    @pytest.mark.parametrize("url", ["", "   "])
    async def test_blank_url_stays_local(self, url):
        store = FastStore(FastStoreConfig(redis_url=url.strip()))
        await store.start()
        assert store.degraded is True

    async def test_strict_ops_raise_instead_of_going_local(self):
        store = FastStore(FastStoreConfig(redis_url=""), client=BrokenRedis())

        with pytest.raises(FastStoreUnavailable):
            await store.get_hash("h", strict=True)
        with pytest.raises(FastStoreUnavailable):
            await store.increment_with_ceiling("c", 1, 5, strict=True)
        with pytest.raises(FastStoreUnavailable):
            await store.compare_and_set_hash("h", "period_end", None, {"period_end": "1"}, strict=True)
        assert await store.get_hash("h") == {}

    async def test_strict_ops_raise_when_configured_redis_never_connected(self):
        store = FastStore(FastStoreConfig(redis_url="redis://127.0.0.1:1/0", op_timeout_seconds=0.2))
        await store.start()
        assert store.degraded is True

        with pytest.raises(FastStoreUnavailable):
            await store.get_hash("h", strict=True)
        await store.set_hash("h", {"a": 1})
        assert await store.get_hash("h") == {"a": "1"}

    async def test_strict_ops_use_local_map_without_redis(self, store):
        await store.set_hash("h", {"a": 1}, strict=True)
        assert await store.get_hash("h", strict=True) == {"a": "1"}
