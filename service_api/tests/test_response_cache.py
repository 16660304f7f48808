"""
Unit tests for the permission-aware response cache.
"""

import json

import pytest
from unittest.mock import AsyncMock

from service_api.app.caching import ResponseCache, normalize_endpoint, resolve_ttl
from service_api.app.storage import MemoryStore


class TestTtlConfig:
    """Test cases for TTL resolution."""

    def test_exact_match(self):
        assert resolve_ttl("/api/organization") == 1800

    def test_pattern_match(self):
        assert resolve_ttl("/api/event/42") == 600

    def test_default(self):
        assert resolve_ttl("/api/fundraiser") == 300

    def test_override_clamped_to_max(self):
        assert resolve_ttl("/api/profile", override=7200) == 3600
        assert resolve_ttl("/api/profile", override=0) == 0


class TestResponseCache:
    """Test cases for ResponseCache."""

    @pytest.fixture
    def store(self):
        return MemoryStore()

    @pytest.fixture
    def cache(self, store, tasks):
        return ResponseCache(store, tasks, version="v1")

    def envelope(self, data=None):
        return {"success": True, "data": data or {"id": 1}, "meta": {"request_id": "req_first"}, "errors": []}

    def test_normalize_endpoint(self):
        assert normalize_endpoint("/api/admin/users/{user_id}") == "/api/admin/users/_user_id"
        assert normalize_endpoint("/api/doc/{path:path}") == "/api/doc/_path"

    def test_key_layout(self, cache):
        key = cache.build_key("/api/profile", "org-1", "u1", "volunteer")
        assert key == "api_cache:v1:/api/profile:org-1:u1:volunteer"

    def test_key_defaults(self, cache):
        assert cache.build_key("/api/health", None, None, None) == "api_cache:v1:/api/health:no_org:anonymous:guest"

    def test_query_order_does_not_matter(self, cache):
        first = cache.build_key("/api/admin/users", "org-1", "u1", "admin", query=[("page", "2"), ("limit", "10")])
        second = cache.build_key("/api/admin/users", "org-1", "u1", "admin", query=[("limit", "10"), ("page", "2")])
        assert first == second
        assert first != cache.build_key("/api/admin/users", "org-1", "u1", "admin")

    def test_keys_differ_by_role_and_org(self, cache):
        base = cache.build_key("/api/profile", "org-1", "u1", "volunteer")
        assert base != cache.build_key("/api/profile", "org-1", "u1", "admin")
        assert base != cache.build_key("/api/profile", "org-2", "u1", "volunteer")

    @pytest.mark.asyncio
    async def test_miss_then_hit(self, cache, tasks):
        key = cache.build_key("/api/profile", "org-1", "u1", "volunteer")
        assert await cache.lookup(key) is None

        envelope = self.envelope()
        cache.store_later(key, envelope, 900)
        await tasks.drain()

        assert envelope["meta"]["cache_hit"] is False
        assert envelope["meta"]["cache_ttl"] == 900
        stored = await cache.lookup(key)
        assert stored["data"] == {"id": 1}

        replayed = cache.replay(stored, 900, "req_second")
        assert replayed["meta"]["cache_hit"] is True
        assert replayed["meta"]["request_id"] == "req_second"
        assert replayed["meta"]["cached_at"] == envelope["meta"]["cached_at"]

        stats = await cache.stats()
        assert (stats["hits"], stats["misses"], stats["sets"]) == (1, 1, 1)
        assert stats["hit_rate"] == 50.0
        assert stats["cache_size"] == 1
        assert stats["backend"] == "memory"

    def test_cacheable(self, cache):
        assert cache.cacheable({"success": True}, 200)
        assert not cache.cacheable({"success": False}, 200)
        assert not cache.cacheable({"success": True}, 404)

    @pytest.mark.asyncio
    async def test_store_errors_count_as_miss(self, cache, store):
        store.get = AsyncMock(side_effect=ConnectionError("down"))
        assert await cache.lookup("api_cache:v1:x") is None
        assert (await cache.stats())["errors"] == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("raw", ["{not json", "42", '["a", "b"]'])
    async def test_undecodable_entry_is_a_miss_and_dropped(self, cache, store, raw):
        await store.set("api_cache:v1:x", raw, 60)

        assert await cache.lookup("api_cache:v1:x") is None
        assert await store.get("api_cache:v1:x") is None
        stats = await cache.stats()
        assert stats["misses"] == 1
        assert stats["errors"] == 1

    @pytest.mark.asyncio
    async def test_failed_write_is_observable(self, cache, store, tasks):
        store.set = AsyncMock(side_effect=ConnectionError("down"))
        cache.store_later("api_cache:v1:x", self.envelope(), 60)
        await tasks.drain()
        assert tasks.failures == 1

    @pytest.mark.asyncio
    async def test_invalidation(self, cache, store):
        keys = [
            cache.build_key("/api/profile", "org-1", "u1", "volunteer"),
            cache.build_key("/api/organization", "org-1", "u2", "admin"),
            cache.build_key("/api/profile", "org-2", "u3", "admin"),
            cache.build_key("/api/admin/users/{user_id}", "org-2", "u3", "admin"),
        ]
        for key in keys:
            await store.set(key, json.dumps(self.envelope()), 60)

        assert await cache.invalidate_user("u1") == 1
        assert await cache.invalidate_org("org-1") == 1
        assert await cache.invalidate_endpoint("/api/admin/users/{user_id}") == 1
        assert await cache.invalidate("profile") == 1
        assert await store.keys("api_cache:*") == []

    @pytest.mark.asyncio
    async def test_clear_all_leaves_other_keys(self, cache, store):
        await store.set(cache.build_key("/api/profile", "org-1", "u1", "volunteer"), "{}", 60)
        await store.set("rl:user:u1:standard", "3", 60)

        assert await cache.clear_all() == 1
        assert await store.get("rl:user:u1:standard") == "3"

    @pytest.mark.asyncio
    async def test_health_check(self, cache):
        assert await cache.health_check() == {"status": "healthy", "backend": "memory"}
