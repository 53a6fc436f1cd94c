"""Tests for CacheCoherencyLayer, MemoryCacheBackend, keys and TTL bounds."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

import pytest

from canopy.fs.cache import (
    MISS,
    CacheCoherencyLayer,
    CacheKeys,
    CacheScopes,
    MemoryCacheBackend,
    ttl_for_expiry,
)

if TYPE_CHECKING:
    from tests.conftest import FakeClock

NOW = datetime(2026, 1, 1, 12, 0, 0, tzinfo=UTC)


class BrokenBackend:
    """Backend whose every call fails."""

    async def get(self, key):
        raise ConnectionError("down")

    async def get_many(self, keys):
        raise ConnectionError("down")

    async def set(self, key, value, ttl):
        raise ConnectionError("down")

    async def delete(self, key):
        raise ConnectionError("down")

    async def delete_prefix(self, prefix):
        raise ConnectionError("down")

    async def close(self):
        raise ConnectionError("down")


class CountingBackend(MemoryCacheBackend):
    def __init__(self) -> None:
        super().__init__()
        self.batch_calls: list[list[str]] = []

    async def get_many(self, keys):
        keys = list(keys)
        self.batch_calls.append(keys)
        return await super().get_many(keys)


# ---------------------------------------------------------------------------
# ttl_for_expiry
# ---------------------------------------------------------------------------


class TestTtlForExpiry:
    def test_no_expiry_uses_default(self):
        assert ttl_for_expiry(300, None, NOW) == 300

    def test_far_expiry_uses_default(self):
        assert ttl_for_expiry(300, NOW + timedelta(days=1), NOW) == 300

    def test_near_expiry_bounds_ttl(self):
        assert ttl_for_expiry(300, NOW + timedelta(seconds=10), NOW) == 10

    def test_fractional_seconds_round_down(self):
        assert ttl_for_expiry(300, NOW + timedelta(seconds=10, milliseconds=900), NOW) == 10

    def test_under_one_second_is_not_cached(self):
        assert ttl_for_expiry(300, NOW + timedelta(milliseconds=500), NOW) is None

    def test_already_expired_is_not_cached(self):
        assert ttl_for_expiry(300, NOW - timedelta(seconds=5), NOW) is None

    def test_naive_expiry_is_utc(self):
        naive = (NOW + timedelta(seconds=30)).replace(tzinfo=None)
        assert ttl_for_expiry(300, naive, NOW) == 30

    def test_floor_is_one_second(self):
        assert ttl_for_expiry(0.5, None, NOW) == 1


# ---------------------------------------------------------------------------
# CacheKeys
# ---------------------------------------------------------------------------


class TestCacheKeys:
    def test_files_root(self):
        assert CacheKeys.files("u1", None, "name", "asc") == "files:u1:root:name:asc"

    def test_files_folder(self):
        assert CacheKeys.files("u1", "f1", "size", "desc") == "files:u1:f1:size:desc"

    def test_owner_listings_share_files_prefix(self):
        for key in (
            CacheKeys.starred("u1", "name", "asc"),
            CacheKeys.shared("u1", "name", "asc"),
            CacheKeys.trash("u1", "deleted_at", "desc"),
        ):
            assert key.startswith("files:u1:")

    def test_owner_listings_never_collide_with_folders(self):
        for folder_id in ("starred", "shared", "trash"):
            folder_key = CacheKeys.files("u1", folder_id, "name", "asc")
            assert folder_key not in {
                CacheKeys.starred("u1", "name", "asc"),
                CacheKeys.shared("u1", "name", "asc"),
                CacheKeys.trash("u1", "name", "asc"),
            }

    def test_search_hashes_query(self):
        key = CacheKeys.search("u1", "Secret Plans", 10)
        assert "Secret" not in key
        assert key == CacheKeys.search("u1", "  secret plans ", 10)
        assert key.startswith("search:u1:")

    def test_share_keys(self):
        assert CacheKeys.share_link("u1", "f1") == "share:link:u1:f1"
        assert CacheKeys.share_by_token("tok") == "share:token:tok"
        assert CacheKeys.share_folder("tok", None) == "share:folder:tok:root"
        assert CacheKeys.share_check("tok", "f1") == "share:check:tok:f1"
        assert CacheKeys.system_settings() == "app:settings"


# ---------------------------------------------------------------------------
# MemoryCacheBackend
# ---------------------------------------------------------------------------


class TestMemoryCacheBackend:
    async def test_get_set(self, cache_backend: MemoryCacheBackend):
        await cache_backend.set("k", "v", 10)
        assert await cache_backend.get("k") == "v"

    async def test_missing_is_miss(self, cache_backend: MemoryCacheBackend):
        assert await cache_backend.get("nope") is MISS

    async def test_none_is_a_value(self, cache_backend: MemoryCacheBackend):
        await cache_backend.set("k", None, 10)
        assert await cache_backend.get("k") is None

    async def test_entry_expires(self, cache_backend: MemoryCacheBackend, clock: FakeClock):
        await cache_backend.set("k", "v", 10)
        clock.advance(9)
        assert await cache_backend.get("k") == "v"
        clock.advance(1)
        assert await cache_backend.get("k") is MISS

    async def test_remaining_ttl(self, cache_backend: MemoryCacheBackend, clock: FakeClock):
        await cache_backend.set("k", "v", 10)
        clock.advance(4)
        assert cache_backend.remaining_ttl("k") == pytest.approx(6)
        assert cache_backend.remaining_ttl("other") is None

    async def test_delete_prefix(self, cache_backend: MemoryCacheBackend):
        await cache_backend.set("files:u1:a", 1, 10)
        await cache_backend.set("files:u1:b", 2, 10)
        await cache_backend.set("files:u2:a", 3, 10)
        assert await cache_backend.delete_prefix("files:u1:") == 2
        assert await cache_backend.get("files:u2:a") == 3

    async def test_get_many_returns_only_hits(self, cache_backend: MemoryCacheBackend):
        await cache_backend.set("a", 1, 10)
        await cache_backend.set("b", None, 10)
        assert await cache_backend.get_many(["a", "b", "c"]) == {"a": 1, "b": None}


# ---------------------------------------------------------------------------
# CacheCoherencyLayer
# ---------------------------------------------------------------------------


class TestCacheCoherencyLayer:
    def test_keeps_empty_injected_backend(self, cache_backend: MemoryCacheBackend):
        assert len(cache_backend) == 0
        assert CacheCoherencyLayer(cache_backend).backend is cache_backend

    async def test_set_uses_default_ttl(self, cache_backend: MemoryCacheBackend):
        layer = CacheCoherencyLayer(cache_backend, default_ttl=120)
        await layer.set("k", "v")
        assert cache_backend.remaining_ttl("k") == pytest.approx(120)

    async def test_set_refuses_sub_second_ttl(self, cache: CacheCoherencyLayer):
        assert await cache.set("k", "v", 0.5) is False
        assert await cache.get("k") is MISS

    async def test_set_bounded_never_outlives_expiry(
        self, cache_backend: MemoryCacheBackend
    ):
        layer = CacheCoherencyLayer(cache_backend, default_ttl=300)
        expires = datetime.now(UTC) + timedelta(seconds=30)
        assert await layer.set_bounded("k", "v", expires)
        remaining = cache_backend.remaining_ttl("k")
        assert remaining is not None
        assert remaining <= 30

    async def test_set_bounded_skips_nearly_expired(self, cache: CacheCoherencyLayer):
        expires = datetime.now(UTC) + timedelta(milliseconds=200)
        assert await cache.set_bounded("k", "v", expires) is False
        assert await cache.get("k") is MISS

    async def test_read_failure_is_a_miss(self):
        layer = CacheCoherencyLayer(BrokenBackend())
        assert await layer.get("k") is MISS
        assert await layer.get_many(["a", "b"]) == {}

    async def test_write_failures_are_swallowed(self):
        layer = CacheCoherencyLayer(BrokenBackend())
        assert await layer.set("k", "v") is False
        assert await layer.invalidate("k") is False
        assert await layer.invalidate_pattern("files:") == 0
        await layer.close()

    async def test_invalidate_file_cache(self, cache: CacheCoherencyLayer):
        await cache.set(CacheKeys.files("u1", None, "name", "asc"), [])
        await cache.set(CacheKeys.search("u1", "x", 10), [])
        await cache.set(CacheKeys.folder_size("u1", "f"), 10)
        await cache.set(CacheKeys.files("u2", None, "name", "asc"), [])
        assert await cache.invalidate_file_cache("u1") == 3
        assert await cache.get(CacheKeys.files("u2", None, "name", "asc")) == []

    async def test_invalidate_share_cache(self, cache: CacheCoherencyLayer):
        await cache.set(CacheKeys.share_by_token("tok"), "x")
        await cache.set(CacheKeys.share_folder("tok", None), "x")
        await cache.set(CacheKeys.share_check("tok", "f1"), "x")
        await cache.set(CacheKeys.share_link("u1", "f1"), "x")
        await cache.set(CacheKeys.share_by_token("other"), "x")
        removed = await cache.invalidate_share_cache(token="tok", owner_id="u1")
        assert removed == 4
        assert await cache.get(CacheKeys.share_by_token("other")) == "x"

    async def test_get_many_passes_through(self):
        backend = CountingBackend()
        layer = CacheCoherencyLayer(backend)
        await layer.set("a", 1)
        assert await layer.get_many(["a", "b"]) == {"a": 1}
        assert backend.batch_calls == [["a", "b"]]

    async def test_get_many_empty_skips_backend(self):
        backend = CountingBackend()
        layer = CacheCoherencyLayer(backend)
        assert await layer.get_many([]) == {}
        assert backend.batch_calls == []


# ---------------------------------------------------------------------------
# Generations
# ---------------------------------------------------------------------------


class TestGenerations:
    async def test_fill_under_current_stamp(self, cache: CacheCoherencyLayer):
        stamp = await cache.stamp(CacheScopes.files("u1"))
        assert await cache.set("k", "v", stamp=stamp)
        assert await cache.get("k") == "v"

    async def test_fill_refused_after_invalidation(self, cache: CacheCoherencyLayer):
        stamp = await cache.stamp(CacheScopes.files("u1"))
        await cache.invalidate_file_cache("u1")
        assert await cache.set("k", "v", stamp=stamp) is False
        assert await cache.get("k") is MISS

    async def test_bounded_fill_refused_after_share_invalidation(
        self, cache: CacheCoherencyLayer
    ):
        stamp = await cache.stamp(CacheScopes.share("tok"))
        await cache.invalidate_share_cache(token="tok")
        expires = datetime.now(UTC) + timedelta(minutes=5)
        assert await cache.set_bounded("k", "v", expires, stamp=stamp) is False

    async def test_scopes_are_independent(self, cache: CacheCoherencyLayer):
        stamp = await cache.stamp(CacheScopes.files("u2"))
        await cache.invalidate_file_cache("u1")
        await cache.invalidate_share_cache(token="tok", owner_id="u2")
        assert await cache.set("k", "v", stamp=stamp)

    async def test_settings_invalidation_bumps(self, cache: CacheCoherencyLayer):
        await cache.set(CacheKeys.system_settings(), "snapshot")
        stamp = await cache.stamp(CacheScopes.settings())
        assert await cache.invalidate_system_settings()
        assert await cache.get(CacheKeys.system_settings()) is MISS
        assert await cache.set(CacheKeys.system_settings(), "old", stamp=stamp) is False
