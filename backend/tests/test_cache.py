"""Tests for the cache service."""

from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest

from storagesync.services.cache import CacheService


# =============================================================================
# Primitives
# =============================================================================


class TestCachePrimitives:
    """Tests for get/set/delete and expiry."""

    @pytest.mark.asyncio
    async def test_set_and_get(self, cache):
        await cache.set("k", {"a": 1})

        assert await cache.get("k") == {"a": 1}

    @pytest.mark.asyncio
    async def test_missing_key_returns_none(self, cache):
        assert await cache.get("missing") is None

    @pytest.mark.asyncio
    async def test_entry_expires(self, cache):
        await cache.set("k", "v", ttl=10)
        later = datetime.now(timezone.utc) + timedelta(seconds=11)

        with patch("storagesync.services.cache.datetime") as mock_datetime:
            mock_datetime.now.return_value = later
            assert await cache.get("k") is None

        assert cache.get_stats()["keys"] == 0

    @pytest.mark.asyncio
    async def test_delete(self, cache):
        await cache.set("k", "v")
        await cache.delete("k")

        assert await cache.get("k") is None

    @pytest.mark.asyncio
    async def test_invalidate_pattern(self, cache):
        await cache.cache_gallery_photos(1, [1, 2])
        await cache.cache_gallery_photos(2, [3])
        await cache.cache_file_url("f1", "https://example.com/f1")

        removed = await cache.invalidate_pattern("gallery:photos:*")

        assert removed == 2
        assert await cache.get_gallery_photos(1) is None
        assert await cache.get_file_url("f1") == "https://example.com/f1"

    @pytest.mark.asyncio
    async def test_stats_count_hits_and_misses(self, cache):
        await cache.set("k", "v")
        await cache.get("k")
        await cache.get("nope")

        stats = cache.get_stats()
        assert stats["hits"] == 1
        assert stats["misses"] == 1
        assert stats["default_ttl"] == 60


# =============================================================================
# Typed helpers
# =============================================================================


class TestCacheHelpers:
    @pytest.mark.asyncio
    async def test_file_url_roundtrip_and_invalidate(self, cache):
        await cache.cache_file_url("f1", "url")
        assert await cache.get("file:url:f1") == "url"

        await cache.invalidate_file_url("f1")
        assert await cache.get_file_url("f1") is None

    @pytest.mark.asyncio
    async def test_storage_providers_keyed_by_user(self, cache):
        await cache.cache_storage_providers(7, [{"provider": "dropbox"}])

        assert await cache.get_storage_providers(7) == [{"provider": "dropbox"}]
        assert await cache.get_storage_providers(8) is None

        await cache.invalidate_storage_providers(7)
        assert await cache.get_storage_providers(7) is None

    @pytest.mark.asyncio
    async def test_metadata_namespace(self, cache):
        await cache.cache_metadata("quota:google-drive", {"used": 5})

        assert await cache.get("metadata:quota:google-drive") == {"used": 5}
        assert await cache.get_metadata("quota:google-drive") == {"used": 5}


class TestCacheSingleton:
    def test_get_instance_returns_same_object(self):
        CacheService.reset_instance()
        try:
            assert CacheService.get_instance() is CacheService.get_instance()
        finally:
            CacheService.reset_instance()
