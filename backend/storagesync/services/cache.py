"""Cache-aside layer for file URLs, gallery photo lists and provider lists.

A missing entry is always safe: callers fall back to the database or the
provider, so invalidation only has to be prompt, not perfect.
"""

from __future__ import annotations

import asyncio
import fnmatch
from datetime import datetime, timedelta, timezone
from typing import Any

from storagesync.core.config import settings
from storagesync.core.logging import get_logger

logger = get_logger(__name__)


class CacheService:
    """In-memory TTL key-value cache.

    Thread-safe using asyncio locks.
    """

    _instance: CacheService | None = None

    def __init__(self, default_ttl: int | None = None):
        """Initialize cache.

        Args:
            default_ttl: Time-to-live in seconds (default from settings).
        """
        self.default_ttl = default_ttl or settings.cache_default_ttl
        # key -> (expires_at, value)
        self._cache: dict[str, tuple[datetime, Any]] = {}
        self._lock = asyncio.Lock()
        self._hits = 0
        self._misses = 0

    @classmethod
    def get_instance(cls) -> CacheService:
        """Get the singleton cache instance."""
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        """Reset the singleton instance (for testing)."""
        cls._instance = None

    # ========== Primitives ==========

    async def get(self, key: str) -> Any | None:
        async with self._lock:
            entry = self._cache.get(key)
            if entry is None:
                self._misses += 1
                return None

            expires_at, value = entry
            if datetime.now(timezone.utc) >= expires_at:
                # Expired
                del self._cache[key]
                self._misses += 1
                return None

            self._hits += 1
            return value

    async def set(self, key: str, value: Any, ttl: int | None = None) -> None:
        expires_at = datetime.now(timezone.utc) + timedelta(seconds=ttl or self.default_ttl)
        async with self._lock:
            self._cache[key] = (expires_at, value)

    async def delete(self, key: str) -> None:
        async with self._lock:
            if self._cache.pop(key, None) is not None:
                logger.debug("cache_invalidated", key=key)

    async def invalidate_pattern(self, pattern: str) -> int:
        """Delete every key matching a glob pattern, e.g. ``gallery:photos:*``.

        Returns:
            Number of keys removed.
        """
        async with self._lock:
            keys = [k for k in self._cache if fnmatch.fnmatchcase(k, pattern)]
            for key in keys:
                del self._cache[key]

        logger.debug("cache_pattern_invalidated", pattern=pattern, keys_removed=len(keys))
        return len(keys)

    async def clear(self) -> None:
        async with self._lock:
            self._cache.clear()

    # ========== File URLs ==========

    async def cache_file_url(self, file_id: str, url: str, ttl: int | None = None) -> None:
        await self.set(f"file:url:{file_id}", url, ttl)

    async def get_file_url(self, file_id: str) -> str | None:
        return await self.get(f"file:url:{file_id}")

    async def invalidate_file_url(self, file_id: str) -> None:
        await self.delete(f"file:url:{file_id}")

    # ========== Gallery photo lists ==========

    async def cache_gallery_photos(
        self, gallery_id: int, photos: list[Any], ttl: int | None = None
    ) -> None:
        await self.set(f"gallery:photos:{gallery_id}", photos, ttl)

    async def get_gallery_photos(self, gallery_id: int) -> list[Any] | None:
        return await self.get(f"gallery:photos:{gallery_id}")

    async def invalidate_gallery_photos(self, gallery_id: int) -> None:
        await self.delete(f"gallery:photos:{gallery_id}")

    # ========== User storage providers ==========

    async def cache_storage_providers(
        self, user_id: int, providers: list[Any], ttl: int | None = None
    ) -> None:
        await self.set(f"user:providers:{user_id}", providers, ttl)

    async def get_storage_providers(self, user_id: int) -> list[Any] | None:
        return await self.get(f"user:providers:{user_id}")

    async def invalidate_storage_providers(self, user_id: int) -> None:
        await self.delete(f"user:providers:{user_id}")

    # ========== Generic metadata ==========

    async def cache_metadata(self, key: str, value: Any, ttl: int | None = None) -> None:
        await self.set(f"metadata:{key}", value, ttl)

    async def get_metadata(self, key: str) -> Any | None:
        return await self.get(f"metadata:{key}")

    def get_stats(self) -> dict[str, Any]:
        """Get cache statistics."""
        return {
            "keys": len(self._cache),
            "hits": self._hits,
            "misses": self._misses,
            "default_ttl": self.default_ttl,
        }
