"""Per-provider API quota tracking and backoff enforcement.

Request counts are kept per (provider, operation) under calendar hour and
day keys. Each increment resets the key's expiry to the full window, so a
burst straddling a window boundary can briefly exceed the intended rate.
That approximation is deliberate and matches the provider quotas we track.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, TypeVar

from storagesync.core.config import ProviderQuota, settings
from storagesync.core.exceptions import BackoffError, QuotaExceededError
from storagesync.core.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

HOUR_TTL_SECONDS = 3600
DAY_TTL_SECONDS = 86400

# Operations that may exceed the quota because their failure cascades
PRIORITY_OPERATIONS = frozenset({"token_refresh", "file_delete", "folder_create"})


@dataclass
class UsageStats:
    """Hourly usage of one (provider, operation) pair."""

    requests_this_hour: int
    quota_limit: int
    percent_used: float


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RateLimiter:
    """Quota counters and provider backoff state.

    Usage:
        limiter = RateLimiter.get_instance()
        folders = await limiter.execute_with_rate_limit(
            "dropbox", "folder_list", lambda: provider.list_folders(parent_id)
        )
    """

    _instance: RateLimiter | None = None

    def __init__(
        self,
        quotas: dict[str, ProviderQuota] | None = None,
        default_quota: ProviderQuota | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        """Initialize the rate limiter.

        Args:
            quotas: Per-provider quotas (default from settings).
            default_quota: Quota for providers without an entry.
            clock: Returns the current UTC time; injectable for tests.
        """
        self.quotas = quotas if quotas is not None else dict(settings.provider_quotas)
        self.default_quota = default_quota or settings.default_quota
        self._clock = clock or _utcnow

        # key -> (count, expires_at)
        self._counters: dict[str, tuple[int, datetime]] = {}
        # provider -> backoff_until
        self._backoff: dict[str, datetime] = {}
        self._lock = asyncio.Lock()

        self._requests_total = 0
        self._rejected_count = 0
        self._backoff_count = 0

    @classmethod
    def get_instance(cls) -> RateLimiter:
        """Get the singleton rate limiter instance."""
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        """Reset the singleton instance (for testing)."""
        cls._instance = None

    # ========== Quotas ==========

    def quota_for(self, provider: str) -> ProviderQuota:
        """Get the configured quota for a provider."""
        return self.quotas.get(provider, self.default_quota)

    @staticmethod
    def is_priority_operation(operation: str) -> bool:
        """Check if an operation may proceed over quota."""
        return operation in PRIORITY_OPERATIONS

    def _keys(self, provider: str, operation: str) -> tuple[str, str]:
        now = self._clock().isoformat()
        base = f"ratelimit:{provider}:{operation}"
        return f"{base}:hour:{now[:13]}", f"{base}:day:{now[:10]}"

    def _count(self, key: str) -> int:
        entry = self._counters.get(key)
        if entry is None:
            return 0
        count, expires_at = entry
        if self._clock() >= expires_at:
            del self._counters[key]
            return 0
        return count

    def _increment(self, key: str, ttl_seconds: int) -> int:
        """Increment a counter; its expiry is fixed by the first increment."""
        entry = self._counters.get(key)
        now = self._clock()
        if entry is None or now >= entry[1]:
            entry = (0, now + timedelta(seconds=ttl_seconds))
        count = entry[0] + 1
        self._counters[key] = (count, entry[1])
        return count

    def _prune(self) -> None:
        """Drop every expired counter, including past windows no longer read."""
        now = self._clock()
        expired = [key for key, (_, expires_at) in self._counters.items() if now >= expires_at]
        for key in expired:
            del self._counters[key]

    async def can_make_request(self, provider: str, operation: str) -> bool:
        """Check whether both the hourly and daily counters are under quota."""
        quota = self.quota_for(provider)
        hour_key, day_key = self._keys(provider, operation)

        async with self._lock:
            hourly = self._count(hour_key)
            daily = self._count(day_key)

        return hourly < quota.requests_per_hour and daily < quota.requests_per_day

    async def record_request(self, provider: str, operation: str) -> None:
        """Count one request against the hourly and daily windows."""
        hour_key, day_key = self._keys(provider, operation)

        async with self._lock:
            self._prune()
            self._increment(hour_key, HOUR_TTL_SECONDS)
            self._increment(day_key, DAY_TTL_SECONDS)
            self._requests_total += 1

    async def get_usage(self, provider: str, operation: str) -> UsageStats:
        """Get the hourly usage of an operation against the provider quota."""
        quota = self.quota_for(provider)
        hour_key, _ = self._keys(provider, operation)

        async with self._lock:
            current = self._count(hour_key)

        return UsageStats(
            requests_this_hour=current,
            quota_limit=quota.requests_per_hour,
            percent_used=current / quota.requests_per_hour * 100 if quota.requests_per_hour else 0.0,
        )

    # ========== Backoff ==========

    def handle_rate_limit_error(self, provider: str, retry_after: int | None = None) -> None:
        """Put a provider into backoff after it signalled a rate limit.

        Args:
            provider: Provider identifier.
            retry_after: Seconds to back off (default from settings).
        """
        seconds = retry_after if retry_after and retry_after > 0 else settings.backoff_default_seconds
        backoff_until = self._clock() + timedelta(seconds=seconds)
        self._backoff[provider] = backoff_until
        self._backoff_count += 1

        logger.warning(
            "provider_backoff_set",
            provider=provider,
            retry_after=seconds,
            backoff_until=backoff_until.isoformat(),
        )

    def backoff_remaining(self, provider: str) -> int:
        """Seconds left in a provider's backoff, 0 when not backing off."""
        backoff_until = self._backoff.get(provider)
        if backoff_until is None:
            return 0

        remaining = (backoff_until - self._clock()).total_seconds()
        if remaining <= 0:
            # Backoff expired, remove it
            del self._backoff[provider]
            return 0
        return max(1, int(remaining))

    def is_in_backoff(self, provider: str) -> bool:
        """Check if a provider is currently in backoff."""
        return self.backoff_remaining(provider) > 0

    @staticmethod
    async def wait_with_backoff(attempt: int) -> None:
        """Sleep for an exponential delay, capped at 30 seconds."""
        delay = min(1.0 * (2 ** attempt), 30.0)
        await asyncio.sleep(delay)

    # ========== Execution ==========

    async def execute_with_rate_limit(
        self,
        provider: str,
        operation: str,
        fn: Callable[[], Awaitable[T]],
    ) -> T:
        """Run a provider call under quota and backoff enforcement.

        Args:
            provider: Provider identifier.
            operation: Operation name, e.g. "file_upload".
            fn: Zero-argument coroutine factory performing the call.

        Returns:
            Whatever ``fn`` returns.

        Raises:
            BackoffError: If the provider is in backoff, or ``fn`` reported a
                provider rate limit (the provider then enters backoff).
            QuotaExceededError: If a non-priority operation is over quota.
        """
        remaining = self.backoff_remaining(provider)
        if remaining:
            self._rejected_count += 1
            logger.warning(
                "provider_in_backoff",
                provider=provider,
                operation=operation,
                wait_seconds=remaining,
            )
            raise BackoffError(retry_after=remaining, provider=provider)

        if not await self.can_make_request(provider, operation):
            if not self.is_priority_operation(operation):
                self._rejected_count += 1
                logger.warning("quota_exceeded", provider=provider, operation=operation)
                raise QuotaExceededError(provider, operation)

            logger.warning(
                "priority_operation_over_quota",
                provider=provider,
                operation=operation,
            )

        try:
            result = await fn()
        except BackoffError as e:
            self.handle_rate_limit_error(provider, e.retry_after)
            raise

        await self.record_request(provider, operation)
        return result

    def get_stats(self) -> dict[str, Any]:
        """Get rate limiter statistics.

        Returns:
            Dictionary with rate limiter stats.
        """
        return {
            "requests_total": self._requests_total,
            "rejected_count": self._rejected_count,
            "backoff_count": self._backoff_count,
            "providers_in_backoff": [p for p in list(self._backoff) if self.is_in_backoff(p)],
        }
