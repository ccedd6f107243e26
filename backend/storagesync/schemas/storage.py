"""Storage connection, quota and sync schemas."""

from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel


class StorageProviderStatus(BaseModel):
    """A user's connection to one provider."""

    provider: str
    status: str  # "active" or "disconnected"
    expires_at: datetime | None = None
    last_error: str | None = None
    last_error_at: datetime | None = None
    root_folder_id: str | None = None
    last_sync_at: datetime | None = None


class StorageProviderList(BaseModel):
    items: list[StorageProviderStatus]
    total: int


class OperationUsage(BaseModel):
    operation: str
    requests_this_hour: int
    quota_limit: int
    percent_used: float


class ProviderRateLimit(BaseModel):
    """Quota usage and backoff state for one connected provider."""

    provider: str
    status: Literal["normal", "warning", "backoff"]
    backoff_remaining_seconds: int = 0
    requests_per_hour: int
    requests_per_day: int
    operations: list[OperationUsage]


class RateLimitList(BaseModel):
    items: list[ProviderRateLimit]


class SyncConflictResponse(BaseModel):
    type: str
    details: str
    gallery_id: int | None = None
    photo_id: int | None = None


class SyncResponse(BaseModel):
    """Result of an on-demand sync."""

    provider: str
    files_processed: int
    files_deleted: int
    files_updated: int
    conflicts: list[SyncConflictResponse] = []
