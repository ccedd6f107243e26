"""Storage connection, quota and sync endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query

from storagesync.core.exceptions import (
    AuthError,
    BackoffError,
    NotFoundError,
    QuotaExceededError,
    StorageSyncError,
    UnsupportedProviderError,
)
from storagesync.core.logging import get_logger
from storagesync.schemas.storage import (
    OperationUsage,
    ProviderRateLimit,
    RateLimitList,
    StorageProviderList,
    StorageProviderStatus,
    SyncConflictResponse,
    SyncResponse,
)
from storagesync.services.cache import CacheService
from storagesync.services.rate_limiter import RateLimiter
from storagesync.services.sync import SyncService, get_sync_service

logger = get_logger(__name__)

router = APIRouter(prefix="/storage", tags=["storage"])

# Operations reported by the rate limit endpoint
TRACKED_OPERATIONS = (
    "file_upload",
    "file_delete",
    "folder_create",
    "folder_list",
    "list_changes",
    "token_refresh",
)

WARNING_THRESHOLD_PERCENT = 80.0


def get_rate_limiter() -> RateLimiter:
    return RateLimiter.get_instance()


def get_cache() -> CacheService:
    return CacheService.get_instance()


def _to_http_error(error: StorageSyncError) -> HTTPException:
    """Map a domain error onto an HTTP status code."""
    detail = {"code": error.code, "message": error.message}
    if isinstance(error, NotFoundError):
        return HTTPException(status_code=404, detail=detail)
    if isinstance(error, AuthError):
        return HTTPException(status_code=401, detail=detail)
    if isinstance(error, BackoffError):
        headers = {"Retry-After": str(error.retry_after)} if error.retry_after else None
        return HTTPException(status_code=429, detail=detail, headers=headers)
    if isinstance(error, QuotaExceededError):
        return HTTPException(status_code=429, detail=detail)
    if isinstance(error, UnsupportedProviderError):
        return HTTPException(status_code=400, detail=detail)
    return HTTPException(status_code=503, detail=detail)


# =============================================================================
# Connections
# =============================================================================


@router.get("/providers", response_model=StorageProviderList)
async def list_providers(
    user_id: int = Query(...),
    sync_service: SyncService = Depends(get_sync_service),
    cache: CacheService = Depends(get_cache),
) -> StorageProviderList:
    """List the user's storage connections, including disconnected ones.

    Disconnected connections carry their last error so the user can be
    asked to re-authenticate.
    """
    cached = await cache.get_storage_providers(user_id)
    if cached is not None:
        items = [StorageProviderStatus.model_validate(item) for item in cached]
        return StorageProviderList(items=items, total=len(items))

    items: list[StorageProviderStatus] = []
    for connection in await sync_service.token_manager.get_user_connections(user_id):
        state = await sync_service.get_sync_state(user_id, connection.provider)
        items.append(
            StorageProviderStatus(
                provider=connection.provider,
                status=connection.status.value,
                expires_at=connection.expires_at,
                last_error=connection.last_error,
                last_error_at=connection.last_error_at,
                root_folder_id=await sync_service.folder_manager.get_root_folder_id(
                    user_id, connection.provider
                ),
                last_sync_at=state.last_sync_at if state else None,
            )
        )

    await cache.cache_storage_providers(user_id, [item.model_dump() for item in items])
    return StorageProviderList(items=items, total=len(items))


@router.get("/rate-limits", response_model=RateLimitList)
async def get_rate_limits(
    user_id: int = Query(...),
    sync_service: SyncService = Depends(get_sync_service),
    rate_limiter: RateLimiter = Depends(get_rate_limiter),
) -> RateLimitList:
    """Get quota usage and backoff state for each provider the user connected."""
    items: list[ProviderRateLimit] = []

    for connection in await sync_service.token_manager.get_user_connections(user_id):
        provider = connection.provider
        quota = rate_limiter.quota_for(provider)

        operations = []
        for operation in TRACKED_OPERATIONS:
            usage = await rate_limiter.get_usage(provider, operation)
            operations.append(
                OperationUsage(
                    operation=operation,
                    requests_this_hour=usage.requests_this_hour,
                    quota_limit=usage.quota_limit,
                    percent_used=round(usage.percent_used, 2),
                )
            )

        backoff_remaining = rate_limiter.backoff_remaining(provider)
        if backoff_remaining:
            status = "backoff"
        elif any(op.percent_used > WARNING_THRESHOLD_PERCENT for op in operations):
            status = "warning"
        else:
            status = "normal"

        items.append(
            ProviderRateLimit(
                provider=provider,
                status=status,
                backoff_remaining_seconds=backoff_remaining,
                requests_per_hour=quota.requests_per_hour,
                requests_per_day=quota.requests_per_day,
                operations=operations,
            )
        )

    return RateLimitList(items=items)


# =============================================================================
# Sync
# =============================================================================


@router.post("/sync", response_model=SyncResponse)
async def sync_now(
    user_id: int = Query(...),
    provider: str = Query(...),
    sync_service: SyncService = Depends(get_sync_service),
) -> SyncResponse:
    """Run an on-demand sync of one user's provider."""
    try:
        result = await sync_service.sync_user(user_id, provider)
    except StorageSyncError as e:
        logger.warning(
            "on_demand_sync_failed",
            user_id=user_id,
            provider=provider,
            code=e.code,
        )
        raise _to_http_error(e) from e

    return SyncResponse(
        provider=provider,
        files_processed=result.files_processed,
        files_deleted=result.files_deleted,
        files_updated=result.files_updated,
        conflicts=[SyncConflictResponse(**c.to_dict()) for c in result.conflicts],
    )
