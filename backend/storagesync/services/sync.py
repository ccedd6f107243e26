"""Reconciliation of provider change feeds with the local catalog.

``sync_user`` pulls the change feed from the stored cursor, applies every
change in feed order and only then persists the new cursor. Any failure
leaves the cursor untouched, so the same changes are delivered again on the
next run. Each write is independently idempotent, which keeps re-delivery
and concurrent syncs of the same user safe.
"""

from __future__ import annotations

import asyncio
import enum
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from storagesync.core.config import settings
from storagesync.core.logging import get_logger
from storagesync.db.models import (
    Album,
    ConnectionStatus,
    FolderMapping,
    Photo,
    StorageConnection,
    SyncState,
)
from storagesync.db.session import async_session_maker
from storagesync.db.upsert import upsert_insert
from storagesync.providers.base import Change, ChangeType
from storagesync.services.audit import AuditLogger
from storagesync.services.cache import CacheService
from storagesync.services.folder_manager import FolderManager
from storagesync.services.rate_limiter import RateLimiter
from storagesync.services.scheduler import CronScheduler, Scheduler, ScheduledJob
from storagesync.services.token_manager import TokenManager

logger = get_logger(__name__)

# Upper bound on change pages fetched by one sync_user call
MAX_PAGES_PER_SYNC = 10

SYNC_JOB_NAME = "storage-sync"


class ConflictType(str, enum.Enum):
    """Inconsistencies detected while applying changes."""

    FOLDER_MISSING = "folder_missing"
    FILE_MISSING = "file_missing"
    STRUCTURE_BROKEN = "structure_broken"


@dataclass
class Conflict:
    type: ConflictType
    details: str
    gallery_id: int | None = None
    photo_id: int | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["type"] = self.type.value
        return data


@dataclass
class SyncResult:
    """Outcome of one sync_user call."""

    files_processed: int = 0
    files_deleted: int = 0
    files_updated: int = 0
    conflicts: list[Conflict] = field(default_factory=list)


@dataclass
class SweepSummary:
    """Outcome of one sync_all sweep, keyed by ``"{user_id}:{provider}"``."""

    skipped: bool = False
    succeeded: int = 0
    failed: int = 0
    results: dict[str, SyncResult] = field(default_factory=dict)
    errors: dict[str, str] = field(default_factory=dict)


class SyncService:
    """Pull-based reconciliation for every active storage connection.

    Only one full sweep runs per process at a time; individual ``sync_user``
    calls are not serialized.
    """

    _instance: SyncService | None = None

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        token_manager: TokenManager | None = None,
        folder_manager: FolderManager | None = None,
        rate_limiter: RateLimiter | None = None,
        cache: CacheService | None = None,
        audit: AuditLogger | None = None,
    ):
        self.session_factory = session_factory or async_session_maker
        self.rate_limiter = rate_limiter or RateLimiter.get_instance()
        self.cache = cache or CacheService.get_instance()
        self.audit = audit or AuditLogger(self.session_factory)
        self.token_manager = token_manager or TokenManager(
            self.session_factory,
            rate_limiter=self.rate_limiter,
            audit=self.audit,
            cache=self.cache,
        )
        self.folder_manager = folder_manager or FolderManager(
            self.session_factory,
            token_manager=self.token_manager,
            rate_limiter=self.rate_limiter,
        )

        self._sync_lock = asyncio.Lock()
        self._scheduler: Scheduler | None = None
        self._job: ScheduledJob | None = None

        self._syncs_completed = 0
        self._syncs_failed = 0
        self._changes_processed = 0
        self._last_sweep_at: datetime | None = None

    @classmethod
    def get_instance(cls) -> SyncService:
        """Get the singleton instance of SyncService."""
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        """Reset the singleton instance (for testing)."""
        cls._instance = None

    # ========== Per-user sync ==========

    async def sync_user(self, user_id: int, provider: str) -> SyncResult:
        """Apply the provider's pending changes for one user.

        Raises:
            Any error from credentials, the provider or the database. The
            stored cursor is left unchanged in that case.
        """
        result = SyncResult()
        logger.info("sync_user_started", user_id=user_id, provider=provider)

        try:
            cursor = await self._load_cursor(user_id, provider)
            client = await self.token_manager.get_provider(user_id, provider)

            next_cursor = cursor
            for _ in range(MAX_PAGES_PER_SYNC):
                page_token = next_cursor
                changes = await self.rate_limiter.execute_with_rate_limit(
                    provider,
                    "list_changes",
                    lambda: client.get_changes(page_token),
                )

                for change in changes.changes:
                    await self._apply_change(user_id, provider, change, result)

                next_cursor = changes.next_page_token or next_cursor
                if not changes.has_more:
                    break

            await self._save_cursor(user_id, provider, next_cursor)
            await self.cache.invalidate_storage_providers(user_id)

            if result.conflicts:
                logger.warning(
                    "sync_conflicts_detected",
                    user_id=user_id,
                    provider=provider,
                    conflicts_count=len(result.conflicts),
                )
                await self.audit.log_conflict(
                    user_id, provider, [c.to_dict() for c in result.conflicts]
                )

        except Exception as e:
            self._syncs_failed += 1
            logger.error(
                "sync_user_failed",
                user_id=user_id,
                provider=provider,
                files_processed=result.files_processed,
                error=str(e),
                error_type=type(e).__name__,
            )
            await self.audit.log_error(
                f"sync:{provider}",
                e,
                user_id=user_id,
                metadata={"files_processed": result.files_processed},
            )
            raise

        self._syncs_completed += 1
        self._changes_processed += result.files_processed
        logger.info(
            "sync_user_completed",
            user_id=user_id,
            provider=provider,
            files_processed=result.files_processed,
            files_deleted=result.files_deleted,
            files_updated=result.files_updated,
            conflicts=len(result.conflicts),
        )
        return result

    async def _apply_change(
        self, user_id: int, provider: str, change: Change, result: SyncResult
    ) -> None:
        if change.type == ChangeType.DELETED:
            result.files_deleted += await self._handle_deleted(user_id, provider, change, result)
        elif change.type == ChangeType.RENAMED:
            if await self._handle_renamed(user_id, change):
                result.files_updated += 1
        elif change.type == ChangeType.MOVED:
            if await self._handle_moved(user_id, provider, change, result):
                result.files_updated += 1
        elif change.type == ChangeType.MODIFIED:
            result.files_updated += 1

        result.files_processed += 1

    async def _handle_deleted(
        self, user_id: int, provider: str, change: Change, result: SyncResult
    ) -> int:
        """Soft-delete the user's photos backed by the removed file."""
        for mapping in await self._user_mappings(user_id, provider, change.file_id):
            result.conflicts.append(
                Conflict(
                    type=ConflictType.FOLDER_MISSING,
                    details=f"Folder {change.file_id} was deleted in {provider}",
                    gallery_id=mapping.gallery_id,
                )
            )

        now = datetime.now(timezone.utc)
        async with self.session_factory() as db:
            photos = (
                await db.execute(
                    select(Photo)
                    .join(Album, Photo.album_id == Album.id)
                    .where(
                        Album.user_id == user_id,
                        Photo.provider_file_id == change.file_id,
                        Photo.deleted_at.is_(None),
                    )
                )
            ).scalars().all()

            for photo in photos:
                photo.deleted_at = now
            await db.commit()

        await self.cache.invalidate_file_url(change.file_id)
        for photo in photos:
            await self.cache.invalidate_gallery_photos(photo.album_id)
            await self.audit.log_file_operation(
                "delete",
                change.file_id,
                user_id=user_id,
                metadata={
                    "photo_id": photo.id,
                    "album_id": photo.album_id,
                    "provider": provider,
                    "reason": "deleted_in_storage",
                },
            )

        return len(photos)

    async def _handle_renamed(self, user_id: int, change: Change) -> bool:
        """Apply a file rename; only the Dropbox adapter detects renames."""
        new_name = change.new_name or (change.file.name if change.file else None)
        if not new_name:
            return False

        async with self.session_factory() as db:
            photos = (
                await db.execute(
                    select(Photo)
                    .join(Album, Photo.album_id == Album.id)
                    .where(
                        Album.user_id == user_id,
                        Photo.provider_file_id == change.file_id,
                    )
                )
            ).scalars().all()

            for photo in photos:
                photo.name = new_name
            await db.commit()

        for album_id in {p.album_id for p in photos}:
            await self.cache.invalidate_gallery_photos(album_id)
        return True

    async def _handle_moved(
        self, user_id: int, provider: str, change: Change, result: SyncResult
    ) -> bool:
        folder_id = change.folder.id if change.folder else change.file_id
        new_parent_id = change.new_parent_id or (change.folder.parent_id if change.folder else None)
        if not new_parent_id:
            return False

        mappings = await self._user_mappings(user_id, provider, folder_id)
        if not mappings:
            return False

        async with self.session_factory() as db:
            await db.execute(
                update(FolderMapping)
                .where(FolderMapping.id.in_([m.id for m in mappings]))
                .values(parent_folder_id=new_parent_id)
            )
            await db.commit()

        root_id = await self.folder_manager.get_root_folder_id(user_id, provider)
        if new_parent_id != root_id and not await self._user_mappings(user_id, provider, new_parent_id):
            for mapping in mappings:
                result.conflicts.append(
                    Conflict(
                        type=ConflictType.STRUCTURE_BROKEN,
                        details=f"Folder {folder_id} moved outside the gallery tree (parent {new_parent_id})",
                        gallery_id=mapping.gallery_id,
                    )
                )

        logger.info(
            "folder_mapping_moved",
            user_id=user_id,
            provider=provider,
            folder_id=folder_id,
            parent_folder_id=new_parent_id,
        )
        return True

    async def _user_mappings(
        self, user_id: int, provider: str, provider_folder_id: str
    ) -> list[FolderMapping]:
        """Mappings of the user's galleries that point at a provider folder."""
        async with self.session_factory() as db:
            result = await db.execute(
                select(FolderMapping)
                .join(Album, FolderMapping.gallery_id == Album.id)
                .where(
                    Album.user_id == user_id,
                    FolderMapping.provider == provider,
                    FolderMapping.provider_folder_id == provider_folder_id,
                )
            )
            return list(result.scalars().all())

    # ========== Cursor ==========

    async def _load_cursor(self, user_id: int, provider: str) -> str | None:
        async with self.session_factory() as db:
            result = await db.execute(
                select(SyncState.last_sync_token).where(
                    SyncState.user_id == user_id,
                    SyncState.provider == provider,
                )
            )
            return result.scalar_one_or_none()

    async def _save_cursor(self, user_id: int, provider: str, cursor: str | None) -> None:
        now = datetime.now(timezone.utc)
        async with self.session_factory() as db:
            stmt = upsert_insert(db, SyncState).values(
                user_id=user_id,
                provider=provider,
                last_sync_token=cursor,
                last_sync_at=now,
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=["user_id", "provider"],
                set_={"last_sync_token": cursor, "last_sync_at": now},
            )
            await db.execute(stmt)
            await db.commit()

    async def get_sync_state(self, user_id: int, provider: str) -> SyncState | None:
        async with self.session_factory() as db:
            result = await db.execute(
                select(SyncState).where(
                    SyncState.user_id == user_id,
                    SyncState.provider == provider,
                )
            )
            return result.scalar_one_or_none()

    # ========== Sweep ==========

    async def sync_all(self) -> SweepSummary:
        """Sync every active connection; a no-op while a sweep is running."""
        if self._sync_lock.locked():
            logger.info("sync_sweep_already_running")
            return SweepSummary(skipped=True)

        async with self._sync_lock:
            summary = SweepSummary()

            async with self.session_factory() as db:
                result = await db.execute(
                    select(StorageConnection.user_id, StorageConnection.provider)
                    .where(StorageConnection.status == ConnectionStatus.ACTIVE)
                    .order_by(StorageConnection.user_id)
                )
                connections = result.all()

            logger.info("sync_sweep_started", connections=len(connections))

            for user_id, provider in connections:
                key = f"{user_id}:{provider}"
                try:
                    summary.results[key] = await self.sync_user(user_id, provider)
                    summary.succeeded += 1
                except Exception as e:
                    # One user's failure must not abort the sweep
                    summary.failed += 1
                    summary.errors[key] = str(e)

            self._last_sweep_at = datetime.now(timezone.utc)
            logger.info(
                "sync_sweep_completed",
                succeeded=summary.succeeded,
                failed=summary.failed,
            )
            return summary

    def start_sync_job(
        self, schedule: str | None = None, scheduler: Scheduler | None = None
    ) -> ScheduledJob:
        """Register the sweep on a cron schedule (default hourly)."""
        self.stop_sync_job()
        self._scheduler = scheduler or CronScheduler()
        self._job = self._scheduler.schedule(
            schedule or settings.sync_schedule, self.sync_all, name=SYNC_JOB_NAME
        )
        return self._job

    def stop_sync_job(self) -> None:
        if self._job is not None:
            self._job.cancel()
            self._job = None

    @property
    def is_syncing(self) -> bool:
        """Check if a full sweep is in progress."""
        return self._sync_lock.locked()

    @property
    def stats(self) -> dict[str, Any]:
        """Get sync service statistics."""
        return {
            "is_syncing": self.is_syncing,
            "job_scheduled": self._job is not None,
            "syncs_completed": self._syncs_completed,
            "syncs_failed": self._syncs_failed,
            "changes_processed": self._changes_processed,
            "last_sweep_at": self._last_sweep_at.isoformat() if self._last_sweep_at else None,
        }


# Convenience function for dependency injection
def get_sync_service() -> SyncService:
    """Get the SyncService singleton instance."""
    return SyncService.get_instance()
