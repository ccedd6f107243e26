"""Mapping of the gallery hierarchy onto provider folder trees.

Every user gets one root folder per provider; galleries become folders under
it and sub-galleries folders under their parent gallery's folder. Mapping
writes are upserts so concurrent callers converge on one row.
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from storagesync.core.config import settings
from storagesync.core.exceptions import NotFoundError
from storagesync.core.logging import get_logger
from storagesync.db.models import ConnectionStatus, FolderMapping, RootFolder, StorageConnection
from storagesync.db.session import async_session_maker
from storagesync.db.upsert import upsert_insert
from storagesync.providers.base import Folder
from storagesync.services.rate_limiter import RateLimiter
from storagesync.services.token_manager import TokenManager

logger = get_logger(__name__)


class FolderManager:
    """Creates provider folders for galleries and persists the mapping."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        token_manager: TokenManager | None = None,
        rate_limiter: RateLimiter | None = None,
        root_folder_name: str | None = None,
    ):
        self.session_factory = session_factory or async_session_maker
        self.rate_limiter = rate_limiter or RateLimiter.get_instance()
        self.token_manager = token_manager or TokenManager(
            self.session_factory, rate_limiter=self.rate_limiter
        )
        self.root_folder_name = root_folder_name or settings.root_folder_name

    async def get_active_provider(self, user_id: int) -> str:
        """Get the provider id of the user's active connection.

        Raises:
            NotFoundError: If the user has no active connection.
        """
        async with self.session_factory() as db:
            result = await db.execute(
                select(StorageConnection.provider)
                .where(
                    StorageConnection.user_id == user_id,
                    StorageConnection.status == ConnectionStatus.ACTIVE,
                )
                .order_by(StorageConnection.updated_at.desc())
                .limit(1)
            )
            provider = result.scalar_one_or_none()

        if provider is None:
            raise NotFoundError(f"No active storage connection for user {user_id}")
        return provider

    async def get_root_folder_id(self, user_id: int, provider: str) -> str | None:
        async with self.session_factory() as db:
            result = await db.execute(
                select(RootFolder.provider_folder_id).where(
                    RootFolder.user_id == user_id,
                    RootFolder.provider == provider,
                )
            )
            return result.scalar_one_or_none()

    async def initialize_root_folder(self, user_id: int, provider: str) -> str:
        """Ensure the user's root folder exists and return its provider id.

        Only calls the provider when no root folder is persisted. When two
        callers race, the first insert wins and both return its folder id.
        """
        existing = await self.get_root_folder_id(user_id, provider)
        if existing:
            return existing

        folder = await self._create_folder(user_id, provider, self.root_folder_name, None)

        async with self.session_factory() as db:
            stmt = (
                upsert_insert(db, RootFolder)
                .values(user_id=user_id, provider=provider, provider_folder_id=folder.id)
                .on_conflict_do_nothing(index_elements=["user_id", "provider"])
            )
            await db.execute(stmt)
            await db.commit()

        persisted = await self.get_root_folder_id(user_id, provider)
        if persisted is None:
            raise NotFoundError(f"Root folder for user {user_id} was not persisted")

        await self.token_manager.cache.invalidate_storage_providers(user_id)

        logger.info(
            "root_folder_initialized",
            user_id=user_id,
            provider=provider,
            folder_id=persisted,
            created=persisted == folder.id,
        )
        return persisted

    async def create_gallery_folder(self, user_id: int, gallery_id: int, name: str) -> str:
        """Create the folder of a top-level gallery under the user's root.

        Raises:
            NotFoundError: If the user has no active connection.
        """
        provider = await self.get_active_provider(user_id)
        root_id = await self.initialize_root_folder(user_id, provider)

        folder = await self._create_folder(user_id, provider, name, root_id)
        await self._save_mapping(gallery_id, provider, folder.id, root_id)

        logger.info(
            "gallery_folder_created",
            user_id=user_id,
            gallery_id=gallery_id,
            provider=provider,
            folder_id=folder.id,
        )
        return folder.id

    async def create_sub_gallery_folder(
        self, user_id: int, parent_gallery_id: int, sub_gallery_id: int, name: str
    ) -> str:
        """Create a sub-gallery folder inside its parent gallery's folder.

        Raises:
            NotFoundError: If the user has no active connection or the parent
                gallery has no folder mapping.
        """
        provider = await self.get_active_provider(user_id)
        parent = await self.get_folder_mapping(parent_gallery_id, provider)
        if parent is None:
            raise NotFoundError(f"Parent gallery {parent_gallery_id} has no folder mapping")

        folder = await self._create_folder(user_id, provider, name, parent.provider_folder_id)
        await self._save_mapping(sub_gallery_id, provider, folder.id, parent.provider_folder_id)

        logger.info(
            "sub_gallery_folder_created",
            user_id=user_id,
            gallery_id=sub_gallery_id,
            parent_gallery_id=parent_gallery_id,
            provider=provider,
            folder_id=folder.id,
        )
        return folder.id

    async def get_folder_mapping(
        self, gallery_id: int, provider: str | None = None
    ) -> FolderMapping | None:
        """Look up a gallery's folder mapping without calling the provider."""
        async with self.session_factory() as db:
            query = select(FolderMapping).where(FolderMapping.gallery_id == gallery_id)
            if provider is not None:
                query = query.where(FolderMapping.provider == provider)
            result = await db.execute(query.order_by(FolderMapping.created_at).limit(1))
            return result.scalar_one_or_none()

    async def list_gallery_subfolders(self, user_id: int, gallery_id: int) -> list[Folder]:
        """List the provider folders inside a gallery's folder.

        Raises:
            NotFoundError: If the gallery has no folder mapping.
        """
        provider = await self.get_active_provider(user_id)
        mapping = await self.get_folder_mapping(gallery_id, provider)
        if mapping is None:
            raise NotFoundError(f"Gallery {gallery_id} has no folder mapping")

        client = await self.token_manager.get_provider(user_id, provider)
        return await self.rate_limiter.execute_with_rate_limit(
            provider,
            "folder_list",
            lambda: client.list_folders(mapping.provider_folder_id),
        )

    # ========== Helpers ==========

    async def _create_folder(
        self, user_id: int, provider: str, name: str, parent_id: str | None
    ) -> Folder:
        client = await self.token_manager.get_provider(user_id, provider)
        return await self.rate_limiter.execute_with_rate_limit(
            provider,
            "folder_create",
            lambda: client.create_folder(name, parent_id),
        )

    async def _save_mapping(
        self, gallery_id: int, provider: str, folder_id: str, parent_folder_id: str | None
    ) -> None:
        async with self.session_factory() as db:
            stmt = upsert_insert(db, FolderMapping).values(
                gallery_id=gallery_id,
                provider=provider,
                provider_folder_id=folder_id,
                parent_folder_id=parent_folder_id,
                created_at=datetime.now(timezone.utc),
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=["gallery_id", "provider"],
                set_={
                    "provider_folder_id": stmt.excluded.provider_folder_id,
                    "parent_folder_id": stmt.excluded.parent_folder_id,
                },
            )
            await db.execute(stmt)
            await db.commit()
