"""Dropbox storage provider.

Uses the official ``dropbox`` SDK for file operations and httpx for the
OAuth refresh grant. Folder and file ids are Dropbox ``id:...`` values;
child paths are resolved from the parent's current path.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, BinaryIO

import dropbox
import httpx
import requests
from dropbox.exceptions import ApiError
from dropbox.exceptions import AuthError as DropboxAuthError
from dropbox.exceptions import HttpError as DropboxHttpError
from dropbox.exceptions import InternalServerError, RateLimitError
from dropbox.files import (
    CommitInfo,
    DeletedMetadata,
    FileMetadata,
    FolderMetadata,
    UploadSessionCursor,
    WriteMode,
)
from dropbox.sharing import RequestedVisibility, SharedLinkSettings

from storagesync.core.config import settings
from storagesync.core.exceptions import (
    AuthError,
    BackoffError,
    NotFoundError,
    ProviderError,
    StorageSyncError,
    TransientProviderError,
)
from storagesync.core.logging import get_logger
from storagesync.providers.base import (
    UPLOAD_CHUNK_SIZE,
    Change,
    ChangeList,
    ChangeType,
    Folder,
    StorageProvider,
    StoredFile,
    TokenResponse,
)
from storagesync.services.retry import RetryConfig, with_retry

logger = get_logger(__name__)


def _parent_path(path_lower: str | None) -> str | None:
    if not path_lower or "/" not in path_lower.strip("/"):
        return None
    return path_lower.rsplit("/", 1)[0]


def _is_lookup_error(error: ApiError, predicate: str) -> bool:
    """Check a path lookup failure (e.g. ``is_not_found``) inside an ApiError."""
    err = error.error
    for accessor in ("path", "path_lookup"):
        is_tag = getattr(err, f"is_{accessor}", None)
        if is_tag is not None and is_tag():
            detail = getattr(err, f"get_{accessor}")()
            check = getattr(detail, predicate, None)
            return bool(check and check())
    return False


class DropboxProvider(StorageProvider):
    """Dropbox backend (API v2)."""

    provider_id = "dropbox"

    def __init__(
        self,
        access_token: str,
        refresh_token: str | None = None,
        retry_config: RetryConfig | None = None,
        http_client: httpx.AsyncClient | None = None,
    ):
        super().__init__(retry_config)
        self.client = dropbox.Dropbox(oauth2_access_token=access_token)
        self._http_client = http_client

    # ========== Folders ==========

    async def create_folder(self, name: str, parent_id: str | None = None) -> Folder:
        path = await self._child_path(parent_id, name)

        def create_or_get() -> Any:
            try:
                return self.client.files_create_folder_v2(path).metadata
            except ApiError as e:
                if _is_lookup_error(e, "is_conflict"):
                    logger.debug("folder_exists", provider=self.provider_id, path=path)
                    return self.client.files_get_metadata(path)
                raise

        metadata = await self._call("create_folder", create_or_get)
        if not isinstance(metadata, FolderMetadata):
            raise ProviderError(f"A file already exists at {path}")
        return Folder(id=metadata.id, name=metadata.name, parent_id=parent_id)

    async def get_folder(self, folder_id: str) -> Folder:
        metadata = await self._call("get_folder", self.client.files_get_metadata, folder_id)
        if not isinstance(metadata, FolderMetadata):
            raise ProviderError("Path is not a folder")
        return Folder(id=metadata.id, name=metadata.name, parent_id=_parent_path(metadata.path_lower))

    async def list_folders(self, parent_id: str) -> list[Folder]:
        result = await self._call("list_folders", self.client.files_list_folder, parent_id)
        folders: list[Folder] = []

        while True:
            folders.extend(
                Folder(id=entry.id, name=entry.name, parent_id=parent_id)
                for entry in result.entries
                if isinstance(entry, FolderMetadata)
            )
            if not result.has_more:
                return folders
            result = await self._call(
                "list_folders", self.client.files_list_folder_continue, result.cursor
            )

    async def _child_path(self, parent_id: str | None, name: str) -> str:
        """Build the path for ``name`` inside a parent given by path or id."""
        if not parent_id:
            return f"/{name}"
        if parent_id.startswith("/"):
            return f"{parent_id.rstrip('/')}/{name}"
        metadata = await self._call("resolve_parent", self.client.files_get_metadata, parent_id)
        return f"{metadata.path_display}/{name}"

    # ========== Files ==========

    async def upload_file(
        self, data: bytes, name: str, mime_type: str, parent_id: str
    ) -> StoredFile:
        path = await self._child_path(parent_id, name)
        metadata = await self._call(
            "upload_file",
            self.client.files_upload,
            data,
            path,
            mode=WriteMode.add,
            autorename=True,
            mute=False,
        )
        return StoredFile(
            id=metadata.id,
            name=metadata.name,
            mime_type=mime_type,
            size=metadata.size,
            url=await self._shared_link(metadata.id),
        )

    async def upload_file_resumable(
        self, stream: BinaryIO, name: str, mime_type: str, size: int, parent_id: str
    ) -> StoredFile:
        """Upload through an upload session in 8 MiB chunks.

        Each chunk is retried on its own; nothing is visible in Dropbox until
        ``files_upload_session_finish`` commits the session.
        """
        path = await self._child_path(parent_id, name)

        first = await asyncio.to_thread(stream.read, UPLOAD_CHUNK_SIZE)
        session = await self._call(
            "upload_session_start", self.client.files_upload_session_start, first
        )
        cursor = UploadSessionCursor(session_id=session.session_id, offset=len(first))
        commit = CommitInfo(path=path, mode=WriteMode.add, autorename=True, mute=False)

        while True:
            chunk = await asyncio.to_thread(stream.read, UPLOAD_CHUNK_SIZE)

            if cursor.offset + len(chunk) >= size:
                metadata = await self._call(
                    "upload_session_finish",
                    self.client.files_upload_session_finish,
                    chunk,
                    cursor,
                    commit,
                )
                break

            if not chunk:
                raise ProviderError(
                    f"Upload stream for {name} ended at {cursor.offset} of {size} bytes"
                )

            await self._call(
                "upload_session_append",
                self.client.files_upload_session_append_v2,
                chunk,
                cursor,
            )
            cursor.offset += len(chunk)
            logger.debug(
                "upload_progress",
                provider=self.provider_id,
                name=name,
                uploaded_bytes=cursor.offset,
                total_bytes=size,
            )

        return StoredFile(
            id=metadata.id,
            name=metadata.name,
            mime_type=mime_type,
            size=metadata.size,
            url=await self._shared_link(metadata.id),
        )

    async def get_file(self, file_id: str) -> StoredFile:
        metadata = await self._call("get_file", self.client.files_get_metadata, file_id)
        if not isinstance(metadata, FileMetadata):
            raise ProviderError("Path is not a file")
        return StoredFile(
            id=metadata.id,
            name=metadata.name,
            size=metadata.size,
            url=await self._shared_link(metadata.id),
        )

    async def delete_file(self, file_id: str) -> None:
        await self._call("delete_file", self.client.files_delete_v2, file_id)

    async def get_file_url(self, file_id: str) -> str:
        return await self._shared_link(file_id)

    async def _shared_link(self, path: str) -> str:
        """Create a public shared link, or reuse the one that already exists."""

        def create_or_get() -> str:
            try:
                link = self.client.sharing_create_shared_link_with_settings(
                    path,
                    settings=SharedLinkSettings(requested_visibility=RequestedVisibility.public),
                )
                return link.url
            except ApiError as e:
                already_exists = getattr(e.error, "is_shared_link_already_exists", None)
                if already_exists is not None and already_exists():
                    links = self.client.sharing_list_shared_links(path=path, direct_only=True).links
                    if links:
                        return links[0].url
                raise

        return await self._call("shared_link", create_or_get)

    # ========== Tokens ==========

    async def refresh_access_token(self, refresh_token: str) -> TokenResponse:
        data = {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "client_id": settings.dropbox_app_key or "",
            "client_secret": settings.dropbox_app_secret or "",
        }

        async def attempt() -> TokenResponse:
            try:
                if self._http_client is not None:
                    response = await self._http_client.post(settings.dropbox_token_url, data=data)
                else:
                    async with httpx.AsyncClient(timeout=30.0) as client:
                        response = await client.post(settings.dropbox_token_url, data=data)
            except httpx.TransportError as e:
                raise TransientProviderError(f"Network error refreshing Dropbox token: {e}") from e

            if response.status_code == 429:
                retry_after = response.headers.get("retry-after")
                raise BackoffError(
                    retry_after=int(retry_after) if retry_after and retry_after.isdigit() else None,
                    provider=self.provider_id,
                )
            if response.status_code >= 500:
                raise TransientProviderError(
                    f"Dropbox token endpoint returned {response.status_code}"
                )
            if response.status_code != 200:
                raise AuthError("Failed to refresh Dropbox access token")

            payload = response.json()
            return TokenResponse(
                access_token=payload["access_token"],
                refresh_token=payload.get("refresh_token"),
                expires_at=datetime.now(timezone.utc) + timedelta(seconds=int(payload["expires_in"])),
            )

        return await with_retry(attempt, self.retry_config, operation="dropbox.refresh_access_token")

    # ========== Changes ==========

    async def get_changes(self, page_token: str | None = None) -> ChangeList:
        cursor = page_token
        if not cursor:
            latest = await self._call(
                "get_latest_cursor",
                self.client.files_list_folder_get_latest_cursor,
                "",
                recursive=True,
            )
            cursor = latest.cursor

        result = await self._call("list_changes", self.client.files_list_folder_continue, cursor)
        parent_ids: dict[str, str | None] = {}
        changes = [await self._to_change(entry, parent_ids) for entry in result.entries]
        changes = self._pair_renames(changes)

        logger.debug(
            "changes_listed",
            provider=self.provider_id,
            changes_count=len(changes),
            has_more=result.has_more,
        )
        # The continuation cursor always reflects the entries just returned
        return ChangeList(changes=changes, next_page_token=result.cursor, has_more=result.has_more)

    async def _to_change(self, entry: Any, parent_ids: dict[str, str | None]) -> Change:
        if isinstance(entry, DeletedMetadata):
            return Change(file_id=await self._deleted_file_id(entry), type=ChangeType.DELETED)

        if isinstance(entry, FileMetadata):
            return Change(
                file_id=entry.id,
                type=ChangeType.MODIFIED,
                file=StoredFile(id=entry.id, name=entry.name, size=entry.size),
            )

        if isinstance(entry, FolderMetadata):
            parent_id = await self._parent_folder_id(entry.path_lower, parent_ids)
            folder = Folder(id=entry.id, name=entry.name, parent_id=parent_id)
            if parent_id is None:
                return Change(file_id=entry.id, type=ChangeType.MODIFIED, folder=folder)
            # Folder entries carry their current location, so they are reported as moves
            return Change(
                file_id=entry.id,
                type=ChangeType.MOVED,
                folder=folder,
                new_parent_id=parent_id,
            )

        return Change(file_id=getattr(entry, "path_lower", None) or "", type=ChangeType.MODIFIED)

    @staticmethod
    def _pair_renames(changes: list[Change]) -> list[Change]:
        """Fold a deletion and a file entry with the same id into one rename.

        Dropbox reports a renamed or moved file as a deleted entry at the old
        path plus a file entry at the new one.
        """
        deleted_ids = {c.file_id for c in changes if c.type == ChangeType.DELETED}
        live_ids = {c.file_id for c in changes if c.file is not None}
        renamed = deleted_ids & live_ids

        paired: list[Change] = []
        for change in changes:
            if change.file_id not in renamed:
                paired.append(change)
            elif change.file is not None:
                paired.append(
                    Change(
                        file_id=change.file_id,
                        type=ChangeType.RENAMED,
                        file=change.file,
                        new_name=change.file.name,
                    )
                )
        return paired

    async def _deleted_file_id(self, entry: DeletedMetadata) -> str:
        """Recover the id of a deleted file from its revision history.

        Deleted entries only carry a path. Folders have no revisions, so
        their path is returned instead.
        """
        path = entry.path_lower or ""
        try:
            revisions = await self._call(
                "list_revisions", self.client.files_list_revisions, path, limit=1
            )
        except (NotFoundError, ProviderError) as e:
            logger.debug("deleted_entry_id_unresolved", provider=self.provider_id, path=path, error=str(e))
            return path

        if revisions.entries:
            return revisions.entries[0].id
        return path

    async def _parent_folder_id(
        self, path_lower: str | None, parent_ids: dict[str, str | None]
    ) -> str | None:
        """Resolve the id of a folder's parent; ``None`` at the Dropbox root."""
        parent_path = _parent_path(path_lower)
        if parent_path is None:
            return None

        if parent_path not in parent_ids:
            try:
                metadata = await self._call(
                    "resolve_parent", self.client.files_get_metadata, parent_path
                )
                parent_ids[parent_path] = metadata.id
            except NotFoundError:
                parent_ids[parent_path] = None
        return parent_ids[parent_path]

    # ========== Errors ==========

    def translate_error(self, error: Exception, context: str) -> Exception:
        if isinstance(error, StorageSyncError):
            return error

        if isinstance(error, RateLimitError):
            backoff = getattr(error, "backoff", None)
            return BackoffError(
                retry_after=int(backoff) if backoff is not None else None,
                provider=self.provider_id,
            )
        if isinstance(error, DropboxAuthError):
            return AuthError(f"Dropbox rejected the access token ({context})")
        if isinstance(error, InternalServerError):
            return TransientProviderError(f"Dropbox server error ({context})")
        if isinstance(error, ApiError):
            if _is_lookup_error(error, "is_not_found"):
                return NotFoundError(f"Dropbox path not found ({context})")
            return ProviderError(f"Dropbox API error during {context}: {error}")
        if isinstance(error, DropboxHttpError):
            if error.status_code >= 500:
                return TransientProviderError(f"Dropbox HTTP {error.status_code} ({context})")
            return ProviderError(f"Dropbox HTTP {error.status_code} during {context}")
        if isinstance(
            error,
            (requests.exceptions.ConnectionError, requests.exceptions.Timeout, TimeoutError, ConnectionError),
        ):
            return TransientProviderError(f"Network error during {context}: {error}")

        return error
