"""Google Drive storage provider.

Wraps the Drive v3 API (google-api-python-client) behind the
StorageProvider capability. The client library is synchronous, so every
request is executed in a worker thread.
"""

from __future__ import annotations

import io
from datetime import datetime, timedelta, timezone
from typing import Any, BinaryIO

from google.auth.exceptions import RefreshError, TransportError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials as OAuthCredentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError
from googleapiclient.http import MediaIoBaseUpload
from httplib2 import HttpLib2Error

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
from storagesync.services.retry import RetryConfig

logger = get_logger(__name__)

FOLDER_MIME_TYPE = "application/vnd.google-apps.folder"
FOLDER_FIELDS = "id, name, parents, createdTime"
FILE_FIELDS = "id, name, mimeType, size, webViewLink, webContentLink, thumbnailLink, createdTime"
CHANGE_FIELDS = (
    "nextPageToken, newStartPageToken, "
    "changes(fileId, removed, file(id, name, mimeType, size, parents, trashed, createdTime))"
)

# 403 reasons Google uses for throttling instead of 429
RATE_LIMIT_REASONS = {"rateLimitExceeded", "userRateLimitExceeded"}

# Google access tokens are valid for one hour
DEFAULT_TOKEN_LIFETIME = timedelta(hours=1)


def _parse_time(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def _escape_query(value: str) -> str:
    return value.replace("\\", "\\\\").replace("'", "\\'")


class GoogleDriveProvider(StorageProvider):
    """Google Drive backend (Drive API v3)."""

    provider_id = "google-drive"

    def __init__(
        self,
        access_token: str,
        refresh_token: str | None = None,
        retry_config: RetryConfig | None = None,
    ):
        super().__init__(retry_config)
        self._credentials = OAuthCredentials(
            token=access_token,
            refresh_token=refresh_token,
            token_uri=settings.google_token_uri,
            client_id=settings.google_client_id,
            client_secret=settings.google_client_secret,
        )
        self._drive: Any = None

    @property
    def drive(self) -> Any:
        """Drive v3 service, built on first use."""
        if self._drive is None:
            self._drive = build("drive", "v3", credentials=self._credentials, cache_discovery=False)
        return self._drive

    # ========== Folders ==========

    async def create_folder(self, name: str, parent_id: str | None = None) -> Folder:
        existing = await self._find_folder(name, parent_id or "root")
        if existing:
            logger.debug("folder_exists", provider=self.provider_id, folder_id=existing.id, name=name)
            return existing

        body: dict[str, Any] = {"name": name, "mimeType": FOLDER_MIME_TYPE}
        if parent_id:
            body["parents"] = [parent_id]

        request = self.drive.files().create(body=body, fields=FOLDER_FIELDS)
        data = await self._call("create_folder", request.execute)
        return self._to_folder(data)

    async def get_folder(self, folder_id: str) -> Folder:
        request = self.drive.files().get(fileId=folder_id, fields=f"{FOLDER_FIELDS}, mimeType")
        data = await self._call("get_folder", request.execute)
        if data.get("mimeType") != FOLDER_MIME_TYPE:
            raise ProviderError(f"ID {folder_id} is not a folder")
        return self._to_folder(data)

    async def list_folders(self, parent_id: str) -> list[Folder]:
        query = (
            f"'{_escape_query(parent_id)}' in parents "
            f"and mimeType = '{FOLDER_MIME_TYPE}' and trashed = false"
        )
        folders: list[Folder] = []
        page_token: str | None = None

        while True:
            request = self.drive.files().list(
                q=query,
                fields=f"nextPageToken, files({FOLDER_FIELDS})",
                pageToken=page_token,
                pageSize=100,
            )
            result = await self._call("list_folders", request.execute)
            folders.extend(self._to_folder(f) for f in result.get("files", []))

            page_token = result.get("nextPageToken")
            if not page_token:
                return folders

    async def _find_folder(self, name: str, parent_id: str) -> Folder | None:
        """Find a non-trashed folder by exact name under a parent."""
        query = (
            f"name = '{_escape_query(name)}' and '{_escape_query(parent_id)}' in parents "
            f"and mimeType = '{FOLDER_MIME_TYPE}' and trashed = false"
        )
        request = self.drive.files().list(q=query, fields=f"files({FOLDER_FIELDS})", pageSize=1)
        result = await self._call("find_folder", request.execute)
        files = result.get("files", [])
        return self._to_folder(files[0]) if files else None

    # ========== Files ==========

    async def upload_file(
        self, data: bytes, name: str, mime_type: str, parent_id: str
    ) -> StoredFile:
        media = MediaIoBaseUpload(io.BytesIO(data), mimetype=mime_type, resumable=False)
        request = self.drive.files().create(
            body={"name": name, "parents": [parent_id]},
            media_body=media,
            fields=FILE_FIELDS,
        )
        result = await self._call("upload_file", request.execute)
        return self._to_file(result, mime_type)

    async def upload_file_resumable(
        self, stream: BinaryIO, name: str, mime_type: str, size: int, parent_id: str
    ) -> StoredFile:
        """Upload through a resumable session.

        The file only appears in Drive once the last chunk is accepted. A
        failed chunk is retried from the session's committed offset.
        ``stream`` must be seekable.
        """
        media = MediaIoBaseUpload(
            stream, mimetype=mime_type, chunksize=UPLOAD_CHUNK_SIZE, resumable=True
        )
        request = self.drive.files().create(
            body={"name": name, "parents": [parent_id]},
            media_body=media,
            fields=FILE_FIELDS,
        )

        response = None
        while response is None:
            status, response = await self._call("upload_chunk", request.next_chunk)
            if status is not None:
                logger.debug(
                    "upload_progress",
                    provider=self.provider_id,
                    name=name,
                    uploaded_bytes=status.resumable_progress,
                    total_bytes=size,
                )

        return self._to_file(response, mime_type)

    async def get_file(self, file_id: str) -> StoredFile:
        request = self.drive.files().get(fileId=file_id, fields=FILE_FIELDS)
        result = await self._call("get_file", request.execute)
        return self._to_file(result)

    async def delete_file(self, file_id: str) -> None:
        request = self.drive.files().delete(fileId=file_id)
        await self._call("delete_file", request.execute)

    async def get_file_url(self, file_id: str) -> str:
        request = self.drive.files().get(fileId=file_id, fields="webViewLink, webContentLink")
        result = await self._call("get_file_url", request.execute)
        return result.get("webViewLink") or result.get("webContentLink") or ""

    # ========== Tokens ==========

    async def refresh_access_token(self, refresh_token: str) -> TokenResponse:
        creds = OAuthCredentials(
            token=None,
            refresh_token=refresh_token,
            token_uri=settings.google_token_uri,
            client_id=settings.google_client_id,
            client_secret=settings.google_client_secret,
        )
        await self._call("refresh_access_token", creds.refresh, Request())

        if not creds.token:
            raise AuthError("Failed to refresh Google access token")

        # google-auth reports expiry as naive UTC
        if creds.expiry is not None:
            expires_at = creds.expiry.replace(tzinfo=timezone.utc)
        else:
            expires_at = datetime.now(timezone.utc) + DEFAULT_TOKEN_LIFETIME

        rotated = creds.refresh_token if creds.refresh_token != refresh_token else None
        return TokenResponse(access_token=creds.token, refresh_token=rotated, expires_at=expires_at)

    # ========== Changes ==========

    async def get_changes(self, page_token: str | None = None) -> ChangeList:
        token = page_token or await self._get_start_page_token()

        request = self.drive.changes().list(
            pageToken=token,
            fields=CHANGE_FIELDS,
            pageSize=100,
            supportsAllDrives=True,
            includeItemsFromAllDrives=True,
        )
        response = await self._call("list_changes", request.execute)

        changes = [self._to_change(c) for c in response.get("changes", [])]
        has_more = "nextPageToken" in response
        next_token = response.get("nextPageToken") or response.get("newStartPageToken")

        logger.debug(
            "changes_listed",
            provider=self.provider_id,
            changes_count=len(changes),
            has_more=has_more,
        )
        return ChangeList(changes=changes, next_page_token=next_token, has_more=has_more)

    async def _get_start_page_token(self) -> str:
        request = self.drive.changes().getStartPageToken(supportsAllDrives=True)
        response = await self._call("get_start_page_token", request.execute)
        return response.get("startPageToken") or "1"

    # ========== Conversion ==========

    @staticmethod
    def _to_folder(data: dict[str, Any]) -> Folder:
        parents = data.get("parents") or []
        return Folder(
            id=data["id"],
            name=data["name"],
            parent_id=parents[0] if parents else None,
            created_at=_parse_time(data.get("createdTime")),
        )

    @staticmethod
    def _to_file(data: dict[str, Any], fallback_mime_type: str = "") -> StoredFile:
        return StoredFile(
            id=data["id"],
            name=data["name"],
            mime_type=data.get("mimeType") or fallback_mime_type,
            size=int(data.get("size", 0)),
            url=data.get("webViewLink") or data.get("webContentLink") or "",
            thumbnail_url=data.get("thumbnailLink"),
            created_at=_parse_time(data.get("createdTime")),
        )

    def _to_change(self, change: dict[str, Any]) -> Change:
        """Classify a Drive change entry.

        The feed does not say which field changed, so a renamed file is
        reported as ``modified``.
        """
        file_data = change.get("file") or {}

        if change.get("removed") or file_data.get("trashed"):
            return Change(file_id=change["fileId"], type=ChangeType.DELETED)

        if file_data.get("mimeType") == FOLDER_MIME_TYPE and file_data.get("parents"):
            folder = self._to_folder(file_data)
            return Change(
                file_id=folder.id,
                type=ChangeType.MOVED,
                folder=folder,
                new_parent_id=folder.parent_id,
            )

        return Change(
            file_id=file_data.get("id", change["fileId"]),
            type=ChangeType.MODIFIED,
            file=self._to_file(file_data) if file_data.get("name") else None,
        )

    # ========== Errors ==========

    def translate_error(self, error: Exception, context: str) -> Exception:
        if isinstance(error, StorageSyncError):
            return error

        if isinstance(error, HttpError):
            status = int(error.resp.status)
            reasons = {
                d.get("reason")
                for d in (getattr(error, "error_details", None) or [])
                if isinstance(d, dict)
            }
            if status == 429 or (status == 403 and reasons & RATE_LIMIT_REASONS):
                return BackoffError(
                    retry_after=self._retry_after(error),
                    provider=self.provider_id,
                )
            if status == 404:
                return NotFoundError(f"Google Drive object not found ({context})")
            if status == 401:
                return AuthError(f"Google Drive rejected the access token ({context})")
            if status >= 500:
                return TransientProviderError(f"Google Drive server error {status} ({context})")
            return ProviderError(f"Google API error during {context}: {error}")

        if isinstance(error, RefreshError):
            return AuthError(f"Google refresh token rejected: {error}")

        if isinstance(error, (TransportError, HttpLib2Error, TimeoutError, ConnectionError)):
            return TransientProviderError(f"Network error during {context}: {error}")

        return error

    @staticmethod
    def _retry_after(error: HttpError) -> int | None:
        value = error.resp.get("retry-after") if hasattr(error.resp, "get") else None
        try:
            return int(value) if value is not None else None
        except ValueError:
            return None
