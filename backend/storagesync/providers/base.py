"""StorageProvider capability shared by every cloud backend."""

from __future__ import annotations

import asyncio
import enum
from abc import ABC, abstractmethod
from collections.abc import Callable
from datetime import datetime
from typing import Any, BinaryIO, TypeVar

from pydantic import BaseModel, Field

from storagesync.services.retry import RetryConfig, with_retry

T = TypeVar("T")

# Chunk size for resumable uploads (8 MiB)
UPLOAD_CHUNK_SIZE = 8 * 1024 * 1024


class Folder(BaseModel):
    """A folder in a storage provider."""

    id: str
    name: str
    parent_id: str | None = None
    created_at: datetime | None = None


class StoredFile(BaseModel):
    """A file in a storage provider."""

    id: str
    name: str
    mime_type: str = ""
    size: int = 0
    url: str = ""
    thumbnail_url: str | None = None
    created_at: datetime | None = None


class ChangeType(str, enum.Enum):
    """Kind of remote change reported by a change feed."""

    CREATED = "created"
    MODIFIED = "modified"
    DELETED = "deleted"
    RENAMED = "renamed"
    MOVED = "moved"


class Change(BaseModel):
    """A single entry of a provider change feed."""

    file_id: str
    type: ChangeType
    file: StoredFile | None = None
    folder: Folder | None = None
    new_name: str | None = None
    new_parent_id: str | None = None


class ChangeList(BaseModel):
    """One page of a provider change feed."""

    changes: list[Change] = Field(default_factory=list)
    next_page_token: str | None = None
    has_more: bool = False


class TokenResponse(BaseModel):
    """Result of refreshing an OAuth access token."""

    access_token: str
    refresh_token: str | None = None
    expires_at: datetime


class StorageProvider(ABC):
    """Uniform interface over a cloud storage backend.

    Implementations run blocking SDK calls in a worker thread, translate SDK
    errors into the storagesync error taxonomy, and retry transient faults.
    """

    #: Registry identifier, e.g. "google-drive"
    provider_id: str = ""

    def __init__(self, retry_config: RetryConfig | None = None):
        self.retry_config = retry_config

    # ========== Folders ==========

    @abstractmethod
    async def create_folder(self, name: str, parent_id: str | None = None) -> Folder:
        """Create a folder, returning the existing one if the name is taken."""

    @abstractmethod
    async def get_folder(self, folder_id: str) -> Folder:
        """Get folder metadata."""

    @abstractmethod
    async def list_folders(self, parent_id: str) -> list[Folder]:
        """List the direct sub-folders of a folder."""

    # ========== Files ==========

    @abstractmethod
    async def upload_file(
        self, data: bytes, name: str, mime_type: str, parent_id: str
    ) -> StoredFile:
        """Upload a small file in a single request."""

    @abstractmethod
    async def upload_file_resumable(
        self, stream: BinaryIO, name: str, mime_type: str, size: int, parent_id: str
    ) -> StoredFile:
        """Upload a large file in chunks; it becomes visible on the final commit."""

    @abstractmethod
    async def get_file(self, file_id: str) -> StoredFile:
        """Get file metadata including a retrievable URL."""

    @abstractmethod
    async def delete_file(self, file_id: str) -> None:
        """Delete a file."""

    @abstractmethod
    async def get_file_url(self, file_id: str) -> str:
        """Get a durable URL for a file."""

    # ========== Tokens ==========

    @abstractmethod
    async def refresh_access_token(self, refresh_token: str) -> TokenResponse:
        """Exchange a refresh token for a new access token.

        Raises:
            AuthError: If the refresh token is invalid or revoked.
        """

    # ========== Changes ==========

    @abstractmethod
    async def get_changes(self, page_token: str | None = None) -> ChangeList:
        """Get changes since ``page_token``.

        Without a token a fresh cursor is established instead of replaying
        the whole history.
        """

    # ========== Helpers ==========

    @abstractmethod
    def translate_error(self, error: Exception, context: str) -> Exception:
        """Map an SDK exception onto the storagesync error taxonomy."""

    async def _call(self, operation: str, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Run a blocking SDK call with error translation and retry."""

        async def attempt() -> T:
            return await self._run(operation, func, *args, **kwargs)

        return await with_retry(attempt, self.retry_config, operation=f"{self.provider_id}.{operation}")

    async def _run(self, operation: str, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Run a blocking SDK call once in a worker thread, translating errors."""
        try:
            return await asyncio.to_thread(func, *args, **kwargs)
        except Exception as e:
            translated = self.translate_error(e, operation)
            if translated is e:
                raise
            raise translated from e
