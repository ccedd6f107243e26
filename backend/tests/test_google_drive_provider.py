"""Tests for the Google Drive provider with a mocked Drive service."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

import httplib2
import pytest
from google.auth.exceptions import RefreshError
from googleapiclient.errors import HttpError

from storagesync.core.exceptions import (
    AuthError,
    BackoffError,
    NotFoundError,
    ProviderError,
    TransientProviderError,
)
from storagesync.providers.base import ChangeType
from storagesync.providers.google_drive import FOLDER_MIME_TYPE, GoogleDriveProvider
from storagesync.services.retry import RetryConfig


def http_error(status: int, reason: str | None = None, headers: dict | None = None) -> HttpError:
    resp = httplib2.Response({"status": status, **(headers or {})})
    body = {"error": {"message": "error", "errors": [{"reason": reason}] if reason else []}}
    return HttpError(resp, json.dumps(body).encode())


@pytest.fixture
def drive():
    return MagicMock()


@pytest.fixture
def provider(drive):
    provider = GoogleDriveProvider(
        "access",
        "refresh",
        retry_config=RetryConfig(max_attempts=3, initial_delay=0, max_delay=0),
    )
    provider._drive = drive
    return provider


# =============================================================================
# Folders
# =============================================================================


class TestFolders:
    """Tests for folder operations."""

    @pytest.mark.asyncio
    async def test_create_folder_returns_existing(self, provider, drive):
        drive.files.return_value.list.return_value.execute.return_value = {
            "files": [{"id": "f1", "name": "RawBox", "parents": ["root"]}]
        }

        folder = await provider.create_folder("RawBox")

        assert folder.id == "f1"
        drive.files.return_value.create.assert_not_called()

    @pytest.mark.asyncio
    async def test_create_folder_twice_returns_same_id(self, provider, drive):
        files = drive.files.return_value
        files.list.return_value.execute.side_effect = [
            {"files": []},
            {"files": [{"id": "new", "name": "Wedding", "parents": ["p"]}]},
        ]
        files.create.return_value.execute.return_value = {"id": "new", "name": "Wedding", "parents": ["p"]}

        first = await provider.create_folder("Wedding", "p")
        second = await provider.create_folder("Wedding", "p")

        assert first.id == second.id == "new"
        files.create.assert_called_once()
        body = files.create.call_args.kwargs["body"]
        assert body == {"name": "Wedding", "mimeType": FOLDER_MIME_TYPE, "parents": ["p"]}

    @pytest.mark.asyncio
    async def test_find_folder_escapes_quotes(self, provider, drive):
        drive.files.return_value.list.return_value.execute.return_value = {"files": []}
        drive.files.return_value.create.return_value.execute.return_value = {"id": "x", "name": "Bob's"}

        await provider.create_folder("Bob's")

        query = drive.files.return_value.list.call_args.kwargs["q"]
        assert "name = 'Bob\\'s'" in query
        assert "'root' in parents" in query

    @pytest.mark.asyncio
    async def test_list_folders_paginates(self, provider, drive):
        drive.files.return_value.list.return_value.execute.side_effect = [
            {"files": [{"id": "a", "name": "A"}], "nextPageToken": "t2"},
            {"files": [{"id": "b", "name": "B"}]},
        ]

        folders = await provider.list_folders("p")

        assert [f.id for f in folders] == ["a", "b"]

    @pytest.mark.asyncio
    async def test_get_folder_rejects_file(self, provider, drive):
        drive.files.return_value.get.return_value.execute.return_value = {
            "id": "x", "name": "x.jpg", "mimeType": "image/jpeg"
        }

        with pytest.raises(ProviderError):
            await provider.get_folder("x")


# =============================================================================
# Files
# =============================================================================


class TestFiles:
    @pytest.mark.asyncio
    async def test_upload_file_returns_url(self, provider, drive):
        drive.files.return_value.create.return_value.execute.return_value = {
            "id": "file-1",
            "name": "a.jpg",
            "size": "12",
            "webViewLink": "https://drive.google.com/file/d/file-1/view",
        }

        stored = await provider.upload_file(b"hello world!", "a.jpg", "image/jpeg", "p")

        assert stored.id == "file-1"
        assert stored.size == 12
        assert stored.mime_type == "image/jpeg"
        assert stored.url.endswith("/view")

    @pytest.mark.asyncio
    async def test_resumable_upload_commits_on_last_chunk(self, provider, drive):
        status = MagicMock(resumable_progress=8)
        request = drive.files.return_value.create.return_value
        request.next_chunk.side_effect = [
            (status, None),
            (None, {"id": "big", "name": "big.raw"}),
        ]

        with patch("storagesync.providers.google_drive.MediaIoBaseUpload"):
            stored = await provider.upload_file_resumable(MagicMock(), "big.raw", "image/x-raw", 16, "p")

        assert stored.id == "big"
        assert request.next_chunk.call_count == 2

    @pytest.mark.asyncio
    async def test_get_file_url_prefers_view_link(self, provider, drive):
        drive.files.return_value.get.return_value.execute.return_value = {
            "webViewLink": "view",
            "webContentLink": "download",
        }

        assert await provider.get_file_url("f") == "view"


# =============================================================================
# Changes
# =============================================================================


class TestChanges:
    """Tests for the change feed."""

    @pytest.mark.asyncio
    async def test_without_token_starts_fresh_cursor(self, provider, drive):
        changes = drive.changes.return_value
        changes.getStartPageToken.return_value.execute.return_value = {"startPageToken": "100"}
        changes.list.return_value.execute.return_value = {"changes": [], "newStartPageToken": "101"}

        result = await provider.get_changes()

        assert changes.list.call_args.kwargs["pageToken"] == "100"
        assert result.next_page_token == "101"
        assert result.has_more is False

    @pytest.mark.asyncio
    async def test_classifies_changes(self, provider, drive):
        drive.changes.return_value.list.return_value.execute.return_value = {
            "nextPageToken": "next",
            "changes": [
                {"fileId": "gone", "removed": True},
                {"fileId": "trash", "file": {"id": "trash", "name": "t.jpg", "trashed": True}},
                {
                    "fileId": "folder",
                    "file": {"id": "folder", "name": "F", "mimeType": FOLDER_MIME_TYPE, "parents": ["p2"]},
                },
                {"fileId": "photo", "file": {"id": "photo", "name": "p.jpg", "mimeType": "image/jpeg"}},
            ],
        }

        result = await provider.get_changes("token")

        assert [c.type for c in result.changes] == [
            ChangeType.DELETED,
            ChangeType.DELETED,
            ChangeType.MOVED,
            ChangeType.MODIFIED,
        ]
        assert result.changes[2].new_parent_id == "p2"
        assert result.next_page_token == "next"
        assert result.has_more is True


# =============================================================================
# Tokens and errors
# =============================================================================


class TestRefreshAccessToken:
    @pytest.mark.asyncio
    async def test_refresh_returns_tz_aware_expiry(self, provider):
        def fake_refresh(self, request):
            self.token = "new-token"
            self.expiry = datetime(2030, 1, 1, 12, 0)

        with patch("storagesync.providers.google_drive.OAuthCredentials.refresh", fake_refresh):
            tokens = await provider.refresh_access_token("refresh")

        assert tokens.access_token == "new-token"
        assert tokens.expires_at == datetime(2030, 1, 1, 12, 0, tzinfo=timezone.utc)
        assert tokens.refresh_token is None

    @pytest.mark.asyncio
    async def test_refresh_error_is_auth_error(self, provider):
        with patch(
            "storagesync.providers.google_drive.OAuthCredentials.refresh",
            side_effect=RefreshError("invalid_grant"),
        ):
            with pytest.raises(AuthError):
                await provider.refresh_access_token("revoked")


class TestErrorTranslation:
    """Tests for Drive error mapping and retry."""

    @pytest.mark.parametrize(
        "error, expected",
        [
            (http_error(429), BackoffError),
            (http_error(403, "userRateLimitExceeded"), BackoffError),
            (http_error(403, "insufficientPermissions"), ProviderError),
            (http_error(404), NotFoundError),
            (http_error(401), AuthError),
            (http_error(503), TransientProviderError),
            (TimeoutError(), TransientProviderError),
        ],
    )
    def test_translate_error(self, provider, error, expected):
        assert isinstance(provider.translate_error(error, "test"), expected)

    def test_retry_after_header(self, provider):
        translated = provider.translate_error(http_error(429, headers={"retry-after": "7"}), "test")

        assert translated.retry_after == 7

    @pytest.mark.asyncio
    async def test_transient_errors_are_retried(self, provider, drive):
        drive.files.return_value.get.return_value.execute.side_effect = [
            http_error(500),
            {"id": "f", "name": "a.jpg"},
        ]

        stored = await provider.get_file("f")

        assert stored.id == "f"

    @pytest.mark.asyncio
    async def test_rate_limit_is_not_retried(self, provider, drive):
        execute = drive.files.return_value.delete.return_value.execute
        execute.side_effect = http_error(429)

        with pytest.raises(BackoffError):
            await provider.delete_file("f")

        assert execute.call_count == 1
