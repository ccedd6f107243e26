"""Tests for TokenManager credential lifecycle."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from storagesync.core.exceptions import (
    AuthError,
    BackoffError,
    NotFoundError,
    UnsupportedProviderError,
)
from storagesync.db.models import ConnectionStatus
from storagesync.providers.base import TokenResponse


class TestIsTokenExpired:
    def test_expiring_within_buffer(self, token_manager):
        expires_at = datetime.now(timezone.utc) + timedelta(minutes=4)
        assert token_manager.is_token_expired(expires_at) is True

    def test_valid_beyond_buffer(self, token_manager):
        expires_at = datetime.now(timezone.utc) + timedelta(minutes=10)
        assert token_manager.is_token_expired(expires_at) is False

    def test_naive_datetime_treated_as_utc(self, token_manager):
        expires_at = datetime.now(timezone.utc).replace(tzinfo=None) - timedelta(minutes=1)
        assert token_manager.is_token_expired(expires_at) is True

    def test_no_expiry(self, token_manager):
        assert token_manager.is_token_expired(None) is False


# =============================================================================
# Storing credentials
# =============================================================================


class TestStoreEncryptedTokens:
    """Tests for the credential storage boundary."""

    @pytest.mark.asyncio
    async def test_stores_encrypted(self, token_manager, cipher):
        await token_manager.store_encrypted_tokens(1, "dropbox", "plain-access", "plain-refresh")

        connection = await token_manager.get_connection(1, "dropbox")
        assert connection.access_token != "plain-access"
        assert cipher.decrypt(connection.access_token) == "plain-access"
        assert connection.status == ConnectionStatus.ACTIVE

        tokens = await token_manager.get_decrypted_tokens(1, "dropbox")
        assert tokens.access_token == "plain-access"
        assert tokens.refresh_token == "plain-refresh"

    @pytest.mark.asyncio
    async def test_upsert_keeps_refresh_token_and_reactivates(self, token_manager, add_connection):
        await add_connection(user_id=1, provider="dropbox", status=ConnectionStatus.DISCONNECTED)

        await token_manager.store_encrypted_tokens(1, "dropbox", "second-access")

        tokens = await token_manager.get_decrypted_tokens(1, "dropbox")
        assert tokens.access_token == "second-access"
        assert tokens.refresh_token == "refresh"
        connection = await token_manager.get_connection(1, "dropbox")
        assert connection.status == ConnectionStatus.ACTIVE
        assert len(await token_manager.get_user_connections(1)) == 1

    @pytest.mark.asyncio
    async def test_records_storage_connected_audit(self, token_manager, audit):
        await token_manager.store_encrypted_tokens(7, "dropbox", "a", "r")

        logs = await audit.get_logs_by_action("storage_connected")
        assert len(logs) == 1
        assert logs[0].user_id == 7
        assert logs[0].resource_id == "dropbox"

    @pytest.mark.asyncio
    async def test_get_decrypted_tokens_missing_connection(self, token_manager):
        with pytest.raises(NotFoundError):
            await token_manager.get_decrypted_tokens(99, "dropbox")


# =============================================================================
# get_valid_token
# =============================================================================


class TestGetValidToken:
    """Tests for refresh-before-use."""

    @pytest.mark.asyncio
    async def test_returns_token_without_refresh(self, token_manager, add_connection, fake_provider):
        await add_connection(access_token="current")

        assert await token_manager.get_valid_token(1, "google-drive") == "current"
        fake_provider.refresh_access_token.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_expiring_token_triggers_exactly_one_refresh(
        self, token_manager, add_connection, fake_provider
    ):
        await add_connection(access_token="old", expires_in=timedelta(minutes=4))

        token = await token_manager.get_valid_token(1, "google-drive")

        assert token == "new-access"
        fake_provider.refresh_access_token.assert_awaited_once_with("refresh")

    @pytest.mark.asyncio
    async def test_refresh_persists_and_clears_error(self, token_manager, add_connection, session_factory):
        connection = await add_connection(expires_in=timedelta(minutes=-5))
        async with session_factory() as db:
            stored = await db.get(type(connection), connection.id)
            stored.last_error = "old failure"
            await db.commit()

        await token_manager.refresh_token(1, "google-drive")

        refreshed = await token_manager.get_connection(1, "google-drive")
        assert refreshed.last_error is None
        assert token_manager.is_token_expired(refreshed.expires_at) is False
        tokens = await token_manager.get_decrypted_tokens(1, "google-drive")
        assert tokens.access_token == "new-access"
        assert tokens.refresh_token == "refresh"

    @pytest.mark.asyncio
    async def test_rotated_refresh_token_is_stored(self, token_manager, add_connection, fake_provider):
        await add_connection(expires_in=timedelta(minutes=1))
        fake_provider.refresh_access_token.return_value = TokenResponse(
            access_token="new-access",
            refresh_token="rotated",
            expires_at=datetime.now(timezone.utc) + timedelta(hours=1),
        )

        await token_manager.get_valid_token(1, "google-drive")

        tokens = await token_manager.get_decrypted_tokens(1, "google-drive")
        assert tokens.refresh_token == "rotated"

    @pytest.mark.asyncio
    async def test_missing_refresh_token_disconnects(self, token_manager, add_connection, fake_provider):
        await add_connection(refresh_token=None, expires_in=timedelta(minutes=1))

        with pytest.raises(AuthError):
            await token_manager.get_valid_token(1, "google-drive")

        connection = await token_manager.get_connection(1, "google-drive")
        assert connection.status == ConnectionStatus.DISCONNECTED
        fake_provider.refresh_access_token.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_refresh_failure_disconnects_without_retry(
        self, token_manager, add_connection, fake_provider, audit
    ):
        await add_connection(expires_in=timedelta(minutes=1))
        fake_provider.refresh_access_token.side_effect = AuthError("revoked")

        with pytest.raises(AuthError):
            await token_manager.get_valid_token(1, "google-drive")

        fake_provider.refresh_access_token.assert_awaited_once()
        connection = await token_manager.get_connection(1, "google-drive")
        assert connection.status == ConnectionStatus.DISCONNECTED
        assert connection.last_error == "Token refresh failed"
        assert connection.last_error_at is not None
        assert len(await audit.get_logs_by_action("storage_disconnected")) == 1

    @pytest.mark.asyncio
    async def test_still_expired_after_refreshes_gives_up(
        self, token_manager, add_connection, fake_provider
    ):
        await add_connection(expires_in=timedelta(minutes=1))
        fake_provider.refresh_access_token.return_value = TokenResponse(
            access_token="short-lived",
            expires_at=datetime.now(timezone.utc) + timedelta(seconds=10),
        )

        with pytest.raises(AuthError):
            await token_manager.get_valid_token(1, "google-drive")

        assert fake_provider.refresh_access_token.await_count == 2
        connection = await token_manager.get_connection(1, "google-drive")
        assert connection.status == ConnectionStatus.DISCONNECTED

    @pytest.mark.asyncio
    async def test_provider_backoff_keeps_connection_active(
        self, token_manager, add_connection, rate_limiter
    ):
        await add_connection(expires_in=timedelta(minutes=1))
        rate_limiter.handle_rate_limit_error("google-drive", 30)

        with pytest.raises(BackoffError):
            await token_manager.get_valid_token(1, "google-drive")

        connection = await token_manager.get_connection(1, "google-drive")
        assert connection.status == ConnectionStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_disconnected_connection_raises(self, token_manager, add_connection):
        await add_connection(status=ConnectionStatus.DISCONNECTED)

        with pytest.raises(AuthError):
            await token_manager.get_valid_token(1, "google-drive")

    @pytest.mark.asyncio
    async def test_missing_connection_raises_not_found(self, token_manager):
        with pytest.raises(NotFoundError):
            await token_manager.get_valid_token(1, "google-drive")

    @pytest.mark.asyncio
    async def test_unregistered_provider(self, token_manager, add_connection):
        await add_connection(provider="onedrive")

        with pytest.raises(UnsupportedProviderError):
            await token_manager.get_provider(1, "onedrive")


class TestInvalidateConnection:
    @pytest.mark.asyncio
    async def test_invalidates_cached_provider_list(self, token_manager, add_connection, cache):
        await add_connection()
        await cache.cache_storage_providers(1, [{"provider": "google-drive"}])

        await token_manager.invalidate_connection(1, "google-drive")

        assert await cache.get_storage_providers(1) is None
