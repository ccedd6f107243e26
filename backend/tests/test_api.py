"""Tests for the health and storage API endpoints."""

from __future__ import annotations

from datetime import timedelta

import pytest
from httpx import AsyncClient

from storagesync.db.models import ConnectionStatus
from storagesync.providers.base import ChangeList


# =============================================================================
# Health
# =============================================================================


@pytest.mark.asyncio
async def test_health_check(client: AsyncClient) -> None:
    """Health reports database connectivity and sync state."""
    response = await client.get("/api/health")

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "ok"
    assert data["database"] == "connected"
    assert data["sync"]["is_syncing"] is False
    assert data["sync"]["job_scheduled"] is False


# =============================================================================
# Providers
# =============================================================================


class TestListProviders:
    """Tests for GET /api/v1/storage/providers."""

    @pytest.mark.asyncio
    async def test_empty(self, client):
        response = await client.get("/api/v1/storage/providers", params={"user_id": 1})

        assert response.status_code == 200
        assert response.json() == {"items": [], "total": 0}

    @pytest.mark.asyncio
    async def test_includes_disconnected_with_error(self, client, add_connection, token_manager):
        await add_connection(provider="google-drive")
        await add_connection(provider="dropbox")
        await token_manager.invalidate_connection(1, "dropbox", "Token refresh failed")

        response = await client.get("/api/v1/storage/providers", params={"user_id": 1})

        items = {item["provider"]: item for item in response.json()["items"]}
        assert items["google-drive"]["status"] == "active"
        assert items["dropbox"]["status"] == "disconnected"
        assert items["dropbox"]["last_error"] == "Token refresh failed"

    @pytest.mark.asyncio
    async def test_response_is_cached(self, client, add_connection, cache):
        await add_connection()

        await client.get("/api/v1/storage/providers", params={"user_id": 1})

        cached = await cache.get_storage_providers(1)
        assert [item["provider"] for item in cached] == ["google-drive"]

    @pytest.mark.asyncio
    async def test_sync_refreshes_cached_list(self, client, add_connection, fake_provider):
        await add_connection()
        fake_provider.get_changes.return_value = ChangeList(changes=[], next_page_token="t1")

        before = await client.get("/api/v1/storage/providers", params={"user_id": 1})
        await client.post("/api/v1/storage/sync", params={"user_id": 1, "provider": "google-drive"})
        after = await client.get("/api/v1/storage/providers", params={"user_id": 1})

        assert before.json()["items"][0]["last_sync_at"] is None
        assert after.json()["items"][0]["last_sync_at"] is not None

    @pytest.mark.asyncio
    async def test_other_users_not_listed(self, client, add_connection):
        await add_connection(user_id=2)

        response = await client.get("/api/v1/storage/providers", params={"user_id": 1})

        assert response.json()["total"] == 0


# =============================================================================
# Rate limits
# =============================================================================


class TestRateLimits:
    """Tests for GET /api/v1/storage/rate-limits."""

    @pytest.mark.asyncio
    async def test_normal(self, client, add_connection, rate_limiter):
        await add_connection()
        await rate_limiter.record_request("google-drive", "file_upload")

        response = await client.get("/api/v1/storage/rate-limits", params={"user_id": 1})

        (item,) = response.json()["items"]
        assert item["status"] == "normal"
        assert item["requests_per_hour"] == 1000
        upload = next(op for op in item["operations"] if op["operation"] == "file_upload")
        assert upload["requests_this_hour"] == 1

    @pytest.mark.asyncio
    async def test_warning_above_eighty_percent(self, client, add_connection, rate_limiter):
        await add_connection(provider="dropbox")
        for _ in range(401):
            await rate_limiter.record_request("dropbox", "file_upload")

        response = await client.get("/api/v1/storage/rate-limits", params={"user_id": 1})

        assert response.json()["items"][0]["status"] == "warning"

    @pytest.mark.asyncio
    async def test_backoff(self, client, add_connection, rate_limiter):
        await add_connection()
        rate_limiter.handle_rate_limit_error("google-drive", retry_after=120)

        response = await client.get("/api/v1/storage/rate-limits", params={"user_id": 1})

        item = response.json()["items"][0]
        assert item["status"] == "backoff"
        assert item["backoff_remaining_seconds"] == 120


# =============================================================================
# On-demand sync
# =============================================================================


class TestSyncNow:
    """Tests for POST /api/v1/storage/sync."""

    @pytest.mark.asyncio
    async def test_sync_success(self, client, add_connection, fake_provider, sync_service):
        await add_connection()
        fake_provider.get_changes.return_value = ChangeList(changes=[], next_page_token="t1")

        response = await client.post(
            "/api/v1/storage/sync", params={"user_id": 1, "provider": "google-drive"}
        )

        assert response.status_code == 200
        assert response.json()["files_processed"] == 0
        state = await sync_service.get_sync_state(1, "google-drive")
        assert state.last_sync_token == "t1"

    @pytest.mark.asyncio
    async def test_sync_without_connection_is_404(self, client):
        response = await client.post(
            "/api/v1/storage/sync", params={"user_id": 1, "provider": "google-drive"}
        )

        assert response.status_code == 404
        assert response.json()["detail"]["code"] == "NOT_FOUND"

    @pytest.mark.asyncio
    async def test_sync_disconnected_is_401(self, client, add_connection):
        await add_connection(status=ConnectionStatus.DISCONNECTED)

        response = await client.post(
            "/api/v1/storage/sync", params={"user_id": 1, "provider": "google-drive"}
        )

        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_sync_during_backoff_is_429(self, client, add_connection, rate_limiter):
        await add_connection(expires_in=timedelta(hours=1))
        rate_limiter.handle_rate_limit_error("google-drive", retry_after=30)

        response = await client.post(
            "/api/v1/storage/sync", params={"user_id": 1, "provider": "google-drive"}
        )

        assert response.status_code == 429
        assert response.headers["retry-after"] == "30"
