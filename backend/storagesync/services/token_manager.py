"""OAuth credential lifecycle per (user, provider).

Credentials move through ``valid -> expiring soon -> refreshing`` and end in
either ``valid`` or ``disconnected``. A failed refresh is terminal: the
connection stays disconnected until the user re-authenticates.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from storagesync.core.config import settings
from storagesync.core.exceptions import (
    AuthError,
    BackoffError,
    NotFoundError,
    UnsupportedProviderError,
)
from storagesync.core.logging import get_logger
from storagesync.core.security import TokenCipher, get_token_cipher
from storagesync.db.models import ConnectionStatus, StorageConnection
from storagesync.db.session import async_session_maker
from storagesync.db.upsert import upsert_insert
from storagesync.providers import provider_registry
from storagesync.providers.base import StorageProvider
from storagesync.providers.registry import ProviderRegistry
from storagesync.services.audit import AuditLogger
from storagesync.services.cache import CacheService
from storagesync.services.rate_limiter import RateLimiter

logger = get_logger(__name__)

# Refreshes attempted by get_valid_token before giving up
MAX_REFRESH_ATTEMPTS = 2

REFRESH_FAILED_MESSAGE = "Token refresh failed"


@dataclass
class DecryptedTokens:
    """Plaintext credentials; never persisted or logged."""

    access_token: str
    refresh_token: str | None
    expires_at: datetime | None


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes (SQLite drops the offset)."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class TokenManager:
    """Stores, refreshes and invalidates provider credentials."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        registry: ProviderRegistry | None = None,
        rate_limiter: RateLimiter | None = None,
        cipher: TokenCipher | None = None,
        audit: AuditLogger | None = None,
        cache: CacheService | None = None,
        refresh_buffer_seconds: int | None = None,
    ):
        self.session_factory = session_factory or async_session_maker
        self.registry = registry or provider_registry
        self.rate_limiter = rate_limiter or RateLimiter.get_instance()
        self.cipher = cipher or get_token_cipher()
        self.audit = audit or AuditLogger(self.session_factory)
        self.cache = cache or CacheService.get_instance()
        self.refresh_buffer_seconds = (
            refresh_buffer_seconds
            if refresh_buffer_seconds is not None
            else settings.token_refresh_buffer_seconds
        )

    def is_token_expired(self, expires_at: datetime | None, buffer_seconds: int | None = None) -> bool:
        """Check if a token expires within the refresh buffer.

        A token without an expiry is treated as long-lived.
        """
        if expires_at is None:
            return False
        buffer = self.refresh_buffer_seconds if buffer_seconds is None else buffer_seconds
        return as_utc(expires_at) <= datetime.now(timezone.utc) + timedelta(seconds=buffer)

    # ========== Persistence ==========

    async def get_connection(self, user_id: int, provider: str) -> StorageConnection | None:
        async with self.session_factory() as db:
            result = await db.execute(
                select(StorageConnection).where(
                    StorageConnection.user_id == user_id,
                    StorageConnection.provider == provider,
                )
            )
            return result.scalar_one_or_none()

    async def get_user_connections(self, user_id: int) -> list[StorageConnection]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(StorageConnection)
                .where(StorageConnection.user_id == user_id)
                .order_by(StorageConnection.provider)
            )
            return list(result.scalars().all())

    async def store_encrypted_tokens(
        self,
        user_id: int,
        provider: str,
        access_token: str,
        refresh_token: str | None = None,
        expires_at: datetime | None = None,
    ) -> None:
        """Encrypt and upsert the credentials of a completed OAuth handshake.

        An existing refresh token is kept when ``refresh_token`` is None.
        The connection is (re)activated and its last error cleared.
        """
        now = datetime.now(timezone.utc)
        values = {
            "user_id": user_id,
            "provider": provider,
            "access_token": self.cipher.encrypt(access_token),
            "refresh_token": self.cipher.encrypt(refresh_token) if refresh_token else None,
            "expires_at": expires_at,
            "status": ConnectionStatus.ACTIVE,
            "last_error": None,
            "last_error_at": None,
            "updated_at": now,
        }
        updates = {k: v for k, v in values.items() if k not in ("user_id", "provider")}
        if refresh_token is None:
            del updates["refresh_token"]

        async with self.session_factory() as db:
            stmt = upsert_insert(db, StorageConnection).values(**values)
            stmt = stmt.on_conflict_do_update(index_elements=["user_id", "provider"], set_=updates)
            await db.execute(stmt)
            await db.commit()

        logger.info("storage_tokens_stored", user_id=user_id, provider=provider)
        await self.cache.invalidate_storage_providers(user_id)
        await self.audit.log_connection(user_id, provider, connected=True)

    async def get_decrypted_tokens(self, user_id: int, provider: str) -> DecryptedTokens:
        """Load and decrypt the stored credentials.

        Raises:
            NotFoundError: If the user has no connection for the provider.
            AuthError: If a stored credential cannot be decrypted.
        """
        connection = await self.get_connection(user_id, provider)
        if connection is None:
            raise NotFoundError(f"No {provider} connection for user {user_id}")

        return DecryptedTokens(
            access_token=self.cipher.decrypt(connection.access_token),
            refresh_token=(
                self.cipher.decrypt(connection.refresh_token) if connection.refresh_token else None
            ),
            expires_at=as_utc(connection.expires_at),
        )

    # ========== Lifecycle ==========

    async def get_valid_token(self, user_id: int, provider: str) -> str:
        """Return a plaintext access token, refreshing it first if needed.

        Raises:
            NotFoundError: If the user has no connection for the provider.
            AuthError: If the connection is disconnected or cannot be refreshed.
        """
        for attempt in range(MAX_REFRESH_ATTEMPTS + 1):
            connection = await self.get_connection(user_id, provider)
            if connection is None:
                raise NotFoundError(f"No {provider} connection for user {user_id}")
            if not connection.is_active:
                raise AuthError(f"{provider} connection is disconnected; re-authentication required")

            if not self.is_token_expired(connection.expires_at):
                return self.cipher.decrypt(connection.access_token)

            if attempt < MAX_REFRESH_ATTEMPTS:
                logger.info(
                    "token_expiring",
                    user_id=user_id,
                    provider=provider,
                    attempt=attempt + 1,
                )
                await self.refresh_token(user_id, provider)

        logger.error("token_still_expired", user_id=user_id, provider=provider)
        await self.invalidate_connection(user_id, provider)
        raise AuthError("Access token still expired after refresh")

    async def refresh_token(self, user_id: int, provider: str) -> str:
        """Refresh the access token and persist the result.

        Returns:
            The new plaintext access token.

        Raises:
            NotFoundError: If the user has no connection for the provider.
            AuthError: If there is no refresh token or the provider rejects it.
            BackoffError: If the provider is throttling requests.
        """
        connection = await self.get_connection(user_id, provider)
        if connection is None:
            raise NotFoundError(f"No {provider} connection for user {user_id}")

        if not connection.refresh_token:
            logger.warning("refresh_token_missing", user_id=user_id, provider=provider)
            await self.invalidate_connection(user_id, provider)
            raise AuthError("No refresh token available")

        if not self.registry.is_registered(provider):
            raise UnsupportedProviderError(provider)

        try:
            refresh_plain = self.cipher.decrypt(connection.refresh_token)
            client = self.registry.create(
                provider, self.cipher.decrypt(connection.access_token), refresh_plain
            )
            tokens = await self.rate_limiter.execute_with_rate_limit(
                provider,
                "token_refresh",
                lambda: client.refresh_access_token(refresh_plain),
            )
        except BackoffError:
            raise
        except Exception as e:
            logger.error(
                "token_refresh_failed",
                user_id=user_id,
                provider=provider,
                error=str(e),
                error_type=type(e).__name__,
            )
            await self.invalidate_connection(user_id, provider)
            raise AuthError(REFRESH_FAILED_MESSAGE) from e

        values = {
            "access_token": self.cipher.encrypt(tokens.access_token),
            "expires_at": tokens.expires_at,
            "last_error": None,
            "last_error_at": None,
            "updated_at": datetime.now(timezone.utc),
        }
        if tokens.refresh_token:
            values["refresh_token"] = self.cipher.encrypt(tokens.refresh_token)

        async with self.session_factory() as db:
            await db.execute(
                update(StorageConnection)
                .where(
                    StorageConnection.user_id == user_id,
                    StorageConnection.provider == provider,
                )
                .values(**values)
            )
            await db.commit()

        logger.info(
            "token_refreshed",
            user_id=user_id,
            provider=provider,
            expires_at=tokens.expires_at.isoformat(),
            refresh_token_rotated=tokens.refresh_token is not None,
        )
        return tokens.access_token

    async def invalidate_connection(
        self, user_id: int, provider: str, reason: str = REFRESH_FAILED_MESSAGE
    ) -> None:
        """Mark a connection disconnected so the user is asked to re-authenticate."""
        now = datetime.now(timezone.utc)
        async with self.session_factory() as db:
            await db.execute(
                update(StorageConnection)
                .where(
                    StorageConnection.user_id == user_id,
                    StorageConnection.provider == provider,
                )
                .values(
                    status=ConnectionStatus.DISCONNECTED,
                    last_error=reason,
                    last_error_at=now,
                    updated_at=now,
                )
            )
            await db.commit()

        logger.warning("storage_connection_invalidated", user_id=user_id, provider=provider, reason=reason)
        await self.cache.invalidate_storage_providers(user_id)
        await self.audit.log_connection(user_id, provider, connected=False, metadata={"reason": reason})

    async def get_provider(self, user_id: int, provider: str) -> StorageProvider:
        """Build a provider client authorized with a valid access token."""
        if not self.registry.is_registered(provider):
            raise UnsupportedProviderError(provider)
        access_token = await self.get_valid_token(user_id, provider)
        return self.registry.create(provider, access_token=access_token)
