"""StorageConnection model for per-user OAuth credentials."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import DateTime, Enum, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from storagesync.db.base import Base
from storagesync.db.models.enums import ConnectionStatus


class StorageConnection(Base):
    """OAuth credentials linking one user to one storage provider.

    Tokens are stored Fernet-encrypted (see storagesync.core.security).
    Rows are never deleted; a failed refresh only flips the status to
    DISCONNECTED so the user can be asked to re-authenticate.
    """

    __tablename__ = "storage_connections"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )

    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    provider: Mapped[str] = mapped_column(String(50), nullable=False)

    # Encrypted tokens
    access_token: Mapped[str] = mapped_column(Text, nullable=False)
    refresh_token: Mapped[str | None] = mapped_column(Text, nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    status: Mapped[ConnectionStatus] = mapped_column(
        Enum(ConnectionStatus, values_callable=lambda e: [m.value for m in e]),
        default=ConnectionStatus.ACTIVE,
        nullable=False,
    )
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_error_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        UniqueConstraint("user_id", "provider", name="uq_storage_connections_user_provider"),
        Index("ix_storage_connections_user_status", "user_id", "status"),
    )

    @property
    def is_active(self) -> bool:
        """Check if the connection can be used for provider calls."""
        return self.status == ConnectionStatus.ACTIVE
