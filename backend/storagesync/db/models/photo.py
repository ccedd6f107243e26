"""Photo model (catalog entry backed by a provider file)."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import TYPE_CHECKING

from sqlalchemy import BigInteger, DateTime, ForeignKey, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from storagesync.db.base import Base

if TYPE_CHECKING:
    from storagesync.db.models.album import Album


class Photo(Base):
    """A photo stored in a cloud provider.

    Sync only changes ``name`` and ``deleted_at``; rows are created elsewhere.
    """

    __tablename__ = "photos"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    album_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("albums.id", ondelete="CASCADE"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(512), nullable=False)
    provider_file_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    mime_type: Mapped[str | None] = mapped_column(String(100), nullable=True)
    file_size: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )

    album: Mapped[Album] = relationship("Album", back_populates="photos")

    __table_args__ = (
        Index("ix_photos_provider_file_id", "provider_file_id"),
        Index("ix_photos_album_id", "album_id"),
    )

    @property
    def is_deleted(self) -> bool:
        """Check if the photo has been soft-deleted."""
        return self.deleted_at is not None
