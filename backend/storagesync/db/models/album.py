"""Album model (gallery catalog entry)."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import TYPE_CHECKING

from sqlalchemy import DateTime, ForeignKey, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from storagesync.db.base import Base

if TYPE_CHECKING:
    from storagesync.db.models.photo import Photo


class Album(Base):
    """A user's gallery or sub-gallery.

    Owned by the catalog; sync only reads it to scope changes to a user.
    """

    __tablename__ = "albums"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    parent_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("albums.id", ondelete="CASCADE"), nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )

    photos: Mapped[list[Photo]] = relationship(
        "Photo", back_populates="album", cascade="all, delete-orphan"
    )

    __table_args__ = (Index("ix_albums_user_id", "user_id"),)
