"""FolderMapping model linking galleries to provider folders."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import DateTime, Index, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from storagesync.db.base import Base


class FolderMapping(Base):
    """Maps a gallery (album) id to its folder in a storage provider.

    The parent chain of a mapping ends at the owner's RootFolder for the
    same provider.
    """

    __tablename__ = "folder_mappings"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    gallery_id: Mapped[int] = mapped_column(Integer, nullable=False)
    provider: Mapped[str] = mapped_column(String(50), nullable=False)
    provider_folder_id: Mapped[str] = mapped_column(String(255), nullable=False)
    parent_folder_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )

    __table_args__ = (
        UniqueConstraint("gallery_id", "provider", name="uq_folder_mappings_gallery_provider"),
        Index("ix_folder_mappings_provider_folder", "provider", "provider_folder_id"),
    )
