"""Database package for storage synchronization."""

from storagesync.db.base import Base
from storagesync.db.session import async_session_maker, engine, get_db
from storagesync.db.upsert import upsert_insert

__all__ = [
    "Base",
    "async_session_maker",
    "engine",
    "get_db",
    "upsert_insert",
]
