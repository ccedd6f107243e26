"""Database models for storage synchronization."""

from storagesync.db.models.album import Album
from storagesync.db.models.audit_log import AuditLog
from storagesync.db.models.enums import ConnectionStatus
from storagesync.db.models.folder_mapping import FolderMapping
from storagesync.db.models.photo import Photo
from storagesync.db.models.root_folder import RootFolder
from storagesync.db.models.storage_connection import StorageConnection
from storagesync.db.models.sync_state import SyncState

__all__ = [
    # Models
    "Album",
    "AuditLog",
    "FolderMapping",
    "Photo",
    "RootFolder",
    "StorageConnection",
    "SyncState",
    # Enums
    "ConnectionStatus",
]
