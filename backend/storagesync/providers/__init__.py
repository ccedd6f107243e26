"""Cloud storage provider adapters."""

from storagesync.providers.base import (
    Change,
    ChangeList,
    ChangeType,
    Folder,
    StorageProvider,
    StoredFile,
    TokenResponse,
)
from storagesync.providers.dropbox import DropboxProvider
from storagesync.providers.google_drive import GoogleDriveProvider
from storagesync.providers.registry import ProviderRegistry


def build_default_registry() -> ProviderRegistry:
    """Registry with every built-in adapter."""
    registry = ProviderRegistry()
    registry.register(GoogleDriveProvider.provider_id, GoogleDriveProvider)
    registry.register(DropboxProvider.provider_id, DropboxProvider)
    return registry


# Process-wide registry used by the services
provider_registry = build_default_registry()

__all__ = [
    "Change",
    "ChangeList",
    "ChangeType",
    "DropboxProvider",
    "Folder",
    "GoogleDriveProvider",
    "ProviderRegistry",
    "StorageProvider",
    "StoredFile",
    "TokenResponse",
    "build_default_registry",
    "provider_registry",
]
