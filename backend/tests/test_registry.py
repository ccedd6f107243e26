"""Tests for the provider registry."""

import pytest

from storagesync.core.exceptions import UnsupportedProviderError
from storagesync.providers import (
    DropboxProvider,
    GoogleDriveProvider,
    ProviderRegistry,
    build_default_registry,
)


class TestProviderRegistry:
    def test_default_registry_has_builtin_adapters(self):
        registry = build_default_registry()

        assert registry.providers == ["dropbox", "google-drive"]
        assert isinstance(registry.create("google-drive", "token", "refresh"), GoogleDriveProvider)
        assert isinstance(registry.create("dropbox", "token"), DropboxProvider)

    def test_unknown_provider_raises(self):
        registry = ProviderRegistry()

        assert not registry.is_registered("onedrive")
        with pytest.raises(UnsupportedProviderError) as exc_info:
            registry.create("onedrive", "token")

        assert exc_info.value.provider == "onedrive"

    def test_register_passes_credentials_to_factory(self):
        registry = ProviderRegistry()
        calls = []
        registry.register("onedrive", lambda access, refresh: calls.append((access, refresh)) or "client")

        assert registry.create("onedrive", "a", "r") == "client"
        assert calls == [("a", "r")]

    def test_register_replaces_existing_factory(self):
        registry = ProviderRegistry()
        registry.register("dropbox", lambda access, refresh: "first")
        registry.register("dropbox", lambda access, refresh: "second")

        assert registry.create("dropbox", "a") == "second"
        assert registry.providers == ["dropbox"]
