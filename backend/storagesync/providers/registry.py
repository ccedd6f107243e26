"""Lookup of StorageProvider implementations by provider id."""

from __future__ import annotations

from collections.abc import Callable

from storagesync.core.exceptions import UnsupportedProviderError
from storagesync.core.logging import get_logger
from storagesync.providers.base import StorageProvider

logger = get_logger(__name__)

ProviderFactory = Callable[..., StorageProvider]


class ProviderRegistry:
    """Maps provider ids (e.g. "dropbox") to adapter factories.

    A factory is called as ``factory(access_token, refresh_token)``; adapter
    classes qualify directly.
    """

    def __init__(self) -> None:
        self._factories: dict[str, ProviderFactory] = {}

    def register(self, provider_id: str, factory: ProviderFactory) -> None:
        """Register (or replace) the factory for a provider id."""
        if provider_id in self._factories:
            logger.info("provider_factory_replaced", provider=provider_id)
        self._factories[provider_id] = factory

    def is_registered(self, provider_id: str) -> bool:
        return provider_id in self._factories

    @property
    def providers(self) -> list[str]:
        """Registered provider ids, sorted."""
        return sorted(self._factories)

    def create(
        self, provider_id: str, access_token: str, refresh_token: str | None = None
    ) -> StorageProvider:
        """Build a provider instance for the given credentials.

        Raises:
            UnsupportedProviderError: If no factory is registered for the id.
        """
        factory = self._factories.get(provider_id)
        if factory is None:
            raise UnsupportedProviderError(provider_id)
        return factory(access_token, refresh_token)
