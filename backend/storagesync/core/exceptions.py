"""Error taxonomy for storage synchronization.

Provider adapters translate SDK failures into these types at the boundary,
so services only ever see the categories below.
"""

from __future__ import annotations


class StorageSyncError(Exception):
    """Base exception for storage synchronization errors."""

    def __init__(self, message: str, code: str = "STORAGE_SYNC_ERROR"):
        self.message = message
        self.code = code
        super().__init__(message)


class AuthError(StorageSyncError):
    """Raised when a credential is invalid or revoked.

    Terminal until the user re-authenticates.
    """

    def __init__(self, message: str = "Storage credentials are invalid or revoked"):
        super().__init__(message, "AUTH_ERROR")


class QuotaExceededError(StorageSyncError):
    """Raised when a non-priority operation is over the provider quota."""

    def __init__(self, provider: str, operation: str, message: str | None = None):
        self.provider = provider
        self.operation = operation
        msg = message or f"Rate limit exceeded for provider: {provider} ({operation})"
        super().__init__(msg, "QUOTA_EXCEEDED")


class BackoffError(StorageSyncError):
    """Raised when a provider is throttling requests.

    Adapters raise it for provider rate-limit responses; the rate limiter
    raises it while the provider is still in backoff.
    """

    def __init__(
        self,
        retry_after: int | None = None,
        provider: str | None = None,
        message: str | None = None,
    ):
        self.retry_after = retry_after
        self.provider = provider
        if message is None:
            target = f"Provider {provider}" if provider else "Provider"
            message = f"{target} is rate limiting requests"
            if retry_after is not None:
                message += f". Retry after {retry_after} seconds"
        super().__init__(message, "BACKOFF")


class NotFoundError(StorageSyncError):
    """Raised when a connection, mapping or remote object does not exist."""

    def __init__(self, message: str = "Resource not found"):
        super().__init__(message, "NOT_FOUND")


class TransientProviderError(StorageSyncError):
    """Raised for network errors, timeouts and 5xx responses."""

    def __init__(self, message: str = "Temporary provider failure"):
        super().__init__(message, "TRANSIENT")


class UnsupportedProviderError(StorageSyncError):
    """Raised when no adapter is registered for a provider id."""

    def __init__(self, provider: str):
        self.provider = provider
        super().__init__(f"Unsupported provider: {provider}", "UNSUPPORTED_PROVIDER")


class ProviderError(StorageSyncError):
    """Raised for any other non-retryable provider failure."""

    def __init__(self, message: str):
        super().__init__(message, "PROVIDER_ERROR")
