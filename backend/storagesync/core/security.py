"""Encryption of OAuth credentials at rest."""

from __future__ import annotations

from cryptography.fernet import Fernet, InvalidToken

from storagesync.core.config import settings
from storagesync.core.exceptions import AuthError
from storagesync.core.logging import get_logger

logger = get_logger(__name__)


class TokenCipher:
    """Fernet wrapper used for every stored access and refresh token."""

    def __init__(self, key: str | bytes | None = None):
        if key is None:
            key = Fernet.generate_key()
            logger.warning(
                "encryption_key_generated",
                message="Using auto-generated encryption key. Set STORAGESYNC_ENCRYPTION_KEY for persistence.",
            )
        if isinstance(key, str):
            key = key.encode()
        self._fernet = Fernet(key)

    def encrypt(self, data: str) -> str:
        """Encrypt a string using Fernet."""
        return self._fernet.encrypt(data.encode()).decode()

    def decrypt(self, encrypted_data: str) -> str:
        """Decrypt a Fernet-encrypted string.

        Raises:
            AuthError: If the value was not produced with this key.
        """
        try:
            return self._fernet.decrypt(encrypted_data.encode()).decode()
        except InvalidToken as e:
            raise AuthError("Stored credential could not be decrypted") from e


_cipher: TokenCipher | None = None


def get_token_cipher() -> TokenCipher:
    """Get or create the process-wide token cipher."""
    global _cipher
    if _cipher is None:
        _cipher = TokenCipher(settings.encryption_key)
    return _cipher
