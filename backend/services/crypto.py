"""
Symmetric encryption for portal credentials and persisted cookie jars.

Fernet (AES-128-CBC + HMAC-SHA256) with a fixed-length 32-byte url-safe
base64 key taken from PORTAL_ENCRYPTION_KEY.
"""
import logging
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

logger = logging.getLogger(__name__)


class EncryptionKeyError(RuntimeError):
    """The configured key is missing or not a valid Fernet key"""
    pass


class TokenCipher:
    """Encrypts and decrypts short text values (passwords, JSON blobs)."""

    def __init__(self, key: Optional[str] = None):
        if key is None:
            from config import PORTAL_ENCRYPTION_KEY
            key = PORTAL_ENCRYPTION_KEY
        if not key:
            raise EncryptionKeyError("PORTAL_ENCRYPTION_KEY is not configured")
        try:
            self._fernet = Fernet(key.encode() if isinstance(key, str) else key)
        except (ValueError, TypeError) as e:
            raise EncryptionKeyError(f"Invalid encryption key: {e}") from e

    def encrypt(self, plaintext: str) -> str:
        return self._fernet.encrypt(plaintext.encode('utf-8')).decode('ascii')

    def decrypt(self, token: str) -> str:
        """
        Raises:
            InvalidToken: wrong key or tampered ciphertext
        """
        return self._fernet.decrypt(token.encode('ascii')).decode('utf-8')


_default_cipher: Optional[TokenCipher] = None


def get_cipher() -> TokenCipher:
    """Process-wide cipher built from configuration on first use."""
    global _default_cipher
    if _default_cipher is None:
        _default_cipher = TokenCipher()
    return _default_cipher


__all__ = ['TokenCipher', 'EncryptionKeyError', 'InvalidToken', 'get_cipher']
