"""Recipient encryption.

Phone numbers and email addresses travel through the queue and sit in the
notifications table encrypted. Only the dispatch worker decrypts them,
immediately before handing the address to a provider.
"""

import base64
import hashlib
import logging

from cryptography.fernet import Fernet, InvalidToken

from .config import Settings

logger = logging.getLogger(__name__)


class DecryptionError(Exception):
    """Ciphertext could not be decrypted with the configured key."""
    pass


class RecipientCipher:
    """Fernet wrapper for recipient addresses."""

    def __init__(self, key: str | bytes):
        if isinstance(key, str):
            key = key.encode()
        self._fernet = Fernet(key)

    @classmethod
    def from_settings(cls, settings: Settings) -> "RecipientCipher":
        if settings.encryption_enabled:
            return cls(settings.encryption_key)

        logger.warning(
            "ENCRYPTION_KEY is not set; deriving the recipient key from SECRET_KEY"
        )
        return cls(derive_key(settings.secret_key))

    def encrypt(self, plaintext: str) -> str:
        return self._fernet.encrypt(plaintext.encode()).decode()

    def decrypt(self, ciphertext: str) -> str:
        if not ciphertext:
            raise DecryptionError("Empty ciphertext")
        try:
            return self._fernet.decrypt(ciphertext.encode()).decode()
        except (InvalidToken, ValueError) as e:
            raise DecryptionError(f"Failed to decrypt recipient: {type(e).__name__}") from e


def derive_key(secret: str) -> bytes:
    """Derive a Fernet key from an arbitrary secret string."""
    digest = hashlib.sha256(secret.encode()).digest()
    return base64.urlsafe_b64encode(digest)
