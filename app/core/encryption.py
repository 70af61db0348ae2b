"""Fernet encryption for provider OAuth tokens stored in the database."""

from __future__ import annotations

import base64
import os

from cryptography.fernet import Fernet, InvalidToken
from loguru import logger


class EncryptionError(Exception):
    """Raised when encryption/decryption operations fail."""


class EncryptionKeyError(EncryptionError):
    """Raised when a stored token was encrypted with a different key.

    Integrations affected by this must be reconnected by the user.
    """


_cipher: Fernet | None = None


def _get_encryption_key() -> bytes:
    """Read ENCRYPTION_KEY, or generate a throwaway key for local development.

    Returns:
        Fernet key as bytes
    """
    key_env = os.getenv("ENCRYPTION_KEY")
    if key_env:
        return key_env.encode()

    logger.warning(
        "ENCRYPTION_KEY not set. Generating an ephemeral key; stored tokens "
        "will be unreadable after a restart. Set ENCRYPTION_KEY (Fernet.generate_key())."
    )
    return Fernet.generate_key()


def _get_cipher() -> Fernet:
    global _cipher
    if _cipher is None:
        try:
            _cipher = Fernet(_get_encryption_key())
        except ValueError as e:
            raise EncryptionError("Invalid ENCRYPTION_KEY format. Must be a Fernet key.") from e
    return _cipher


def encrypt_token(token: str) -> str:
    """Encrypt a token string for storage.

    Args:
        token: Plain text token

    Returns:
        URL-safe base64 encoded ciphertext

    Raises:
        EncryptionError: If encryption fails
    """
    try:
        encrypted = _get_cipher().encrypt(token.encode())
    except (TypeError, ValueError) as e:
        raise EncryptionError(f"Failed to encrypt token: {e}") from e
    return base64.urlsafe_b64encode(encrypted).decode()


def decrypt_token(encrypted_token: str) -> str:
    """Decrypt a token produced by encrypt_token.

    Raises:
        EncryptionKeyError: If the token was encrypted with another key
        EncryptionError: If the value is not a valid ciphertext
    """
    try:
        encrypted_bytes = base64.urlsafe_b64decode(encrypted_token.encode())
        return _get_cipher().decrypt(encrypted_bytes).decode()
    except InvalidToken as e:
        logger.error("Token decryption failed: wrong ENCRYPTION_KEY. Affected users must reconnect.")
        raise EncryptionKeyError("Token was encrypted with a different ENCRYPTION_KEY") from e
    except (TypeError, ValueError) as e:
        raise EncryptionError(f"Failed to decrypt token: {e}") from e
