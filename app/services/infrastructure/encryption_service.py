"""
Encryption for stored webinar provider credentials.
Uses Fernet symmetric encryption; tokens live in BYTEA columns.
"""

from cryptography.fernet import Fernet, InvalidToken

from app.config import settings
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class EncryptionError(Exception):
    """Raised when a token cannot be encrypted or decrypted."""


def _get_fernet(key: str | None = None) -> Fernet:
    """
    Build a Fernet cipher from ENCRYPTION_KEY (or an explicit key).

    Raises:
        EncryptionError: If the key is missing or malformed
    """
    key = key or settings.ENCRYPTION_KEY
    if not key:
        raise EncryptionError("ENCRYPTION_KEY not configured in environment")

    try:
        return Fernet(key.encode("utf-8"))
    except (ValueError, TypeError) as e:
        logger.error("Failed to initialize Fernet cipher", error=str(e))
        raise EncryptionError(f"Invalid encryption key: {e}") from e


def encrypt_token(token: str, *, key: str | None = None) -> bytes:
    """
    Encrypt a provider access token for database storage.

    Args:
        token: Plain text token
        key: Optional Fernet key overriding settings

    Returns:
        bytes: Ciphertext ready for a BYTEA column
    """
    if not token or not isinstance(token, str):
        raise EncryptionError("Token must be a non-empty string")

    return _get_fernet(key).encrypt(token.encode("utf-8"))


def decrypt_token(encrypted_token: bytes | memoryview, *, key: str | None = None) -> str:
    """
    Decrypt a provider access token read from storage.

    psycopg returns BYTEA as bytes or memoryview depending on the loader, so
    both are accepted.

    Raises:
        EncryptionError: If the ciphertext is empty, corrupted, or keyed differently
    """
    if isinstance(encrypted_token, memoryview):
        encrypted_token = encrypted_token.tobytes()

    if not encrypted_token or not isinstance(encrypted_token, bytes):
        raise EncryptionError("Encrypted token must be non-empty bytes")

    try:
        return _get_fernet(key).decrypt(encrypted_token).decode("utf-8")
    except InvalidToken as e:
        logger.error("Token decryption failed - invalid token")
        raise EncryptionError("Invalid or corrupted token") from e
