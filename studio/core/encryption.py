"""Fernet encryption helpers for credential secrets at rest."""

import logging

from cryptography.fernet import Fernet, InvalidToken

from studio.core.config import settings

logger = logging.getLogger(__name__)

ENCRYPTED_PREFIX = "enc:"

_fernets: dict[str, Fernet] = {}


def _get_fernet() -> Fernet | None:
    key = settings.credential_encryption_key
    if not key:
        return None
    if key not in _fernets:
        _fernets[key] = Fernet(key.encode())
    return _fernets[key]


def encrypt_secret(plaintext: str) -> str:
    """Encrypt a secret for storage. Without a configured key the value is stored as-is."""
    fernet = _get_fernet()
    if fernet is None:
        return plaintext
    return ENCRYPTED_PREFIX + fernet.encrypt(plaintext.encode("utf-8")).decode("ascii")


def decrypt_secret(stored: str) -> str:
    """Reverse encrypt_secret. Returns empty string when the value cannot be decrypted."""
    if not stored.startswith(ENCRYPTED_PREFIX):
        return stored
    fernet = _get_fernet()
    if fernet is None:
        logger.error("Encrypted credential found but CREDENTIAL_ENCRYPTION_KEY is not configured")
        return ""
    try:
        return fernet.decrypt(stored[len(ENCRYPTED_PREFIX) :].encode("ascii")).decode("utf-8")
    except InvalidToken:
        logger.error("Failed to decrypt credential: invalid Fernet key or corrupted data")
        return ""
