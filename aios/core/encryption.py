"""Fernet sealing for credentials persisted in the config blob."""

import logging

from cryptography.fernet import Fernet, InvalidToken

from aios.core.config import settings

logger = logging.getLogger(__name__)

SEALED_PREFIX = "enc:"

_fernet: Fernet | None = None
_fernet_key: str = ""


def _get_fernet() -> Fernet | None:
    global _fernet, _fernet_key
    key = settings.fernet_key
    if not key:
        return None
    if _fernet is None or key != _fernet_key:
        _fernet = Fernet(key.encode())
        _fernet_key = key
    return _fernet


def seal_secret(plaintext: str) -> str:
    """Encrypt a secret for storage. Returns it unchanged when no key is configured."""
    fernet = _get_fernet()
    if fernet is None or not plaintext:
        return plaintext
    return SEALED_PREFIX + fernet.encrypt(plaintext.encode("utf-8")).decode("ascii")


def open_secret(stored: str) -> str:
    """Reverse ``seal_secret``. Plaintext values pass through; returns empty string on failure."""
    if not stored or not stored.startswith(SEALED_PREFIX):
        return stored
    fernet = _get_fernet()
    if fernet is None:
        logger.error("Sealed credential found but AIOS_FERNET_KEY is not configured")
        return ""
    try:
        return fernet.decrypt(stored[len(SEALED_PREFIX) :].encode("ascii")).decode("utf-8")
    except InvalidToken:
        logger.error("Failed to decrypt credential: invalid Fernet key or corrupted data")
        return ""
