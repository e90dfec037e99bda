"""
Field-level encryption for integration secrets and stored API keys.

Fernet symmetric encryption from the `cryptography` package, keyed by the
ENCRYPTION_KEY env var. Without a key (development only) values are stored as-is
so local runs work without extra setup.
"""

import json
import logging
from typing import Any
from cryptography.fernet import Fernet, InvalidToken
from app.config import get_settings

logger = logging.getLogger(__name__)

_fernet = None
_NO_KEY_WARNING_EMITTED = False


def _get_fernet() -> Fernet | None:
    """Lazy-init the Fernet instance from the configured key."""
    global _fernet, _NO_KEY_WARNING_EMITTED
    if _fernet is not None:
        return _fernet

    settings = get_settings()
    key = settings.encryption_key

    if not key:
        if settings.is_production:
            raise RuntimeError("ENCRYPTION_KEY must be set in production.")
        if not _NO_KEY_WARNING_EMITTED:
            logger.warning("ENCRYPTION_KEY not set; integration secrets are stored in plaintext (development only).")
            _NO_KEY_WARNING_EMITTED = True
        return None

    try:
        _fernet = Fernet(key.encode() if isinstance(key, str) else key)
    except ValueError as exc:
        raise RuntimeError(f"Invalid ENCRYPTION_KEY: {exc}") from exc

    return _fernet


def reset_cipher() -> None:
    """Drop the cached Fernet instance (after the key setting changes)."""
    global _fernet
    _fernet = None


def encrypt_value(plaintext: str | None) -> str | None:
    if plaintext is None:
        return None
    f = _get_fernet()
    if f is None:
        return plaintext
    return f.encrypt(plaintext.encode()).decode()


def decrypt_value(ciphertext: str | None) -> str | None:
    if ciphertext is None:
        return None
    f = _get_fernet()
    if f is None:
        return ciphertext
    try:
        return f.decrypt(ciphertext.encode()).decode()
    except InvalidToken:
        # Value may predate encryption being enabled
        logger.warning("Failed to decrypt value — returning as-is (may be pre-encryption plaintext).")
        return ciphertext


def encrypt_json(data: dict[str, Any]) -> str:
    return encrypt_value(json.dumps(data))


def decrypt_json(ciphertext: str) -> dict[str, Any]:
    return json.loads(decrypt_value(ciphertext))
