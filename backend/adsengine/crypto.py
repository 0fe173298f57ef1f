"""
Field-level encryption for stored ad platform access tokens.

Fernet (from `cryptography`) keyed by ENCRYPTION_KEY. Without a key in
development, tokens pass through unencrypted.
"""

import logging
from functools import lru_cache
from typing import Optional
from cryptography.fernet import Fernet, InvalidToken
from adsengine.config import get_settings

logger = logging.getLogger(__name__)


@lru_cache
def _fernet_for(key: str, production: bool) -> Optional[Fernet]:
    if not key:
        if production:
            raise RuntimeError("ENCRYPTION_KEY must be set in production.")
        logger.warning("ENCRYPTION_KEY not set — ad platform tokens are stored in plaintext (development only).")
        return None
    try:
        return Fernet(key.encode())
    except ValueError as exc:
        raise RuntimeError(f"Invalid ENCRYPTION_KEY: {exc}") from exc


def _fernet() -> Optional[Fernet]:
    settings = get_settings()
    return _fernet_for(settings.encryption_key, settings.is_production)


def encrypt_value(plaintext: Optional[str]) -> Optional[str]:
    if plaintext is None:
        return None
    f = _fernet()
    return f.encrypt(plaintext.encode()).decode() if f else plaintext


def decrypt_value(ciphertext: Optional[str]) -> Optional[str]:
    if ciphertext is None:
        return None
    f = _fernet()
    if f is None:
        return ciphertext
    try:
        return f.decrypt(ciphertext.encode()).decode()
    except InvalidToken:
        # Token may have been stored before ENCRYPTION_KEY was configured
        logger.warning("Stored token is not Fernet ciphertext — using it as-is.")
        return ciphertext


def mask_token(token: Optional[str]) -> str:
    """Short, log-safe representation of a token."""
    if not token:
        return "<none>"
    return f"{token[:4]}…{token[-4:]}" if len(token) > 12 else "****"
