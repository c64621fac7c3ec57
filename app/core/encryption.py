"""Provider secrets are stored Fernet-encrypted in ``provider_credentials.secret``."""

import logging
from functools import lru_cache

from cryptography.fernet import Fernet, InvalidToken

from app.core.config import settings

logger = logging.getLogger(__name__)


@lru_cache(maxsize=1)
def _fernet() -> Fernet:
    if not settings.fernet_key:
        raise ValueError("FERNET_KEY is not configured; provider credentials cannot be read or written")
    return Fernet(settings.fernet_key.encode())


def encrypt_value(plaintext: str) -> bytes:
    return _fernet().encrypt(plaintext.encode("utf-8"))


def decrypt_value(ciphertext: bytes) -> str:
    """Decrypt a stored provider secret.

    An undecryptable row yields ``""``; the key pool treats an empty secret
    as unusable and skips it.
    """
    if not ciphertext:
        return ""
    try:
        return _fernet().decrypt(ciphertext).decode("utf-8")
    except InvalidToken:
        logger.error("Provider credential could not be decrypted (wrong FERNET_KEY or corrupted row)")
        return ""
