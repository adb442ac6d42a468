"""
At-rest encryption for the OAuth secrets on an Integration row
(access token, refresh token, client secret).

Uses Fernet symmetric encryption with the configured ENCRYPTION_KEY. Without
a key, values are stored as given; rows written before a key was configured
keep reading back as plaintext after one is added.
"""
import logging
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

logger = logging.getLogger(__name__)


def _get_fernet() -> Optional[Fernet]:
    """Fernet cipher for the configured key, or None when encryption is off."""
    from linebridge.config import get_settings
    key = get_settings().encryption_key
    if not key:
        return None

    # An invalid key raises here; misconfiguration must not silently store plaintext
    return Fernet(key.encode() if isinstance(key, str) else key)


def encrypt_value(plaintext: Optional[str]) -> Optional[str]:
    """
    Encrypt a token for storage.
    Returns the value unchanged when it is empty or no key is configured.
    """
    if not plaintext:
        return plaintext

    fernet = _get_fernet()
    if fernet is None:
        return plaintext

    return fernet.encrypt(plaintext.encode()).decode()


def decrypt_value(encrypted: Optional[str]) -> Optional[str]:
    """
    Decrypt a stored token.
    A value that is not a Fernet token for this key is returned as stored
    (written before a key was configured).
    """
    if not encrypted:
        return encrypted

    fernet = _get_fernet()
    if fernet is None:
        return encrypted

    try:
        return fernet.decrypt(encrypted.encode()).decode()
    except InvalidToken:
        logger.debug("Stored value is not a Fernet token, returning as stored")
        return encrypted
