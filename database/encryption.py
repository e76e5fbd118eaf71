"""
Encryption of OAuth secrets stored in ``mcp_credentials``.

Access tokens, refresh tokens and client secrets are written as Fernet
ciphertext when ``TOKEN_ENCRYPTION_KEY`` is configured.  Without a key the
values are stored as plaintext and a warning is logged once.  Generate a
key with::

    python -c "from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())"
"""

from __future__ import annotations

import logging
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from config.settings import config

logger = logging.getLogger(__name__)

_fernet: Optional[Fernet] = None
_initialised = False


def _cipher() -> Optional[Fernet]:
    """Build the Fernet cipher on first use; ``None`` when encryption is off."""
    global _fernet, _initialised

    if _initialised:
        return _fernet
    _initialised = True

    key = config.token_encryption_key
    if not key:
        logger.warning("TOKEN_ENCRYPTION_KEY not set — OAuth secrets are stored unencrypted")
        return None

    try:
        _fernet = Fernet(key.encode())
        logger.info("Credential encryption enabled (Fernet)")
    except (ValueError, TypeError) as exc:
        logger.error("Invalid TOKEN_ENCRYPTION_KEY, credential encryption disabled: %s", exc)
        _fernet = None
    return _fernet


def encrypt_secret(plaintext: Optional[str]) -> Optional[str]:
    """Encrypt a secret for storage.  ``None`` and ``""`` pass through."""
    if not plaintext:
        return plaintext
    cipher = _cipher()
    if cipher is None:
        return plaintext
    return cipher.encrypt(plaintext.encode()).decode()


def decrypt_secret(ciphertext: Optional[str]) -> Optional[str]:
    """
    Decrypt a stored secret.

    Rows written before encryption was enabled are not valid Fernet tokens
    and are returned unchanged.
    """
    if not ciphertext:
        return ciphertext
    cipher = _cipher()
    if cipher is None:
        return ciphertext
    try:
        return cipher.decrypt(ciphertext.encode()).decode()
    except InvalidToken:
        return ciphertext


def is_encryption_enabled() -> bool:
    return _cipher() is not None
