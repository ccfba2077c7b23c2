"""Encryption of IMAP passwords stored in the credential store.

Passwords are kept as Fernet tokens in ``user_settings.imap_password``. The key
is sourced from the ``EMAIL_ENCRYPTION_KEY`` environment variable so it can be
managed outside of version control; generate one with :func:`generate_key`.
"""

import os

from cryptography.fernet import Fernet, InvalidToken

_KEY_ENV_VAR = "EMAIL_ENCRYPTION_KEY"

__all__ = ["InvalidToken", "decrypt", "encrypt", "generate_key", "is_configured"]


def _get_fernet() -> Fernet:
    key = os.environ.get(_KEY_ENV_VAR)
    if not key:
        raise RuntimeError(f"{_KEY_ENV_VAR} is not set")
    return Fernet(key.encode())


def is_configured() -> bool:
    return bool(os.environ.get(_KEY_ENV_VAR))


def generate_key() -> str:
    return Fernet.generate_key().decode()


def encrypt(secret: str) -> str:
    """Encrypt ``secret`` into a URL-safe Fernet token."""
    return _get_fernet().encrypt(secret.encode()).decode()


def decrypt(token: str) -> str:
    """Decrypt a Fernet ``token``; raises :class:`InvalidToken` when tampered or keyed differently."""
    return _get_fernet().decrypt(token.encode()).decode()
