"""Encryption of device passwords kept in the state directory."""

from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from onvifcam.config import get_settings


def generate_encryption_key() -> str:
    """Generate a new Fernet encryption key."""
    return Fernet.generate_key().decode()


def encrypt_password(password: str, key: Optional[str] = None) -> str:
    """Encrypt a password using Fernet symmetric encryption.

    Without a configured key the password is stored as-is (dev mode).
    """
    key = key if key is not None else get_settings().encryption_key
    if not key or not password:
        return password
    fernet = Fernet(key.encode())
    return fernet.encrypt(password.encode()).decode()


def decrypt_password(encrypted: str, key: Optional[str] = None) -> str:
    """Decrypt a password encrypted with Fernet.

    Values that were stored before a key was configured come back unchanged.
    """
    key = key if key is not None else get_settings().encryption_key
    if not key or not encrypted:
        return encrypted
    try:
        return Fernet(key.encode()).decrypt(encrypted.encode()).decode()
    except InvalidToken:
        return encrypted
