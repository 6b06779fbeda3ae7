"""Fernet encryption for secrets stored at rest (API key webhook signing secrets)."""

import base64
import hashlib
import secrets

from cryptography.fernet import Fernet, InvalidToken

from app.core.config import get_settings
from app.core.exceptions import ServiceUnavailableError


def _get_fernet() -> Fernet:
    settings = get_settings()
    key = settings.token_encryption_key
    if not key or len(key) != 44:
        # Derive from secret_key when TOKEN_ENCRYPTION_KEY is not set
        digest = hashlib.sha256(settings.secret_key.encode()).digest()
        key = base64.urlsafe_b64encode(digest).decode()
    try:
        return Fernet(key.encode())
    except ValueError as e:
        raise ServiceUnavailableError(f"Invalid encryption key: {e}") from e


def encrypt_secret(plain: str) -> str:
    if not plain:
        return ""
    return _get_fernet().encrypt(plain.encode()).decode()


def decrypt_secret(encrypted: str) -> str:
    if not encrypted:
        return ""
    try:
        return _get_fernet().decrypt(encrypted.encode()).decode()
    except InvalidToken:
        return ""


def generate_webhook_secret() -> str:
    return "whsec_" + secrets.token_urlsafe(32)
