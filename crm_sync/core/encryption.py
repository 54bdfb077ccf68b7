"""Encryption utilities for OAuth token storage."""

import base64
import binascii
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from crm_sync.core.config import settings
from crm_sync.core.errors import ConfigurationError, TokenDecryptionError

NONCE_BYTES = 12
TAG_BYTES = 16
KEY_BYTES = 32

_aead: tuple[str, AESGCM] | None = None


def _parse_key(raw: str) -> bytes:
    raw = raw.strip()
    if len(raw) == KEY_BYTES * 2:
        try:
            return bytes.fromhex(raw)
        except ValueError:
            pass
    try:
        key = base64.urlsafe_b64decode(raw + "=" * (-len(raw) % 4))
    except (binascii.Error, ValueError):
        key = b""
    if len(key) != KEY_BYTES:
        raise ConfigurationError(
            "TOKEN_ENCRYPTION_KEY must be 32 bytes (64 hex chars or urlsafe base64). "
            'Generate with: python -c "import secrets; print(secrets.token_hex(32))"'
        )
    return key


def get_aead() -> AESGCM:
    """Get or create the AES-GCM instance for the configured key."""
    global _aead
    raw = settings.TOKEN_ENCRYPTION_KEY
    if not raw:
        raise ConfigurationError("TOKEN_ENCRYPTION_KEY not configured")
    if _aead is None or _aead[0] != raw:
        _aead = (raw, AESGCM(_parse_key(raw)))
    return _aead[1]


def encrypt_token(token: str) -> str:
    """
    Encrypt a token for storage.

    Output format is ``nonce:tag:ciphertext`` with each part hex encoded.
    """
    nonce = os.urandom(NONCE_BYTES)
    sealed = get_aead().encrypt(nonce, token.encode(), None)
    ciphertext, tag = sealed[:-TAG_BYTES], sealed[-TAG_BYTES:]
    return f"{nonce.hex()}:{tag.hex()}:{ciphertext.hex()}"


def decrypt_token(encrypted: str) -> str:
    """Decrypt a stored token. Raises on any malformed or tampered input."""
    aead = get_aead()
    parts = (encrypted or "").split(":")
    if len(parts) != 3:
        raise TokenDecryptionError("Invalid encrypted token format")
    try:
        nonce, tag, ciphertext = (bytes.fromhex(part) for part in parts)
    except ValueError as exc:
        raise TokenDecryptionError("Invalid encrypted token encoding") from exc
    if len(nonce) != NONCE_BYTES or len(tag) != TAG_BYTES:
        raise TokenDecryptionError("Invalid encrypted token format")
    try:
        plaintext = aead.decrypt(nonce, ciphertext + tag, None)
    except InvalidTag as exc:
        raise TokenDecryptionError("Invalid or corrupted encrypted token") from exc
    return plaintext.decode()


def is_encryption_configured() -> bool:
    """Check if token encryption is properly configured."""
    return bool(settings.TOKEN_ENCRYPTION_KEY)
