from __future__ import annotations

import hashlib
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from mailguard.config import settings
from mailguard.errors import ConfigurationError, DecryptionError

IV_BYTES = 12
TAG_BYTES = 16


def _derive_key(key: str | bytes) -> bytes:
    """Derive the AES-256 key from an arbitrary caller-supplied key."""
    if isinstance(key, str):
        key = key.encode("utf-8")
    return hashlib.sha256(key).digest()


def encrypt_bytes(data: bytes, key: str | bytes) -> str:
    """Encrypt with AES-256-GCM. Returns ``iv:authTag:ciphertext`` as hex."""
    iv = os.urandom(IV_BYTES)
    sealed = AESGCM(_derive_key(key)).encrypt(iv, data, None)
    ciphertext, tag = sealed[:-TAG_BYTES], sealed[-TAG_BYTES:]
    return f"{iv.hex()}:{tag.hex()}:{ciphertext.hex()}"


def decrypt_bytes(token: str, key: str | bytes) -> bytes:
    """Decrypt an ``iv:authTag:ciphertext`` token, raising on any tampering."""
    parts = token.split(":")
    if len(parts) != 3:
        raise DecryptionError("Malformed ciphertext")
    try:
        iv, tag, ciphertext = (bytes.fromhex(part) for part in parts)
    except ValueError:
        raise DecryptionError("Malformed ciphertext")
    if len(iv) != IV_BYTES or len(tag) != TAG_BYTES:
        raise DecryptionError("Malformed ciphertext")
    try:
        return AESGCM(_derive_key(key)).decrypt(iv, ciphertext + tag, None)
    except InvalidTag:
        raise DecryptionError("Authentication tag did not verify")


def encrypt_sensitive_data(data: str, key: str | bytes) -> str:
    return encrypt_bytes(data.encode("utf-8"), key)


def decrypt_sensitive_data(token: str, key: str | bytes) -> str:
    return decrypt_bytes(token, key).decode("utf-8")


def _configured_key() -> str:
    if not settings.data_encryption_key:
        raise ConfigurationError("DATA_ENCRYPTION_KEY is not configured")
    return settings.data_encryption_key


def encrypt_credential(plaintext: str) -> str:
    """Encrypt a stored access credential with the configured data key."""
    return encrypt_sensitive_data(plaintext, _configured_key())


def decrypt_credential(token: str) -> str:
    return decrypt_sensitive_data(token, _configured_key())
