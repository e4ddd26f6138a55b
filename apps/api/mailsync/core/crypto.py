from __future__ import annotations

import base64
import binascii
import os
from functools import lru_cache
from typing import Literal
from uuid import UUID

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from mailsync.core.config import get_settings

SecretKind = Literal["access", "refresh", "password"]

_NONCE_BYTES = 12


class EncryptionKeyError(RuntimeError):
    pass


class SecretDecryptionError(ValueError):
    """Ciphertext is truncated, tampered with, or bound to another account."""


@lru_cache(maxsize=4)
def _cipher_for(raw_key: str) -> AESGCM:
    try:
        key = base64.b64decode(raw_key, validate=True)
    except (binascii.Error, ValueError) as e:
        raise EncryptionKeyError("ENCRYPTION_KEY_BASE64 must be valid base64") from e
    if len(key) != 32:
        raise EncryptionKeyError("ENCRYPTION_KEY_BASE64 must decode to 32 bytes (AES-256)")
    return AESGCM(key)


def _cipher() -> AESGCM:
    return _cipher_for(get_settings().ENCRYPTION_KEY_BASE64)


def _binding(account_id: UUID, kind: SecretKind) -> bytes:
    # Associated data: a blob only decrypts for the account and slot it was written for.
    return f"account:{account_id}:{kind}".encode()


def seal_secret(value: str, *, account_id: UUID, kind: SecretKind) -> bytes:
    nonce = os.urandom(_NONCE_BYTES)
    return nonce + _cipher().encrypt(nonce, value.encode("utf-8"), _binding(account_id, kind))


def open_secret(blob: bytes, *, account_id: UUID, kind: SecretKind) -> str:
    if len(blob) <= _NONCE_BYTES:
        raise SecretDecryptionError("Encrypted secret is too short")
    nonce, ciphertext = blob[:_NONCE_BYTES], blob[_NONCE_BYTES:]
    try:
        plaintext = _cipher().decrypt(nonce, ciphertext, _binding(account_id, kind))
    except InvalidTag as e:
        raise SecretDecryptionError(f"Stored {kind} secret cannot be decrypted") from e
    return plaintext.decode("utf-8")
