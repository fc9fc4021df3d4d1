"""Encryption helpers for securing second-factor secrets at rest."""
from __future__ import annotations

import os
from typing import Final, Optional

from cryptography.hazmat.primitives.ciphers.aead import AESGCM

__all__ = ["encrypt", "decrypt", "encrypt_totp_secret", "decrypt_totp_secret"]


_NONCE_SIZE: Final[int] = 12
_KEY_SIZE: Final[int] = 32


def _normalise_key(key: bytes) -> bytes:
    if len(key) != _KEY_SIZE:
        raise ValueError("AES-256-GCM requires a 32-byte key")
    return key


def encrypt(
    plaintext: bytes | str,
    *,
    key: bytes,
    associated_data: Optional[bytes] = None,
) -> bytes:
    """Encrypt *plaintext* with AES-256-GCM returning nonce + ciphertext."""

    material = plaintext.encode("utf-8") if isinstance(plaintext, str) else bytes(plaintext)
    nonce = os.urandom(_NONCE_SIZE)
    cipher = AESGCM(_normalise_key(key))
    encrypted = cipher.encrypt(nonce, material, associated_data)
    return nonce + encrypted


def decrypt(
    payload: bytes,
    *,
    key: bytes,
    associated_data: Optional[bytes] = None,
) -> bytes:
    """Decrypt *payload* produced by :func:`encrypt`."""

    if len(payload) <= _NONCE_SIZE:
        raise ValueError("Encrypted payload is too short")
    nonce, ciphertext = payload[:_NONCE_SIZE], payload[_NONCE_SIZE:]
    cipher = AESGCM(_normalise_key(key))
    return cipher.decrypt(nonce, ciphertext, associated_data)


def _totp_associated_data(user_id: int) -> bytes:
    return f"totp:{user_id}".encode("ascii")


def encrypt_totp_secret(secret: str, *, user_id: int, key: bytes) -> bytes:
    """Encrypt a base32 TOTP secret, binding the ciphertext to ``user_id``."""

    return encrypt(secret, key=key, associated_data=_totp_associated_data(user_id))


def decrypt_totp_secret(payload: bytes, *, user_id: int, key: bytes) -> str:
    return decrypt(payload, key=key, associated_data=_totp_associated_data(user_id)).decode("utf-8")
