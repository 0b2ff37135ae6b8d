from __future__ import annotations

import base64
import hashlib
import os
from typing import Any

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from ..settings import settings


_DEV_FALLBACK_KEY = "imomate-development-cursor-key"


def _get_key() -> bytes:
    raw = settings.cursor_token_key or _DEV_FALLBACK_KEY
    return hashlib.sha256(str(raw).encode("utf-8")).digest()  # 32 bytes


def encrypt_string(plain_text: Any, *, associated_data: str | None = None) -> str | None:
    """
    AES-GCM encrypt into a URL-safe `v1.<nonce>.<ciphertext+tag>` string.

    `associated_data` binds the token to a context (e.g. tenant + collection):
    decrypting under a different context fails.
    """
    if plain_text is None:
        return None

    nonce = os.urandom(12)  # 12 bytes for GCM
    aad = associated_data.encode("utf-8") if associated_data else None
    ct = AESGCM(_get_key()).encrypt(nonce, str(plain_text).encode("utf-8"), aad)
    return ".".join(
        [
            "v1",
            base64.urlsafe_b64encode(nonce).decode("ascii"),
            base64.urlsafe_b64encode(ct).decode("ascii"),
        ]
    )


def decrypt_string(cipher_text: Any, *, associated_data: str | None = None) -> str | None:
    if not cipher_text:
        return None

    parts = str(cipher_text).split(".")
    if len(parts) != 3 or parts[0] != "v1":
        return None

    try:
        nonce = base64.urlsafe_b64decode(parts[1])
        data = base64.urlsafe_b64decode(parts[2])
    except (ValueError, TypeError):
        return None
    if len(nonce) != 12 or len(data) < 16:
        return None

    aad = associated_data.encode("utf-8") if associated_data else None
    try:
        pt = AESGCM(_get_key()).decrypt(nonce, data, aad)
    except InvalidTag:
        return None
    return pt.decode("utf-8")
