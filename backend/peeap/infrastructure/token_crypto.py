from __future__ import annotations

import base64
import hashlib
import os
from typing import Any

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from ..settings import settings

_DEV_FALLBACK_KEY = "peeap-dev-only-token-key"


def _get_key() -> bytes:
    # require_in_production() guarantees TOKEN_ENC_KEY is set in prod.
    raw = settings.token_enc_key or _DEV_FALLBACK_KEY
    return hashlib.sha256(str(raw).encode("utf-8")).digest()  # 32 bytes


def _b64(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def _unb64(text: str) -> bytes:
    pad = "=" * (-len(text) % 4)
    return base64.urlsafe_b64decode(text + pad)


def encrypt_string(plain_text: Any) -> str | None:
    """
    AES-256-GCM encrypt into `v1.<iv>.<ciphertext+tag>` (URL-safe base64).

    Used for pagination cursors handed to clients, so the token must survive
    being placed in a query string.
    """
    if plain_text is None:
        return None

    iv = os.urandom(12)
    ct_with_tag = AESGCM(_get_key()).encrypt(iv, str(plain_text).encode("utf-8"), None)
    return ".".join(["v1", _b64(iv), _b64(ct_with_tag)])


def decrypt_string(cipher_text: Any) -> str | None:
    if not cipher_text:
        return None

    parts = str(cipher_text).split(".")
    if len(parts) != 3 or parts[0] != "v1":
        return None

    try:
        iv = _unb64(parts[1])
        data = _unb64(parts[2])
    except (ValueError, TypeError):
        return None
    if len(iv) != 12 or len(data) < 16:
        return None

    try:
        pt = AESGCM(_get_key()).decrypt(iv, data, None)
    except InvalidTag:
        return None
    return pt.decode("utf-8", errors="replace")
