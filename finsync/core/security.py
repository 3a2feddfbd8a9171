from __future__ import annotations

import base64
import hashlib
import hmac
import json
from functools import lru_cache
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken


@lru_cache(maxsize=4)
def _get_cipher(key: str) -> Fernet:
    return Fernet(key.encode("utf-8"))


def encrypt_secret(key: str, value: str) -> str:
    cipher = _get_cipher(key)
    return cipher.encrypt(value.encode("utf-8")).decode("utf-8")


def decrypt_secret(key: str, value: str) -> str:
    cipher = _get_cipher(key)
    try:
        decrypted = cipher.decrypt(value.encode("utf-8"))
    except InvalidToken as exc:
        raise ValueError("Invalid encrypted secret payload") from exc
    return decrypted.decode("utf-8")


def mask_secret(value: Optional[str], visible: int = 4) -> str:
    if not value:
        return "[redacted]"
    trimmed = value.strip()
    if len(trimmed) <= visible:
        return "*" * len(trimmed)
    return f"{trimmed[:visible]}***"


def encode_oauth_state(key: str, payload: dict[str, str]) -> str:
    cipher = _get_cipher(key)
    serialized = json.dumps(payload, separators=(",", ":"), sort_keys=True).encode("utf-8")
    return cipher.encrypt(serialized).decode("utf-8")


def decode_oauth_state(key: str, token: str, *, max_age_seconds: int = 900) -> dict[str, str]:
    cipher = _get_cipher(key)
    try:
        decrypted = cipher.decrypt(token.encode("utf-8"), ttl=max_age_seconds)
    except InvalidToken as exc:
        raise ValueError("Invalid or expired OAuth state token") from exc
    data = json.loads(decrypted.decode("utf-8"))
    if not isinstance(data, dict):
        raise ValueError("Invalid OAuth state payload")
    return {str(k): str(v) for k, v in data.items()}


def compute_hmac_signature(secret: str, body: bytes) -> str:
    """Base64 HMAC-SHA256 digest, the format Intuit sends in `intuit-signature`."""
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("utf-8")


def verify_hmac_signature(secret: str, body: bytes, signature: Optional[str]) -> bool:
    if not secret or not signature:
        return False
    expected = compute_hmac_signature(secret, body)
    return hmac.compare_digest(expected, signature.strip())
