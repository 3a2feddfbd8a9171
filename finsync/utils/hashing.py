from __future__ import annotations

import hashlib
import json
from typing import Any

# Intuit caps `requestid` at 36 characters.
QBO_REQUEST_ID_LENGTH = 36


def sha256_hex(value: bytes | str) -> str:
    if isinstance(value, str):
        value = value.encode("utf-8")
    return hashlib.sha256(value).hexdigest()


def payload_digest(payload: Any, length: int = 16) -> str:
    """Digest of a JSON-able payload that ignores key order."""
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return sha256_hex(canonical)[:length]


def qbo_request_id(idempotency_key: str) -> str:
    return sha256_hex(idempotency_key)[:QBO_REQUEST_ID_LENGTH]


def composite_id(*parts: Any) -> str:
    return sha256_hex(":".join("" if part is None else str(part) for part in parts))
