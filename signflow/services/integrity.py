from __future__ import annotations

from datetime import datetime
import hashlib
import hmac
import json
from typing import Any


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def _json_default(value: Any) -> str:
    # Render datetimes as ISO-8601 so canonical bytes do not depend on the driver's repr.
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


def canonical_json_bytes(payload: Any) -> bytes:
    # Serialize deterministically so the same logical payload always hashes identically.
    return json.dumps(
        payload,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        default=_json_default,
    ).encode("utf-8")


def digests_match(expected: str | None, actual: str | None) -> bool:
    # Constant-time comparison; a missing digest never matches.
    if not expected or not actual:
        return False
    return hmac.compare_digest(expected.strip().lower(), actual.strip().lower())


def hmac_sha256_hex(payload: bytes, secret: str) -> str:
    # Sign outbound notification payloads so receivers can reject forged deliveries.
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()
