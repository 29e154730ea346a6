from __future__ import annotations

import hashlib
import secrets
from uuid import uuid4


ROLE_ORDER: dict[str, int] = {
    "reader": 1,
    "editor": 2,
    "admin": 3,
}


def normalize_role(role: str) -> str:
    # Enforce a stable, lowercased role vocabulary for RBAC checks.
    normalized = role.strip().lower()
    if normalized not in ROLE_ORDER:
        raise ValueError(f"Unsupported role: {role}")
    return normalized


def role_allows(*, role: str, minimum_role: str) -> bool:
    return ROLE_ORDER.get(role, 0) >= ROLE_ORDER.get(minimum_role, 0)


def hash_secret(raw_value: str) -> str:
    # SHA-256 gives deterministic, non-reversible storage for API keys and signing tokens.
    return hashlib.sha256(raw_value.encode("utf-8")).hexdigest()


def generate_api_key(*, key_id: str | None = None) -> tuple[str, str, str, str]:
    # Embed the key id in the secret so operators can trace keys without the plaintext.
    resolved_id = key_id or uuid4().hex
    raw_key = f"sfk_{resolved_id}_{secrets.token_urlsafe(32)}"
    return resolved_id, raw_key, raw_key[:12], hash_secret(raw_key)
