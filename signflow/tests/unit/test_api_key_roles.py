from __future__ import annotations

import pytest

from signflow.services.auth.api_keys import generate_api_key, hash_secret, normalize_role, role_allows


def test_generate_api_key_embeds_id_and_hashes_secret() -> None:
    key_id, raw_key, prefix, key_hash = generate_api_key(key_id="abc123")
    assert key_id == "abc123"
    assert raw_key.startswith("sfk_abc123_")
    assert prefix == raw_key[:12]
    assert key_hash == hash_secret(raw_key)
    assert raw_key not in key_hash


def test_role_hierarchy() -> None:
    assert role_allows(role="admin", minimum_role="editor")
    assert role_allows(role="editor", minimum_role="editor")
    assert not role_allows(role="reader", minimum_role="editor")
    assert not role_allows(role="unknown", minimum_role="reader")


def test_normalize_role_rejects_unknown() -> None:
    assert normalize_role(" Admin ") == "admin"
    with pytest.raises(ValueError):
        normalize_role("owner")
