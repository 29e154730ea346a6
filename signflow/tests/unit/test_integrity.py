from __future__ import annotations

from datetime import datetime, timezone

from signflow.services.integrity import canonical_json_bytes, digests_match, hmac_sha256_hex, sha256_hex


def test_sha256_hex_known_vector() -> None:
    assert sha256_hex(b"abc") == "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad"


def test_canonical_json_is_key_order_independent() -> None:
    left = canonical_json_bytes({"b": 1, "a": {"y": 2, "x": [3, 1]}})
    right = canonical_json_bytes({"a": {"x": [3, 1], "y": 2}, "b": 1})
    assert left == right == b'{"a":{"x":[3,1],"y":2},"b":1}'


def test_canonical_json_renders_datetimes_as_iso() -> None:
    stamp = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
    assert canonical_json_bytes({"at": stamp}) == b'{"at":"2026-03-01T12:00:00+00:00"}'


def test_digests_match_is_case_insensitive_and_rejects_missing() -> None:
    digest = sha256_hex(b"document")
    assert digests_match(digest, digest.upper())
    assert not digests_match(digest, sha256_hex(b"document!"))
    assert not digests_match(None, digest)
    assert not digests_match(digest, "")


def test_hmac_signature_depends_on_secret() -> None:
    payload = b'{"event_type":"signature.requested"}'
    assert hmac_sha256_hex(payload, "one") == hmac_sha256_hex(payload, "one")
    assert hmac_sha256_hex(payload, "one") != hmac_sha256_hex(payload, "two")
