from __future__ import annotations

from signflow.services.audit import sanitize_metadata


def test_sanitize_metadata_redacts_signing_secrets() -> None:
    # Raw tokens, signing links and signature images must never reach the audit log.
    payload = {
        "token": "sgt_abc",
        "signing_url": "http://localhost:3000/sign/sgt_abc",
        "signature_data": "iVBORw0KGgo=",
        "nested": {"api_key": "sfk_123", "signer_id": "alice"},
        "items": [{"authorization": "Bearer x"}, {"ok": True}],
        "safe": "value",
    }
    sanitized = sanitize_metadata(payload)
    assert sanitized["token"] == "[REDACTED]"
    assert sanitized["signing_url"] == "[REDACTED]"
    assert sanitized["signature_data"] == "[REDACTED]"
    assert sanitized["nested"]["api_key"] == "[REDACTED]"
    assert sanitized["nested"]["signer_id"] == "alice"
    assert sanitized["items"][0]["authorization"] == "[REDACTED]"
    assert sanitized["items"][1]["ok"] is True
    assert sanitized["safe"] == "value"
