from __future__ import annotations

import base64
from datetime import datetime, timedelta, timezone

from httpx import ASGITransport, AsyncClient
import pytest

from signflow.apps.api.deps import get_signing_collaborators
from signflow.apps.api.main import app
from signflow.apps.api.routes import health as health_routes
from signflow.services.integrity import sha256_hex
from signflow.tests.utils.auth import create_test_api_key
from signflow.tests.utils.signing import DOCUMENT_BODY, SIGNATURE_PNG, register_document


SIGNATURE_B64 = base64.b64encode(SIGNATURE_PNG).decode("ascii")


@pytest.fixture
def api_collaborators(collaborators):
    app.dependency_overrides[get_signing_collaborators] = lambda: collaborators
    yield collaborators
    app.dependency_overrides.pop(get_signing_collaborators, None)


def _client() -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


@pytest.mark.asyncio
async def test_sequential_signing_flow_over_http(api_collaborators) -> None:
    group_id = "group-http"
    _raw, editor_headers = await create_test_api_key(tenant_id=group_id, role="editor")
    _raw, admin_headers = await create_test_api_key(tenant_id=group_id, role="admin")
    document_id = await register_document(api_collaborators, group_id=group_id)
    due = (datetime.now(timezone.utc) + timedelta(days=5)).isoformat()

    async with _client() as client:
        sent = await client.post(
            f"/v1/documents/{document_id}/send-for-signing",
            json={"signer_ids": ["alice", "bob"], "signing_mode": "sequential", "due_date": due},
            headers=editor_headers,
        )
        assert sent.status_code == 200
        body = sent.json()
        assert body["meta"]["api_version"] == "v1"
        tokens = {entry["signer_id"]: entry["token"] for entry in body["data"]["signers"]}

        out_of_order = await client.post(
            f"/v1/documents/{document_id}/sign",
            json={"token": tokens["bob"], "signature_data": SIGNATURE_B64},
        )
        assert out_of_order.status_code == 409
        error = out_of_order.json()["error"]
        assert error["code"] == "ORDER_VIOLATION"
        assert error["details"]["waiting_for"] == "alice"

        first = await client.post(
            f"/v1/documents/{document_id}/sign",
            json={"token": tokens["alice"], "signature_data": SIGNATURE_B64, "device_info": "Pixel 8"},
            headers={"X-Forwarded-For": "203.0.113.7, 10.0.0.1"},
        )
        assert first.status_code == 200
        assert first.json()["data"]["next_signer_id"] == "bob"

        replay = await client.post(
            f"/v1/documents/{document_id}/sign",
            json={"token": tokens["alice"], "signature_data": SIGNATURE_B64},
        )
        assert replay.status_code == 200
        assert replay.json()["data"] == first.json()["data"]

        last = await client.post(
            f"/v1/documents/{document_id}/sign",
            json={"token": tokens["bob"], "signature_data": SIGNATURE_B64},
        )
        assert last.status_code == 200
        certificate_id = last.json()["data"]["certificate_id"]
        assert certificate_id

        status = await client.get(f"/v1/documents/{document_id}/signing-status", headers=editor_headers)
        assert status.status_code == 200
        assert status.json()["data"]["status"] == "fully_signed"
        assert status.json()["data"]["progress_percentage"] == 100.0

        certificate = await client.get(f"/v1/documents/{document_id}/certificate", headers=editor_headers)
        assert certificate.status_code == 200
        assert certificate.headers["content-type"].startswith("application/vnd.signflow.certificate+json")
        assert certificate.headers["X-Certificate-Id"] == certificate_id
        assert certificate.headers["X-Certificate-Hash"] == sha256_hex(certificate.content)
        assert certificate.json()["signers"][0]["ip_address"] == "203.0.113.7"

        verified = await client.post(
            f"/v1/certificates/{certificate_id}/verify",
            files={"file": ("agreement.pdf", DOCUMENT_BODY, "application/pdf")},
        )
        assert verified.status_code == 200
        assert verified.json()["data"]["is_valid"] is True

        tampered = await client.post(
            f"/v1/certificates/{certificate_id}/verify",
            files={"file": ("agreement.pdf", DOCUMENT_BODY.replace(b"50/50", b"90/10"), "application/pdf")},
        )
        assert tampered.json()["data"]["hash_matches"] is False
        assert tampered.json()["data"]["is_valid"] is False

        forbidden = await client.post(
            f"/v1/certificates/{certificate_id}/revoke",
            json={"reason": "Signed under duress"},
            headers=editor_headers,
        )
        assert forbidden.status_code == 403

        revoked = await client.post(
            f"/v1/certificates/{certificate_id}/revoke",
            json={"reason": "Signed under duress"},
            headers=admin_headers,
        )
        assert revoked.status_code == 200
        assert revoked.json()["data"]["revoked"] is True

        after_revoke = await client.post(
            f"/v1/certificates/{certificate_id}/verify",
            files={"file": ("agreement.pdf", DOCUMENT_BODY, "application/pdf")},
        )
        assert after_revoke.json()["data"]["is_valid"] is False
        assert after_revoke.json()["data"]["revoked"] is True


@pytest.mark.asyncio
async def test_signer_errors_map_to_status_codes(api_collaborators) -> None:
    group_id = "group-errors"
    _raw, editor_headers = await create_test_api_key(tenant_id=group_id, role="editor")
    document_id = await register_document(api_collaborators, group_id=group_id)

    async with _client() as client:
        sent = await client.post(
            f"/v1/documents/{document_id}/send-for-signing",
            json={"signer_ids": ["alice", "bob"]},
            headers=editor_headers,
        )
        tokens = {entry["signer_id"]: entry["token"] for entry in sent.json()["data"]["signers"]}

        invalid = await client.post(
            f"/v1/documents/{document_id}/sign",
            json={"token": "sgt_forged", "signature_data": SIGNATURE_B64},
        )
        assert invalid.status_code == 401
        assert invalid.json()["error"]["code"] == "TOKEN_INVALID"

        not_base64 = await client.post(
            f"/v1/documents/{document_id}/sign",
            json={"token": tokens["alice"], "signature_data": "***"},
        )
        assert not_base64.status_code == 400
        assert not_base64.json()["error"]["code"] == "VALIDATION_ERROR"

        missing_field = await client.post(f"/v1/documents/{document_id}/sign", json={"token": tokens["alice"]})
        assert missing_field.status_code == 422

        declined = await client.post(
            f"/v1/documents/{document_id}/decline",
            json={"token": tokens["bob"], "reason": "Not my vehicle"},
        )
        assert declined.status_code == 200
        assert declined.json()["data"]["document_status"] == "declined"

        closed = await client.post(
            f"/v1/documents/{document_id}/sign",
            json={"token": tokens["alice"], "signature_data": SIGNATURE_B64},
        )
        assert closed.status_code == 409
        assert closed.json()["error"]["code"] == "SIGNING_CYCLE_CLOSED"

        no_certificate = await client.get(f"/v1/documents/{document_id}/certificate", headers=editor_headers)
        assert no_certificate.status_code == 404


@pytest.mark.asyncio
async def test_operator_routes_enforce_auth_and_group_scope(api_collaborators) -> None:
    _raw, reader_headers = await create_test_api_key(tenant_id="group-a", role="reader")
    _raw, other_editor_headers = await create_test_api_key(tenant_id="group-b", role="editor")
    _raw, admin_headers = await create_test_api_key(tenant_id="group-a", role="admin")
    document_id = await register_document(api_collaborators, group_id="group-a")
    send_path = f"/v1/documents/{document_id}/send-for-signing"

    async with _client() as client:
        unauthenticated = await client.post(send_path, json={"signer_ids": ["alice"]})
        assert unauthenticated.status_code == 401
        assert unauthenticated.json()["error"]["code"] == "AUTH_UNAUTHORIZED"

        reader = await client.post(send_path, json={"signer_ids": ["alice"]}, headers=reader_headers)
        assert reader.status_code == 403

        other_group = await client.post(send_path, json={"signer_ids": ["alice"]}, headers=other_editor_headers)
        assert other_group.status_code == 404

        sent = await client.post(send_path, json={"signer_ids": ["alice"]}, headers=admin_headers)
        assert sent.status_code == 200
        conflict = await client.post(send_path, json={"signer_ids": ["alice"]}, headers=admin_headers)
        assert conflict.status_code == 409

        reminders = await client.post(
            f"/v1/documents/{document_id}/reminders",
            json={"message": "Reminder from the group admin"},
            headers=admin_headers,
        )
        assert reminders.status_code == 200
        assert reminders.json()["data"]["sent"] == 1

        reissued = await client.post(
            f"/v1/documents/{document_id}/signers/alice/reissue-token",
            json={"token_ttl_days": 3},
            headers=admin_headers,
        )
        assert reissued.status_code == 200
        assert reissued.json()["data"]["token"].startswith("sgt_")

        status = await client.get(f"/v1/documents/{document_id}/signing-status", headers=reader_headers)
        assert status.status_code == 200
        assert status.json()["data"]["signatures"][0]["status"] == "pending"

        tick = await client.post("/v1/ops/reminders/run", headers=admin_headers)
        assert tick.status_code == 200
        assert tick.json()["data"]["status"] == "ok"
        heartbeat = await client.get("/v1/ops/reminders", headers=admin_headers)
        assert heartbeat.status_code == 200
        assert heartbeat.json()["data"]["ticks"] >= 1

        health = await client.get("/v1/health")
        assert health.json()["data"]["status"] == "ok"
        assert health.json()["data"]["database"] == "ok"
        assert health.json()["data"]["scheduler_last_finished_at"] is not None


@pytest.mark.asyncio
async def test_health_reports_degraded_database(monkeypatch) -> None:
    async def unreachable() -> bool:
        return False

    monkeypatch.setattr(health_routes, "ping_database", unreachable)
    async with _client() as client:
        response = await client.get("/v1/health")

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["status"] == "degraded"
    assert data["database"] == "unavailable"
    assert response.headers["X-Request-Id"] == response.json()["meta"]["request_id"]
