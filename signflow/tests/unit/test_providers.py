from __future__ import annotations

import asyncio
import json
import logging

import httpx
import pytest

from signflow.core.config import get_settings
from signflow.core.errors import NotificationDeliveryError, ProviderConfigError, StorageError
from signflow.providers.identity.http import HttpIdentityDirectory
from signflow.providers.identity.static import StaticIdentityDirectory
from signflow.providers.notify.base import NotificationMessage
from signflow.providers.notify.factory import get_notifier
from signflow.providers.notify.log_notifier import LogNotifier
from signflow.providers.notify.memory import InMemoryNotifier
from signflow.providers.notify.webhook import WebhookNotifier
from signflow.providers.storage.factory import get_document_store
from signflow.providers.storage.local import LocalDocumentStore
from signflow.providers.storage.memory import InMemoryDocumentStore
from signflow.services.collaborators import SigningCollaborators
from signflow.services.integrity import hmac_sha256_hex
from signflow.services.resilience import RetryPolicy, retry_async


def _message() -> NotificationMessage:
    return NotificationMessage(
        event_type="signature.requested",
        recipient_id="alice",
        document_id="doc-1",
        subject="Signature requested",
        body="Please sign.",
        signing_url="http://localhost:3000/sign/sgt_x",
    )


@pytest.mark.asyncio
async def test_local_store_round_trip_and_rejects_escaping_keys(tmp_path) -> None:
    store = LocalDocumentStore(tmp_path)
    await store.put("signatures/doc-1/1/sig.png", b"png")
    assert await store.get("signatures/doc-1/1/sig.png") == b"png"
    with pytest.raises(StorageError):
        await store.get("missing.pdf")
    with pytest.raises(StorageError):
        await store.put("../outside.pdf", b"x")


@pytest.mark.asyncio
async def test_webhook_notifier_signs_payload(monkeypatch) -> None:
    monkeypatch.setenv("NOTIFY_WEBHOOK_URL", "https://hooks.example.com/signflow")
    monkeypatch.setenv("NOTIFY_WEBHOOK_SECRET", "shh")
    get_settings.cache_clear()
    captured: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        captured.append(request)
        return httpx.Response(202)

    notifier = WebhookNotifier(client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))
    await notifier.send(_message())

    assert len(captured) == 1
    request = captured[0]
    assert request.headers["X-Signflow-Event-Type"] == "signature.requested"
    assert request.headers["X-Signflow-Signature"] == f"sha256={hmac_sha256_hex(request.content, 'shh')}"
    assert json.loads(request.content)["recipient_id"] == "alice"


@pytest.mark.asyncio
async def test_webhook_notifier_retries_then_raises(monkeypatch) -> None:
    monkeypatch.setenv("NOTIFY_WEBHOOK_URL", "https://hooks.example.com/signflow")
    monkeypatch.setenv("EXT_RETRY_MAX_ATTEMPTS", "3")
    monkeypatch.setenv("EXT_RETRY_BACKOFF_MS", "1")
    get_settings.cache_clear()
    calls = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["count"] += 1
        return httpx.Response(503)

    notifier = WebhookNotifier(client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))
    with pytest.raises(NotificationDeliveryError):
        await notifier.send(_message())
    assert calls["count"] == 3


@pytest.mark.asyncio
async def test_http_identity_directory(monkeypatch) -> None:
    monkeypatch.setenv("IDENTITY_SERVICE_URL", "https://identity.example.com")
    get_settings.cache_clear()

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/users/alice":
            return httpx.Response(200, json={"full_name": "Alice Martin", "email": "alice@example.com"})
        return httpx.Response(404)

    directory = HttpIdentityDirectory(client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))
    alice = await directory.get_signer("alice")
    assert alice is not None
    assert alice.display_name == "Alice Martin"
    assert alice.contact == "alice@example.com"
    assert await directory.get_signer("ghost") is None


@pytest.mark.asyncio
async def test_retry_async_retries_transient() -> None:
    calls = {"count": 0}

    async def flaky() -> str:
        calls["count"] += 1
        if calls["count"] < 2:
            raise TimeoutError("timeout")
        return "ok"

    result = await retry_async(flaky, policy=RetryPolicy(timeout_ms=100, max_attempts=2, backoff_ms=1))
    assert result == "ok"
    assert calls["count"] == 2


@pytest.mark.asyncio
async def test_fetch_document_timeout_maps_to_storage_error() -> None:
    class SlowStore(InMemoryDocumentStore):
        async def get(self, key: str) -> bytes:
            await asyncio.sleep(1)
            return b""

    collaborators = SigningCollaborators(
        store=SlowStore(), notifier=InMemoryNotifier(), identity=StaticIdentityDirectory()
    )
    with pytest.raises(StorageError):
        await collaborators.fetch_document(
            "documents/doc-1.pdf", policy=RetryPolicy(timeout_ms=20, max_attempts=1, backoff_ms=0)
        )


@pytest.mark.asyncio
async def test_notify_best_effort_reports_failure() -> None:
    notifier = InMemoryNotifier()
    notifier.failing_recipients.add("alice")
    collaborators = SigningCollaborators(
        store=InMemoryDocumentStore(), notifier=notifier, identity=StaticIdentityDirectory()
    )
    assert await collaborators.notify_best_effort(_message()) is False
    with pytest.raises(NotificationDeliveryError):
        await collaborators.notify(_message())
    assert notifier.sent == []


@pytest.mark.asyncio
async def test_log_notifier_never_logs_signing_url(caplog) -> None:
    caplog.set_level(logging.INFO, logger="signflow.providers.notify.log_notifier")
    await LogNotifier().send(_message())
    assert "notification_dispatched" in caplog.text
    assert "sgt_x" not in caplog.text


def test_provider_factories_follow_settings(monkeypatch) -> None:
    monkeypatch.setenv("NOTIFY_PROVIDER", "log")
    monkeypatch.setenv("STORAGE_PROVIDER", "memory")
    get_settings.cache_clear()
    assert isinstance(get_notifier(), LogNotifier)
    assert isinstance(get_document_store(), InMemoryDocumentStore)

    monkeypatch.setenv("NOTIFY_PROVIDER", "webhook")
    monkeypatch.delenv("NOTIFY_WEBHOOK_URL", raising=False)
    get_settings.cache_clear()
    with pytest.raises(ProviderConfigError):
        get_notifier()

    monkeypatch.setenv("STORAGE_PROVIDER", "s3")
    get_settings.cache_clear()
    with pytest.raises(ProviderConfigError):
        get_document_store()
