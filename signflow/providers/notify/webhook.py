from __future__ import annotations

from dataclasses import asdict

import httpx

from signflow.core.config import get_settings
from signflow.core.errors import NotificationDeliveryError, ProviderConfigError
from signflow.providers.notify.base import NotificationMessage
from signflow.services.integrity import canonical_json_bytes, hmac_sha256_hex
from signflow.services.resilience import retry_async


class WebhookNotifier:
    def __init__(self, client: httpx.AsyncClient | None = None) -> None:
        self._settings = get_settings()
        self._client = client

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is not None:
            return self._client
        # Reuse a single client per provider for connection pooling.
        timeout_s = self._settings.ext_call_timeout_ms / 1000.0
        self._client = httpx.AsyncClient(timeout=timeout_s)
        return self._client

    async def send(self, message: NotificationMessage) -> None:
        url = self._settings.notify_webhook_url
        if not url:
            raise ProviderConfigError("NOTIFY_WEBHOOK_URL is required for webhook notifications")

        body = canonical_json_bytes(asdict(message))
        headers = {
            "Content-Type": "application/json",
            "X-Signflow-Event-Type": message.event_type,
        }
        if self._settings.notify_webhook_secret:
            signature = hmac_sha256_hex(body, self._settings.notify_webhook_secret)
            headers["X-Signflow-Signature"] = f"sha256={signature}"
        client = self._get_client()

        async def _call() -> httpx.Response:
            response = await client.post(url, content=body, headers=headers)
            if response.status_code >= 500:
                # Raise a retryable error so the retry policy can back off.
                raise httpx.HTTPStatusError(
                    "Webhook receiver error",
                    request=response.request,
                    response=response,
                )
            return response

        try:
            response = await retry_async(_call, operation="notify.webhook")
        except (httpx.HTTPError, TimeoutError) as exc:
            raise NotificationDeliveryError(
                "Webhook delivery failed",
                event_type=message.event_type,
                recipient_id=message.recipient_id,
            ) from exc

        if response.status_code >= 400:
            raise NotificationDeliveryError(
                "Webhook receiver rejected notification",
                status_code=response.status_code,
                event_type=message.event_type,
            )

