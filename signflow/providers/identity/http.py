from __future__ import annotations

from typing import Any

import httpx

from signflow.core.config import get_settings
from signflow.core.errors import IdentityLookupError, ProviderConfigError
from signflow.providers.identity.base import SignerIdentity
from signflow.services.resilience import retry_async


class HttpIdentityDirectory:
    def __init__(self, client: httpx.AsyncClient | None = None) -> None:
        self._settings = get_settings()
        self._client = client

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is not None:
            return self._client
        timeout_s = self._settings.ext_call_timeout_ms / 1000.0
        self._client = httpx.AsyncClient(timeout=timeout_s)
        return self._client

    async def get_signer(self, signer_id: str) -> SignerIdentity | None:
        base_url = self._settings.identity_service_url
        if not base_url:
            raise ProviderConfigError("IDENTITY_SERVICE_URL is required for http identity lookups")
        client = self._get_client()
        url = f"{base_url.rstrip('/')}/users/{signer_id}"

        async def _call() -> httpx.Response:
            response = await client.get(url)
            if response.status_code >= 500:
                raise httpx.HTTPStatusError(
                    "Identity service error",
                    request=response.request,
                    response=response,
                )
            return response

        try:
            response = await retry_async(_call, operation="identity.get_signer")
        except (httpx.HTTPError, TimeoutError) as exc:
            raise IdentityLookupError("Identity lookup failed", signer_id=signer_id) from exc

        if response.status_code == 404:
            return None
        if response.status_code >= 400:
            raise IdentityLookupError(
                "Identity lookup rejected",
                signer_id=signer_id,
                status_code=response.status_code,
            )
        payload: dict[str, Any] = response.json()
        # Accept the common user-profile field names the identity service returns.
        name = payload.get("display_name") or payload.get("full_name") or payload.get("name") or signer_id
        contact = payload.get("email") or payload.get("phone")
        return SignerIdentity(signer_id=signer_id, display_name=str(name), contact=contact)
