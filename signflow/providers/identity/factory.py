from __future__ import annotations

from signflow.core.config import get_settings
from signflow.core.errors import ProviderConfigError
from signflow.providers.identity.http import HttpIdentityDirectory
from signflow.providers.identity.static import StaticIdentityDirectory


def get_identity_directory():
    settings = get_settings()
    provider = (settings.identity_provider or "static").lower()

    if provider == "static":
        return StaticIdentityDirectory()
    if provider == "http":
        if not settings.identity_service_url:
            raise ProviderConfigError("IDENTITY_SERVICE_URL is required when IDENTITY_PROVIDER=http")
        return HttpIdentityDirectory()

    raise ProviderConfigError(f"Unsupported identity provider: {provider}")
