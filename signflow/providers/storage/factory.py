from __future__ import annotations

from signflow.core.config import get_settings
from signflow.core.errors import ProviderConfigError
from signflow.providers.storage.local import LocalDocumentStore
from signflow.providers.storage.memory import InMemoryDocumentStore


def get_document_store():
    settings = get_settings()
    provider = (settings.storage_provider or "local").lower()

    if provider == "local":
        return LocalDocumentStore(settings.storage_local_dir)
    if provider == "memory":
        return InMemoryDocumentStore()

    raise ProviderConfigError(f"Unsupported storage provider: {provider}")
