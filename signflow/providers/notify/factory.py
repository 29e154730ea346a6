from __future__ import annotations

from signflow.core.config import get_settings
from signflow.core.errors import ProviderConfigError
from signflow.providers.notify.log_notifier import LogNotifier
from signflow.providers.notify.memory import InMemoryNotifier
from signflow.providers.notify.webhook import WebhookNotifier


def get_notifier():
    settings = get_settings()
    provider = (settings.notify_provider or "log").lower()

    if provider == "log":
        return LogNotifier()
    if provider == "memory":
        return InMemoryNotifier()
    if provider == "webhook":
        if not settings.notify_webhook_url:
            raise ProviderConfigError("NOTIFY_WEBHOOK_URL is required when NOTIFY_PROVIDER=webhook")
        return WebhookNotifier()

    raise ProviderConfigError(f"Unsupported notify provider: {provider}")
