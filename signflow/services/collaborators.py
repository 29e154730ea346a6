from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
import logging

from signflow.core.errors import (
    IdentityLookupError,
    NotificationDeliveryError,
    ProviderConfigError,
    StorageError,
    TransientCollaboratorError,
)
from signflow.providers.identity.base import IdentityDirectory, SignerIdentity
from signflow.providers.identity.factory import get_identity_directory
from signflow.providers.notify.base import NotificationMessage, Notifier
from signflow.providers.notify.factory import get_notifier
from signflow.providers.storage.base import DocumentStore
from signflow.providers.storage.factory import get_document_store
from signflow.services.resilience import RetryPolicy, retry_async


logger = logging.getLogger(__name__)


@dataclass
class SigningCollaborators:
    """External systems the signing workflow depends on.

    Every call is bounded by a retry policy and failures are mapped to
    ``TransientCollaboratorError`` subclasses so callers decide whether a
    failure is fatal (storage on redeem) or best-effort (notifications).
    """

    store: DocumentStore
    notifier: Notifier
    identity: IdentityDirectory

    async def fetch_document(self, key: str, *, policy: RetryPolicy | None = None) -> bytes:
        try:
            return await retry_async(lambda: self.store.get(key), policy=policy, operation="storage.get")
        except StorageError:
            raise
        except TimeoutError as exc:
            raise StorageError("Document fetch timed out", storage_key=key) from exc

    async def store_artifact(self, key: str, data: bytes) -> None:
        try:
            await retry_async(lambda: self.store.put(key, data), operation="storage.put")
        except StorageError:
            raise
        except TimeoutError as exc:
            raise StorageError("Artifact upload timed out", storage_key=key) from exc

    async def notify(self, message: NotificationMessage) -> None:
        try:
            await retry_async(lambda: self.notifier.send(message), operation="notify.send")
        except (NotificationDeliveryError, ProviderConfigError):
            raise
        except TimeoutError as exc:
            raise NotificationDeliveryError(
                "Notification dispatch timed out",
                event_type=message.event_type,
                recipient_id=message.recipient_id,
            ) from exc

    async def notify_best_effort(self, message: NotificationMessage) -> bool:
        # Dispatch failures never roll back the transition that triggered them.
        try:
            await self.notify(message)
        except (TransientCollaboratorError, ProviderConfigError) as exc:
            logger.warning(
                "notification_failed event_type=%s recipient_id=%s document_id=%s error=%s",
                message.event_type,
                message.recipient_id,
                message.document_id,
                exc,
            )
            return False
        return True

    async def resolve_signer(self, signer_id: str) -> SignerIdentity:
        # Certificates fall back to the raw signer id when identity lookup is unavailable.
        try:
            identity = await retry_async(
                lambda: self.identity.get_signer(signer_id),
                operation="identity.get_signer",
            )
        except (IdentityLookupError, ProviderConfigError, TimeoutError) as exc:
            logger.warning("identity_lookup_failed signer_id=%s error=%s", signer_id, exc)
            identity = None
        return identity or SignerIdentity(signer_id=signer_id, display_name=signer_id)


@lru_cache
def get_collaborators() -> SigningCollaborators:
    return SigningCollaborators(
        store=get_document_store(),
        notifier=get_notifier(),
        identity=get_identity_directory(),
    )
