from __future__ import annotations

import logging

from signflow.providers.notify.base import NotificationMessage


logger = logging.getLogger(__name__)


class LogNotifier:
    async def send(self, message: NotificationMessage) -> None:
        # Signing URLs embed a bearer token, so only routing fields are logged.
        logger.info(
            "notification_dispatched event_type=%s recipient_id=%s document_id=%s",
            message.event_type,
            message.recipient_id,
            message.document_id,
        )
