from __future__ import annotations

from signflow.core.errors import NotificationDeliveryError
from signflow.providers.notify.base import NotificationMessage


class InMemoryNotifier:
    """Records every delivered message; used by tests and local demos.

    Recipients listed in ``failing_recipients`` (or every recipient when
    ``fail_all`` is set) raise ``NotificationDeliveryError`` instead.
    """

    def __init__(self) -> None:
        self.sent: list[NotificationMessage] = []
        self.failing_recipients: set[str] = set()
        self.fail_all = False

    async def send(self, message: NotificationMessage) -> None:
        if self.fail_all or message.recipient_id in self.failing_recipients:
            raise NotificationDeliveryError(
                "Notification delivery failed",
                recipient_id=message.recipient_id,
                event_type=message.event_type,
            )
        self.sent.append(message)

    def messages_for(self, recipient_id: str, event_type: str | None = None) -> list[NotificationMessage]:
        return [
            message
            for message in self.sent
            if message.recipient_id == recipient_id
            and (event_type is None or message.event_type == event_type)
        ]
