from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol


@dataclass(frozen=True)
class NotificationMessage:
    # event_type examples: signature.requested, reminder.one_day_before, signature.declined.
    event_type: str
    recipient_id: str
    document_id: str
    subject: str
    body: str
    signing_url: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


class Notifier(Protocol):
    async def send(self, message: NotificationMessage) -> None:
        ...
