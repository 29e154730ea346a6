from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol


@dataclass(frozen=True)
class SignerIdentity:
    signer_id: str
    display_name: str
    contact: str | None = None


class IdentityDirectory(Protocol):
    async def get_signer(self, signer_id: str) -> SignerIdentity | None:
        ...
