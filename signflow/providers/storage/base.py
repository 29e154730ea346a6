from __future__ import annotations

from typing import Protocol


class DocumentStore(Protocol):
    async def get(self, key: str) -> bytes:
        ...

    async def put(self, key: str, data: bytes) -> None:
        ...
