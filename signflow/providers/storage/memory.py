from __future__ import annotations

from signflow.core.errors import StorageError


class InMemoryDocumentStore:
    def __init__(self, objects: dict[str, bytes] | None = None) -> None:
        # Process-local objects keep tests and demos independent of a filesystem layout.
        self._objects: dict[str, bytes] = dict(objects or {})

    async def get(self, key: str) -> bytes:
        try:
            return self._objects[key]
        except KeyError as exc:
            raise StorageError("Document object not found", storage_key=key) from exc

    async def put(self, key: str, data: bytes) -> None:
        self._objects[key] = bytes(data)
