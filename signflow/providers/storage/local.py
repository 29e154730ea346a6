from __future__ import annotations

import asyncio
from pathlib import Path

from signflow.core.config import get_settings
from signflow.core.errors import StorageError


class LocalDocumentStore:
    def __init__(self, base_dir: str | Path | None = None) -> None:
        self._base_dir = Path(base_dir or get_settings().storage_local_dir)

    def _path_for(self, key: str) -> Path:
        # Reject keys that would escape the storage root.
        cleaned = key.strip().lstrip("/")
        if not cleaned or ".." in Path(cleaned).parts:
            raise StorageError("Invalid storage key", storage_key=key)
        return self._base_dir / cleaned

    async def get(self, key: str) -> bytes:
        path = self._path_for(key)
        try:
            return await asyncio.to_thread(path.read_bytes)
        except FileNotFoundError as exc:
            raise StorageError("Document object not found", storage_key=key) from exc
        except OSError as exc:
            raise StorageError("Document storage read failed", storage_key=key) from exc

    async def put(self, key: str, data: bytes) -> None:
        path = self._path_for(key)

        def _write() -> None:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)

        try:
            await asyncio.to_thread(_write)
        except OSError as exc:
            raise StorageError("Document storage write failed", storage_key=key) from exc
