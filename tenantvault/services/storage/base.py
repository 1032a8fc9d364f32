from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Protocol


@dataclass(frozen=True)
class StoredFile:
    name: str
    # Storage key relative to the storage root, always "/"-separated.
    path: str
    size: int
    modified: datetime | None
    is_directory: bool = False


class ObjectStorage(Protocol):
    # Blob backend contract shared by backups, restores and system bundles.
    async def upload(self, path: str, data: bytes, content_type: str | None = None) -> None:
        ...

    async def download(self, path: str) -> bytes:
        ...

    async def delete(self, path: str) -> None:
        ...

    async def exists(self, path: str) -> bool:
        ...

    async def list_files(self, path: str = "", recursive: bool = False) -> list[StoredFile]:
        ...
