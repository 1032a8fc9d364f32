from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from pathlib import Path, PurePosixPath

from tenantvault.core.config import get_settings
from tenantvault.core.errors import StorageError, StorageObjectNotFoundError
from tenantvault.services.storage.base import StoredFile


logger = logging.getLogger(__name__)


class LocalObjectStorage:
    # Filesystem-backed object storage for single-node deployments and tests.
    def __init__(self, base_dir: Path | str) -> None:
        self._base_dir = Path(base_dir).resolve()

    @property
    def base_dir(self) -> Path:
        return self._base_dir

    def _resolve(self, path: str) -> Path:
        # Reject keys that would escape the storage root.
        key = PurePosixPath(path.strip().lstrip("/"))
        if any(part == ".." for part in key.parts):
            raise StorageError(f"invalid storage path: {path}")
        resolved = (self._base_dir / key).resolve()
        if resolved != self._base_dir and self._base_dir not in resolved.parents:
            raise StorageError(f"invalid storage path: {path}")
        return resolved

    def _key(self, target: Path) -> str:
        return target.relative_to(self._base_dir).as_posix()

    async def upload(self, path: str, data: bytes, content_type: str | None = None) -> None:
        target = self._resolve(path)

        def _write() -> None:
            target.parent.mkdir(parents=True, exist_ok=True)
            # Write then rename so readers never observe a partial blob.
            tmp = target.with_name(f".{target.name}.tmp")
            tmp.write_bytes(data)
            tmp.replace(target)

        try:
            await asyncio.to_thread(_write)
        except OSError as exc:
            raise StorageError(f"failed to upload {path}: {exc}") from exc
        logger.debug("storage_upload path=%s bytes=%s content_type=%s", path, len(data), content_type)

    async def download(self, path: str) -> bytes:
        target = self._resolve(path)
        try:
            return await asyncio.to_thread(target.read_bytes)
        except (FileNotFoundError, IsADirectoryError) as exc:
            raise StorageObjectNotFoundError(f"object not found: {path}") from exc
        except OSError as exc:
            raise StorageError(f"failed to download {path}: {exc}") from exc

    async def delete(self, path: str) -> None:
        target = self._resolve(path)
        try:
            await asyncio.to_thread(target.unlink)
        except FileNotFoundError as exc:
            raise StorageObjectNotFoundError(f"object not found: {path}") from exc
        except OSError as exc:
            raise StorageError(f"failed to delete {path}: {exc}") from exc

    async def exists(self, path: str) -> bool:
        target = self._resolve(path)
        return await asyncio.to_thread(target.is_file)

    async def list_files(self, path: str = "", recursive: bool = False) -> list[StoredFile]:
        root = self._resolve(path) if path else self._base_dir

        def _scan() -> list[StoredFile]:
            if not root.is_dir():
                return []
            entries = root.rglob("*") if recursive else root.iterdir()
            listed: list[StoredFile] = []
            for entry in sorted(entries):
                if entry.name.endswith(".tmp") and entry.name.startswith("."):
                    continue
                stat = entry.stat()
                listed.append(
                    StoredFile(
                        name=entry.name,
                        path=self._key(entry),
                        size=0 if entry.is_dir() else stat.st_size,
                        modified=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
                        is_directory=entry.is_dir(),
                    )
                )
            return listed

        return await asyncio.to_thread(_scan)


def get_object_storage() -> LocalObjectStorage:
    return LocalObjectStorage(get_settings().storage_local_dir)
