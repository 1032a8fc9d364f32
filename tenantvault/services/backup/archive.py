from __future__ import annotations

import hashlib
import io
import json
import zipfile
from dataclasses import dataclass, field
from typing import Any, Mapping

from tenantvault.core.errors import MalformedArchiveError


DATA_ENTRY = "data.json"
FILES_PREFIX = "files/"


@dataclass(frozen=True)
class BackupArchive:
    data: dict[str, Any]
    # Keyed by the blob name with the files/ prefix stripped.
    files: dict[str, bytes] = field(default_factory=dict)


def sha256_hex(payload: bytes) -> str:
    return hashlib.sha256(payload).hexdigest()


def _json_default(value: Any) -> Any:
    # Exporters already emit JSON-safe rows; tolerate stray datetimes/UUIDs from callers.
    isoformat = getattr(value, "isoformat", None)
    if callable(isoformat):
        return isoformat()
    return str(value)


def build_bundle(entries: Mapping[str, bytes]) -> bytes:
    # Archives run out-of-band, so trade CPU for size with maximum compression.
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_DEFLATED, compresslevel=9) as archive:
        for name, content in entries.items():
            archive.writestr(name, content)
    return buffer.getvalue()


def read_bundle(payload: bytes) -> dict[str, bytes]:
    try:
        with zipfile.ZipFile(io.BytesIO(payload)) as archive:
            return {
                info.filename: archive.read(info.filename)
                for info in archive.infolist()
                if not info.is_dir()
            }
    except (zipfile.BadZipFile, zipfile.LargeZipFile, EOFError) as exc:
        raise MalformedArchiveError("Backup payload is not a readable archive") from exc


def build_archive(data: Mapping[str, Any], files: Mapping[str, bytes] | None = None) -> bytes:
    entries: dict[str, bytes] = {
        DATA_ENTRY: json.dumps(data, default=_json_default, ensure_ascii=False).encode("utf-8")
    }
    for name, content in (files or {}).items():
        entries[f"{FILES_PREFIX}{name.lstrip('/')}"] = content
    return build_bundle(entries)


def read_archive(payload: bytes) -> BackupArchive:
    entries = read_bundle(payload)
    raw_data = entries.get(DATA_ENTRY)
    if raw_data is None:
        raise MalformedArchiveError(f"Backup does not contain {DATA_ENTRY}")
    try:
        data = json.loads(raw_data.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise MalformedArchiveError(f"{DATA_ENTRY} is not valid JSON") from exc
    if not isinstance(data, dict):
        raise MalformedArchiveError(f"{DATA_ENTRY} must contain an object")
    files = {
        name[len(FILES_PREFIX):]: content
        for name, content in entries.items()
        if name.startswith(FILES_PREFIX) and len(name) > len(FILES_PREFIX)
    }
    return BackupArchive(data=data, files=files)
