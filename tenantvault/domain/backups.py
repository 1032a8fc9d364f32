from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal

from tenantvault.core.errors import InvalidBackupUpdateError, InvalidStatusTransitionError


BackupKind = Literal["organization", "system"]
BackupFormat = Literal["structured-json", "database-dump"]
BackupStatus = Literal["pending", "in_progress", "completed", "failed"]
RestoreStrategy = Literal["skip", "overwrite", "wipe_and_replace"]
RetentionTier = Literal["free", "pro", "enterprise"]

RESTORE_STRATEGIES: tuple[str, ...] = ("skip", "overwrite", "wipe_and_replace")
TERMINAL_STATUSES = frozenset({"completed", "failed"})

# in_progress -> in_progress carries progress updates; terminal states have no exits.
_ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    "pending": frozenset({"in_progress", "failed"}),
    "in_progress": frozenset({"in_progress", "completed", "failed"}),
    "completed": frozenset(),
    "failed": frozenset(),
}


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class BackupRecord:
    # Storage-agnostic view of a backup row shared by repositories, services and routes.
    id: str
    kind: BackupKind
    organization_id: str | None
    format: BackupFormat
    status: BackupStatus
    created_by: str
    created_at: datetime
    expires_at: datetime | None
    completed_at: datetime | None = None
    storage_path: str | None = None
    byte_size: int | None = None
    checksum: str | None = None
    included_tables: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def is_encrypted(self) -> bool:
        return self.metadata.get("is_encrypted") is True

    @property
    def includes_files(self) -> bool:
        return self.metadata.get("includes_files") is True

    def is_expired(self, now: datetime | None = None) -> bool:
        if self.expires_at is None:
            return False
        return self.expires_at < (now or _utc_now())

    def to_dict(self) -> dict[str, Any]:
        # Never expose envelope parameters; they are only useful alongside the password.
        public_metadata = {
            key: value for key, value in self.metadata.items() if key not in {"iv", "auth_tag"}
        }
        return {
            "id": self.id,
            "kind": self.kind,
            "organization_id": self.organization_id,
            "format": self.format,
            "status": self.status,
            "created_by": self.created_by,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "storage_path": self.storage_path,
            "byte_size": self.byte_size,
            "checksum": self.checksum,
            "included_tables": list(self.included_tables),
            "metadata": public_metadata,
        }


@dataclass(frozen=True)
class BackupStatusUpdate:
    status: BackupStatus
    metadata: dict[str, Any] | None = None
    completed_at: datetime | None = None
    storage_path: str | None = None
    byte_size: int | None = None
    checksum: str | None = None


def validate_transition(current: str, new: str) -> None:
    allowed = _ALLOWED_TRANSITIONS.get(current)
    if allowed is None or new not in _ALLOWED_TRANSITIONS:
        raise InvalidStatusTransitionError(f"unknown backup status: {current} -> {new}")
    if new not in allowed:
        raise InvalidStatusTransitionError(f"backup status cannot move from {current} to {new}")


def merge_metadata(existing: dict[str, Any] | None, updates: dict[str, Any] | None) -> dict[str, Any]:
    # Merge rather than replace so progress updates never drop envelope parameters.
    merged = dict(existing or {})
    if updates:
        merged.update(updates)
    has_iv = bool(merged.get("iv"))
    has_tag = bool(merged.get("auth_tag"))
    if has_iv != has_tag:
        raise InvalidBackupUpdateError("iv and auth_tag must be stored together")
    return merged


def resolve_status_update(
    *,
    current_status: str,
    current_metadata: dict[str, Any] | None,
    update: BackupStatusUpdate,
) -> dict[str, Any]:
    # Return the field values a repository should persist for this update.
    validate_transition(current_status, update.status)
    storage_fields = (update.storage_path, update.byte_size, update.checksum)
    if update.status != "completed" and any(value is not None for value in storage_fields):
        raise InvalidBackupUpdateError("storage fields can only be set when completing a backup")
    fields: dict[str, Any] = {
        "status": update.status,
        "metadata": merge_metadata(current_metadata, update.metadata),
    }
    if update.status == "completed":
        if not update.storage_path or not update.checksum:
            raise InvalidBackupUpdateError("completed backups require storage_path and checksum")
        fields["completed_at"] = update.completed_at or _utc_now()
        fields["storage_path"] = update.storage_path
        fields["byte_size"] = update.byte_size
        fields["checksum"] = update.checksum
    return fields
