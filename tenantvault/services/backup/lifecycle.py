from __future__ import annotations

import asyncio
import logging
import posixpath
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from tenantvault.core.config import Settings, get_settings
from tenantvault.core.errors import (
    BackupNotFoundError,
    BackupNotReadyError,
    InvalidEncryptionMetadataError,
    PasswordRequiredError,
)
from tenantvault.domain.backups import RESTORE_STRATEGIES, BackupRecord, BackupStatusUpdate
from tenantvault.persistence.repos.backups import BackupRecordStore
from tenantvault.services.backup.archive import build_archive, read_archive, sha256_hex
from tenantvault.services.backup.crypto import decrypt_buffer, encrypt_buffer
from tenantvault.services.backup.exporter import collect_file_paths, export_org_data
from tenantvault.services.backup.gateway import TableGateway
from tenantvault.services.backup.restorer import RestoreResult, restore_org_data
from tenantvault.services.backup.system_dump import SystemDumpOrchestrator
from tenantvault.services.jobs.registry import JobError, JobHelpers, JobResult
from tenantvault.services.notifications.broadcaster import BroadcastEvent, EventBroadcaster
from tenantvault.services.storage.base import ObjectStorage
from tenantvault.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

ZIP_CONTENT_TYPE = "application/zip"
BINARY_CONTENT_TYPE = "application/octet-stream"
CANCELLED_MESSAGE = "Backup timed out or was cancelled"


@dataclass(frozen=True)
class DownloadedBackup:
    record: BackupRecord
    content: bytes
    filename: str
    content_type: str


@dataclass(frozen=True)
class SystemRestoreResult:
    backup_id: str
    files_restored: int = 0
    errors: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "backup_id": self.backup_id,
            "files_restored": self.files_restored,
            "errors": list(self.errors),
        }


def org_storage_path(prefix: str, organization_id: str, backup_id: str) -> str:
    return f"{prefix.strip('/')}/{organization_id}/backup-{backup_id}.zip"


def system_storage_path(prefix: str, backup_id: str, *, include_files: bool, epoch_ms: int) -> str:
    ext = "zip" if include_files else "dump"
    return f"{prefix.strip('/')}/system/system-backup-{backup_id}-{epoch_ms}.{ext}"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _error_message(exc: Exception) -> str:
    return str(exc) or exc.__class__.__name__


class BackupLifecycleController:
    """Drive backups and restores end to end.

    Progress is written to both the job helpers and the backup record so API
    polling and job polling agree. Records only move forward through
    pending -> in_progress -> completed/failed.
    """

    def __init__(
        self,
        *,
        store: BackupRecordStore,
        storage: ObjectStorage,
        gateway: TableGateway,
        dump: SystemDumpOrchestrator,
        broadcaster: EventBroadcaster,
        settings: Settings | None = None,
    ) -> None:
        self._store = store
        self._storage = storage
        self._gateway = gateway
        self._dump = dump
        self._broadcaster = broadcaster
        self._settings = settings or get_settings()

    @property
    def store(self) -> BackupRecordStore:
        return self._store

    async def _progress(
        self,
        backup_id: str,
        helpers: JobHelpers,
        percent: int,
        message: str,
        extra: dict[str, Any] | None = None,
    ) -> None:
        await helpers.update_progress(percent, message)
        metadata = {"progress": percent, "status_message": message, **(extra or {})}
        await self._store.update_status(
            backup_id, BackupStatusUpdate(status="in_progress", metadata=metadata)
        )

    async def _notify(self, user_id: str | None, event: BroadcastEvent) -> None:
        if not user_id:
            return
        await self._broadcaster.broadcast_to_user(user_id, event)

    async def _record_failure(self, backup_id: str, message: str, *, final: bool) -> None:
        # Non-final attempts stay in_progress so the retry can pick the record back up.
        status = "failed" if final else "in_progress"
        metadata: dict[str, Any] = {"error": message}
        if not final:
            metadata["status_message"] = "Retrying after failure"
        try:
            await self._store.update_status(
                backup_id, BackupStatusUpdate(status=status, metadata=metadata)
            )
        except Exception as exc:  # noqa: BLE001 - the original failure is what gets reported
            logger.error("backup_failure_not_recorded id=%s", backup_id, exc_info=exc)

    async def _fail_terminally(
        self,
        backup_id: str,
        created_by: str | None,
        organization_id: str,
        job_kind: str,
        message: str,
    ) -> None:
        # Used when the job ends outside the handler; the record still has to reach a terminal state.
        logger.warning("backup_abandoned id=%s kind=%s reason=%s", backup_id, job_kind, message)
        increment_counter("backups_failed_total")
        await self._record_failure(backup_id, message, final=True)
        await self._notify(
            created_by,
            BroadcastEvent(
                type="job:failed",
                id=f"{job_kind.replace('-', '_')}_failed_{backup_id}",
                data={"id": backup_id, "type": job_kind, "org_id": organization_id, "error": message},
            ),
        )

    async def abandon_backup(self, job_input: dict[str, Any], reason: str) -> None:
        organization_id = job_input.get("organization_id")
        await self._fail_terminally(
            str(job_input["backup_id"]),
            job_input.get("created_by"),
            str(organization_id) if organization_id else "system",
            "backup" if organization_id else "system-backup",
            reason,
        )

    async def _collect_files(self, paths: list[str], warnings: list[str]) -> dict[str, bytes]:
        files: dict[str, bytes] = {}
        for path in paths:
            try:
                files[path] = await self._storage.download(path)
            except Exception as exc:  # noqa: BLE001 - missing blobs do not abort the backup
                logger.warning("backup_file_skipped path=%s", path, exc_info=exc)
                warnings.append(f"File {path}: {_error_message(exc)}")
        return files

    async def run_org_backup(
        self, job_input: dict[str, Any], helpers: JobHelpers, *, attempt: int = 1
    ) -> JobResult:
        backup_id = str(job_input["backup_id"])
        organization_id = str(job_input["organization_id"])
        created_by = job_input.get("created_by")
        include_files = job_input.get("include_files") is not False
        encrypt = job_input.get("encrypt") is True
        password = job_input.get("password")
        start = time.monotonic()
        flags = {"includes_files": include_files, "is_encrypted": encrypt}
        try:
            if encrypt and not password:
                raise PasswordRequiredError("Password is required for encrypted backups")
            await self._progress(backup_id, helpers, 0, "Starting backup", flags)
            await self._progress(backup_id, helpers, 10, "Exporting organization data", flags)
            export = await export_org_data(self._gateway, organization_id)

            message = "Creating and encrypting archive" if encrypt else "Creating backup archive"
            await self._progress(backup_id, helpers, 50, message, flags)
            warnings = list(export.warnings)
            files = (
                await self._collect_files(collect_file_paths(export), warnings)
                if include_files
                else {}
            )
            payload = build_archive(export.tables, files)
            encryption: dict[str, Any] = {}
            if encrypt:
                sealed = encrypt_buffer(payload, password)
                payload = sealed.ciphertext
                encryption = {"iv": sealed.iv, "auth_tag": sealed.auth_tag}
            checksum = sha256_hex(payload)

            await self._progress(backup_id, helpers, 80, "Uploading backup archive", flags)
            storage_path = org_storage_path(
                self._settings.backup_storage_prefix, organization_id, backup_id
            )
            await self._storage.upload(storage_path, payload, ZIP_CONTENT_TYPE)

            await self._progress(backup_id, helpers, 90, "Finalizing backup", flags)
            duration_ms = int((time.monotonic() - start) * 1000)
            await self._store.update_status(
                backup_id,
                BackupStatusUpdate(
                    status="completed",
                    completed_at=_utc_now(),
                    storage_path=storage_path,
                    byte_size=len(payload),
                    checksum=checksum,
                    metadata={
                        **flags,
                        **encryption,
                        "progress": 100,
                        "status_message": "Backup completed",
                        "error": None,
                        "row_counts": export.row_counts,
                        "duration_ms": duration_ms,
                        "export_warnings": warnings,
                    },
                ),
            )
        except asyncio.CancelledError:
            await self._fail_terminally(backup_id, created_by, organization_id, "backup", CANCELLED_MESSAGE)
            raise
        except Exception as exc:  # noqa: BLE001 - surface the failure on the record and job
            message = _error_message(exc)
            final = attempt >= self._settings.backup_org_retry_limit
            logger.exception("org_backup_failed id=%s org_id=%s attempt=%s", backup_id, organization_id, attempt)
            increment_counter("backups_failed_total")
            await self._record_failure(backup_id, message, final=final)
            if final:
                await self._notify(
                    created_by,
                    BroadcastEvent(
                        type="job:failed",
                        id=f"backup_failed_{backup_id}",
                        data={"id": backup_id, "type": "backup", "org_id": organization_id, "error": message},
                    ),
                )
            return JobResult(error=JobError(code="BACKUP_FAILED", message=message, retryable=True))

        increment_counter("backups_completed_total")
        logger.info(
            "org_backup_completed id=%s org_id=%s bytes=%s duration_ms=%s",
            backup_id,
            organization_id,
            len(payload),
            duration_ms,
        )
        await self._notify(
            created_by,
            BroadcastEvent(
                type="job:completed",
                id=f"backup_completed_{backup_id}",
                data={"id": backup_id, "type": "backup", "org_id": organization_id},
            ),
        )
        return JobResult(
            output={
                "backup_id": backup_id,
                "total_rows": export.total_rows,
                "tables": len(export.tables),
                "file_size": len(payload),
                "files": len(files),
            }
        )

    async def run_system_backup(self, job_input: dict[str, Any], helpers: JobHelpers) -> JobResult:
        backup_id = str(job_input["backup_id"])
        created_by = job_input.get("created_by")
        include_files = job_input.get("include_files") is True
        encrypt = job_input.get("encrypt") is True
        password = job_input.get("password")
        start = time.monotonic()
        flags = {"includes_files": include_files, "is_encrypted": encrypt}
        storage_path = system_storage_path(
            self._settings.backup_storage_prefix,
            backup_id,
            include_files=include_files,
            epoch_ms=int(time.time() * 1000),
        )
        try:
            if encrypt and not password:
                raise PasswordRequiredError("Password is required for encrypted backups")
            await helpers.log("Starting pg_dump")
            await self._progress(backup_id, helpers, 0, "Starting pg_dump", flags)
            payload = await self._dump.dump()

            await self._progress(backup_id, helpers, 50, "Processing dump output", flags)
            if include_files:
                await self._progress(backup_id, helpers, 60, "Bundling storage files", flags)
                payload = await self._dump.bundle_files(payload)

            encryption: dict[str, Any] = {}
            if encrypt:
                await self._progress(backup_id, helpers, 80, "Encrypting backup", flags)
                sealed = encrypt_buffer(payload, password)
                payload = sealed.ciphertext
                encryption = {"iv": sealed.iv, "auth_tag": sealed.auth_tag}
            checksum = sha256_hex(payload)

            await self._progress(backup_id, helpers, 90, "Uploading to storage", flags)
            await self._storage.upload(storage_path, payload, BINARY_CONTENT_TYPE)
            duration_ms = int((time.monotonic() - start) * 1000)
            await self._store.update_status(
                backup_id,
                BackupStatusUpdate(
                    status="completed",
                    completed_at=_utc_now(),
                    storage_path=storage_path,
                    byte_size=len(payload),
                    checksum=checksum,
                    metadata={
                        **flags,
                        **encryption,
                        "progress": 100,
                        "status_message": "System backup completed",
                        "error": None,
                        "duration_ms": duration_ms,
                    },
                ),
            )
        except asyncio.CancelledError:
            await self._fail_terminally(backup_id, created_by, "system", "system-backup", CANCELLED_MESSAGE)
            raise
        except Exception as exc:  # noqa: BLE001 - system backups are not retried
            message = _error_message(exc)
            logger.exception("system_backup_failed id=%s", backup_id)
            increment_counter("system_backups_failed_total")
            await self._record_failure(backup_id, message, final=True)
            await self._notify(
                created_by,
                BroadcastEvent(
                    type="job:failed",
                    id=f"system_backup_failed_{backup_id}",
                    data={"id": backup_id, "type": "system-backup", "org_id": "system", "error": message},
                ),
            )
            return JobResult(
                error=JobError(code="SYSTEM_BACKUP_FAILED", message=message, retryable=False)
            )

        increment_counter("system_backups_completed_total")
        logger.info("system_backup_completed id=%s bytes=%s duration_ms=%s", backup_id, len(payload), duration_ms)
        await self._notify(
            created_by,
            BroadcastEvent(
                type="job:completed",
                id=f"system_backup_completed_{backup_id}",
                data={"id": backup_id, "type": "system-backup", "org_id": "system"},
            ),
        )
        return JobResult(output={"backup_id": backup_id, "success": True, "file_size": len(payload)})

    async def get_backup(
        self,
        backup_id: str,
        *,
        kind: str | None = None,
        organization_id: str | None = None,
    ) -> BackupRecord:
        # Records outside the caller's scope are reported as missing.
        record = await self._store.get(backup_id)
        if record is None:
            raise BackupNotFoundError("Backup not found")
        if kind is not None and record.kind != kind:
            raise BackupNotFoundError("Backup not found")
        if organization_id is not None and record.organization_id != organization_id:
            raise BackupNotFoundError("Backup not found")
        return record

    async def _ready_backup(
        self,
        backup_id: str,
        *,
        kind: str | None = None,
        organization_id: str | None = None,
    ) -> BackupRecord:
        record = await self.get_backup(backup_id, kind=kind, organization_id=organization_id)
        if record.status != "completed" or not record.storage_path:
            raise BackupNotReadyError("Backup is not completed or file is missing")
        return record

    async def _read_payload(self, record: BackupRecord, password: str | None) -> bytes:
        # Validate the password and envelope before touching storage.
        iv = record.metadata.get("iv")
        auth_tag = record.metadata.get("auth_tag")
        if record.is_encrypted:
            if not password:
                raise PasswordRequiredError("Password is required for encrypted backups")
            if not iv or not auth_tag:
                raise InvalidEncryptionMetadataError("Backup encryption metadata is corrupted")
        payload = await self._storage.download(record.storage_path or "")
        if record.is_encrypted:
            payload = decrypt_buffer(payload, password or "", iv, auth_tag)
        return payload

    async def restore_org_backup(
        self,
        organization_id: str,
        backup_id: str,
        strategy: str = "skip",
        password: str | None = None,
    ) -> RestoreResult:
        if strategy not in RESTORE_STRATEGIES:
            raise ValueError(f"unknown restore strategy: {strategy}")
        record = await self._ready_backup(
            backup_id, kind="organization", organization_id=organization_id
        )
        payload = await self._read_payload(record, password)
        archive = read_archive(payload)
        logger.info("org_restore_started id=%s org_id=%s strategy=%s", backup_id, organization_id, strategy)
        result = await restore_org_data(
            self._gateway,
            organization_id,
            archive.data,
            strategy,
            files=archive.files,
            storage=self._storage,
        )
        increment_counter("restores_completed_total" if result.success else "restores_partial_total")
        return result

    async def restore_system_backup(
        self, backup_id: str, password: str | None = None
    ) -> SystemRestoreResult:
        record = await self._ready_backup(backup_id, kind="system")
        payload = await self._read_payload(record, password)
        logger.warning("system_restore_started id=%s", backup_id)
        if record.includes_files or (record.storage_path or "").endswith(".zip"):
            bundle = await self._dump.restore_bundle(payload)
            files_restored, errors = bundle.files_restored, tuple(bundle.errors)
        else:
            await self._dump.restore(payload)
            files_restored, errors = 0, ()
        increment_counter("system_restores_completed_total")
        return SystemRestoreResult(backup_id=backup_id, files_restored=files_restored, errors=errors)

    async def download_backup(
        self,
        backup_id: str,
        password: str | None = None,
        *,
        kind: str | None = None,
        organization_id: str | None = None,
    ) -> DownloadedBackup:
        record = await self._ready_backup(backup_id, kind=kind, organization_id=organization_id)
        content = await self._read_payload(record, password)
        storage_path = record.storage_path or ""
        filename = posixpath.basename(storage_path) or "backup"
        content_type = ZIP_CONTENT_TYPE if filename.endswith(".zip") else BINARY_CONTENT_TYPE
        return DownloadedBackup(
            record=record, content=content, filename=filename, content_type=content_type
        )

    async def _delete_record(self, record: BackupRecord) -> None:
        # Blob first, best effort; the row goes regardless.
        if record.storage_path:
            try:
                await self._storage.delete(record.storage_path)
            except Exception as exc:  # noqa: BLE001 - orphaned blobs are acceptable
                logger.warning(
                    "backup_blob_delete_failed id=%s path=%s",
                    record.id,
                    record.storage_path,
                    exc_info=exc,
                )
        await self._store.delete(record.id)

    async def delete_backup(
        self,
        backup_id: str,
        *,
        kind: str | None = None,
        organization_id: str | None = None,
    ) -> None:
        record = await self.get_backup(backup_id, kind=kind, organization_id=organization_id)
        await self._delete_record(record)
        logger.info("backup_deleted id=%s kind=%s", record.id, record.kind)

    async def cleanup_expired(self, helpers: JobHelpers, *, now: datetime | None = None) -> int:
        await helpers.log("Starting backup cleanup")
        expired = await self._store.find_expired(now or _utc_now())
        deleted = 0
        for record in expired:
            await self._delete_record(record)
            deleted += 1
        increment_counter("backups_expired_total", deleted)
        await helpers.log(f"Deleted {deleted} expired backups")
        return deleted
