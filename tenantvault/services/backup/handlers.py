from __future__ import annotations

import logging
from functools import lru_cache
from typing import Any, Callable

from tenantvault.core.config import Settings, get_settings
from tenantvault.core.errors import ServiceBusyError
from tenantvault.domain.backups import BackupRecord
from tenantvault.persistence.db import SessionLocal
from tenantvault.persistence.repos.backups import BackupRecordStore, SqlBackupRecordStore
from tenantvault.services.backup.gateway import SqlTableGateway
from tenantvault.services.backup.lifecycle import BackupLifecycleController
from tenantvault.services.backup.policy import (
    create_org_backup_record,
    create_system_backup_record,
    require_password,
)
from tenantvault.services.backup.system_dump import build_system_dump_orchestrator
from tenantvault.services.jobs.queue import enqueue_job
from tenantvault.services.jobs.registry import (
    JobContext,
    JobError,
    JobHandlerConfig,
    JobHandlerRegistry,
    JobResult,
    job_handler_registry,
)
from tenantvault.services.notifications.broadcaster import build_broadcaster
from tenantvault.services.storage.local import get_object_storage


logger = logging.getLogger(__name__)

ORG_BACKUP_JOB = "backups:org-create"
ORG_RESTORE_JOB = "backups:org-restore"
CLEANUP_JOB = "backups:cleanup"
SYSTEM_BACKUP_JOB = "system:backup-create"

ControllerFactory = Callable[[], BackupLifecycleController]


@lru_cache
def get_backup_controller() -> BackupLifecycleController:
    # Wire production collaborators once per process.
    storage = get_object_storage()
    return BackupLifecycleController(
        store=SqlBackupRecordStore(SessionLocal),
        storage=storage,
        gateway=SqlTableGateway(SessionLocal),
        dump=build_system_dump_orchestrator(storage),
        broadcaster=build_broadcaster(),
    )


def _make_org_backup_handler(factory: ControllerFactory):
    async def handle_org_backup_create(context: JobContext) -> JobResult:
        return await factory().run_org_backup(context.input, context.helpers, attempt=context.attempt)

    return handle_org_backup_create


def _make_org_restore_handler(factory: ControllerFactory):
    async def handle_org_restore(context: JobContext) -> JobResult:
        job_input = context.input
        await context.helpers.update_progress(0, "Starting restore")
        try:
            result = await factory().restore_org_backup(
                str(job_input["organization_id"]),
                str(job_input["backup_id"]),
                str(job_input.get("strategy") or "skip"),
                job_input.get("password"),
            )
        except Exception as exc:  # noqa: BLE001 - report restore failures through the job result
            logger.exception("org_restore_job_failed job_id=%s", context.job_id)
            return JobResult(
                error=JobError(code="RESTORE_FAILED", message=str(exc) or exc.__class__.__name__)
            )
        await context.helpers.update_progress(100, "Restore finished")
        return JobResult(output=result.to_dict())

    return handle_org_restore


def _make_system_backup_handler(factory: ControllerFactory):
    async def handle_system_backup_create(context: JobContext) -> JobResult:
        return await factory().run_system_backup(context.input, context.helpers)

    return handle_system_backup_create


def _make_abandon_hook(factory: ControllerFactory):
    async def abandon_backup_job(job_input: dict[str, Any], reason: str) -> None:
        await factory().abandon_backup(job_input, reason)

    return abandon_backup_job


def _make_cleanup_handler(factory: ControllerFactory):
    async def handle_backup_cleanup(context: JobContext) -> JobResult:
        try:
            deleted = await factory().cleanup_expired(context.helpers)
        except Exception as exc:  # noqa: BLE001 - cleanup is retried by the queue
            logger.exception("backup_cleanup_failed job_id=%s", context.job_id)
            return JobResult(
                error=JobError(code="CLEANUP_FAILED", message=str(exc) or exc.__class__.__name__, retryable=True)
            )
        return JobResult(output={"deleted_count": deleted})

    return handle_backup_cleanup


def register_backup_handlers(
    registry: JobHandlerRegistry = job_handler_registry,
    *,
    controller_factory: ControllerFactory = get_backup_controller,
    settings: Settings | None = None,
) -> None:
    settings = settings or get_settings()
    registry.register(
        JobHandlerConfig(
            type=ORG_BACKUP_JOB,
            handler=_make_org_backup_handler(controller_factory),
            concurrency=settings.backup_org_concurrency,
            retry_limit=settings.backup_org_retry_limit,
            timeout_s=settings.backup_job_timeout_s,
            on_abandon=_make_abandon_hook(controller_factory),
            label="Organization Backup",
            description="Create a backup of organization data",
            example_config={"organization_id": "org_xxx"},
        )
    )
    registry.register(
        JobHandlerConfig(
            type=ORG_RESTORE_JOB,
            handler=_make_org_restore_handler(controller_factory),
            concurrency=settings.backup_org_concurrency,
            retry_limit=1,
            timeout_s=settings.backup_job_timeout_s,
            label="Organization Restore",
            description="Restore organization data from a backup",
        )
    )
    registry.register(
        JobHandlerConfig(
            type=CLEANUP_JOB,
            handler=_make_cleanup_handler(controller_factory),
            concurrency=settings.backup_cleanup_concurrency,
            retry_limit=settings.backup_cleanup_retry_limit,
            label="Backup Cleanup",
            description="Delete expired backups and their blobs",
        )
    )
    registry.register(
        JobHandlerConfig(
            type=SYSTEM_BACKUP_JOB,
            handler=_make_system_backup_handler(controller_factory),
            concurrency=settings.backup_system_concurrency,
            retry_limit=settings.backup_system_retry_limit,
            timeout_s=settings.backup_job_timeout_s,
            on_abandon=_make_abandon_hook(controller_factory),
            label="System Backup",
            description="Create a full system backup (pg_dump)",
        )
    )


async def _enqueue_for_record(
    store: BackupRecordStore,
    record: BackupRecord,
    job_type: str,
    job_input: dict[str, Any],
    created_by: str,
) -> str:
    try:
        return await enqueue_job(job_type, job_input, created_by=created_by)
    except ServiceBusyError:
        # The job never ran; drop its pending record so it does not count against the limit.
        await store.delete(record.id)
        logger.info("backup_rejected_busy id=%s type=%s", record.id, job_type)
        raise


async def start_org_backup(
    store: BackupRecordStore,
    *,
    organization_id: str,
    created_by: str,
    include_files: bool = True,
    encrypt: bool = False,
    password: str | None = None,
    tier: str | None = None,
) -> tuple[BackupRecord, str]:
    # Create the pending record first so the job always has something to update.
    require_password(encrypt, password)
    record = await create_org_backup_record(
        store, organization_id=organization_id, created_by=created_by, tier=tier
    )
    job_input: dict[str, Any] = {
        "backup_id": record.id,
        "organization_id": organization_id,
        "created_by": created_by,
        "include_files": include_files,
        "encrypt": encrypt,
    }
    # The password rides along in the transient job payload only.
    if encrypt:
        job_input["password"] = password
    job_id = await _enqueue_for_record(store, record, ORG_BACKUP_JOB, job_input, created_by)
    return record, job_id


async def start_system_backup(
    store: BackupRecordStore,
    *,
    created_by: str,
    include_files: bool = False,
    encrypt: bool = False,
    password: str | None = None,
) -> tuple[BackupRecord, str]:
    require_password(encrypt, password)
    record = await create_system_backup_record(store, created_by=created_by)
    job_input: dict[str, Any] = {
        "backup_id": record.id,
        "created_by": created_by,
        "include_files": include_files,
        "encrypt": encrypt,
    }
    if encrypt:
        job_input["password"] = password
    job_id = await _enqueue_for_record(store, record, SYSTEM_BACKUP_JOB, job_input, created_by)
    return record, job_id


async def start_org_restore(
    *,
    organization_id: str,
    backup_id: str,
    strategy: str,
    password: str | None,
    created_by: str,
) -> str:
    job_input: dict[str, Any] = {
        "organization_id": organization_id,
        "backup_id": backup_id,
        "strategy": strategy,
    }
    if password:
        job_input["password"] = password
    return await enqueue_job(ORG_RESTORE_JOB, job_input, created_by=created_by)


async def start_cleanup() -> str:
    return await enqueue_job(CLEANUP_JOB, {})
