from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Header, Query, Request, Response
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from tenantvault.apps.api.deps import (
    Principal,
    get_backup_store,
    get_controller,
    require_org_access,
)
from tenantvault.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from tenantvault.apps.api.response import (
    accepted_response,
    backup_page_response,
    download_response,
    success_response,
)
from tenantvault.core.config import get_settings
from tenantvault.core.errors import (
    BackupNotReadyError,
    ConfirmationRequiredError,
    PasswordRequiredError,
)
from tenantvault.domain.backups import RestoreStrategy, RetentionTier
from tenantvault.persistence.repos.backups import BackupRecordStore
from tenantvault.services.backup.handlers import start_org_backup, start_org_restore
from tenantvault.services.backup.lifecycle import BackupLifecycleController


router = APIRouter(prefix="/orgs/{org_id}/backups", tags=["backups"], responses=DEFAULT_ERROR_RESPONSES)

_DESTRUCTIVE_STRATEGIES = {"overwrite", "wipe_and_replace"}


class CreateBackupRequest(BaseModel):
    include_files: bool = True
    encrypt: bool = False
    password: str | None = Field(default=None, min_length=1)
    tier: RetentionTier | None = None


class RestoreBackupRequest(BaseModel):
    strategy: RestoreStrategy = "skip"
    confirmation: str | None = None
    password: str | None = None
    # Run through the job queue and return a job id instead of the restore result.
    run_async: bool = False


@router.post("", status_code=202)
async def create_backup(
    org_id: str,
    request: Request,
    body: CreateBackupRequest,
    principal: Principal = Depends(require_org_access),
    store: BackupRecordStore = Depends(get_backup_store),
) -> JSONResponse:
    record, job_id = await start_org_backup(
        store,
        organization_id=org_id,
        created_by=principal.subject_id,
        include_files=body.include_files,
        encrypt=body.encrypt,
        password=body.password,
        tier=body.tier,
    )
    return accepted_response(request=request, job_id=job_id, id=record.id, message="Backup started")


@router.get("")
async def list_backups(
    org_id: str,
    request: Request,
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=20, ge=1, le=100),
    principal: Principal = Depends(require_org_access),
    store: BackupRecordStore = Depends(get_backup_store),
) -> dict[str, Any]:
    records = await store.list_for_organization(
        org_id, limit=page_size, offset=(page - 1) * page_size
    )
    total = await store.count_for_organization(org_id)
    return backup_page_response(
        request=request, records=records, page=page, page_size=page_size, total=total
    )


@router.get("/{backup_id}")
async def get_backup(
    org_id: str,
    backup_id: str,
    request: Request,
    principal: Principal = Depends(require_org_access),
    controller: BackupLifecycleController = Depends(get_controller),
) -> dict[str, Any]:
    record = await controller.get_backup(backup_id, kind="organization", organization_id=org_id)
    return success_response(request=request, data=record.to_dict())


@router.delete("/{backup_id}", status_code=204)
async def delete_backup(
    org_id: str,
    backup_id: str,
    principal: Principal = Depends(require_org_access),
    controller: BackupLifecycleController = Depends(get_controller),
) -> Response:
    await controller.delete_backup(backup_id, kind="organization", organization_id=org_id)
    return Response(status_code=204)


@router.get("/{backup_id}/download")
async def download_backup(
    org_id: str,
    backup_id: str,
    password: str | None = Header(default=None, alias="X-Backup-Password"),
    principal: Principal = Depends(require_org_access),
    controller: BackupLifecycleController = Depends(get_controller),
) -> Response:
    downloaded = await controller.download_backup(
        backup_id, password, kind="organization", organization_id=org_id
    )
    return download_response(downloaded)


@router.post("/{backup_id}/restore")
async def restore_backup(
    org_id: str,
    backup_id: str,
    request: Request,
    body: RestoreBackupRequest,
    principal: Principal = Depends(require_org_access),
    controller: BackupLifecycleController = Depends(get_controller),
) -> Any:
    phrase = get_settings().restore_confirmation_phrase
    if body.strategy in _DESTRUCTIVE_STRATEGIES and body.confirmation != phrase:
        raise ConfirmationRequiredError(
            f"You must type '{phrase}' to confirm a {body.strategy} restore"
        )
    record = await controller.get_backup(backup_id, kind="organization", organization_id=org_id)
    if body.run_async:
        # Reject requests the job would fail on before anything is queued.
        if record.status != "completed" or not record.storage_path:
            raise BackupNotReadyError("Backup is not completed or file is missing")
        if record.is_encrypted and not body.password:
            raise PasswordRequiredError("Password is required to restore encrypted backup")
        job_id = await start_org_restore(
            organization_id=org_id,
            backup_id=record.id,
            strategy=body.strategy,
            password=body.password,
            created_by=principal.subject_id,
        )
        return accepted_response(request=request, job_id=job_id)
    result = await controller.restore_org_backup(org_id, record.id, body.strategy, body.password)
    return success_response(request=request, data=result.to_dict())

