from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Header, Query, Request, Response
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from tenantvault.apps.api.deps import (
    Principal,
    get_backup_store,
    get_controller,
    require_superadmin,
)
from tenantvault.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from tenantvault.apps.api.response import (
    accepted_response,
    backup_page_response,
    download_response,
    success_response,
)
from tenantvault.core.config import get_settings
from tenantvault.core.errors import ConfirmationRequiredError
from tenantvault.persistence.repos.backups import BackupRecordStore
from tenantvault.services.backup.handlers import start_system_backup
from tenantvault.services.backup.lifecycle import BackupLifecycleController


router = APIRouter(
    prefix="/admin/system-backups",
    tags=["system-backups"],
    responses=DEFAULT_ERROR_RESPONSES,
)


class CreateSystemBackupRequest(BaseModel):
    include_files: bool = False
    encrypt: bool = False
    password: str | None = Field(default=None, min_length=1)


class RestoreSystemBackupRequest(BaseModel):
    confirmation: str | None = None
    password: str | None = None


@router.post("", status_code=202)
async def create_system_backup(
    request: Request,
    body: CreateSystemBackupRequest,
    principal: Principal = Depends(require_superadmin),
    store: BackupRecordStore = Depends(get_backup_store),
) -> JSONResponse:
    record, job_id = await start_system_backup(
        store,
        created_by=principal.subject_id,
        include_files=body.include_files,
        encrypt=body.encrypt,
        password=body.password,
    )
    return accepted_response(
        request=request, job_id=job_id, id=record.id, message="System backup started"
    )


@router.get("")
async def list_system_backups(
    request: Request,
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=20, ge=1, le=100),
    principal: Principal = Depends(require_superadmin),
    store: BackupRecordStore = Depends(get_backup_store),
) -> dict[str, Any]:
    records = await store.list_system(limit=page_size, offset=(page - 1) * page_size)
    total = await store.count_system()
    return backup_page_response(
        request=request, records=records, page=page, page_size=page_size, total=total
    )


@router.get("/{backup_id}")
async def get_system_backup(
    backup_id: str,
    request: Request,
    principal: Principal = Depends(require_superadmin),
    controller: BackupLifecycleController = Depends(get_controller),
) -> dict[str, Any]:
    record = await controller.get_backup(backup_id, kind="system")
    return success_response(request=request, data=record.to_dict())


@router.get("/{backup_id}/download")
async def download_system_backup(
    backup_id: str,
    password: str | None = Header(default=None, alias="X-Backup-Password"),
    principal: Principal = Depends(require_superadmin),
    controller: BackupLifecycleController = Depends(get_controller),
) -> Response:
    downloaded = await controller.download_backup(backup_id, password, kind="system")
    return download_response(downloaded)


@router.delete("/{backup_id}", status_code=204)
async def delete_system_backup(
    backup_id: str,
    principal: Principal = Depends(require_superadmin),
    controller: BackupLifecycleController = Depends(get_controller),
) -> Response:
    await controller.delete_backup(backup_id, kind="system")
    return Response(status_code=204)


@router.post("/{backup_id}/restore")
async def restore_system_backup(
    backup_id: str,
    request: Request,
    body: RestoreSystemBackupRequest,
    principal: Principal = Depends(require_superadmin),
    controller: BackupLifecycleController = Depends(get_controller),
) -> dict[str, Any]:
    # A system restore replaces every tenant's data; always demand the phrase.
    phrase = get_settings().restore_confirmation_phrase
    if body.confirmation != phrase:
        raise ConfirmationRequiredError(
            f"You must type '{phrase}' to confirm this dangerous operation"
        )
    result = await controller.restore_system_backup(backup_id, body.password)
    return success_response(
        request=request,
        data={**result.to_dict(), "message": "System backup restored successfully"},
    )
