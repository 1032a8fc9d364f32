from __future__ import annotations

from fastapi import Depends, HTTPException, Request, status
from pydantic import BaseModel

from tenantvault.core.config import get_settings
from tenantvault.persistence.repos.backups import BackupRecordStore
from tenantvault.services.backup.handlers import get_backup_controller
from tenantvault.services.backup.lifecycle import BackupLifecycleController


SUPERADMIN_ROLE = "superadmin"
_KNOWN_ROLES = {"member", "admin", SUPERADMIN_ROLE}


class Principal(BaseModel):
    # Capture the authenticated identity used for tenant scoping.
    subject_id: str
    tenant_id: str
    role: str


def _auth_error(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"code": "AUTH_UNAUTHORIZED", "message": message},
    )


def _forbidden_error(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail={"code": "AUTH_FORBIDDEN", "message": message},
    )


async def get_current_principal(request: Request) -> Principal:
    # Identity headers are trusted only when an upstream gateway has authenticated the caller.
    if not get_settings().auth_dev_bypass:
        raise _auth_error("Header authentication is disabled")
    user_id = request.headers.get("X-User-Id")
    tenant_id = request.headers.get("X-Tenant-Id")
    if not user_id or not tenant_id:
        raise _auth_error("X-User-Id and X-Tenant-Id headers are required")
    role = (request.headers.get("X-Role") or "member").strip().lower()
    if role not in _KNOWN_ROLES:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "AUTH_INVALID_ROLE", "message": f"Unknown role: {role}"},
        )
    return Principal(subject_id=user_id, tenant_id=tenant_id, role=role)


async def require_org_access(
    org_id: str,
    principal: Principal = Depends(get_current_principal),
) -> Principal:
    # Organization backups are visible to members of that organization and to superadmins.
    if principal.role == SUPERADMIN_ROLE:
        return principal
    if principal.tenant_id != org_id:
        raise _forbidden_error("Principal does not belong to this organization")
    return principal


async def require_superadmin(
    principal: Principal = Depends(get_current_principal),
) -> Principal:
    if principal.role != SUPERADMIN_ROLE:
        raise _forbidden_error("System backups require the superadmin role")
    return principal


def get_controller() -> BackupLifecycleController:
    return get_backup_controller()


def get_backup_store(
    controller: BackupLifecycleController = Depends(get_controller),
) -> BackupRecordStore:
    return controller.store
