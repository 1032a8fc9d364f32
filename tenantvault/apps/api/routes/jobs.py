from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request

from tenantvault.apps.api.deps import Principal, get_current_principal
from tenantvault.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from tenantvault.apps.api.response import success_response
from tenantvault.services.jobs.queue import get_job_progress

router = APIRouter(prefix="/jobs", tags=["jobs"], responses=DEFAULT_ERROR_RESPONSES)


@router.get("/{job_id}")
async def get_job(
    job_id: str,
    request: Request,
    principal: Principal = Depends(get_current_principal),
) -> dict[str, Any]:
    # Job ids are unguessable; progress never carries inputs such as passwords.
    progress = await get_job_progress(job_id)
    if progress is None:
        raise HTTPException(status_code=404, detail={"code": "NOT_FOUND", "message": "Job not found"})
    return success_response(request=request, data={"id": job_id, **progress})
