from __future__ import annotations

import math
from typing import Any, Generic, Iterable, TypeVar
from uuid import uuid4

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from tenantvault.domain.backups import BackupRecord
from tenantvault.services.backup.lifecycle import DownloadedBackup


API_VERSION = "v1"

T = TypeVar("T")


class ResponseMeta(BaseModel):
    request_id: str
    api_version: str = Field(default=API_VERSION)


class ErrorDetail(BaseModel):
    code: str
    message: str
    details: dict[str, Any] | None = None


class SuccessEnvelope(BaseModel, Generic[T]):
    data: T
    meta: ResponseMeta


class ErrorEnvelope(BaseModel):
    error: ErrorDetail
    meta: ResponseMeta


class Pagination(BaseModel):
    page: int
    page_size: int
    total_count: int
    total_pages: int
    has_next: bool
    has_previous: bool

    @classmethod
    def build(cls, page: int, page_size: int, total: int) -> "Pagination":
        total_pages = math.ceil(total / page_size) if total else 0
        return cls(
            page=page,
            page_size=page_size,
            total_count=total,
            total_pages=total_pages,
            has_next=page < total_pages,
            has_previous=page > 1,
        )


def get_request_id(request: Request) -> str:
    # The middleware usually sets this; handlers invoked outside it fall back to the header.
    request_id = getattr(request.state, "request_id", None)
    if request_id:
        return request_id
    request_id = request.headers.get("X-Request-Id") or str(uuid4())
    request.state.request_id = request_id
    return request_id


def _meta(request: Request) -> dict[str, Any]:
    return ResponseMeta(request_id=get_request_id(request)).model_dump()


def success_response(*, request: Request, data: Any) -> dict[str, Any]:
    if isinstance(data, BaseModel):
        data = data.model_dump(mode="json")
    return {"data": data, "meta": _meta(request)}


def backup_page_response(
    *,
    request: Request,
    records: Iterable[BackupRecord],
    page: int,
    page_size: int,
    total: int,
) -> dict[str, Any]:
    # Record dicts never carry iv/auth_tag, so listings are safe to return as-is.
    return success_response(
        request=request,
        data={
            "items": [record.to_dict() for record in records],
            "pagination": Pagination.build(page, page_size, total).model_dump(),
        },
    )


def accepted_response(*, request: Request, job_id: str, **extra: Any) -> JSONResponse:
    # Work handed to the job queue answers 202 with the job id to poll.
    return JSONResponse(
        status_code=202,
        content=success_response(request=request, data={**extra, "job_id": job_id}),
    )


def download_response(downloaded: DownloadedBackup) -> Response:
    # Downloads are raw bytes, outside the JSON envelope.
    return Response(
        content=downloaded.content,
        media_type=downloaded.content_type,
        headers={"Content-Disposition": f'attachment; filename="{downloaded.filename}"'},
    )


def error_response(
    *,
    request: Request,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    error = ErrorDetail(code=code, message=message, details=details)
    return {"error": error.model_dump(exclude_none=True), "meta": _meta(request)}
