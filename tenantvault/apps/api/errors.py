from __future__ import annotations

import logging
from typing import Any

from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from tenantvault.apps.api.response import error_response
from tenantvault.core.errors import (
    BackupAuthenticationError,
    BackupLimitExceededError,
    BackupNotFoundError,
    BackupNotReadyError,
    ConfirmationRequiredError,
    DumpProcessError,
    InvalidBackupUpdateError,
    InvalidEncryptionMetadataError,
    InvalidStatusTransitionError,
    MalformedArchiveError,
    PasswordRequiredError,
    ServiceBusyError,
    StorageError,
    StorageObjectNotFoundError,
    TenantVaultError,
)


logger = logging.getLogger(__name__)

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    401: "AUTH_UNAUTHORIZED",
    403: "AUTH_FORBIDDEN",
    404: "NOT_FOUND",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    500: "INTERNAL_ERROR",
    502: "STORAGE_ERROR",
    503: "SERVICE_UNAVAILABLE",
}

# Most specific class wins; lookups walk the exception MRO.
_DOMAIN_ERRORS: dict[type[TenantVaultError], tuple[int, str]] = {
    BackupNotFoundError: (404, "NOT_FOUND"),
    BackupNotReadyError: (400, "BACKUP_NOT_READY"),
    PasswordRequiredError: (400, "PASSWORD_REQUIRED"),
    BackupLimitExceededError: (400, "BACKUP_LIMIT_EXCEEDED"),
    ConfirmationRequiredError: (400, "CONFIRMATION_REQUIRED"),
    BackupAuthenticationError: (401, "DECRYPTION_FAILED"),
    InvalidEncryptionMetadataError: (500, "INVALID_ENCRYPTION_METADATA"),
    MalformedArchiveError: (422, "MALFORMED_BACKUP"),
    InvalidStatusTransitionError: (409, "CONFLICT"),
    InvalidBackupUpdateError: (409, "CONFLICT"),
    DumpProcessError: (500, "RESTORE_FAILED"),
    StorageObjectNotFoundError: (404, "BACKUP_FILE_MISSING"),
    StorageError: (502, "STORAGE_ERROR"),
    ServiceBusyError: (503, "SERVICE_UNAVAILABLE"),
}


def _default_code(status_code: int) -> str:
    return _DEFAULT_ERROR_CODES.get(status_code, "UNKNOWN_ERROR")


def classify_error(exc: TenantVaultError) -> tuple[int, str]:
    for cls in type(exc).__mro__:
        mapped = _DOMAIN_ERRORS.get(cls)  # type: ignore[arg-type]
        if mapped is not None:
            return mapped
    return 500, "BACKUP_FAILED"


def _split_detail(detail: Any, status_code: int) -> tuple[str, str, dict[str, Any] | None]:
    # Extract code/message/details from HTTPException detail payloads.
    if isinstance(detail, dict):
        code = str(detail.get("code") or _default_code(status_code))
        message = str(detail.get("message") or "Request failed")
        details = {k: v for k, v in detail.items() if k not in {"code", "message"}}
        return code, message, details or None
    if isinstance(detail, str):
        return _default_code(status_code), detail, None
    return _default_code(status_code), "Request failed", None


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    code, message, details = _split_detail(exc.detail, exc.status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=getattr(exc, "headers", None))


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    payload = error_response(
        request=request,
        code="REQUEST_VALIDATION_ERROR",
        message="Validation error",
        details={"errors": exc.errors()},
    )
    return JSONResponse(content=payload, status_code=422)


async def domain_exception_handler(request: Request, exc: TenantVaultError) -> JSONResponse:
    status_code, code = classify_error(exc)
    if status_code >= 500:
        logger.error("request_failed path=%s code=%s", request.url.path, code, exc_info=exc)
    payload = error_response(request=request, code=code, message=str(exc) or code)
    return JSONResponse(content=payload, status_code=status_code)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Avoid leaking stack traces; return a stable internal error envelope.
    logger.exception("request_unhandled_error path=%s", request.url.path)
    payload = error_response(request=request, code="INTERNAL_ERROR", message="Internal server error")
    return JSONResponse(content=payload, status_code=500)
