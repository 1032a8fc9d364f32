from __future__ import annotations

from typing import Any

from tenantvault.apps.api.response import ErrorEnvelope


def _error_response(description: str, code: str, message: str) -> dict[str, Any]:
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {
            "application/json": {
                "example": {
                    "error": {"code": code, "message": message},
                    "meta": {"request_id": "req_example", "api_version": "v1"},
                }
            }
        },
    }


DEFAULT_ERROR_RESPONSES: dict[int, dict[str, Any]] = {
    400: _error_response("Bad request", "BACKUP_NOT_READY", "Backup is not completed or file is missing"),
    401: _error_response("Unauthorized", "DECRYPTION_FAILED", "Incorrect password"),
    403: _error_response("Forbidden", "AUTH_FORBIDDEN", "Insufficient role for this operation"),
    404: _error_response("Not found", "NOT_FOUND", "Backup not found"),
    503: _error_response("Service unavailable", "SERVICE_UNAVAILABLE", "Backup capacity is saturated"),
}
