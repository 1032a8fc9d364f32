from __future__ import annotations

from fastapi import APIRouter, Request
from pydantic import BaseModel

from tenantvault.apps.api.response import SuccessEnvelope, success_response
from tenantvault.services.jobs.queue import get_queue_depth
from tenantvault.services.jobs.registry import job_handler_registry
from tenantvault.services.telemetry import counters_snapshot, job_duration_by_type, p95_request_latency

router = APIRouter(tags=["health"])

_WINDOW_S = 3600


class HealthResponse(BaseModel):
    status: str
    queue_depth: int | None
    job_types: list[str]
    counters: dict[str, int]
    jobs: dict[str, dict[str, float | int | None]]
    p95_request_latency_ms: float | None


@router.get("/health", response_model=SuccessEnvelope[HealthResponse])
async def health(request: Request) -> dict:
    depth = await get_queue_depth()
    payload = HealthResponse(
        status="ok" if depth is not None else "degraded",
        queue_depth=depth,
        job_types=job_handler_registry.types(),
        counters=counters_snapshot(),
        jobs=job_duration_by_type(_WINDOW_S),
        p95_request_latency_ms=p95_request_latency(_WINDOW_S),
    )
    return success_response(request=request, data=payload)
