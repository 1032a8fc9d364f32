from __future__ import annotations

import asyncio
import json
import logging
import time
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from arq import Retry, create_pool
from arq.connections import RedisSettings
from pydantic import BaseModel, Field

from tenantvault.core.config import get_settings
from tenantvault.core.errors import ServiceBusyError
from tenantvault.services.jobs.registry import (
    JobContext,
    JobError,
    JobResult,
    job_handler_registry,
)
from tenantvault.services.resilience import get_job_bulkhead
from tenantvault.services.telemetry import record_job


logger = logging.getLogger(__name__)

# arq function name every job type is dispatched through.
RUN_JOB_FUNCTION = "run_job"
_BUSY_DEFER_S = 5

_redis_pool = None
_redis_pool_loop = None
_redis_lock = asyncio.Lock()
# Inline mode has no Redis; progress is kept in-process instead.
_inline_progress: dict[str, dict[str, Any]] = {}


class JobPayload(BaseModel):
    # Match the published job schema for API-to-worker handoff.
    job_id: str
    type: str
    input: dict[str, Any] = Field(default_factory=dict)
    created_by: str | None = None


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _is_inline() -> bool:
    return get_settings().job_execution_mode.lower() == "inline"


def _queue_key(queue_name: str) -> str:
    # Use arq's queue naming convention for depth checks.
    return f"arq:queue:{queue_name}"


def _progress_key(job_id: str) -> str:
    return f"{get_settings().job_progress_redis_prefix}:{job_id}"


async def get_redis_pool():
    # Cache the Redis pool to avoid reconnecting on every enqueue.
    global _redis_pool, _redis_pool_loop
    current_loop = asyncio.get_running_loop()
    if _redis_pool is not None and _redis_pool_loop == current_loop:
        return _redis_pool
    if _redis_pool is not None and _redis_pool_loop != current_loop:
        # Drop loop-bound pools to avoid cross-loop errors in tests.
        _redis_pool = None
    async with _redis_lock:
        if _redis_pool is None:
            settings = get_settings()
            _redis_pool = await create_pool(
                RedisSettings.from_dsn(settings.redis_url),
                default_queue_name=settings.job_queue_name,
            )
            _redis_pool_loop = current_loop
    return _redis_pool


async def get_queue_depth() -> int | None:
    # Return None to signal Redis unavailability to the health endpoint.
    settings = get_settings()
    if _is_inline():
        return 0
    try:
        redis = await get_redis_pool()
        depth = await redis.zcard(_queue_key(settings.job_queue_name))
        return int(depth)
    except Exception:  # noqa: BLE001 - health endpoint handles degraded Redis
        return None


async def _write_progress(job_id: str, state: dict[str, Any]) -> None:
    if _is_inline():
        _inline_progress.setdefault(job_id, {}).update(state)
        return
    settings = get_settings()
    try:
        redis = await get_redis_pool()
        key = _progress_key(job_id)
        await redis.hset(key, mapping={k: json.dumps(v) for k, v in state.items()})
        await redis.expire(key, settings.job_progress_ttl_s)
    except Exception as exc:  # noqa: BLE001 - progress mirroring must not fail the job
        logger.warning("job_progress_write_failed job_id=%s", job_id, exc_info=exc)


async def get_job_progress(job_id: str) -> dict[str, Any] | None:
    if _is_inline():
        state = _inline_progress.get(job_id)
        return dict(state) if state is not None else None
    redis = await get_redis_pool()
    raw = await redis.hgetall(_progress_key(job_id))
    if not raw:
        return None
    decoded: dict[str, Any] = {}
    for key, value in raw.items():
        name = key.decode("utf-8") if isinstance(key, (bytes, bytearray)) else str(key)
        text = value.decode("utf-8") if isinstance(value, (bytes, bytearray)) else str(value)
        decoded[name] = json.loads(text)
    return decoded


def reset_inline_progress() -> None:
    _inline_progress.clear()


class ProgressHelpers:
    # Mirror handler progress into Redis (queue mode) or memory (inline mode).
    def __init__(self, job_id: str, job_type: str) -> None:
        self.job_id = job_id
        self.job_type = job_type

    async def update_progress(self, percent: int, message: str) -> None:
        clamped = max(0, min(100, int(percent)))
        await _write_progress(
            self.job_id,
            {
                "type": self.job_type,
                "status": "running",
                "progress": clamped,
                "message": message,
                "updated_at": _utc_now().isoformat(),
            },
        )

    async def log(self, message: str) -> None:
        logger.info("job_log job_id=%s type=%s message=%s", self.job_id, self.job_type, message)

    async def finish(self, result: JobResult) -> None:
        state: dict[str, Any] = {
            "type": self.job_type,
            "status": "completed" if result.ok else "failed",
            "updated_at": _utc_now().isoformat(),
        }
        if result.ok:
            state["progress"] = 100
            state["output"] = result.output or {}
        elif result.error is not None:
            state["error"] = {"code": result.error.code, "message": result.error.message}
        await _write_progress(self.job_id, state)


def serialize_result(result: JobResult) -> dict[str, Any]:
    if result.error is not None:
        return {
            "error": {
                "code": result.error.code,
                "message": result.error.message,
                "retryable": result.error.retryable,
            }
        }
    return {"output": result.output or {}}


async def execute_job(payload: JobPayload, *, attempt: int = 1) -> JobResult:
    # Centralize job execution so worker and inline mode share behavior.
    config = job_handler_registry.get(payload.type)
    bulkhead = get_job_bulkhead(payload.type, config.concurrency)
    lease = await bulkhead.acquire()
    if lease is None:
        raise ServiceBusyError(f"{payload.type} capacity is saturated")
    helpers = ProgressHelpers(payload.job_id, payload.type)
    context = JobContext(
        job_id=payload.job_id,
        type=payload.type,
        input=payload.input,
        helpers=helpers,
        attempt=attempt,
    )
    start = time.monotonic()
    try:
        try:
            if config.timeout_s:
                result = await asyncio.wait_for(config.handler(context), timeout=config.timeout_s)
            else:
                result = await config.handler(context)
        except asyncio.TimeoutError:
            result = JobResult(
                error=JobError(
                    code="JOB_TIMEOUT",
                    message=f"{payload.type} exceeded {config.timeout_s}s",
                    retryable=False,
                )
            )
    finally:
        lease.release()
    duration_ms = (time.monotonic() - start) * 1000.0
    record_job(
        job_type=payload.type,
        outcome="completed" if result.ok else "failed",
        duration_ms=duration_ms,
    )
    await helpers.finish(result)
    if result.error is not None:
        logger.warning(
            "job_failed job_id=%s type=%s attempt=%s code=%s message=%s",
            payload.job_id,
            payload.type,
            attempt,
            result.error.code,
            result.error.message,
        )
    else:
        logger.info("job_completed job_id=%s type=%s duration_ms=%.1f", payload.job_id, payload.type, duration_ms)
    return result


async def record_busy_deferral(job_id: str) -> int:
    # Busy deferrals are tracked beside progress so they are not billed as handler attempts.
    state = await get_job_progress(job_id) or {}
    count = int(state.get("busy_deferrals", 0)) + 1
    await _write_progress(job_id, {"status": "queued", "busy_deferrals": count})
    return count


async def get_busy_deferrals(job_id: str) -> int:
    state = await get_job_progress(job_id) or {}
    return int(state.get("busy_deferrals", 0))


async def abandon_job(payload: JobPayload, reason: str) -> JobResult:
    # Give the handler a chance to close out its own state before the job is dropped.
    config = job_handler_registry.get(payload.type)
    result = JobResult(error=JobError(code="JOB_ABANDONED", message=reason, retryable=False))
    if config.on_abandon is not None:
        try:
            await config.on_abandon(payload.input, reason)
        except Exception as exc:  # noqa: BLE001 - the job is dropped either way
            logger.error("job_abandon_hook_failed job_id=%s type=%s", payload.job_id, payload.type, exc_info=exc)
    record_job(job_type=payload.type, outcome="failed", duration_ms=0.0)
    await ProgressHelpers(payload.job_id, payload.type).finish(result)
    logger.warning("job_abandoned job_id=%s type=%s reason=%s", payload.job_id, payload.type, reason)
    return result


async def process_job(payload: JobPayload, *, attempt: int) -> JobResult:
    # Raise Retry for retryable failures while the handler still has attempts left.
    config = job_handler_registry.get(payload.type)
    result = await execute_job(payload, attempt=attempt)
    if result.error is not None and result.error.retryable and attempt < config.retry_limit:
        raise Retry(defer=attempt * _BUSY_DEFER_S)
    return result


async def _run_inline_job(payload: JobPayload) -> JobResult:
    # Inline mode mimics worker retries without requiring Redis.
    attempt = 1
    while True:
        try:
            return await process_job(payload, attempt=attempt)
        except Retry:
            attempt += 1
            continue


async def enqueue_job(
    job_type: str,
    job_input: dict[str, Any],
    *,
    created_by: str | None = None,
    job_id: str | None = None,
) -> str:
    # Return the job id immediately so callers can poll progress.
    job_handler_registry.get(job_type)
    payload = JobPayload(
        job_id=job_id or uuid4().hex,
        type=job_type,
        input=job_input,
        created_by=created_by,
    )
    await _write_progress(
        payload.job_id,
        {"type": job_type, "status": "queued", "progress": 0, "updated_at": _utc_now().isoformat()},
    )
    if _is_inline():
        await _run_inline_job(payload)
        return payload.job_id

    settings = get_settings()
    redis = await get_redis_pool()
    job = await redis.enqueue_job(
        RUN_JOB_FUNCTION,
        payload.model_dump(),
        _job_id=payload.job_id,
        _queue_name=settings.job_queue_name,
    )
    logger.info("job_enqueued job_id=%s type=%s", payload.job_id, job_type)
    # When a job id already exists, arq returns None; keep tracing with the same id.
    return job.job_id if job else payload.job_id
