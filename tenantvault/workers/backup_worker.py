from __future__ import annotations

import logging

from arq import Retry, cron
from arq.connections import RedisSettings

from tenantvault.core.config import get_settings
from tenantvault.core.errors import ServiceBusyError
from tenantvault.core.logging import configure_logging
from tenantvault.services.backup.handlers import register_backup_handlers, start_cleanup
from tenantvault.services.jobs.queue import (
    JobPayload,
    abandon_job,
    get_busy_deferrals,
    process_job,
    record_busy_deferral,
    serialize_result,
)


logger = logging.getLogger(__name__)

_BUSY_DEFER_S = 10


def _max_tries() -> int:
    # Handler retries plus room for busy deferrals, which arq also counts as tries.
    settings = get_settings()
    return (
        max(
            settings.backup_org_retry_limit,
            settings.backup_system_retry_limit,
            settings.backup_cleanup_retry_limit,
        )
        + settings.job_busy_max_deferrals
    )


async def run_job(ctx, payload: dict) -> dict:
    # Parse and validate payloads in the worker to enforce schema contracts.
    job_payload = JobPayload.model_validate(payload)
    job_try = ctx.get("job_try", 1)
    attempt = max(1, job_try - await get_busy_deferrals(job_payload.job_id))
    try:
        result = await process_job(job_payload, attempt=attempt)
    except ServiceBusyError as exc:
        deferrals = await record_busy_deferral(job_payload.job_id)
        if job_try >= ctx.get("max_tries", _max_tries()):
            result = await abandon_job(
                job_payload, f"{job_payload.type} capacity stayed saturated after {deferrals} deferrals"
            )
            return serialize_result(result)
        # Saturated job types are deferred instead of failed.
        logger.info("job_deferred job_id=%s type=%s deferrals=%s", job_payload.job_id, job_payload.type, deferrals)
        raise Retry(defer=_BUSY_DEFER_S) from exc
    return serialize_result(result)


async def scheduled_cleanup(ctx) -> str:
    # Route the nightly sweep through the queue so it shares the cleanup bulkhead.
    return await start_cleanup()


async def _startup(ctx) -> None:
    configure_logging()
    register_backup_handlers()
    logger.info("backup_worker_started")


async def _shutdown(ctx) -> None:
    logger.info("backup_worker_stopped")


class WorkerSettings:
    # Keep worker configuration as class attributes for arq CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.job_queue_name
    max_tries = _max_tries()
    job_timeout = settings.backup_job_timeout_s
    functions = [run_job]
    cron_jobs = [
        cron(
            scheduled_cleanup,
            hour={settings.backup_cleanup_hour},
            minute={settings.backup_cleanup_minute},
            run_at_startup=False,
        )
    ]
    on_startup = _startup
    on_shutdown = _shutdown
