from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Protocol


@dataclass(frozen=True)
class JobError:
    code: str
    message: str
    retryable: bool = False


@dataclass(frozen=True)
class JobResult:
    output: dict[str, Any] | None = None
    error: JobError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class JobHelpers(Protocol):
    # Side channel handlers use to report progress while they run.
    async def update_progress(self, percent: int, message: str) -> None:
        ...

    async def log(self, message: str) -> None:
        ...


@dataclass(frozen=True)
class JobContext:
    job_id: str
    type: str
    input: dict[str, Any]
    helpers: JobHelpers
    attempt: int = 1


JobHandler = Callable[[JobContext], Awaitable[JobResult]]
# Called with the job input and a reason when the queue gives up on a job that never ran to a result.
AbandonHook = Callable[[dict[str, Any], str], Awaitable[None]]


@dataclass(frozen=True)
class JobHandlerConfig:
    type: str
    handler: JobHandler
    concurrency: int = 1
    retry_limit: int = 1
    timeout_s: int | None = None
    on_abandon: AbandonHook | None = None
    label: str | None = None
    description: str | None = None
    example_config: dict[str, Any] = field(default_factory=dict)


class JobHandlerRegistry:
    def __init__(self) -> None:
        self._handlers: dict[str, JobHandlerConfig] = {}

    def register(self, config: JobHandlerConfig) -> None:
        # Re-registration replaces the previous config so worker reloads stay idempotent.
        self._handlers[config.type] = config

    def get(self, job_type: str) -> JobHandlerConfig:
        try:
            return self._handlers[job_type]
        except KeyError as exc:
            raise LookupError(f"no handler registered for job type {job_type}") from exc

    def has(self, job_type: str) -> bool:
        return job_type in self._handlers

    def types(self) -> list[str]:
        return sorted(self._handlers)

    def clear(self) -> None:
        self._handlers.clear()


job_handler_registry = JobHandlerRegistry()
