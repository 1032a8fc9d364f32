from __future__ import annotations

import asyncio
from dataclasses import dataclass


@dataclass
class BulkheadLease:
    # Track bulkhead ownership to avoid double-releasing.
    semaphore: asyncio.Semaphore
    released: bool = False

    def release(self) -> None:
        if self.released:
            return
        self.semaphore.release()
        self.released = True


class Bulkhead:
    def __init__(self, name: str, limit: int) -> None:
        # Use asyncio semaphores to cap concurrent jobs of one type.
        self._name = name
        self._limit = max(1, limit)
        self._sem = asyncio.Semaphore(self._limit)

    @property
    def name(self) -> str:
        return self._name

    @property
    def limit(self) -> int:
        return self._limit

    async def acquire(self) -> BulkheadLease | None:
        # Attempt to acquire immediately; return None if saturated.
        if self._sem.locked():
            return None
        await self._sem.acquire()
        return BulkheadLease(self._sem)


_bulkheads: dict[str, Bulkhead] = {}


def get_job_bulkhead(job_type: str, limit: int | None = None) -> Bulkhead:
    # One bulkhead per job type, sized from the registered handler concurrency.
    bulkhead = _bulkheads.get(job_type)
    if bulkhead is None:
        bulkhead = Bulkhead(job_type, limit or 1)
        _bulkheads[job_type] = bulkhead
    return bulkhead


def reset_bulkheads() -> None:
    # Allow tests to reset bulkhead limits after tweaking settings.
    _bulkheads.clear()
