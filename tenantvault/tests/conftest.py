from __future__ import annotations

from pathlib import Path

import pytest

from tenantvault.core.config import get_settings
from tenantvault.services.backup.handlers import get_backup_controller
from tenantvault.services.jobs.queue import reset_inline_progress
from tenantvault.services.jobs.registry import job_handler_registry
from tenantvault.services.resilience import reset_bulkheads
from tenantvault.services.telemetry import reset_telemetry


@pytest.fixture(autouse=True)
def isolated_settings(monkeypatch, tmp_path: Path):
    # Run jobs inline against a throwaway storage root so tests never need Redis.
    monkeypatch.setenv("JOB_EXECUTION_MODE", "inline")
    monkeypatch.setenv("STORAGE_LOCAL_DIR", str(tmp_path / "storage"))
    monkeypatch.setenv("NOTIFY_BROADCASTER", "log")
    get_settings.cache_clear()
    get_backup_controller.cache_clear()
    yield
    get_settings.cache_clear()
    get_backup_controller.cache_clear()


@pytest.fixture(autouse=True)
def reset_process_state():
    # Bulkheads, counters and inline progress are module globals; clear them per test.
    reset_bulkheads()
    reset_telemetry()
    reset_inline_progress()
    yield
    job_handler_registry.clear()
    reset_bulkheads()
    reset_inline_progress()
