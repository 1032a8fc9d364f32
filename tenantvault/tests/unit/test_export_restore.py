from __future__ import annotations

from pathlib import Path

import pytest

from tenantvault.services.backup.exporter import collect_file_paths, export_org_data
from tenantvault.services.backup.restorer import restore_org_data, wipe_org_data
from tenantvault.services.backup.tables import scoped_table_names
from tenantvault.services.storage.local import LocalObjectStorage
from tenantvault.tests.utils.fakes import InMemoryTableGateway


def _seed() -> dict[str, list[dict]]:
    return {
        "announcements": [
            {"id": "a1", "org_id": "org-1", "title": "Welcome", "body": "Hello"},
            {"id": "a2", "org_id": "org-2", "title": "Other", "body": "tenant"},
        ],
        "files": [
            {"id": "f1", "org_id": "org-1", "name": "logo.png", "storage_path": "org-1/logo.png"},
            {"id": "f2", "org_id": "org-1", "name": "copy.png", "storage_path": "org-1/logo.png"},
        ],
        "scheduled_jobs": [
            {"id": "s1", "organization_id": "org-1", "type": "report", "cron": "0 * * * *"},
        ],
        "user_role_assignments": [
            {"id": "r1", "tenant_id": "org-1", "user_id": "u1", "role": "admin"},
        ],
    }


@pytest.mark.asyncio
async def test_export_scopes_rows_to_the_organization() -> None:
    export = await export_org_data(InMemoryTableGateway(_seed()), "org-1")
    assert list(export.tables) == scoped_table_names()
    assert [row["id"] for row in export.tables["announcements"]] == ["a1"]
    assert export.row_counts["scheduled_jobs"] == 1
    assert export.row_counts["user_role_assignments"] == 1
    assert export.row_counts["webhooks"] == 0
    assert export.total_rows == 5
    assert export.warnings == []
    assert collect_file_paths(export) == ["org-1/logo.png"]


@pytest.mark.asyncio
async def test_export_degrades_a_broken_table_to_empty() -> None:
    gateway = InMemoryTableGateway(_seed(), failing_tables={"notifications"})
    export = await export_org_data(gateway, "org-1")
    assert export.tables["notifications"] == []
    assert export.row_counts["notifications"] == 0
    assert export.warnings == ["Table notifications: relation notifications is unavailable"]
    assert export.row_counts["announcements"] == 1


@pytest.mark.asyncio
async def test_skip_restore_is_idempotent() -> None:
    gateway = InMemoryTableGateway()
    tables = {"announcements": [{"id": "a1", "org_id": "org-1", "title": "t", "body": "b"}]}

    first = await restore_org_data(gateway, "org-1", tables, "skip")
    assert first.success
    assert (first.tables_restored, first.rows_restored, first.rows_skipped) == (1, 1, 0)

    second = await restore_org_data(gateway, "org-1", tables, "skip")
    assert second.success
    assert (second.rows_restored, second.rows_skipped) == (0, 1)


@pytest.mark.asyncio
async def test_overwrite_replaces_existing_rows() -> None:
    gateway = InMemoryTableGateway(
        {"announcements": [{"id": "a1", "org_id": "org-1", "title": "old", "body": "b"}]}
    )
    tables = {"announcements": [{"id": "a1", "org_id": "org-1", "title": "new", "body": "b"}]}
    result = await restore_org_data(gateway, "org-1", tables, "overwrite")
    assert result.rows_restored == 1
    assert gateway.rows("announcements")[0]["title"] == "new"


@pytest.mark.asyncio
async def test_wipe_and_replace_removes_rows_missing_from_the_backup() -> None:
    gateway = InMemoryTableGateway(_seed())
    tables = {"announcements": [{"id": "a9", "org_id": "org-1", "title": "t", "body": "b"}]}
    result = await restore_org_data(gateway, "org-1", tables, "wipe_and_replace")
    assert result.success
    ids = {row["id"] for row in gateway.rows("announcements")}
    # The other tenant's row survives the wipe.
    assert ids == {"a2", "a9"}
    assert gateway.rows("files") == []
    assert gateway.deleted_order[0] == "user_role_assignments"
    assert gateway.deleted_order[-1] == "announcements"


@pytest.mark.asyncio
async def test_wipe_continues_past_failing_tables() -> None:
    gateway = InMemoryTableGateway(_seed(), failing_tables={"folders"})
    await wipe_org_data(gateway, "org-1")
    assert gateway.rows("files") == []
    assert "announcements" in gateway.deleted_order


@pytest.mark.asyncio
async def test_rows_are_rescoped_to_the_target_organization() -> None:
    gateway = InMemoryTableGateway()
    tables = {
        "announcements": [{"id": "a1", "org_id": "org-old", "title": "t", "body": "b"}],
        "scheduled_jobs": [{"id": "s1", "organization_id": "org-old", "type": "x", "cron": "* * * * *"}],
    }
    await restore_org_data(gateway, "org-new", tables, "skip")
    assert gateway.rows("announcements")[0]["org_id"] == "org-new"
    assert gateway.rows("scheduled_jobs")[0]["organization_id"] == "org-new"


@pytest.mark.asyncio
async def test_rows_without_primary_key_are_skipped() -> None:
    gateway = InMemoryTableGateway()
    tables = {"folders": [{"org_id": "org-1", "name": "no id"}, {"id": "f1", "org_id": "org-1", "name": "ok"}]}
    result = await restore_org_data(gateway, "org-1", tables, "skip")
    assert result.rows_restored == 1
    assert result.rows_skipped == 1


@pytest.mark.asyncio
async def test_table_failure_is_reported_and_other_tables_continue() -> None:
    gateway = InMemoryTableGateway(failing_tables={"announcements"})
    tables = {
        "announcements": [{"id": "a1", "org_id": "org-1", "title": "t", "body": "b"}],
        "folders": [{"id": "f1", "org_id": "org-1", "name": "n"}],
    }
    result = await restore_org_data(gateway, "org-1", tables, "skip")
    assert not result.success
    assert result.errors == ["Table announcements: relation announcements is unavailable"]
    assert result.tables_restored == 1
    assert result.rows_restored == 1


@pytest.mark.asyncio
async def test_unknown_tables_in_the_backup_are_ignored() -> None:
    result = await restore_org_data(
        InMemoryTableGateway(), "org-1", {"users": [{"id": "u1"}]}, "skip"
    )
    assert result.success
    assert result.tables_restored == 0


@pytest.mark.asyncio
async def test_unknown_strategy_is_rejected() -> None:
    with pytest.raises(ValueError):
        await restore_org_data(InMemoryTableGateway(), "org-1", {}, "merge")


class _BrokenStorage(LocalObjectStorage):
    async def upload(self, path: str, data: bytes, content_type: str | None = None) -> None:
        if path.endswith("bad.bin"):
            raise OSError("disk full")
        await super().upload(path, data, content_type)


@pytest.mark.asyncio
async def test_file_failures_do_not_touch_table_counters(tmp_path: Path) -> None:
    storage = _BrokenStorage(tmp_path)
    result = await restore_org_data(
        InMemoryTableGateway(),
        "org-1",
        {"folders": [{"id": "f1", "org_id": "org-1", "name": "n"}]},
        "skip",
        files={"org-1/good.bin": b"ok", "org-1/bad.bin": b"nope"},
        storage=storage,
    )
    assert result.files_restored == 1
    assert result.rows_restored == 1
    assert result.errors == ["Failed to restore file: org-1/bad.bin"]
    assert not result.success
    assert (tmp_path / "org-1" / "good.bin").read_bytes() == b"ok"
