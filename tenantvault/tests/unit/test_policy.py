from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from tenantvault.core.config import Settings
from tenantvault.core.errors import BackupLimitExceededError, PasswordRequiredError
from tenantvault.services.backup.policy import (
    create_org_backup_record,
    create_system_backup_record,
    generate_backup_id,
    max_backups,
    require_password,
    retention_days,
)
from tenantvault.services.backup.tables import scoped_table_names
from tenantvault.tests.utils.fakes import InMemoryBackupRecordStore


NOW = datetime(2026, 6, 1, tzinfo=timezone.utc)


def _settings(**overrides) -> Settings:
    return Settings(**overrides)


def test_backup_ids_are_prefixed_and_unique() -> None:
    ids = {generate_backup_id() for _ in range(50)}
    assert len(ids) == 50
    assert all(value.startswith("backup_") for value in ids)


def test_retention_by_tier() -> None:
    settings = _settings(backup_retention_days=7, backup_enterprise_retention_days=90)
    assert retention_days("free", settings=settings) == 7
    assert retention_days("pro", settings=settings) == 7
    assert retention_days("enterprise", settings=settings) == 90
    assert retention_days(None, settings=settings) == 7
    with pytest.raises(ValueError):
        retention_days("platinum", settings=settings)


def test_enterprise_has_effectively_no_backup_cap() -> None:
    settings = _settings(backup_max_count=5)
    assert max_backups("free", settings=settings) == 5
    assert max_backups("enterprise", settings=settings) == 999


def test_encryption_requires_password() -> None:
    with pytest.raises(PasswordRequiredError):
        require_password(True, None)
    with pytest.raises(PasswordRequiredError):
        require_password(True, "")
    require_password(True, "pw")
    require_password(False, None)


@pytest.mark.asyncio
async def test_org_record_starts_pending_with_retention() -> None:
    store = InMemoryBackupRecordStore()
    record = await create_org_backup_record(
        store,
        organization_id="org-1",
        created_by="u1",
        tier="enterprise",
        settings=_settings(backup_enterprise_retention_days=90),
        now=NOW,
    )
    assert record.status == "pending"
    assert record.kind == "organization"
    assert record.format == "structured-json"
    assert record.expires_at == NOW + timedelta(days=90)
    assert record.included_tables == scoped_table_names()
    assert record.metadata == {"progress": 0}
    assert store.records[record.id].organization_id == "org-1"


@pytest.mark.asyncio
async def test_org_record_respects_backup_limit() -> None:
    store = InMemoryBackupRecordStore()
    settings = _settings(backup_max_count=2)
    for _ in range(2):
        await create_org_backup_record(store, organization_id="org-1", created_by="u1", settings=settings)
    with pytest.raises(BackupLimitExceededError):
        await create_org_backup_record(store, organization_id="org-1", created_by="u1", settings=settings)
    # The cap is per organization.
    await create_org_backup_record(store, organization_id="org-2", created_by="u1", settings=settings)


@pytest.mark.asyncio
async def test_system_record_uses_dump_format() -> None:
    store = InMemoryBackupRecordStore()
    record = await create_system_backup_record(
        store, created_by="root", settings=_settings(backup_system_retention_days=30), now=NOW
    )
    assert record.kind == "system"
    assert record.organization_id is None
    assert record.format == "database-dump"
    assert record.expires_at == NOW + timedelta(days=30)
