from __future__ import annotations

import logging
import secrets
from datetime import datetime, timedelta, timezone

from tenantvault.core.config import Settings, get_settings
from tenantvault.core.errors import BackupLimitExceededError, PasswordRequiredError
from tenantvault.domain.backups import BackupRecord
from tenantvault.persistence.repos.backups import BackupRecordStore
from tenantvault.services.backup.tables import scoped_table_names


logger = logging.getLogger(__name__)

ENTERPRISE_MAX_BACKUPS = 999
RETENTION_TIERS: tuple[str, ...] = ("free", "pro", "enterprise")


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def generate_backup_id() -> str:
    return f"backup_{secrets.token_hex(12)}"


def _normalize_tier(tier: str | None, settings: Settings) -> str:
    resolved = (tier or settings.backup_default_tier or "free").lower()
    if resolved not in RETENTION_TIERS:
        raise ValueError(f"unknown retention tier: {resolved}")
    return resolved


def retention_days(tier: str | None = None, *, settings: Settings | None = None) -> int:
    settings = settings or get_settings()
    if _normalize_tier(tier, settings) == "enterprise":
        return settings.backup_enterprise_retention_days
    return settings.backup_retention_days


def max_backups(tier: str | None = None, *, settings: Settings | None = None) -> int:
    settings = settings or get_settings()
    if _normalize_tier(tier, settings) == "enterprise":
        return ENTERPRISE_MAX_BACKUPS
    return settings.backup_max_count


def require_password(encrypt: bool, password: str | None) -> None:
    # Reject at request time instead of failing the job later.
    if encrypt and not password:
        raise PasswordRequiredError("Password is required for encrypted backups")


async def create_org_backup_record(
    store: BackupRecordStore,
    *,
    organization_id: str,
    created_by: str,
    tier: str | None = None,
    settings: Settings | None = None,
    now: datetime | None = None,
) -> BackupRecord:
    settings = settings or get_settings()
    limit = max_backups(tier, settings=settings)
    existing = await store.count_for_organization(organization_id)
    if existing >= limit:
        raise BackupLimitExceededError(
            f"Organization already has {existing} backups (limit {limit})"
        )
    created_at = now or _utc_now()
    record = BackupRecord(
        id=generate_backup_id(),
        kind="organization",
        organization_id=organization_id,
        format="structured-json",
        status="pending",
        created_by=created_by,
        created_at=created_at,
        expires_at=created_at + timedelta(days=retention_days(tier, settings=settings)),
        included_tables=scoped_table_names(),
        metadata={"progress": 0},
    )
    created = await store.create(record)
    logger.info("backup_record_created id=%s org_id=%s", created.id, organization_id)
    return created


async def create_system_backup_record(
    store: BackupRecordStore,
    *,
    created_by: str,
    settings: Settings | None = None,
    now: datetime | None = None,
) -> BackupRecord:
    settings = settings or get_settings()
    created_at = now or _utc_now()
    record = BackupRecord(
        id=generate_backup_id(),
        kind="system",
        organization_id=None,
        format="database-dump",
        status="pending",
        created_by=created_by,
        created_at=created_at,
        expires_at=created_at + timedelta(days=settings.backup_system_retention_days),
        included_tables=[],
        metadata={"progress": 0},
    )
    created = await store.create(record)
    logger.info("system_backup_record_created id=%s", created.id)
    return created
