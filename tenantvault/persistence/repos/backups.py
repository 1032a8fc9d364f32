from __future__ import annotations

from datetime import datetime, timezone
from typing import Protocol

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tenantvault.core.errors import BackupNotFoundError
from tenantvault.domain.backups import BackupRecord, BackupStatusUpdate, resolve_status_update
from tenantvault.domain.models import Backup


class BackupRecordStore(Protocol):
    # Persistence contract consumed by the lifecycle controller and routes.
    async def create(self, record: BackupRecord) -> BackupRecord:
        ...

    async def get(self, backup_id: str) -> BackupRecord | None:
        ...

    async def list_for_organization(
        self, organization_id: str, *, limit: int, offset: int
    ) -> list[BackupRecord]:
        ...

    async def count_for_organization(self, organization_id: str) -> int:
        ...

    async def list_system(self, *, limit: int, offset: int) -> list[BackupRecord]:
        ...

    async def count_system(self) -> int:
        ...

    async def update_status(self, backup_id: str, update: BackupStatusUpdate) -> BackupRecord:
        ...

    async def find_expired(self, now: datetime | None = None) -> list[BackupRecord]:
        ...

    async def delete(self, backup_id: str) -> bool:
        ...


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_record(row: Backup) -> BackupRecord:
    return BackupRecord(
        id=row.id,
        kind=row.kind,  # type: ignore[arg-type]
        organization_id=row.organization_id,
        format=row.format,  # type: ignore[arg-type]
        status=row.status,  # type: ignore[arg-type]
        created_by=row.created_by,
        created_at=row.created_at,
        expires_at=row.expires_at,
        completed_at=row.completed_at,
        storage_path=row.storage_path,
        byte_size=row.byte_size,
        checksum=row.checksum,
        included_tables=list(row.included_tables or []),
        metadata=dict(row.metadata_json or {}),
    )


class SqlBackupRecordStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def create(self, record: BackupRecord) -> BackupRecord:
        # Insert the pending row before any work is enqueued.
        async with self._session_factory() as session:
            row = Backup(
                id=record.id,
                kind=record.kind,
                organization_id=record.organization_id,
                format=record.format,
                status=record.status,
                created_by=record.created_by,
                created_at=record.created_at,
                expires_at=record.expires_at,
                included_tables=list(record.included_tables),
                metadata_json=dict(record.metadata),
            )
            session.add(row)
            await session.commit()
            await session.refresh(row)
            return to_record(row)

    async def get(self, backup_id: str) -> BackupRecord | None:
        async with self._session_factory() as session:
            row = await session.get(Backup, backup_id)
            return to_record(row) if row is not None else None

    async def list_for_organization(
        self, organization_id: str, *, limit: int, offset: int
    ) -> list[BackupRecord]:
        # Tenant scoping prevents cross-tenant leakage.
        async with self._session_factory() as session:
            result = await session.execute(
                select(Backup)
                .where(Backup.kind == "organization", Backup.organization_id == organization_id)
                .order_by(Backup.created_at.desc(), Backup.id)
                .limit(limit)
                .offset(offset)
            )
            return [to_record(row) for row in result.scalars().all()]

    async def count_for_organization(self, organization_id: str) -> int:
        async with self._session_factory() as session:
            result = await session.execute(
                select(func.count())
                .select_from(Backup)
                .where(Backup.kind == "organization", Backup.organization_id == organization_id)
            )
            return int(result.scalar() or 0)

    async def list_system(self, *, limit: int, offset: int) -> list[BackupRecord]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(Backup)
                .where(Backup.kind == "system")
                .order_by(Backup.created_at.desc(), Backup.id)
                .limit(limit)
                .offset(offset)
            )
            return [to_record(row) for row in result.scalars().all()]

    async def count_system(self) -> int:
        async with self._session_factory() as session:
            result = await session.execute(
                select(func.count()).select_from(Backup).where(Backup.kind == "system")
            )
            return int(result.scalar() or 0)

    async def update_status(self, backup_id: str, update: BackupStatusUpdate) -> BackupRecord:
        # Lock the row so concurrent progress writes cannot interleave a terminal transition.
        async with self._session_factory() as session:
            result = await session.execute(
                select(Backup).where(Backup.id == backup_id).with_for_update()
            )
            row = result.scalar_one_or_none()
            if row is None:
                raise BackupNotFoundError(f"backup {backup_id} not found")
            fields = resolve_status_update(
                current_status=row.status,
                current_metadata=row.metadata_json,
                update=update,
            )
            row.status = fields["status"]
            row.metadata_json = fields["metadata"]
            if "completed_at" in fields:
                row.completed_at = fields["completed_at"]
                row.storage_path = fields["storage_path"]
                row.byte_size = fields["byte_size"]
                row.checksum = fields["checksum"]
            await session.commit()
            await session.refresh(row)
            return to_record(row)

    async def find_expired(self, now: datetime | None = None) -> list[BackupRecord]:
        # Only completed backups are garbage collected; failed rows stay for inspection.
        cutoff = now or _utc_now()
        async with self._session_factory() as session:
            result = await session.execute(
                select(Backup)
                .where(
                    Backup.status == "completed",
                    Backup.expires_at.is_not(None),
                    Backup.expires_at < cutoff,
                )
                .order_by(Backup.expires_at)
            )
            return [to_record(row) for row in result.scalars().all()]

    async def delete(self, backup_id: str) -> bool:
        async with self._session_factory() as session:
            result = await session.execute(delete(Backup).where(Backup.id == backup_id))
            await session.commit()
            return bool(result.rowcount)
