from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Iterable, Protocol

from sqlalchemy import Boolean, Date, DateTime, Integer, BigInteger, Numeric, delete, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.sql.dml import Insert

from tenantvault.services.backup.tables import ScopedTable


logger = logging.getLogger(__name__)


@dataclass
class WriteOutcome:
    written: int = 0
    skipped: int = 0
    failures: list[str] = field(default_factory=list)


class TableGateway(Protocol):
    # Narrow database seam used by exports and restores.
    async def select_scoped(self, table: ScopedTable, organization_id: str) -> list[dict[str, Any]]:
        ...

    async def delete_scoped(self, table: ScopedTable, organization_id: str) -> int:
        ...

    async def write_rows(
        self, table: ScopedTable, rows: Iterable[dict[str, Any]], strategy: str
    ) -> WriteOutcome:
        ...


def serialize_value(value: Any) -> Any:
    # Exported rows must survive json.dumps without a custom encoder.
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, (uuid.UUID, Decimal)):
        return str(value)
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value).hex()
    return value


def serialize_row(table: ScopedTable, row: Any) -> dict[str, Any]:
    mapping = row._mapping if hasattr(row, "_mapping") else row
    return {name: serialize_value(mapping[name]) for name in table.column_names if name in mapping}


def _coerce_value(column_type: Any, value: Any) -> Any:
    if value is None:
        return None
    if isinstance(column_type, DateTime) and isinstance(value, str):
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    if isinstance(column_type, Date) and isinstance(value, str):
        return date.fromisoformat(value)
    if isinstance(column_type, (Integer, BigInteger)) and isinstance(value, str):
        return int(value)
    if isinstance(column_type, Numeric) and isinstance(value, str):
        return Decimal(value)
    if isinstance(column_type, Boolean) and isinstance(value, str):
        return value.strip().lower() in {"1", "true", "t", "yes"}
    return value


def coerce_row(table: ScopedTable, row: dict[str, Any]) -> dict[str, Any]:
    # Drop keys the current schema no longer has and turn JSON scalars back into column types.
    columns = table.model.__table__.c
    return {
        name: _coerce_value(columns[name].type, value)
        for name, value in row.items()
        if name in columns
    }


def build_insert(table: ScopedTable, row: dict[str, Any], strategy: str, dialect_name: str) -> Insert:
    # Conflicts are resolved on the primary key only.
    insert_fn = sqlite.insert if dialect_name == "sqlite" else postgresql.insert
    stmt = insert_fn(table.model.__table__).values(**row)
    pk = table.pk_column.name
    if strategy == "overwrite":
        updates = {name: stmt.excluded[name] for name in row if name != pk}
        if updates:
            return stmt.on_conflict_do_update(index_elements=[pk], set_=updates)
    return stmt.on_conflict_do_nothing(index_elements=[pk])


class SqlTableGateway:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def select_scoped(self, table: ScopedTable, organization_id: str) -> list[dict[str, Any]]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(table.model.__table__).where(table.scope_column == organization_id)
            )
            return [serialize_row(table, row) for row in result.all()]

    async def delete_scoped(self, table: ScopedTable, organization_id: str) -> int:
        async with self._session_factory() as session:
            result = await session.execute(
                delete(table.model.__table__).where(table.scope_column == organization_id)
            )
            await session.commit()
            return int(result.rowcount or 0)

    async def write_rows(
        self, table: ScopedTable, rows: Iterable[dict[str, Any]], strategy: str
    ) -> WriteOutcome:
        # One transaction per table; each row gets a savepoint so a bad row does not poison the rest.
        outcome = WriteOutcome()
        async with self._session_factory() as session:
            dialect_name = session.bind.dialect.name if session.bind is not None else "postgresql"
            for row in rows:
                try:
                    values = coerce_row(table, row)
                    async with session.begin_nested():
                        result = await session.execute(
                            build_insert(table, values, strategy, dialect_name)
                        )
                except Exception as exc:  # noqa: BLE001 - a failed row is counted, not fatal
                    outcome.skipped += 1
                    outcome.failures.append(f"{table.pk_value(row)}: {exc}")
                    logger.warning(
                        "restore_row_failed table=%s id=%s",
                        table.table_name,
                        table.pk_value(row),
                        exc_info=exc,
                    )
                    continue
                if result.rowcount == 0:
                    outcome.skipped += 1
                else:
                    outcome.written += 1
            await session.commit()
        return outcome
