from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Mapping

from tenantvault.domain.backups import RESTORE_STRATEGIES
from tenantvault.services.backup.gateway import TableGateway
from tenantvault.services.backup.tables import SCOPED_TABLES, SCOPED_TABLES_REVERSED
from tenantvault.services.storage.base import ObjectStorage


logger = logging.getLogger(__name__)


@dataclass
class RestoreResult:
    success: bool = False
    tables_restored: int = 0
    rows_restored: int = 0
    rows_skipped: int = 0
    files_restored: int = 0
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "tables_restored": self.tables_restored,
            "rows_restored": self.rows_restored,
            "rows_skipped": self.rows_skipped,
            "files_restored": self.files_restored,
            "errors": list(self.errors),
        }


async def wipe_org_data(gateway: TableGateway, organization_id: str) -> None:
    # Children first so foreign keys never block the delete.
    for table in SCOPED_TABLES_REVERSED:
        try:
            deleted = await gateway.delete_scoped(table, organization_id)
        except Exception as exc:  # noqa: BLE001 - keep wiping the remaining tables
            logger.error(
                "restore_wipe_table_failed org_id=%s table=%s",
                organization_id,
                table.table_name,
                exc_info=exc,
            )
            continue
        logger.debug(
            "restore_wipe_table org_id=%s table=%s deleted=%s",
            organization_id,
            table.table_name,
            deleted,
        )


async def restore_org_data(
    gateway: TableGateway,
    organization_id: str,
    tables: Mapping[str, Any],
    strategy: str,
    *,
    files: Mapping[str, bytes] | None = None,
    storage: ObjectStorage | None = None,
) -> RestoreResult:
    # Best-effort restore: every table commits on its own and failures are collected, not raised.
    if strategy not in RESTORE_STRATEGIES:
        raise ValueError(f"unknown restore strategy: {strategy}")
    result = RestoreResult()

    if strategy == "wipe_and_replace":
        await wipe_org_data(gateway, organization_id)

    for table in SCOPED_TABLES:
        rows = tables.get(table.table_name)
        if not rows:
            continue
        name = table.table_name
        try:
            if not isinstance(rows, list):
                raise TypeError("expected a list of rows")
            writable: list[dict[str, Any]] = []
            missing_pk = 0
            for row in rows:
                if not isinstance(row, dict) or not table.pk_value(row):
                    missing_pk += 1
                    continue
                # Rows always land in the organization being restored.
                writable.append({**row, table.scope_attr: organization_id})
            outcome = await gateway.write_rows(table, writable, strategy)
        except Exception as exc:  # noqa: BLE001 - record and move to the next table
            logger.warning(
                "restore_table_failed org_id=%s table=%s", organization_id, name, exc_info=exc
            )
            result.errors.append(f"Table {name}: {exc}")
            continue
        result.tables_restored += 1
        result.rows_restored += outcome.written
        result.rows_skipped += outcome.skipped + missing_pk

    if files:
        if storage is None:
            raise ValueError("storage is required to restore files")
        for path, content in files.items():
            try:
                await storage.upload(path, content, "application/octet-stream")
            except Exception as exc:  # noqa: BLE001 - file failures never touch table counters
                logger.warning(
                    "restore_file_failed org_id=%s path=%s", organization_id, path, exc_info=exc
                )
                result.errors.append(f"Failed to restore file: {path}")
                continue
            result.files_restored += 1

    result.success = not result.errors
    logger.info(
        "restore_complete org_id=%s strategy=%s tables=%s rows=%s skipped=%s files=%s errors=%s",
        organization_id,
        strategy,
        result.tables_restored,
        result.rows_restored,
        result.rows_skipped,
        result.files_restored,
        len(result.errors),
    )
    return result
