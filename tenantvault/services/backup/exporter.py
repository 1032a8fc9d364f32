from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from tenantvault.services.backup.gateway import TableGateway
from tenantvault.services.backup.tables import SCOPED_TABLES


logger = logging.getLogger(__name__)


@dataclass
class OrgExport:
    tables: dict[str, list[dict[str, Any]]] = field(default_factory=dict)
    row_counts: dict[str, int] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)

    @property
    def total_rows(self) -> int:
        return sum(self.row_counts.values())


async def export_org_data(gateway: TableGateway, organization_id: str) -> OrgExport:
    # A table that cannot be read exports as empty so one broken table never sinks the backup.
    export = OrgExport()
    for table in SCOPED_TABLES:
        name = table.table_name
        try:
            rows = await gateway.select_scoped(table, organization_id)
        except Exception as exc:  # noqa: BLE001 - degrade per table
            logger.warning(
                "backup_export_table_failed org_id=%s table=%s",
                organization_id,
                name,
                exc_info=exc,
            )
            export.tables[name] = []
            export.row_counts[name] = 0
            export.warnings.append(f"Table {name}: {exc}")
            continue
        export.tables[name] = rows
        export.row_counts[name] = len(rows)
    logger.info(
        "backup_export_complete org_id=%s rows=%s warnings=%s",
        organization_id,
        export.total_rows,
        len(export.warnings),
    )
    return export


def collect_file_paths(export: OrgExport) -> list[str]:
    # Blob keys referenced by exported file rows, in export order without duplicates.
    seen: dict[str, None] = {}
    for row in export.tables.get("files", []):
        path = row.get("storage_path")
        if isinstance(path, str) and path:
            seen.setdefault(path, None)
    return list(seen)
