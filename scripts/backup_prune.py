from __future__ import annotations

import argparse
import asyncio
from datetime import datetime, timezone

from tenantvault.core.logging import configure_logging
from tenantvault.services.backup.handlers import get_backup_controller


class _CliHelpers:
    async def update_progress(self, percent: int, message: str) -> None:
        print(f"[{percent:3d}%] {message}")

    async def log(self, message: str) -> None:
        print(message)


async def _run_prune(dry_run: bool) -> None:
    # Delete completed backups past their expiry, blobs first.
    controller = get_backup_controller()
    now = datetime.now(timezone.utc)
    if dry_run:
        expired = await controller.store.find_expired(now)
        for record in expired:
            print(f"expired id={record.id} kind={record.kind} expires_at={record.expires_at}")
        print(f"expired_backups={len(expired)}")
        return
    deleted = await controller.cleanup_expired(_CliHelpers(), now=now)
    print(f"pruned_backups={deleted}")


def main() -> None:
    parser = argparse.ArgumentParser(description="Prune expired backups")
    parser.add_argument("--dry-run", action="store_true")
    args = parser.parse_args()
    configure_logging()
    asyncio.run(_run_prune(args.dry_run))


if __name__ == "__main__":
    main()
