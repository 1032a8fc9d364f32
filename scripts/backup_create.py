from __future__ import annotations

import argparse
import asyncio
import getpass

from tenantvault.core.config import get_settings
from tenantvault.core.logging import configure_logging
from tenantvault.services.backup.handlers import get_backup_controller
from tenantvault.services.backup.policy import (
    create_org_backup_record,
    create_system_backup_record,
    require_password,
)


class _CliHelpers:
    # Print progress instead of mirroring it to the job store.
    async def update_progress(self, percent: int, message: str) -> None:
        print(f"[{percent:3d}%] {message}")

    async def log(self, message: str) -> None:
        print(message)


async def _run_backup(args: argparse.Namespace, password: str | None) -> int:
    # Run the backup in-process so operators do not need a worker.
    controller = get_backup_controller()
    require_password(args.encrypt, password)
    job_input = {
        "created_by": args.created_by,
        "include_files": args.include_files,
        "encrypt": args.encrypt,
        "password": password,
    }
    if args.system:
        record = await create_system_backup_record(controller.store, created_by=args.created_by)
        result = await controller.run_system_backup({**job_input, "backup_id": record.id}, _CliHelpers())
    else:
        record = await create_org_backup_record(
            controller.store,
            organization_id=args.org,
            created_by=args.created_by,
            tier=args.tier,
        )
        job_input.update(backup_id=record.id, organization_id=args.org)
        # The CLI runs a single attempt; a failure is final.
        result = await controller.run_org_backup(
            job_input, _CliHelpers(), attempt=get_settings().backup_org_retry_limit
        )
    print(f"backup_id={record.id}")
    if result.error is not None:
        print(f"error={result.error.code}: {result.error.message}")
        return 1
    for key, value in (result.output or {}).items():
        print(f"{key}={value}")
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(description="Create an organization or system backup")
    target = parser.add_mutually_exclusive_group(required=True)
    target.add_argument("--org", help="organization id to back up")
    target.add_argument("--system", action="store_true", help="full database dump")
    parser.add_argument("--created-by", default="cli")
    parser.add_argument("--tier", default=None, choices=["free", "pro", "enterprise"])
    files = parser.add_mutually_exclusive_group()
    files.add_argument("--include-files", dest="include_files", action="store_true", default=None)
    files.add_argument("--no-files", dest="include_files", action="store_false")
    parser.add_argument("--encrypt", action="store_true")
    args = parser.parse_args()
    if args.include_files is None:
        # Organization backups carry files by default; system dumps do not.
        args.include_files = not args.system
    password = getpass.getpass("Backup password: ") if args.encrypt else None
    configure_logging()
    raise SystemExit(asyncio.run(_run_backup(args, password)))


if __name__ == "__main__":
    main()
