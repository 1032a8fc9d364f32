from __future__ import annotations

import argparse
import asyncio
import getpass
import json
import sys

from tenantvault.core.config import get_settings
from tenantvault.core.errors import TenantVaultError
from tenantvault.core.logging import configure_logging
from tenantvault.domain.backups import RESTORE_STRATEGIES
from tenantvault.services.backup.handlers import get_backup_controller


async def _run_restore(args: argparse.Namespace, password: str | None) -> int:
    controller = get_backup_controller()
    try:
        if args.system:
            result = await controller.restore_system_backup(args.backup_id, password)
            report = result.to_dict()
            success = True
        else:
            restored = await controller.restore_org_backup(
                args.org, args.backup_id, args.strategy, password
            )
            report = restored.to_dict()
            success = restored.success
    except TenantVaultError as exc:
        print(f"error={exc.__class__.__name__}: {exc}", file=sys.stderr)
        return 1
    print(json.dumps(report, indent=2))
    return 0 if success else 1


def main() -> None:
    # Restore an organization or system backup with the same guard rails as the API.
    parser = argparse.ArgumentParser(description="Restore a backup")
    parser.add_argument("backup_id")
    target = parser.add_mutually_exclusive_group(required=True)
    target.add_argument("--org", help="organization the backup belongs to")
    target.add_argument("--system", action="store_true", help="restore a full database dump")
    parser.add_argument("--strategy", default="skip", choices=list(RESTORE_STRATEGIES))
    parser.add_argument("--confirm", default=None, help="confirmation phrase for destructive restores")
    parser.add_argument("--password", action="store_true", help="prompt for the backup password")
    args = parser.parse_args()

    settings = get_settings()
    destructive = args.system or args.strategy != "skip"
    if destructive and args.confirm != settings.restore_confirmation_phrase:
        parser.error(f"pass --confirm {settings.restore_confirmation_phrase} to run a destructive restore")
    password = getpass.getpass("Backup password: ") if args.password else None
    configure_logging()
    sys.exit(asyncio.run(_run_restore(args, password)))


if __name__ == "__main__":
    main()
