from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Mapping, Sequence

from sqlalchemy.engine import make_url

from tenantvault.core.config import get_settings
from tenantvault.core.errors import DumpProcessError, MalformedArchiveError
from tenantvault.services.backup.archive import build_bundle, read_bundle
from tenantvault.services.storage.base import ObjectStorage


logger = logging.getLogger(__name__)

DUMP_ENTRY = "database.dump"
STORAGE_PREFIX = "storage/"


@dataclass(frozen=True)
class ProcessResult:
    returncode: int
    stdout: bytes
    stderr: bytes

    @property
    def stderr_text(self) -> str:
        return self.stderr.decode("utf-8", errors="replace").strip()


@dataclass
class BundleRestoreResult:
    files_restored: int = 0
    errors: list[str] = field(default_factory=list)


ProcessRunner = Callable[[Sequence[str], Mapping[str, str], bytes | None], Awaitable[ProcessResult]]


async def run_process(args: Sequence[str], env: Mapping[str, str], stdin: bytes | None = None) -> ProcessResult:
    # Buffer stdout fully; dumps are held in memory end to end.
    process = await asyncio.create_subprocess_exec(
        *args,
        stdin=asyncio.subprocess.PIPE if stdin is not None else asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        env=dict(env),
    )
    try:
        stdout, stderr = await process.communicate(input=stdin)
    except asyncio.CancelledError:
        # A cancelled job must not leave pg_dump/pg_restore running unreaped.
        if process.returncode is None:
            process.kill()
            await process.wait()
        logger.warning("process_killed args0=%s pid=%s", args[0] if args else "", process.pid)
        raise
    return ProcessResult(returncode=process.returncode or 0, stdout=stdout, stderr=stderr)


@dataclass(frozen=True)
class ConnectionParams:
    host: str
    port: int
    username: str
    password: str
    database: str

    @classmethod
    def from_dsn(cls, dsn: str) -> "ConnectionParams":
        # Accept SQLAlchemy async URLs; the PostgreSQL tools only understand libpq parameters.
        parsed = make_url(dsn)
        if "+" in parsed.drivername:
            parsed = parsed.set(drivername=parsed.drivername.split("+", 1)[0])
        return cls(
            host=parsed.host or "localhost",
            port=int(parsed.port or 5432),
            username=parsed.username or "",
            password=parsed.password or "",
            database=parsed.database or "",
        )

    def cli_args(self) -> list[str]:
        return ["-h", self.host, "-p", str(self.port), "-U", self.username, "-d", self.database]


class SystemDumpOrchestrator:
    def __init__(
        self,
        dsn: str,
        *,
        storage: ObjectStorage | None = None,
        runner: ProcessRunner | None = None,
        pg_dump_path: str = "pg_dump",
        pg_restore_path: str = "pg_restore",
        excluded_prefix: str = "backups",
    ) -> None:
        self._params = ConnectionParams.from_dsn(dsn)
        self._storage = storage
        self._runner = runner or run_process
        self._pg_dump_path = pg_dump_path
        self._pg_restore_path = pg_restore_path
        self._excluded_prefix = excluded_prefix.strip("/") + "/"

    @property
    def params(self) -> ConnectionParams:
        return self._params

    def _env(self) -> dict[str, str]:
        # Pass the password through the environment so it never shows up in the process list.
        env = dict(os.environ)
        env["PGPASSWORD"] = self._params.password
        return env

    def dump_args(self) -> list[str]:
        return [self._pg_dump_path, *self._params.cli_args(), "-F", "c", "--no-owner", "--no-acl"]

    def restore_args(self) -> list[str]:
        return [
            self._pg_restore_path,
            *self._params.cli_args(),
            "--clean",
            "--if-exists",
            "--no-owner",
            "--no-acl",
        ]

    def _require_storage(self) -> ObjectStorage:
        if self._storage is None:
            raise ValueError("object storage is required for file bundles")
        return self._storage

    async def dump(self) -> bytes:
        result = await self._runner(self.dump_args(), self._env(), None)
        if result.returncode != 0:
            logger.error("system_dump_failed code=%s stderr=%s", result.returncode, result.stderr_text)
            raise DumpProcessError("pg_dump", result.returncode, result.stderr_text)
        logger.info("system_dump_complete bytes=%s", len(result.stdout))
        return result.stdout

    async def dump_with_files(self) -> bytes:
        return await self.bundle_files(await self.dump())

    async def bundle_files(self, dump: bytes) -> bytes:
        storage = self._require_storage()
        entries: dict[str, bytes] = {DUMP_ENTRY: dump}
        for stored in await storage.list_files("", recursive=True):
            if stored.is_directory:
                continue
            # Never bundle earlier backups into a new one.
            if stored.path.startswith(self._excluded_prefix):
                continue
            try:
                entries[f"{STORAGE_PREFIX}{stored.path}"] = await storage.download(stored.path)
            except Exception as exc:  # noqa: BLE001 - unreadable objects are left out of the bundle
                logger.warning("system_bundle_file_skipped path=%s", stored.path, exc_info=exc)
        logger.info("system_bundle_built files=%s", len(entries) - 1)
        return build_bundle(entries)

    async def restore(self, dump: bytes) -> None:
        result = await self._runner(self.restore_args(), self._env(), dump)
        if result.returncode != 0:
            logger.error("system_restore_failed code=%s stderr=%s", result.returncode, result.stderr_text)
            raise DumpProcessError("pg_restore", result.returncode, result.stderr_text)
        logger.info("system_restore_complete bytes=%s", len(dump))

    async def restore_bundle(self, payload: bytes) -> BundleRestoreResult:
        entries = read_bundle(payload)
        dump = entries.get(DUMP_ENTRY)
        if dump is None:
            raise MalformedArchiveError(f"System bundle does not contain {DUMP_ENTRY}")
        await self.restore(dump)
        result = BundleRestoreResult()
        files = {
            name[len(STORAGE_PREFIX):]: content
            for name, content in entries.items()
            if name.startswith(STORAGE_PREFIX) and len(name) > len(STORAGE_PREFIX)
        }
        if files:
            storage = self._require_storage()
            for path, content in files.items():
                # The database is already restored; one bad object must not stop the rest.
                try:
                    await storage.upload(path, content, "application/octet-stream")
                except Exception as exc:  # noqa: BLE001 - reported on the result
                    logger.warning("system_bundle_file_restore_failed path=%s", path, exc_info=exc)
                    result.errors.append(f"File {path}: {str(exc) or exc.__class__.__name__}")
                    continue
                result.files_restored += 1
        logger.info(
            "system_bundle_restored files=%s failed=%s", result.files_restored, len(result.errors)
        )
        return result


def build_system_dump_orchestrator(storage: ObjectStorage | None = None) -> SystemDumpOrchestrator:
    settings = get_settings()
    return SystemDumpOrchestrator(
        settings.database_url,
        storage=storage,
        pg_dump_path=settings.pg_dump_path,
        pg_restore_path=settings.pg_restore_path,
        excluded_prefix=settings.backup_storage_prefix,
    )
