"""Borg repository, archive creation and pruning for borgrunner."""

import json
import os
import tarfile
from typing import Any, BinaryIO, Dict, Iterable, List, Optional, Tuple

from borgrunner.constants import (
    BASELINE_EXCLUDES,
    BORG_ENCRYPTION_MODE,
    BORG_WARNING_RETURNCODES,
    DUMP_PACKAGE_PREFIX,
    FILE_MODE,
    FORBIDDEN_REPO_PARENTS,
)
from borgrunner.errors import ArchiveToolError, BackupError, ConfigurationError
from borgrunner.errors_catalog import actionable_error
from borgrunner.models import ArchiveHandle


def decode_output(output) -> str:
    """Borg prints file names as raw bytes; keep undecodable ones round-trippable."""
    if not output:
        return ""
    return os.fsdecode(output)


def printable(value) -> str:
    """Render borg output or a decoded path for logs, escaping undecodable bytes."""
    if not value:
        return ""
    if isinstance(value, str):
        value = os.fsencode(value)
    return value.decode("utf-8", "backslashreplace")


def classify_returncode(returncode: int) -> str:
    """Map a borg exit status to ``success``, ``warning`` or ``fatal``."""
    if returncode == 0:
        return "success"
    if returncode in BORG_WARNING_RETURNCODES:
        return "warning"
    return "fatal"


class BorgService:
    """Drives the borg CLI; every call receives the passphrase via the broker."""

    def __init__(
        self,
        logger,
        console,
        command_runner,
        passphrase_broker,
        filesystem_service,
        repo_path: str,
        nice_prefix: Optional[List[str]] = None,
    ):
        self.logger = logger
        self.console = console
        self.command_runner = command_runner
        self.broker = passphrase_broker
        self.filesystem_service = filesystem_service
        self.repo_path = repo_path
        self.nice_prefix = list(nice_prefix or [])

    def _borg(
        self,
        args: List[str],
        capture_output: bool = True,
        cwd: Optional[str] = None,
        nice: bool = False,
    ):
        cmd = (self.nice_prefix if nice else []) + ["borg"] + args
        return self.broker.with_passphrase(
            lambda env: self.command_runner.run(
                cmd,
                check=False,
                capture_output=capture_output,
                env=env,
                cwd=cwd,
                text=False,
            )
        )

    def _borg_stream(self, args: List[str], sink: BinaryIO):
        cmd = ["borg"] + args
        return self.broker.with_passphrase(lambda env: self.command_runner.stream(cmd, sink, env=env))

    def _check_result(self, result, action: str) -> str:
        outcome = classify_returncode(result.returncode)
        if outcome == "fatal":
            raise ArchiveToolError(
                f"Borg {action} failed. "
                + self.command_runner.describe_failure(list(result.args), result.returncode, result.stderr),
                result.returncode,
            )
        if outcome == "warning":
            stderr = printable(result.stderr)
            self.logger.warning(
                "Borg %s completed with warnings (exit code %s). The archive is still valid.%s",
                action,
                result.returncode,
                f"\n{stderr.strip()}" if stderr.strip() else "",
            )
        return outcome

    def repository_exists(self) -> bool:
        return os.path.exists(self.repo_path)

    def probe_repository(self):
        result = self._borg(["list", "--short", self.repo_path])
        if classify_returncode(result.returncode) == "fatal":
            raise ArchiveToolError(
                actionable_error("repository_inaccessible", path=self.repo_path),
                result.returncode,
            )

    def ensure_repository(self, dry_run: bool = False):
        if self.repository_exists():
            self.probe_repository()
            return

        if dry_run:
            self.logger.info("DRY RUN: repository %s does not exist and would be initialized.", self.repo_path)
            return

        parent = os.path.dirname(os.path.abspath(self.repo_path).rstrip("/")) or "/"
        if os.path.realpath(parent) in FORBIDDEN_REPO_PARENTS:
            raise ConfigurationError(
                f"Refusing to create a repository directly under system directory {parent}."
            )

        os.makedirs(parent, exist_ok=True)
        if not os.access(parent, os.W_OK):
            raise ConfigurationError(f"Repository parent directory is not writable: {parent}")

        self.console.print(f"[blue]Initializing Borg repo at {self.repo_path}...[/blue]")
        self.logger.info("Initializing Borg repo at %s...", self.repo_path)
        result = self._borg(["init", f"--encryption={BORG_ENCRYPTION_MODE}", self.repo_path])
        self._check_result(result, "init")

    def break_stale_lock(self):
        if not os.path.isfile(os.path.join(self.repo_path, "lock.roster")):
            return
        self.logger.warning("Borg repository lock detected. Attempting to break stale lock...")
        result = self._borg(["break-lock", self.repo_path])
        if result.returncode != 0:
            raise ArchiveToolError(
                "Borg repository is locked by an active process or the lock could not be broken.",
                result.returncode,
            )

    def build_excludes(self, app_excludes: Iterable[str]) -> List[str]:
        args = ["--exclude-caches"]
        for path in BASELINE_EXCLUDES:
            args.append(f"--exclude={path}")

        for path in app_excludes:
            if not os.path.isabs(path):
                raise ConfigurationError(f"Application exclude path must be absolute: {path}")
            args.append(f"--exclude={path}")
        return args

    def package_dumps(self, dump_dir: str, staging_dir: str, timestamp: str) -> str:
        package_name = f"{DUMP_PACKAGE_PREFIX}{timestamp}"
        package_path = os.path.join(staging_dir, f"{package_name}.tar.gz")
        self.logger.info("Packaging database dumps into %s", package_path)

        fd = os.open(package_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, FILE_MODE)
        try:
            with os.fdopen(fd, "wb") as raw_file, tarfile.open(fileobj=raw_file, mode="w:gz") as tar:
                tar.add(dump_dir, arcname=package_name)
        except (OSError, tarfile.TarError) as exc:
            self.filesystem_service.cleanup_file(package_path)
            raise BackupError(f"Could not package database dumps: {exc}") from exc
        return package_path

    def build_create_command(
        self,
        archive_name: str,
        backup_dirs: Iterable[str],
        excludes: List[str],
        compression: str,
        dump_package: Optional[str] = None,
        dry_run: bool = False,
    ) -> List[str]:
        args = ["create", "--one-file-system", "--compression", compression]
        args.append("--dry-run" if dry_run else "--stats")
        args.extend(excludes)
        args.append(f"{self.repo_path}::{archive_name}")
        args.extend(backup_dirs)
        if dump_package:
            args.append(dump_package)
        return args

    def create_archive(
        self,
        archive_name: str,
        backup_dirs: Iterable[str],
        excludes: List[str],
        compression: str,
        dump_package: Optional[str] = None,
        dry_run: bool = False,
    ) -> ArchiveHandle:
        args = self.build_create_command(
            archive_name, backup_dirs, excludes, compression, dump_package=dump_package, dry_run=dry_run
        )
        self.logger.info("Creating archive %s::%s", self.repo_path, archive_name)
        result = self._borg(args, nice=True)
        outcome = self._check_result(result, "create")
        if outcome == "success" and result.stderr:
            self.logger.info(printable(result.stderr).strip())
        return ArchiveHandle(repo=self.repo_path, name=archive_name)

    def prune(self, keep_daily: int, dry_run: bool = False):
        if dry_run:
            self.logger.info("DRY RUN: Would prune archives (keeping %s daily)", keep_daily)
            return
        self.logger.info("Pruning old archives (keeping %s daily)...", keep_daily)
        result = self._borg(["prune", "--list", f"--keep-daily={keep_daily}", self.repo_path], nice=True)
        self._check_result(result, "prune")

    def check_repository(self, verify_data: bool = True):
        args = ["check"] + (["--verify-data"] if verify_data else []) + [self.repo_path]
        result = self._borg(args, nice=True)
        if classify_returncode(result.returncode) == "fatal":
            raise ArchiveToolError(
                "CRITICAL: Borg repository integrity check failed!", result.returncode
            )
        self._check_result(result, "check")

    def archive_exists(self, handle: ArchiveHandle) -> bool:
        result = self._borg(["list", "--short", handle.repo])
        if classify_returncode(result.returncode) == "fatal":
            return False
        return handle.name in {line.strip() for line in decode_output(result.stdout).splitlines()}

    def latest_archive(self) -> Optional[str]:
        result = self._borg(["list", "--short", "--last", "1", self.repo_path])
        self._check_result(result, "list")
        names = [line.strip() for line in decode_output(result.stdout).splitlines() if line.strip()]
        return names[-1] if names else None

    def list_entries(self, handle: ArchiveHandle) -> List[Tuple[str, str]]:
        """Return ``(type, path)`` for every item of the archive."""
        result = self._borg(["list", "--format", "{type}{TAB}{path}{NUL}", str(handle)])
        self._check_result(result, "list")

        entries = []
        for record in decode_output(result.stdout).split("\x00"):
            if not record:
                continue
            entry_type, _, path = record.partition("\t")
            entries.append((entry_type.strip(), path))
        return entries

    def archive_info(self, handle: ArchiveHandle) -> Dict[str, Any]:
        result = self._borg(["info", "--json", str(handle)])
        if result.returncode != 0:
            self.logger.warning("Could not read archive info for %s.", handle)
            return {}
        try:
            return json.loads(decode_output(result.stdout) or "{}")
        except json.JSONDecodeError:
            self.logger.warning("Archive info for %s is not valid JSON.", handle)
            return {}

    def extract_to_stdout(self, handle: ArchiveHandle, path: str, sink: BinaryIO):
        """Restore one file into ``sink`` chunk by chunk."""
        result = self._borg_stream(["extract", "--stdout", str(handle), path], sink)
        self._check_result(result, "extract")

    def extract(self, handle: ArchiveHandle, path: str, cwd: str):
        result = self._borg(["extract", str(handle), path], cwd=cwd)
        self._check_result(result, "extract")
