"""Post-creation archive verification for borgrunner."""

import gzip
import os
import random
import re
import sqlite3
import tarfile
import zlib
from typing import Iterable, List, Optional, Tuple

from borgrunner.constants import (
    DUMP_PACKAGE_PREFIX,
    FILE_MODE,
    RANDOM_SPOT_CHECK_COUNT,
    SPOT_CHECK_FILES,
    SQLITE_HEADER,
    SQLITE_SUFFIXES,
    TIMESTAMP_PATTERN,
)
from borgrunner.errors import BackupError, ConfigurationError, VerificationError
from borgrunner.models import ArchiveHandle
from borgrunner.services.borg import printable


class ByteCounter:
    """Write-only sink that keeps the size of a restored file, not its content."""

    def __init__(self):
        self.size = 0

    def write(self, data: bytes) -> int:
        self.size += len(data)
        return len(data)


class ArchiveVerifier:
    """Proves an archive is listable, carries the dumps and can be restored.

    Checks escalate: existence, payload presence, then restorability spot
    checks. The first failing check aborts verification. A failed archive is
    left in the repository for manual inspection.
    """

    def __init__(
        self,
        logger,
        console,
        borg_service,
        path_guard,
        filesystem_service,
        staging_dir: str,
        backup_dirs: Iterable[str],
        rng: Optional[random.Random] = None,
    ):
        self.logger = logger
        self.console = console
        self.borg = borg_service
        self.path_guard = path_guard
        self.filesystem_service = filesystem_service
        self.staging_dir = staging_dir
        self.backup_dirs = [os.path.normpath(path) for path in backup_dirs]
        self.rng = rng or random.Random()

    @staticmethod
    def payload_pattern(timestamp: Optional[str]) -> "re.Pattern[str]":
        if timestamp:
            return re.compile(rf"(^|/){re.escape(DUMP_PACKAGE_PREFIX + timestamp)}\.tar\.gz$")
        return re.compile(rf"(^|/){re.escape(DUMP_PACKAGE_PREFIX)}{TIMESTAMP_PATTERN}\.tar\.gz$")

    def archive_relative_path(self, absolute_path: str) -> Optional[str]:
        """Map an absolute host path onto the archive if a backup root covers it."""
        normalized = os.path.normpath(absolute_path)
        for root in self.backup_dirs:
            if root == "/" or normalized == root or normalized.startswith(root.rstrip("/") + "/"):
                return normalized.lstrip("/")
        return None

    def verify(
        self,
        handle: ArchiveHandle,
        dumps_expected: bool,
        timestamp: Optional[str] = None,
        dry_run: bool = False,
    ):
        if dry_run:
            self.logger.info("DRY RUN: skipping archive verification.")
            return

        self.console.print("[blue]Verifying archive integrity...[/blue]")
        self.logger.info("Verifying archive integrity for %s...", handle)

        if not self.borg.archive_exists(handle):
            raise VerificationError(f"Archive verification failed: could not find archive {handle}.")

        try:
            entries = self.borg.list_entries(handle)
        except BackupError as exc:
            raise VerificationError(f"Archive verification failed: could not list {handle}: {exc}") from exc

        payload = self.find_payload(entries, timestamp)
        if payload is None:
            if dumps_expected and timestamp:
                raise VerificationError("Database dump package not found in backup archive.")
            if dumps_expected or not timestamp:
                self.logger.info("No database dump package found in %s.", handle)

        self.logger.info("Performing spot restore checks...")
        self.spot_check_canonical_files(handle, entries)
        self.spot_check_random_files(handle, entries)
        if payload is not None:
            self.verify_payload(handle, payload)

        self.console.print("[green]Archive integrity and restorability verified.[/green]")
        self.logger.info("Archive integrity and restorability verified.")

    def find_payload(self, entries: List[Tuple[str, str]], timestamp: Optional[str]) -> Optional[str]:
        pattern = self.payload_pattern(timestamp)
        matches = [path for entry_type, path in entries if entry_type == "-" and pattern.search(path)]
        return sorted(matches)[-1] if matches else None

    def spot_check_canonical_files(self, handle: ArchiveHandle, entries: List[Tuple[str, str]]):
        paths = {path for _, path in entries}
        for canonical in SPOT_CHECK_FILES:
            relative = self.archive_relative_path(canonical)
            if relative is None:
                self.logger.debug("Skipping spot check of %s: not under any backup root.", canonical)
                continue
            if relative not in paths:
                self.logger.warning("Spot check file %s is not in the archive (excluded?).", canonical)
                continue

            size = self._restore_size(handle, relative)
            if not size:
                self.logger.warning("Spot check file %s was restored but is empty.", canonical)
            else:
                self.logger.info("  Spot check OK: %s (%s bytes)", relative, size)

    def spot_check_random_files(self, handle: ArchiveHandle, entries: List[Tuple[str, str]]):
        files = [path for entry_type, path in entries if entry_type == "-"]
        if not files:
            self.logger.warning("Archive appears empty, cannot perform random spot restore check.")
            return

        sample = self.rng.sample(files, min(RANDOM_SPOT_CHECK_COUNT, len(files)))
        for path in sample:
            self.logger.info("  Spot checking: %s", printable(path))
            self._restore_size(handle, path)

    def verify_payload(self, handle: ArchiveHandle, payload: str):
        self.path_guard.validate_archive_member(payload)
        extract_dir = self.filesystem_service.make_temp_dir(self.staging_dir, "tmp_verify_")
        try:
            try:
                extract_dir = self.path_guard.validate_containment(extract_dir, self.staging_dir)
            except ConfigurationError as exc:
                raise VerificationError(str(exc)) from exc

            try:
                self.borg.extract(handle, payload, cwd=extract_dir)
            except BackupError as exc:
                raise VerificationError(f"Failed to extract dump package {payload}: {exc}") from exc

            extracted = self.filesystem_service.list_files(extract_dir)
            if len(extracted) != 1:
                raise VerificationError(
                    f"Expected exactly one extracted file for {payload}, found {len(extracted)}. "
                    "The archive may be corrupted or tampered with."
                )

            package = extracted[0]
            try:
                with gzip.open(package, "rb") as stream:
                    while stream.read(1024 * 1024):
                        pass
                with tarfile.open(package, "r:gz") as tar:
                    members = tar.getnames()
            except (OSError, EOFError, zlib.error, tarfile.TarError) as exc:
                raise VerificationError(f"Dump package {payload} is not a readable tar.gz: {exc}") from exc

            self.logger.info("  Dump package OK: %s (%s member(s))", printable(payload), len(members))
        finally:
            self.filesystem_service.cleanup_dir(extract_dir)

    def check_sqlite_databases(self, handle: ArchiveHandle, dry_run: bool = False) -> bool:
        """Application-level integrity check of SQLite files; problems are warnings."""
        if dry_run:
            return True

        self.logger.info("Checking integrity of SQLite databases in the backup...")
        entries = self.borg.list_entries(handle)
        databases = [
            path for entry_type, path in entries
            if entry_type == "-" and path.lower().endswith(SQLITE_SUFFIXES)
        ]
        if not databases:
            self.logger.info("No SQLite databases found.")
            return True

        temp_dir = self.filesystem_service.make_temp_dir(self.staging_dir, "tmp_sqlite_")
        all_ok = True
        try:
            for index, db_path in enumerate(databases):
                shown = printable(db_path)
                self.logger.info("Checking: %s", shown)
                destination = os.path.join(temp_dir, f"{index}.sqlite")
                try:
                    self.path_guard.validate_containment(destination, temp_dir)
                    self._restore_to_file(handle, db_path, destination)
                    size = os.path.getsize(destination)
                    with open(destination, "rb") as file_obj:
                        header = file_obj.read(len(SQLITE_HEADER))
                except (BackupError, OSError) as exc:
                    self.logger.error("  ERROR: Failed to extract %s: %s", shown, exc)
                    all_ok = False
                    continue

                if not size:
                    self.logger.warning("  WARNING: SQLite database %s is empty", shown)
                    all_ok = False
                    continue
                if header != SQLITE_HEADER:
                    self.logger.warning("  WARNING: %s is not a valid SQLite database", shown)
                    continue

                result = self._integrity_check(destination)
                if result == "ok":
                    self.logger.info("  OK: Integrity verified for %s", shown)
                else:
                    all_ok = False
                    self.logger.error("  WARNING: Integrity check FAILED for %s", shown)
                    for line in result.splitlines():
                        self.logger.info("    SQLite Error: %s", line)
        finally:
            self.filesystem_service.cleanup_dir(temp_dir)

        self.logger.info("SQLite integrity check completed. Checked %s database(s).", len(databases))
        if not all_ok:
            self.logger.warning("One or more SQLite databases failed integrity check")
        return all_ok

    def _restore(self, handle: ArchiveHandle, path: str, sink):
        self.path_guard.validate_archive_member(path)
        try:
            self.borg.extract_to_stdout(handle, path, sink)
        except BackupError as exc:
            raise VerificationError(f"Failed to restore sample file {printable(path)}: {exc}") from exc

    def _restore_size(self, handle: ArchiveHandle, path: str) -> int:
        counter = ByteCounter()
        self._restore(handle, path, counter)
        return counter.size

    def _restore_to_file(self, handle: ArchiveHandle, path: str, destination: str):
        with self._open_destination(destination) as file_obj:
            self._restore(handle, path, file_obj)

    def _open_destination(self, destination: str):
        self.path_guard.ensure_not_special(destination)
        fd = os.open(destination, os.O_WRONLY | os.O_CREAT | os.O_TRUNC | os.O_NOFOLLOW, FILE_MODE)
        return os.fdopen(fd, "wb")

    @staticmethod
    def _integrity_check(path: str) -> str:
        try:
            connection = sqlite3.connect(f"file:{path}?mode=ro", uri=True)
        except sqlite3.Error as exc:
            return str(exc)
        try:
            rows = connection.execute("PRAGMA integrity_check;").fetchall()
        except sqlite3.Error as exc:
            return str(exc)
        finally:
            connection.close()
        return "\n".join(str(row[0]) for row in rows)
