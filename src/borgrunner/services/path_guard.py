"""Path and secrets-file validation helpers for borgrunner."""

import fnmatch
import os
import stat
from pathlib import Path, PurePosixPath
from typing import Iterable, Optional

from borgrunner.errors import ConfigurationError, VerificationError
from borgrunner.errors_catalog import actionable_error


class PathGuard:
    """Validates configured paths, the secrets file and dynamically built paths."""

    def __init__(self, secrets_owner_uid: int = 0):
        self.secrets_owner_uid = secrets_owner_uid

    def validate_path(self, path: str, must_be_absolute: bool = True, key: str = "path") -> str:
        if not path or not str(path).strip():
            raise ConfigurationError(f"Configuration key '{key}' must not be empty.")
        if must_be_absolute and not os.path.isabs(path):
            raise ConfigurationError(actionable_error("path_not_absolute", key=key, path=path))
        return path

    def validate_secrets_file(self, path: str):
        self.validate_path(path, must_be_absolute=True, key="secrets_file")

        try:
            file_stat = os.stat(path)
        except FileNotFoundError as exc:
            raise ConfigurationError(actionable_error("secrets_missing", path=path)) from exc
        except OSError as exc:
            raise ConfigurationError(f"Could not inspect secrets file {path}: {exc}") from exc

        if not stat.S_ISREG(file_stat.st_mode):
            raise ConfigurationError(f"Secrets file must be a regular file: {path}")

        mode = stat.S_IMODE(file_stat.st_mode)
        if mode != 0o600 or file_stat.st_uid != self.secrets_owner_uid:
            raise ConfigurationError(
                actionable_error(
                    "secrets_permissions",
                    path=path,
                    uid=self.secrets_owner_uid,
                    owner=file_stat.st_uid,
                    mode=oct(mode)[2:],
                )
            )

    def is_within_dir(self, base_dir: Path, candidate: Path) -> bool:
        try:
            return os.path.commonpath([str(base_dir), str(candidate)]) == str(base_dir)
        except ValueError:
            return False

    def validate_containment(self, candidate: str, base_dir: str) -> str:
        """Return the canonical form of ``candidate`` if it stays inside ``base_dir``."""
        base = Path(base_dir).resolve()
        resolved = Path(candidate).resolve()

        if not self.is_within_dir(base, resolved):
            raise ConfigurationError(
                f"Path `{candidate}` resolves to `{resolved}`, outside of `{base}`. "
                "Refusing to continue to prevent path traversal."
            )
        return str(resolved)

    def covering_exclude(self, path: str, patterns: Iterable[str]) -> Optional[str]:
        """Return the first exclude pattern matching ``path`` or one of its parents."""
        candidate = PurePosixPath(os.path.normpath(path))
        names = [str(candidate)] + [str(parent) for parent in candidate.parents]
        for pattern in patterns:
            normalized = pattern.rstrip("/") or "/"
            if any(fnmatch.fnmatchcase(name, normalized) for name in names):
                return pattern
        return None

    def validate_archive_member(self, member: str) -> str:
        """Reject in-archive paths that could escape an extraction directory."""
        if not member or "\x00" in member:
            raise VerificationError(f"Unsafe archive path rejected: {member!r}")

        posix_path = PurePosixPath(member)
        if posix_path.is_absolute():
            raise VerificationError(f"Absolute archive path rejected: {member}")
        if any(part == ".." for part in posix_path.parts):
            raise VerificationError(f"Archive path with traversal sequence rejected: {member}")
        return member

    def ensure_not_special(self, destination: str):
        """Refuse to write over anything but a regular file."""
        try:
            dest_stat = os.lstat(destination)
        except FileNotFoundError:
            return

        if not stat.S_ISREG(dest_stat.st_mode):
            raise VerificationError(
                f"Refusing to overwrite special file at extraction destination: {destination}"
            )
