"""Short-lived passphrase conduit for borg invocations."""

import os
import shlex
import stat
import tempfile
from typing import Callable, Dict, Iterable, Optional, TypeVar

from borgrunner.constants import FILE_MODE, TRUSTED_TEMP_DIRS
from borgrunner.errors import BackupError, SecretExposureError

T = TypeVar("T")


class PassphraseBroker:
    """Hands the repository passphrase to borg through ``BORG_PASSCOMMAND``.

    Each call gets its own 0600 file in a trusted temp directory; the file is
    overwritten and unlinked as soon as the wrapped call returns or raises.
    The passphrase is never put on argv or in this process's environment.
    """

    def __init__(
        self,
        passphrase: str,
        logger,
        temp_dir: Optional[str] = None,
        trusted_temp_dirs: Iterable[str] = TRUSTED_TEMP_DIRS,
        base_env: Optional[Dict[str, str]] = None,
    ):
        if not passphrase:
            raise BackupError("Borg passphrase must not be empty.")
        self._passphrase = passphrase
        self.logger = logger
        self.trusted_temp_dirs = tuple(trusted_temp_dirs)
        self.temp_dir = self._select_temp_dir(temp_dir)
        self.base_env = base_env
        self._outstanding: Optional[str] = None

    def with_passphrase(self, fn: Callable[[Dict[str, str]], T]) -> T:
        path = self._write_passphrase_file()
        try:
            return fn(self._child_env(path))
        finally:
            self.erase(path)

    def erase_outstanding(self):
        if self._outstanding:
            self.erase(self._outstanding)

    def erase(self, path: str):
        try:
            size = os.path.getsize(path)
            with open(path, "r+b", buffering=0) as file_obj:
                file_obj.write(b"\x00" * size)
                os.fsync(file_obj.fileno())
        except FileNotFoundError:
            pass
        except OSError as exc:
            self.logger.warning("Secure overwrite of passphrase file failed (%s); unlinking only.", exc)

        try:
            os.unlink(path)
        except FileNotFoundError:
            pass
        except OSError as exc:
            self.logger.error("Could not unlink passphrase file %s: %s", path, exc)

        if os.path.lexists(path):
            raise SecretExposureError(
                f"CRITICAL: passphrase file {path} still exists after erasure. "
                "Remove it manually and rotate the repository passphrase."
            )

        if self._outstanding == path:
            self._outstanding = None

    def _write_passphrase_file(self) -> str:
        fd, path = tempfile.mkstemp(prefix="borgrunner-pass-", dir=self.temp_dir)
        self._outstanding = path
        try:
            os.fchmod(fd, FILE_MODE)
            with os.fdopen(fd, "w", encoding="utf-8") as file_obj:
                file_obj.write(self._passphrase)
        except OSError as exc:
            self.erase(path)
            raise BackupError(f"Could not write passphrase file: {exc}") from exc
        return path

    def _child_env(self, path: str) -> Dict[str, str]:
        env = dict(self.base_env if self.base_env is not None else os.environ)
        env.pop("BORG_PASSPHRASE", None)
        env["BORG_PASSCOMMAND"] = f"cat {shlex.quote(path)}"
        return env

    def _select_temp_dir(self, temp_dir: Optional[str]) -> str:
        candidates = [temp_dir] if temp_dir else [
            "/dev/shm",
            f"/run/user/{os.getuid()}",
            tempfile.gettempdir(),
        ]
        for candidate in candidates:
            if candidate and os.path.isdir(candidate) and self._is_trusted(candidate):
                return os.path.realpath(candidate)
        raise BackupError(
            f"No trusted temporary directory available for the passphrase file "
            f"(tried: {', '.join(c for c in candidates if c)}). "
            f"Allowed locations: {', '.join(self.trusted_temp_dirs)}."
        )

    def _is_trusted(self, candidate: str) -> bool:
        resolved = os.path.realpath(candidate)
        inside = any(
            resolved == os.path.realpath(root) or resolved.startswith(os.path.realpath(root).rstrip("/") + "/")
            for root in self.trusted_temp_dirs
        )
        if not inside:
            self.logger.warning("Rejecting untrusted temp directory for passphrase file: %s", resolved)
            return False

        mode = os.stat(resolved).st_mode
        if mode & stat.S_IWOTH and not mode & stat.S_ISVTX:
            self.logger.warning("Rejecting world-writable temp directory without sticky bit: %s", resolved)
            return False
        return True
