"""Singleton execution lock for borgrunner."""

import fcntl
import os
import time
from typing import Optional

from borgrunner.constants import FILE_MODE
from borgrunner.errors import BackupError, LockContentionError
from borgrunner.errors_catalog import actionable_error


class ExecutionLock:
    """Advisory ``flock`` on a pid file, with stale-owner takeover.

    States: unlocked -> acquiring -> held | denied, and held -> released once
    the owning process calls :meth:`release` (normally from the run's final
    cleanup). Release is idempotent and only unlinks the file while it still
    records this process as the owner.
    """

    POLL_INTERVAL = 0.5

    def __init__(self, lock_file: str, logger, timeout: float = 0.0):
        self.lock_file = lock_file
        self.logger = logger
        self.timeout = timeout
        self._fd: Optional[int] = None

    @property
    def held(self) -> bool:
        return self._fd is not None

    def acquire(self):
        if self.held:
            return

        lock_dir = os.path.dirname(self.lock_file)
        try:
            os.makedirs(lock_dir, exist_ok=True)
        except OSError as exc:
            raise BackupError(f"Failed to create lock file directory {lock_dir}: {exc}") from exc

        fd = self._open()
        if not self._try_lock(fd, self.timeout):
            os.close(fd)
            existing_pid = self.read_owner()

            if self.is_pid_alive(existing_pid):
                raise LockContentionError(actionable_error("lock_contention", pid=existing_pid))

            self.logger.warning(
                "Stale lock detected (PID: %s). Attempting takeover...",
                existing_pid if existing_pid is not None else "unknown",
            )
            try:
                os.unlink(self.lock_file)
            except FileNotFoundError:
                pass
            except OSError as exc:
                raise BackupError(f"Could not remove stale lock file {self.lock_file}: {exc}") from exc

            fd = self._open()
            if not self._try_lock(fd, 0.0):
                os.close(fd)
                raise LockContentionError(
                    "Failed to acquire lock after stale lock removal; "
                    "another process likely acquired it."
                )

        try:
            os.ftruncate(fd, 0)
            os.lseek(fd, 0, os.SEEK_SET)
            os.write(fd, f"{os.getpid()}\n".encode("ascii"))
            os.fsync(fd)
            os.fchmod(fd, FILE_MODE)
        except OSError as exc:
            os.close(fd)
            raise BackupError(f"Failed to write PID to lock file {self.lock_file}: {exc}") from exc

        self._fd = fd
        self.logger.debug("Acquired execution lock: %s", self.lock_file)

    def release(self):
        if not self.held:
            return

        owner = self.read_owner()
        if owner == os.getpid():
            try:
                os.unlink(self.lock_file)
            except OSError as exc:
                self.logger.warning("Could not remove lock file %s: %s", self.lock_file, exc)
        else:
            self.logger.info(
                "Not removing lock file (%s), owned by PID %s",
                self.lock_file,
                owner if owner is not None else "unknown",
            )

        fd, self._fd = self._fd, None
        try:
            fcntl.flock(fd, fcntl.LOCK_UN)
        except OSError:
            pass
        os.close(fd)

    def read_owner(self) -> Optional[int]:
        try:
            with open(self.lock_file, "r", encoding="ascii", errors="ignore") as file_obj:
                content = file_obj.read().strip()
        except OSError:
            return None

        try:
            return int(content.splitlines()[0]) if content else None
        except ValueError:
            return None

    @staticmethod
    def is_pid_alive(pid: Optional[int]) -> bool:
        if pid is None or pid <= 0:
            return False
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return False
        except PermissionError:
            return True
        return True

    def _open(self) -> int:
        try:
            return os.open(self.lock_file, os.O_RDWR | os.O_CREAT, FILE_MODE)
        except OSError as exc:
            raise BackupError(f"Failed to open lock file {self.lock_file}: {exc}") from exc

    def _try_lock(self, fd: int, timeout: float) -> bool:
        deadline = time.monotonic() + max(0.0, timeout)
        while True:
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                return True
            except BlockingIOError:
                if time.monotonic() >= deadline:
                    return False
                time.sleep(self.POLL_INTERVAL)

    def __enter__(self):
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.release()
        return False
