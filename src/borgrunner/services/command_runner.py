"""Subprocess execution service for borgrunner."""

import shutil
import subprocess
import tempfile
from typing import BinaryIO, Dict, List, Optional

from borgrunner.errors import BackupError, DependencyMissingError


class CommandRunner:
    """Runs external commands with consistent error handling."""

    STREAM_CHUNK_SIZE = 1024 * 1024

    def __init__(self, logger, subprocess_module=subprocess):
        self.logger = logger
        self.subprocess = subprocess_module

    def run(
        self,
        cmd: List[str],
        check: bool = True,
        capture_output: bool = False,
        env: Optional[Dict[str, str]] = None,
        cwd: Optional[str] = None,
        text: bool = True,
    ) -> subprocess.CompletedProcess:
        cmd_str = " ".join(cmd)
        self.logger.debug("Executing: %s", cmd_str)

        try:
            result = self.subprocess.run(
                cmd,
                text=text,
                capture_output=capture_output,
                env=env,
                cwd=cwd,
            )
        except FileNotFoundError as exc:
            raise DependencyMissingError(
                f"Required command not found: {cmd[0]}. Please install it and try again."
            ) from exc
        except OSError as exc:
            raise BackupError(f"Failed to execute command: {cmd_str}. {exc}") from exc

        if capture_output and text and result.stdout:
            self.logger.debug("Command output: %s", result.stdout.strip())

        if result.returncode == 0:
            return result

        message = self.describe_failure(cmd, result.returncode, result.stderr if capture_output else None)
        if check:
            raise BackupError(message)

        self.logger.debug(message)
        return result

    def stream(
        self,
        cmd: List[str],
        sink: BinaryIO,
        env: Optional[Dict[str, str]] = None,
    ) -> subprocess.CompletedProcess:
        """Copy the stdout of ``cmd`` into ``sink`` without buffering it in memory."""
        cmd_str = " ".join(cmd)
        self.logger.debug("Streaming: %s", cmd_str)

        # stderr goes to a spool file so a chatty tool cannot block on a full pipe
        with tempfile.TemporaryFile() as stderr_file:
            try:
                process = self.subprocess.Popen(
                    cmd,
                    stdout=subprocess.PIPE,
                    stderr=stderr_file,
                    env=env,
                )
            except FileNotFoundError as exc:
                raise DependencyMissingError(
                    f"Required command not found: {cmd[0]}. Please install it and try again."
                ) from exc
            except OSError as exc:
                raise BackupError(f"Failed to execute command: {cmd_str}. {exc}") from exc

            try:
                shutil.copyfileobj(process.stdout, sink, self.STREAM_CHUNK_SIZE)
            finally:
                process.stdout.close()
                returncode = process.wait()

            stderr_file.seek(0)
            stderr = stderr_file.read().decode("utf-8", errors="replace")

        return subprocess.CompletedProcess(cmd, returncode, stdout=None, stderr=stderr)

    @staticmethod
    def describe_failure(cmd: List[str], returncode: int, stderr) -> str:
        message = f"Command failed ({returncode}): {' '.join(cmd)}"
        if isinstance(stderr, bytes):
            stderr = stderr.decode("utf-8", errors="replace")
        clean_stderr = (stderr or "").strip()
        if clean_stderr:
            message = f"{message}\n{clean_stderr}"
        return message
