"""Filesystem helpers for borgrunner."""

import logging
import os
import shutil
import tempfile
import time
from typing import List

from rich.console import Console

from borgrunner.constants import DIR_MODE


class FileSystemService:
    """Encapsulates file and directory side effects."""

    def __init__(self, logger: logging.Logger, console: Console):
        self.logger = logger
        self.console = console

    def set_permissions(self, path: str, mode: int):
        try:
            os.chmod(path, mode)
        except OSError as exc:
            self.logger.warning("Could not set permissions on %s: %s", path, exc)

    def ensure_dir(self, path: str, mode: int = DIR_MODE):
        os.makedirs(path, mode=mode, exist_ok=True)

    def make_temp_dir(self, parent: str, prefix: str) -> str:
        path = tempfile.mkdtemp(prefix=prefix, dir=parent)
        self.set_permissions(path, DIR_MODE)
        return path

    def cleanup_dir(self, path: str):
        if os.path.exists(path):
            try:
                shutil.rmtree(path)
                self.logger.debug("Removed directory: %s", path)
            except OSError as exc:
                message = f"Warning: Could not remove {path}: {exc}"
                self.console.print(f"[yellow]{message}[/yellow]")
                self.logger.warning(message)

    def cleanup_file(self, path: str):
        if os.path.lexists(path):
            try:
                os.remove(path)
                self.logger.debug("Removed file: %s", path)
            except OSError as exc:
                self.logger.warning("Could not remove %s: %s", path, exc)

    def list_files(self, root: str) -> List[str]:
        found = []
        for current_root, _, files in os.walk(root):
            for file_name in files:
                found.append(os.path.join(current_root, file_name))
        return sorted(found)

    def delete_older_than(self, directory: str, pattern_prefix: str, suffix: str, days: int) -> int:
        if not os.path.isdir(directory):
            self.logger.info("Directory does not exist, skipping rotation: %s", directory)
            return 0

        cutoff = time.time() - days * 86400
        removed = 0
        for entry in os.scandir(directory):
            if not entry.is_file(follow_symlinks=False):
                continue
            if not (entry.name.startswith(pattern_prefix) and entry.name.endswith(suffix)):
                continue
            try:
                if entry.stat(follow_symlinks=False).st_mtime < cutoff:
                    os.remove(entry.path)
                    removed += 1
            except OSError as exc:
                self.logger.warning("Failed to delete old file %s: %s", entry.path, exc)
        return removed
