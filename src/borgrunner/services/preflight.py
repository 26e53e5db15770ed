"""Pre-flight environment checks for borgrunner."""

import os
import re
import shutil
from typing import Callable, List, Optional

from packaging import version

from borgrunner.constants import MIN_BORG_VERSION, MIN_DOCKER_VERSION
from borgrunner.errors import DependencyMissingError, EnvironmentHealthError
from borgrunner.errors_catalog import actionable_error


class PreflightService:
    """Checks dependencies and host health before any work is done."""

    REQUIRED_BINARIES = ("borg", "docker")

    def __init__(
        self,
        logger,
        console,
        run_cmd: Callable,
        which: Callable[[str], Optional[str]] = shutil.which,
        disk_usage: Callable = shutil.disk_usage,
        load_average: Callable = os.getloadavg,
    ):
        self.logger = logger
        self.console = console
        self.run_cmd = run_cmd
        self.which = which
        self.disk_usage = disk_usage
        self.load_average = load_average

    @staticmethod
    def parse_version(output: str) -> Optional[version.Version]:
        match = re.search(r"\d+(?:\.\d+)+", output or "")
        if not match:
            return None
        try:
            return version.parse(match.group(0))
        except version.InvalidVersion:
            return None

    def check_dependencies(self, required: Optional[List[str]] = None):
        self.logger.info("Checking dependencies...")
        for binary in required or self.REQUIRED_BINARIES:
            if self.which(binary) is None:
                raise DependencyMissingError(actionable_error("dependency_missing", binary=binary))

        result = self.run_cmd(["borg", "--version"], check=False, capture_output=True)
        borg_version = self.parse_version(result.stdout if result.returncode == 0 else "")
        if borg_version is None:
            raise DependencyMissingError("Could not determine Borg version (borg --version failed).")
        if borg_version < version.parse(MIN_BORG_VERSION):
            raise DependencyMissingError(
                f"Borg version {borg_version} found, but {MIN_BORG_VERSION} or higher is required."
            )

        result = self.run_cmd(["docker", "--version"], check=False, capture_output=True)
        docker_version = self.parse_version(result.stdout if result.returncode == 0 else "")
        if docker_version is None:
            self.logger.warning("Could not determine Docker version")
        elif docker_version < version.parse(MIN_DOCKER_VERSION):
            self.logger.warning(
                "Docker version %s may not be fully compatible (%s+ recommended)",
                docker_version,
                MIN_DOCKER_VERSION,
            )

    def check_system_load(self, max_load: float) -> bool:
        try:
            current_load = self.load_average()[0]
        except OSError:
            self.logger.warning("Could not read system load. Skipping load check.")
            return True

        if current_load > max_load:
            self.logger.warning("System load (%.2f) exceeds threshold (%.2f).", current_load, max_load)
            return False
        return True

    def check_disk_space(self, paths: List[str], min_free_gb: int):
        for path in paths:
            check_path = path if os.path.isdir(path) else os.path.dirname(path.rstrip("/"))
            if not check_path or not os.path.isdir(check_path):
                raise EnvironmentHealthError(
                    f"Directory {path} (and its parent) does not exist for disk space check."
                )

            try:
                available_gb = self.disk_usage(check_path).free // (1024 ** 3)
            except OSError as exc:
                raise EnvironmentHealthError(
                    f"Could not determine available disk space for {check_path}: {exc}"
                ) from exc

            if available_gb < min_free_gb:
                raise EnvironmentHealthError(
                    actionable_error(
                        "insufficient_space",
                        path=check_path,
                        available=available_gb,
                        required=min_free_gb,
                    )
                )

    def check_system_health(self, max_load: float, paths: List[str], min_free_gb: int):
        self.logger.info("Checking system health...")
        self.check_system_load(max_load)
        self.check_disk_space(paths, min_free_gb)
