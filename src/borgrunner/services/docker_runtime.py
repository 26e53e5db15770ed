"""Docker runtime and compose service lifecycle for borgrunner."""

import subprocess
import time
from collections import deque
from typing import Any, Callable, Deque, Dict, List, Optional, Set

import yaml

from borgrunner.errors import BackupError, ConfigurationError
from borgrunner.models import ServiceStopSet


class DockerRuntimeService:
    """Wraps the docker compose commands the backup run relies on."""

    def __init__(self, logger, console, compose_file: str, run_cmd: Callable, subprocess_module=subprocess):
        self.logger = logger
        self.console = console
        self.compose_file = compose_file
        self.run_cmd = run_cmd
        self.subprocess = subprocess_module
        self._compose_cmd: Optional[List[str]] = None

    def get_docker_compose_cmd(self) -> List[str]:
        if self._compose_cmd is not None:
            return self._compose_cmd

        try:
            self.subprocess.run(["docker", "compose", "version"], check=True, capture_output=True)
            self._compose_cmd = ["docker", "compose"]
        except (self.subprocess.CalledProcessError, FileNotFoundError):
            try:
                self.subprocess.run(["docker-compose", "--version"], check=True, capture_output=True)
                self._compose_cmd = ["docker-compose"]
            except (self.subprocess.CalledProcessError, FileNotFoundError):
                raise BackupError(
                    "docker compose v2 or docker-compose (v1) is required for service management."
                )
        return self._compose_cmd

    def compose(self, *args: str) -> List[str]:
        return self.get_docker_compose_cmd() + ["-f", self.compose_file] + list(args)

    def validate_compose_file(self):
        self.logger.info("Validating Docker Compose services...")
        result = self.run_cmd(self.compose("config", "--quiet"), check=False, capture_output=True)
        if result.returncode != 0:
            raise ConfigurationError(f"Docker Compose file is invalid: {self.compose_file}")

    def load_compose_config(self) -> Dict[str, Any]:
        result = self.run_cmd(self.compose("config"), check=True, capture_output=True)
        try:
            parsed = yaml.safe_load(result.stdout or "")
        except yaml.YAMLError as exc:
            raise ConfigurationError(f"Could not parse compose configuration: {exc}") from exc
        if not isinstance(parsed, dict):
            raise ConfigurationError("Compose configuration must be a mapping.")
        return parsed

    def resolve_container(self, service: str) -> Optional[str]:
        result = self.run_cmd(self.compose("ps", "-q", service), check=False, capture_output=True)
        if result.returncode != 0:
            return None
        for line in (result.stdout or "").splitlines():
            if line.strip():
                return line.strip()
        return None

    def service_state(self, service: str) -> str:
        result = self.run_cmd(
            self.compose("ps", "-a", service, "--format", "{{.State}}"),
            check=False,
            capture_output=True,
        )
        if result.returncode != 0:
            return "not-found"
        return (result.stdout or "").strip() or "not-found"

    def running_services(self) -> Set[str]:
        result = self.run_cmd(
            self.compose("ps", "--services", "--filter", "status=running"),
            check=False,
            capture_output=True,
        )
        return {line.strip() for line in (result.stdout or "").splitlines() if line.strip()}

    def stop_service(self, service: str):
        self.run_cmd(self.compose("stop", service), check=True, capture_output=True)

    def start_service(self, service: str):
        self.run_cmd(self.compose("start", service), check=True, capture_output=True)


class ServiceLifecycleManager:
    """Stops dependent services around the backup window and brings them back."""

    def __init__(
        self,
        runtime: DockerRuntimeService,
        logger,
        console,
        stop_set: ServiceStopSet,
        operation_timeout: float = 30,
        poll_interval: float = 2.0,
        max_iterations: int = 100,
    ):
        self.runtime = runtime
        self.logger = logger
        self.console = console
        self.stop_set = stop_set
        self.operation_timeout = operation_timeout
        self.poll_interval = poll_interval
        self.max_iterations = max_iterations

    @staticmethod
    def _depends_on(definition: Any) -> List[str]:
        if not isinstance(definition, dict):
            return []
        depends = definition.get("depends_on") or []
        if isinstance(depends, dict):
            return [str(name) for name in depends.keys()]
        if isinstance(depends, list):
            return [str(name) for name in depends]
        return []

    def discover_dependents(self, db_services: List[str], compose_config: Optional[Dict[str, Any]] = None) -> List[str]:
        """Breadth-first closure of the services that depend on ``db_services``."""
        config = compose_config if compose_config is not None else self.runtime.load_compose_config()
        services = config.get("services") or {}

        dependents_of: Dict[str, List[str]] = {}
        for name, definition in services.items():
            for dependency in self._depends_on(definition):
                dependents_of.setdefault(dependency, []).append(str(name))

        roots = set(db_services)
        queue: Deque[str] = deque(db_services)
        seen: Set[str] = set(db_services)
        discovered: List[str] = []
        iterations = 0

        while queue:
            iterations += 1
            if iterations > self.max_iterations:
                raise ConfigurationError(
                    f"Dependency discovery exceeded {self.max_iterations} iterations. "
                    "Check the compose file for cyclic or pathological depends_on graphs."
                )
            current = queue.popleft()
            for dependent in dependents_of.get(current, []):
                if dependent in seen or dependent in roots:
                    continue
                seen.add(dependent)
                discovered.append(dependent)
                queue.append(dependent)

        self.logger.info(
            "Discovered %s dependent service(s): %s",
            len(discovered),
            ", ".join(discovered) or "<none>",
        )
        return discovered

    def stop(self, services: List[str]):
        for service in services:
            self.console.print(f"[blue]Stopping service '{service}'...[/blue]")
            self.logger.info("Stopping service '%s'...", service)
            self.stop_set.record(service)
            self.runtime.stop_service(service)
            self.wait_for_state(service, "exited")

    def start(self):
        for service in self.stop_set.restart_order():
            self.console.print(f"[blue]Starting service '{service}'...[/blue]")
            self.logger.info("Starting service '%s'...", service)
            self.runtime.start_service(service)
            self.wait_for_state(service, "running")
            self.stop_set.discard(service)

    def wait_for_state(self, service: str, expected: str):
        self.logger.info("Verifying service '%s' reaches status '%s'...", service, expected)
        deadline = time.monotonic() + self.operation_timeout
        while True:
            current = self.runtime.service_state(service)
            if expected in current:
                self.logger.info("Service '%s' confirmed as '%s'.", service, expected)
                return
            if time.monotonic() >= deadline:
                raise BackupError(
                    f"Service '{service}' did not reach status '{expected}' within "
                    f"{self.operation_timeout}s (last status: {current})."
                )
            time.sleep(self.poll_interval)

    def recover(self) -> bool:
        """Restart services this run stopped that are not running; never raises.

        Returns True when nothing was left stopped.
        """
        if not self.stop_set:
            return True

        try:
            running = self.runtime.running_services()
        except Exception as exc:
            self.logger.error("Recovery: could not query running services: %s", exc)
            running = set()

        pending = [service for service in self.stop_set.restart_order() if service not in running]
        if not pending:
            return True

        self.logger.warning(
            "Recovery: found stopped services, attempting to restart: %s", ", ".join(pending)
        )
        restored = True
        for service in pending:
            try:
                self.runtime.start_service(service)
                self.stop_set.discard(service)
            except Exception as exc:
                restored = False
                self.logger.error("Recovery: failed to restart service '%s': %s", service, exc)
        return restored
