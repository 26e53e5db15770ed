import subprocess

import pytest

import borgrunner.services.docker_runtime as docker_runtime_module
from borgrunner.errors import BackupError, ConfigurationError
from borgrunner.models import ServiceStopSet
from borgrunner.services.docker_runtime import DockerRuntimeService, ServiceLifecycleManager


class DummyLogger:
    def info(self, *_args, **_kwargs):
        return None

    def warning(self, *_args, **_kwargs):
        return None

    def error(self, *_args, **_kwargs):
        return None


class DummyConsole:
    def print(self, *_args, **_kwargs):
        return None


class FakeRuntime:
    def __init__(self, running=None, fail_start=()):
        self.running = set(running or [])
        self.fail_start = set(fail_start)
        self.calls = []

    def stop_service(self, service):
        self.calls.append(("stop", service))
        self.running.discard(service)

    def start_service(self, service):
        self.calls.append(("start", service))
        if service in self.fail_start:
            raise BackupError(f"cannot start {service}")
        self.running.add(service)

    def service_state(self, service):
        return "running" if service in self.running else "exited"

    def running_services(self):
        return set(self.running)


def _manager(runtime, stop_set=None, **kwargs):
    return ServiceLifecycleManager(
        runtime,
        logger=DummyLogger(),
        console=DummyConsole(),
        stop_set=stop_set if stop_set is not None else ServiceStopSet(),
        operation_timeout=kwargs.pop("operation_timeout", 1),
        poll_interval=0,
        **kwargs,
    )


COMPOSE = {
    "services": {
        "mariadb": {},
        "postgres": {},
        "nextcloud": {"depends_on": ["mariadb"]},
        "cron": {"depends_on": {"nextcloud": {"condition": "service_started"}}},
        "grafana": {"depends_on": ["postgres"]},
        "proxy": {"depends_on": ["nextcloud", "grafana"]},
        "standalone": {},
    }
}


def test_discover_dependents_walks_reverse_edges_transitively():
    dependents = _manager(FakeRuntime()).discover_dependents(["mariadb", "postgres"], COMPOSE)

    assert dependents == ["nextcloud", "grafana", "cron", "proxy"]
    assert "standalone" not in dependents
    assert "mariadb" not in dependents


def test_discover_dependents_terminates_on_cycles():
    config = {
        "services": {
            "db": {"depends_on": ["app"]},
            "app": {"depends_on": ["db", "worker"]},
            "worker": {"depends_on": ["app"]},
        }
    }

    assert _manager(FakeRuntime()).discover_dependents(["db"], config) == ["app", "worker"]


def test_discover_dependents_enforces_iteration_bound():
    services = {"db": {}}
    previous = "db"
    for index in range(10):
        name = f"svc{index}"
        services[name] = {"depends_on": [previous]}
        previous = name

    with pytest.raises(ConfigurationError, match="exceeded 5 iterations"):
        _manager(FakeRuntime(), max_iterations=5).discover_dependents(["db"], {"services": services})


def test_stop_and_start_restart_in_reverse_order():
    runtime = FakeRuntime(running=["app", "worker"])
    stop_set = ServiceStopSet()
    manager = _manager(runtime, stop_set=stop_set)

    manager.stop(["app", "worker"])
    assert stop_set.stopped == ["app", "worker"]

    manager.start()

    assert runtime.calls == [("stop", "app"), ("stop", "worker"), ("start", "worker"), ("start", "app")]
    assert not stop_set


def test_wait_for_state_times_out(monkeypatch):
    monkeypatch.setattr(docker_runtime_module.time, "sleep", lambda *_args, **_kwargs: None)
    manager = _manager(FakeRuntime(), operation_timeout=0)

    with pytest.raises(BackupError, match="did not reach status 'running'"):
        manager.wait_for_state("app", "running")


def test_recover_restarts_only_stopped_services():
    runtime = FakeRuntime(running=["worker"])
    stop_set = ServiceStopSet(["app", "worker"])

    assert _manager(runtime, stop_set=stop_set).recover() is True
    assert runtime.calls == [("start", "app")]


def test_recover_never_raises_and_reports_failure():
    runtime = FakeRuntime(fail_start=["app"])
    stop_set = ServiceStopSet(["app", "worker"])

    assert _manager(runtime, stop_set=stop_set).recover() is False
    assert ("start", "worker") in runtime.calls
    assert stop_set.stopped == ["app"]


def test_compose_command_uses_configured_file():
    class FakeSubprocess:
        CalledProcessError = subprocess.CalledProcessError

        @staticmethod
        def run(*_args, **_kwargs):
            return subprocess.CompletedProcess(["docker"], 0)

    service = DockerRuntimeService(
        logger=DummyLogger(),
        console=DummyConsole(),
        compose_file="/opt/docker-compose.yml",
        run_cmd=None,
        subprocess_module=FakeSubprocess,
    )

    assert service.compose("ps", "-q", "db") == ["docker", "compose", "-f", "/opt/docker-compose.yml", "ps", "-q", "db"]


def test_compose_detection_falls_back_to_v1():
    class FakeSubprocess:
        CalledProcessError = subprocess.CalledProcessError

        @staticmethod
        def run(cmd, **_kwargs):
            if cmd[:2] == ["docker", "compose"]:
                raise subprocess.CalledProcessError(1, cmd)
            return subprocess.CompletedProcess(cmd, 0)

    service = DockerRuntimeService(
        logger=DummyLogger(),
        console=DummyConsole(),
        compose_file="/opt/docker-compose.yml",
        run_cmd=None,
        subprocess_module=FakeSubprocess,
    )

    assert service.get_docker_compose_cmd() == ["docker-compose"]


def test_resolve_container_returns_none_when_not_running():
    def fake_run_cmd(cmd, check=True, capture_output=False, **_kwargs):
        return subprocess.CompletedProcess(cmd, 0, stdout="\n", stderr="")

    service = DockerRuntimeService(
        logger=DummyLogger(),
        console=DummyConsole(),
        compose_file="/opt/docker-compose.yml",
        run_cmd=fake_run_cmd,
    )
    service._compose_cmd = ["docker", "compose"]

    assert service.resolve_container("db") is None


def test_load_compose_config_parses_yaml():
    def fake_run_cmd(cmd, check=True, capture_output=False, **_kwargs):
        return subprocess.CompletedProcess(cmd, 0, stdout="services:\n  app:\n    depends_on: [db]\n", stderr="")

    service = DockerRuntimeService(
        logger=DummyLogger(),
        console=DummyConsole(),
        compose_file="/opt/docker-compose.yml",
        run_cmd=fake_run_cmd,
    )
    service._compose_cmd = ["docker", "compose"]

    assert service.load_compose_config() == {"services": {"app": {"depends_on": ["db"]}}}
