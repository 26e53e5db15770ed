import functools
import json
import os
import shutil
import signal
import subprocess
from collections import namedtuple

import pytest
import requests
import yaml

import borgrunner.core as core_module
from borgrunner.constants import BASELINE_EXCLUDES
from borgrunner.core import BackupRunner
from borgrunner.errors import ConfigurationError
from borgrunner.models import BackupSettings, DatabaseTarget, EngineType
from borgrunner.services.passphrase import PassphraseBroker
from borgrunner.services.path_guard import PathGuard

DiskUsage = namedtuple("DiskUsage", "total used free")


class FakeRequests:
    RequestException = requests.RequestException

    def __init__(self):
        self.posts = []

    def post(self, url, json=None, timeout=None):
        self.posts.append(json["content"])

        class Response:
            def raise_for_status(self):
                return None

        return Response()


class FakeHost:
    """Answers the borg and docker commands issued during a run."""

    def __init__(self, runner, compose_config=None, create_returncode=0):
        self.runner = runner
        self.compose_file = runner.run_context.compose_file
        self.compose_config = compose_config or {"services": {}}
        self.create_returncode = create_returncode
        self.archives = []
        self.states = {name: "running" for name in self.compose_config["services"]}
        self.commands = []
        self.streamed = []

    def _result(self, cmd, returncode=0, stdout="", stderr=""):
        return subprocess.CompletedProcess(cmd, returncode, stdout=stdout, stderr=stderr)

    def run(self, cmd, check=True, capture_output=False, **kwargs):
        self.commands.append(list(cmd))
        if cmd == ["borg", "--version"]:
            return self._result(cmd, stdout="borg 1.2.7")
        if cmd == ["docker", "--version"]:
            return self._result(cmd, stdout="Docker version 24.0.5, build ced0996")
        if cmd[:4] == ["docker", "compose", "-f", self.compose_file]:
            return self._compose(cmd, cmd[4:])
        if cmd[0] == "borg":
            return self._borg(cmd, cmd[1:], kwargs)
        raise AssertionError(f"unexpected command: {cmd}")

    def stream(self, cmd, sink, env=None):
        if cmd[0] == "borg":
            self.commands.append(list(cmd))
            assert "BORG_PASSCOMMAND" in env
            sink.write(b"restored bytes")
            return self._result(cmd, stdout=None)
        self.streamed.append((cmd, env))
        sink.write(b"-- MariaDB dump\nCREATE DATABASE app;\n" * 200)
        return self._result(cmd, stdout=None)

    def _compose(self, cmd, args):
        if args[:2] == ["config", "--quiet"]:
            return self._result(cmd)
        if args == ["config"]:
            return self._result(cmd, stdout=yaml.safe_dump(self.compose_config))
        if args[:2] == ["ps", "-q"]:
            return self._result(cmd, stdout="cid-" + args[2] + "\n")
        if args[:2] == ["ps", "-a"]:
            return self._result(cmd, stdout=self.states.get(args[2], "") + "\n")
        if args[:2] == ["ps", "--services"]:
            running = [name for name, state in self.states.items() if state == "running"]
            return self._result(cmd, stdout="\n".join(running))
        if args[0] == "stop":
            self.states[args[1]] = "exited"
            return self._result(cmd)
        if args[0] == "start":
            self.states[args[1]] = "running"
            return self._result(cmd)
        raise AssertionError(f"unexpected compose command: {cmd}")

    def _borg(self, cmd, args, kwargs):
        assert "BORG_PASSCOMMAND" in kwargs["env"]
        assert "BORG_PASSPHRASE" not in kwargs["env"]
        action = args[0]
        if action == "list" and args[1] == "--short":
            return self._result(cmd, stdout="\n".join(self.archives))
        if action == "init":
            os.makedirs(args[-1], exist_ok=True)
            return self._result(cmd)
        if action == "create":
            if self.create_returncode == 0 and "--dry-run" not in args:
                self.archives.append(self.runner.run_context.archive_name)
            return self._result(cmd, returncode=self.create_returncode, stderr="" if not self.create_returncode else "Failed")
        if action == "prune":
            return self._result(cmd)
        if action == "list" and args[1] == "--format":
            return self._result(cmd, stdout=self._listing())
        if action == "extract":
            destination = os.path.join(kwargs["cwd"], args[-1])
            os.makedirs(os.path.dirname(destination), exist_ok=True)
            shutil.copyfile(self.runner.dump_package, destination)
            return self._result(cmd)
        if action == "info":
            stats = {"original_size": 4096, "compressed_size": 1024}
            return self._result(cmd, stdout=json.dumps({"archives": [{"stats": stats}]}))
        raise AssertionError(f"unexpected borg command: {cmd}")

    def _listing(self):
        entries = ["d\tdata", "-\tdata/app.conf"]
        if self.runner.dump_package:
            entries.append("-\t" + self.runner.dump_package.lstrip("/"))
        return "".join(entry + "\x00" for entry in entries)

    def borg_actions(self):
        return [command[1] for command in self.commands if command[0] == "borg" and command[1] != "--version"]


@pytest.fixture
def host_paths(tmp_path, monkeypatch):
    shm = tmp_path / "shm"
    shm.mkdir()
    monkeypatch.setattr(
        core_module,
        "PassphraseBroker",
        functools.partial(PassphraseBroker, trusted_temp_dirs=(str(tmp_path),)),
    )
    # pytest keeps tmp_path under the system temp dir, which is excluded from archives
    monkeypatch.setattr(
        core_module,
        "BASELINE_EXCLUDES",
        [pattern for pattern in BASELINE_EXCLUDES if not PathGuard().covering_exclude(str(tmp_path), [pattern])],
    )

    secrets = tmp_path / "borg-backup.env"
    secrets.write_text("BORG_PASSPHRASE=correct horse\nMYSQL_ROOT_PASSWORD=rootpw\n", encoding="utf-8")
    os.chmod(secrets, 0o600)

    compose = tmp_path / "docker-compose.yml"
    compose.write_text("services: {}\n", encoding="utf-8")

    return {
        "root": tmp_path,
        "shm": shm,
        "staging": tmp_path / "staging",
        "repo": tmp_path / "repo",
        "secrets": secrets,
        "compose": compose,
        "lock": tmp_path / "run" / "borgrunner.lock",
    }


def _settings(paths, **overrides):
    values = dict(
        staging_dir=str(paths["staging"]),
        repo_path=str(paths["repo"]),
        backup_dirs=("/data",),
        compose_file=str(paths["compose"]),
        secrets_file=str(paths["secrets"]),
        lock_file=str(paths["lock"]),
        host_id="testhost",
        service_poll_interval=0.01,
        resource_nice=False,
    )
    values.update(overrides)
    return BackupSettings(**values)


def _runner(paths, settings, fake_requests=None, **flags):
    runner = BackupRunner(
        settings,
        secrets_owner_uid=os.getuid(),
        requests_module=fake_requests or FakeRequests(),
        passphrase_temp_dir=str(paths["shm"]),
        **flags,
    )
    runner.preflight_service.which = lambda name: f"/usr/bin/{name}"
    runner.preflight_service.disk_usage = lambda _path: DiskUsage(0, 0, 500 * 1024 ** 3)
    runner.preflight_service.load_average = lambda: (0.1, 0.1, 0.1)
    runner.docker_runtime_service._compose_cmd = ["docker", "compose"]
    return runner


def _install(monkeypatch, runner, host):
    monkeypatch.setattr(runner.command_runner, "run", host.run)
    monkeypatch.setattr(runner.command_runner, "stream", host.stream)


def test_dry_run_without_databases(host_paths, monkeypatch):
    runner = _runner(host_paths, _settings(host_paths), dry_run=True)
    host = FakeHost(runner)
    _install(monkeypatch, runner, host)

    assert runner.run() == 0

    create = next(command for command in host.commands if command[:2] == ["borg", "create"])
    assert "--dry-run" in create
    assert "prune" not in host.borg_actions()
    assert not [name for name in os.listdir(host_paths["staging"]) if name.startswith("tmp_dumps_")]
    assert os.listdir(host_paths["shm"]) == []
    assert not host_paths["lock"].exists()


def test_backup_with_mariadb_dump_is_archived_and_verified(host_paths, monkeypatch):
    host_paths["repo"].mkdir()
    settings = _settings(
        host_paths,
        databases=(DatabaseTarget("mariadb", EngineType.MARIADB, username="root"),),
    )
    runner = _runner(host_paths, settings)
    host = FakeHost(runner)
    _install(monkeypatch, runner, host)

    assert runner.run() == 0

    assert len(runner.artifacts) == 1
    stream_cmd, stream_env = host.streamed[0]
    assert "rootpw" not in " ".join(stream_cmd)
    assert stream_env["MYSQL_PWD"] == "rootpw"

    timestamp = runner.run_context.timestamp
    package = str(host_paths["staging"] / f"db_dumps_{timestamp}.tar.gz")
    create = next(command for command in host.commands if command[:2] == ["borg", "create"])
    assert create[-1] == package
    assert f"{host_paths['repo']}::testhost-{timestamp}" in create

    extracts = [command for command in host.commands if command[:2] == ["borg", "extract"] and "--stdout" not in command]
    assert extracts[0][-1] == package.lstrip("/")

    assert "prune" in host.borg_actions()
    assert not os.path.exists(package)
    assert not [name for name in os.listdir(host_paths["staging"]) if name.startswith("tmp_")]
    assert (host_paths["staging"] / "logs" / f"metrics_{timestamp}.json").exists()
    assert (host_paths["staging"] / "logs" / f"bootstrap_{timestamp}.log").exists()
    assert os.listdir(host_paths["shm"]) == []
    assert not host_paths["lock"].exists()


def test_group_readable_secrets_abort_before_lock(host_paths, monkeypatch):
    os.chmod(host_paths["secrets"], 0o640)
    settings = _settings(
        host_paths,
        databases=(DatabaseTarget("mariadb", EngineType.MARIADB, username="root"),),
    )
    runner = _runner(host_paths, settings)
    host = FakeHost(runner)
    _install(monkeypatch, runner, host)

    assert runner.run() == 1

    assert not host_paths["lock"].exists()
    assert not host_paths["lock"].parent.exists()
    assert host.commands == []
    assert host.streamed == []


def test_create_failure_restarts_services_and_notifies_once(host_paths, monkeypatch):
    host_paths["repo"].mkdir()
    compose_config = {"services": {"mariadb": {}, "app": {"depends_on": ["mariadb"]}}}
    fake_requests = FakeRequests()
    settings = _settings(
        host_paths,
        databases=(DatabaseTarget("mariadb", EngineType.MARIADB, username="root"),),
        manage_services=True,
        webhook_url="https://hooks.example.com/backup",
    )
    runner = _runner(host_paths, settings, fake_requests=fake_requests)
    host = FakeHost(runner, compose_config=compose_config, create_returncode=2)
    _install(monkeypatch, runner, host)

    assert runner.run() == 1

    compose_actions = [command[4:6] for command in host.commands if command[:2] == ["docker", "compose"]]
    assert ["stop", "app"] in compose_actions
    assert ["start", "app"] in compose_actions
    assert host.states["app"] == "running"
    assert len(fake_requests.posts) == 1
    assert "Backup failed" in fake_requests.posts[0]
    assert not host_paths["lock"].exists()
    assert os.listdir(host_paths["shm"]) == []
    assert not [name for name in os.listdir(host_paths["staging"]) if name.startswith(("tmp_", "db_dumps_"))]


def test_check_only_stops_after_pre_flight(host_paths, monkeypatch):
    runner = _runner(host_paths, _settings(host_paths), check_only=True)
    host = FakeHost(runner)
    _install(monkeypatch, runner, host)

    assert runner.run() == 0
    assert "create" not in host.borg_actions()


def test_missing_passphrase_is_configuration_failure(host_paths, monkeypatch):
    host_paths["secrets"].write_text("MYSQL_ROOT_PASSWORD=rootpw\n", encoding="utf-8")
    runner = _runner(host_paths, _settings(host_paths))
    host = FakeHost(runner)
    _install(monkeypatch, runner, host)

    assert runner.run() == 1
    assert host.commands == []


def test_verify_only_checks_latest_archive(host_paths, monkeypatch):
    host_paths["repo"].mkdir()
    runner = _runner(host_paths, _settings(host_paths), verify_only=True)
    host = FakeHost(runner)
    host.archives = ["testhost-2024-05-01_02-00-00"]
    _install(monkeypatch, runner, host)

    assert runner.run() == 0
    assert "create" not in host.borg_actions()
    assert "extract" in host.borg_actions()


def test_verify_only_fails_on_empty_repository(host_paths, monkeypatch):
    host_paths["repo"].mkdir()
    runner = _runner(host_paths, _settings(host_paths), verify_only=True)
    _install(monkeypatch, runner, FakeHost(runner))

    assert runner.run() == 1


def test_lock_contention_fails_without_touching_existing_lock(host_paths, monkeypatch):
    from borgrunner.services.lock import ExecutionLock

    holder = ExecutionLock(str(host_paths["lock"]), logger=core_module.logger)
    holder.acquire()
    try:
        runner = _runner(host_paths, _settings(host_paths))
        host = FakeHost(runner)
        _install(monkeypatch, runner, host)

        assert runner.run() == 1
        assert host_paths["lock"].exists()
        assert host.commands == []
    finally:
        holder.release()


def test_corrupted_dump_aborts_before_any_archive_is_created(host_paths, monkeypatch):
    host_paths["repo"].mkdir()
    fake_requests = FakeRequests()
    settings = _settings(
        host_paths,
        databases=(DatabaseTarget("mariadb", EngineType.MARIADB, username="root"),),
        webhook_url="https://hooks.example.com/backup",
    )
    runner = _runner(host_paths, settings, fake_requests=fake_requests)
    host = FakeHost(runner)
    _install(monkeypatch, runner, host)

    dump_step = runner.run_database_dumps

    def dump_then_truncate():
        dump_step()
        path = runner.artifacts[0].path
        with open(path, "rb") as file_obj:
            data = file_obj.read()
        with open(path, "wb") as file_obj:
            file_obj.write(data[: len(data) // 2])

    monkeypatch.setattr(runner, "run_database_dumps", dump_then_truncate)

    assert runner.run() == 1

    assert host.streamed
    assert not {"init", "create", "prune", "extract"} & set(host.borg_actions())
    assert len(fake_requests.posts) == 1
    assert "corrupted" in fake_requests.posts[0]
    assert not [name for name in os.listdir(host_paths["staging"]) if name.startswith(("tmp_", "db_dumps_"))]
    assert not host_paths["lock"].exists()


def test_sigterm_during_dumps_fails_run_and_restarts_services(host_paths, monkeypatch):
    host_paths["repo"].mkdir()
    compose_config = {"services": {"mariadb": {}, "app": {"depends_on": ["mariadb"]}}}
    fake_requests = FakeRequests()
    settings = _settings(
        host_paths,
        databases=(DatabaseTarget("mariadb", EngineType.MARIADB, username="root"),),
        manage_services=True,
        webhook_url="https://hooks.example.com/backup",
    )
    runner = _runner(host_paths, settings, fake_requests=fake_requests)
    host = FakeHost(runner, compose_config=compose_config)
    _install(monkeypatch, runner, host)

    def dump_interrupted():
        os.kill(os.getpid(), signal.SIGTERM)
        raise AssertionError("SIGTERM was not turned into an interruption")

    monkeypatch.setattr(runner, "run_database_dumps", dump_interrupted)
    previous_handler = signal.getsignal(signal.SIGTERM)

    assert runner.run() == 1

    assert "create" not in host.borg_actions()
    assert host.states["app"] == "running"
    assert len(fake_requests.posts) == 1
    assert "Interrupted" in fake_requests.posts[0]
    assert signal.getsignal(signal.SIGTERM) == previous_handler
    assert not host_paths["lock"].exists()
    assert os.listdir(host_paths["shm"]) == []


def test_staging_under_excluded_path_is_rejected_before_lock(host_paths, monkeypatch):
    settings = _settings(host_paths, exclude_paths=(str(host_paths["root"]),))
    runner = _runner(host_paths, settings)
    host = FakeHost(runner)
    _install(monkeypatch, runner, host)

    with pytest.raises(ConfigurationError, match="lies under the backup exclude"):
        runner.validate_configuration()

    assert runner.run() == 1
    assert host.commands == []
    assert not host_paths["lock"].parent.exists()
