"""Database dump coordination for borgrunner."""

import gzip
import os
import tarfile
import uuid
import zlib
from pathlib import PurePosixPath
from typing import Callable, Dict, List, Optional, Tuple

from borgrunner.constants import DIR_MODE, DUMP_DIR_PREFIX, FILE_MODE
from borgrunner.errors import BackupError, ConfigurationError, DumpError
from borgrunner.models import DatabaseTarget, DumpArtifact, EngineType, IntegrityStatus, SecretStore


class DatabaseService:
    """Produces one logical dump per configured database container.

    Dumps run strictly one after another. A target whose container is not
    running is skipped; any other failure removes the partial output and
    aborts the run, since an inconsistent backup is worse than none.
    """

    READ_CHUNK_SIZE = 1024 * 1024

    def __init__(
        self,
        logger,
        console,
        runtime,
        command_runner,
        path_guard,
        filesystem_service,
        secrets: SecretStore,
        nice_prefix: Optional[List[str]] = None,
        base_env: Optional[Dict[str, str]] = None,
    ):
        self.logger = logger
        self.console = console
        self.runtime = runtime
        self.command_runner = command_runner
        self.path_guard = path_guard
        self.filesystem_service = filesystem_service
        self.secrets = secrets
        self.nice_prefix = list(nice_prefix or [])
        self.base_env = base_env
        self._dumpers: Dict[EngineType, Callable[[DatabaseTarget, str, Optional[str], str], None]] = {
            EngineType.MYSQL: self._dump_mysql,
            EngineType.MARIADB: self._dump_mariadb,
            EngineType.POSTGRES: self._dump_postgres,
            EngineType.INFLUXDB: self._dump_influxdb,
        }
        missing = set(EngineType) - set(self._dumpers)
        if missing:
            raise RuntimeError(f"No dump handler for engine(s): {sorted(e.value for e in missing)}")

    @staticmethod
    def artifact_filename(target: DatabaseTarget) -> str:
        if target.engine is EngineType.INFLUXDB:
            return f"{target.container}_influxdb.tar.gz"
        return f"{target.container}_dump.sql.gz"

    def create_dump_dir(self, staging_dir: str) -> str:
        dump_dir = self.filesystem_service.make_temp_dir(staging_dir, DUMP_DIR_PREFIX)
        return self.path_guard.validate_containment(dump_dir, staging_dir)

    def dump_all(self, targets: List[DatabaseTarget], dump_dir: str) -> Tuple[List[DumpArtifact], bool]:
        self.console.print("[blue]Starting database dumps...[/blue]")
        self.logger.info("Starting database dumps...")

        artifacts: List[DumpArtifact] = []
        for target in targets:
            artifact = self.dump_target(target, dump_dir)
            if artifact is not None:
                artifacts.append(artifact)

        self.logger.info("Database dumps complete (%s produced).", len(artifacts))
        return artifacts, bool(artifacts)

    def dump_target(self, target: DatabaseTarget, dump_dir: str) -> Optional[DumpArtifact]:
        container_id = self.runtime.resolve_container(target.container)
        if not container_id:
            self.logger.warning(
                "Container for '%s' (%s) is not running; skipping its dump.",
                target.container,
                target.engine.value,
            )
            return None

        credential = self.secrets.credential_for(target.container)
        if target.engine.requires_credential and not credential:
            raise ConfigurationError(
                f"No credential available for database '{target.container}' ({target.engine.value}). "
                "Set its password_secret (or the engine default) in the secrets file."
            )

        destination = self.path_guard.validate_containment(
            os.path.join(dump_dir, self.artifact_filename(target)),
            dump_dir,
        )
        os.makedirs(os.path.dirname(destination), mode=DIR_MODE, exist_ok=True)

        self.console.print(f"[blue]Dumping {target.engine.value} '{target.container}'...[/blue]")
        self.logger.info("Dumping %s '%s'...", target.engine.value, target.container)

        try:
            self._dumpers[target.engine](target, container_id, credential, destination)
        except (BackupError, OSError, tarfile.TarError) as exc:
            self.filesystem_service.cleanup_file(destination)
            raise DumpError(
                f"{target.engine.value} dump failed for container '{target.container}': {exc}"
            ) from exc

        size = os.path.getsize(destination)
        self.logger.info("Dump written: %s (%s bytes)", destination, size)
        return DumpArtifact(target=target, path=destination, size=size)

    def verify_integrity(self, artifacts: List[DumpArtifact]):
        if not artifacts:
            return

        self.logger.info("Verifying integrity of database dumps...")
        for artifact in artifacts:
            try:
                with gzip.open(artifact.path, "rb") as stream:
                    while stream.read(self.READ_CHUNK_SIZE):
                        pass
            except (OSError, EOFError, zlib.error) as exc:
                artifact.integrity = IntegrityStatus.CORRUPT
                raise DumpError(f"Dump file {artifact.path} is corrupted: {exc}") from exc
            artifact.integrity = IntegrityStatus.VALID

        self.logger.info("Dump integrity verified.")

    def _env_with(self, name: str, value: Optional[str]) -> Dict[str, str]:
        env = dict(self.base_env if self.base_env is not None else os.environ)
        if value is not None:
            env[name] = value
        return env

    def _stream_gzip(self, cmd: List[str], destination: str, env: Dict[str, str]):
        fd = os.open(destination, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, FILE_MODE)
        with os.fdopen(fd, "wb") as raw_file, gzip.GzipFile(fileobj=raw_file, mode="wb") as gz_file:
            result = self.command_runner.stream(cmd, gz_file, env=env)

        if result.returncode != 0:
            raise BackupError(self.command_runner.describe_failure(cmd, result.returncode, result.stderr))

    def _dump_mysql(self, target: DatabaseTarget, container_id: str, credential, destination: str):
        # MYSQL_PWD without a value makes docker copy it from our child env
        cmd = self.nice_prefix + [
            "docker",
            "exec",
            "-e",
            "MYSQL_PWD",
            container_id,
            "mysqldump",
            f"--user={target.username}",
            "--single-transaction",
            "--quick",
            "--all-databases",
        ]
        self._stream_gzip(cmd, destination, self._env_with("MYSQL_PWD", credential))

    def _dump_mariadb(self, target: DatabaseTarget, container_id: str, credential, destination: str):
        # recent MariaDB images only ship mariadb-dump
        script = (
            'if command -v mariadb-dump >/dev/null 2>&1; then exec mariadb-dump "$@"; '
            'else exec mysqldump "$@"; fi'
        )
        cmd = self.nice_prefix + [
            "docker",
            "exec",
            "-e",
            "MYSQL_PWD",
            container_id,
            "sh",
            "-c",
            script,
            "sh",
            f"--user={target.username}",
            "--single-transaction",
            "--quick",
            "--all-databases",
        ]
        self._stream_gzip(cmd, destination, self._env_with("MYSQL_PWD", credential))

    def _dump_postgres(self, target: DatabaseTarget, container_id: str, credential, destination: str):
        cmd = self.nice_prefix + [
            "docker",
            "exec",
            "-e",
            "PGPASSWORD",
            container_id,
            "pg_dumpall",
            "-U",
            target.username,
        ]
        self._stream_gzip(cmd, destination, self._env_with("PGPASSWORD", credential))

    def _dump_influxdb(self, target: DatabaseTarget, container_id: str, _credential, destination: str):
        container_tmp = str(PurePosixPath("/", "tmp", f"borgrunner_influx_{uuid.uuid4().hex[:10]}"))
        host_tmp = self.filesystem_service.make_temp_dir(
            os.path.dirname(os.path.dirname(destination)),
            "tmp_influx_",
        )
        host_backup = os.path.join(host_tmp, "backup")

        try:
            self.command_runner.run(
                self.nice_prefix
                + ["docker", "exec", container_id, "influxd", "backup", "-portable", container_tmp],
                check=True,
                capture_output=True,
            )
            self.command_runner.run(
                ["docker", "cp", f"{container_id}:{container_tmp}", host_backup],
                check=True,
                capture_output=True,
            )
            fd = os.open(destination, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, FILE_MODE)
            with os.fdopen(fd, "wb") as raw_file, tarfile.open(fileobj=raw_file, mode="w:gz") as tar:
                tar.add(host_backup, arcname=f"{target.container}_influxdb")
        finally:
            result = self.command_runner.run(
                ["docker", "exec", container_id, "rm", "-rf", container_tmp],
                check=False,
                capture_output=True,
            )
            if result.returncode != 0:
                self.logger.warning(
                    "Could not remove %s inside container '%s'.", container_tmp, target.container
                )
            self.filesystem_service.cleanup_dir(host_tmp)
