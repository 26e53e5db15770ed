"""Shared domain models for borgrunner."""

import enum
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple


class EngineType(enum.Enum):
    MYSQL = "mysql"
    MARIADB = "mariadb"
    POSTGRES = "postgres"
    INFLUXDB = "influxdb"

    @classmethod
    def parse(cls, value: str) -> "EngineType":
        clean_value = str(value).strip().lower()
        if clean_value == "postgresql":
            clean_value = "postgres"
        return cls(clean_value)

    @property
    def requires_credential(self) -> bool:
        return self is not EngineType.INFLUXDB


class IntegrityStatus(enum.Enum):
    UNTESTED = "untested"
    VALID = "valid"
    CORRUPT = "corrupt"


@dataclass(frozen=True)
class DatabaseTarget:
    """One configured database container."""

    container: str
    engine: EngineType
    username: str = ""
    password_secret: Optional[str] = None


@dataclass
class DumpArtifact:
    target: DatabaseTarget
    path: str
    size: int = 0
    integrity: IntegrityStatus = IntegrityStatus.UNTESTED


@dataclass(frozen=True)
class ArchiveHandle:
    repo: str
    name: str

    def __str__(self) -> str:
        return f"{self.repo}::{self.name}"


@dataclass(frozen=True)
class BackupSettings:
    """Validated configuration values, immutable for the whole run."""

    staging_dir: str
    repo_path: str
    backup_dirs: Tuple[str, ...]
    compose_file: str = "/opt/docker-compose.yml"
    secrets_file: str = "/root/borg-backup.env"
    lock_file: str = "/var/run/borgrunner.lock"
    host_id: Optional[str] = None
    retention_days: int = 3
    compression: str = "zstd,3"
    min_free_space_gb: int = 1
    max_system_load: float = 5.0
    log_retention_days: int = 7
    service_operation_timeout: int = 30
    service_poll_interval: float = 2.0
    lock_timeout: float = 0.0
    max_dependency_iterations: int = 100
    exclude_paths: Tuple[str, ...] = ()
    databases: Tuple[DatabaseTarget, ...] = ()
    manage_services: bool = False
    stop_database_services: bool = False
    webhook_url: Optional[str] = None
    resource_nice: bool = True


@dataclass(frozen=True)
class RunContext:
    """Identifiers, mode flags and resolved paths for one invocation."""

    host_id: str
    timestamp: str
    archive_name: str
    started_at: float
    staging_dir: str
    repo_path: str
    compose_file: str
    secrets_file: str
    lock_file: str
    log_dir: str
    dry_run: bool = False
    check_only: bool = False
    no_prune: bool = False
    repo_check: bool = False
    check_sqlite: bool = False
    verify_only: bool = False
    debug: bool = False
    verify_archive: Optional[str] = None


@dataclass
class SecretStore:
    """Secrets loaded once from the secrets file."""

    passphrase: str
    credentials: Dict[str, str] = field(default_factory=dict)

    def credential_for(self, container: str) -> Optional[str]:
        return self.credentials.get(container)


@dataclass
class ServiceStopSet:
    """Services stopped by this run, in the order they were stopped."""

    stopped: List[str] = field(default_factory=list)

    def record(self, service: str):
        if service not in self.stopped:
            self.stopped.append(service)

    def discard(self, service: str):
        if service in self.stopped:
            self.stopped.remove(service)

    def restart_order(self) -> List[str]:
        return list(reversed(self.stopped))

    def __bool__(self) -> bool:
        return bool(self.stopped)
