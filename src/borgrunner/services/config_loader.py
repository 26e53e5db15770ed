"""Configuration loader for borgrunner."""

import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from borgrunner.constants import DEFAULT_CONFIG_PATHS
from borgrunner.errors import ConfigurationError
from borgrunner.models import BackupSettings, DatabaseTarget, EngineType

logger = logging.getLogger("borgrunner")


class ConfigLoader:
    """Loads the YAML configuration file and builds validated settings."""

    SUPPORTED_KEYS = {
        "staging_dir",
        "repo_path",
        "backup_dirs",
        "compose_file",
        "secrets_file",
        "lock_file",
        "host_id",
        "retention_days",
        "compression",
        "min_free_space_gb",
        "max_system_load",
        "log_retention_days",
        "service_operation_timeout",
        "service_poll_interval",
        "lock_timeout",
        "max_dependency_iterations",
        "exclude_paths",
        "databases",
        "manage_services",
        "stop_database_services",
        "webhook_url",
        "resource_nice",
    }
    REQUIRED_KEYS = ("staging_dir", "repo_path")
    POSITIVE_INT_KEYS = (
        "retention_days",
        "min_free_space_gb",
        "log_retention_days",
        "service_operation_timeout",
        "max_dependency_iterations",
    )
    POSITIVE_FLOAT_KEYS = ("max_system_load", "service_poll_interval")
    DATABASE_KEYS = {"container", "type", "username", "password_secret"}

    def resolve_path(self, config_path: Optional[str]) -> Optional[str]:
        if config_path:
            return config_path

        for candidate in DEFAULT_CONFIG_PATHS:
            path = Path(candidate)
            if not path.is_absolute():
                path = Path(os.getcwd()) / path
            if path.exists():
                return str(path)
        return None

    def load(self, config_path: Optional[str]) -> Dict[str, Any]:
        if not config_path:
            return {}

        path = Path(config_path)
        if not path.exists():
            raise ConfigurationError(f"Config file not found: {config_path}")

        try:
            parsed = yaml.safe_load(path.read_text(encoding="utf-8"))
        except (yaml.YAMLError, OSError) as exc:
            raise ConfigurationError(f"Invalid config file '{config_path}': {exc}") from exc

        if parsed is None:
            return {}
        if not isinstance(parsed, dict):
            raise ConfigurationError("Config file must contain a YAML mapping at the root.")

        unknown = sorted(set(parsed.keys()) - self.SUPPORTED_KEYS)
        if unknown:
            unknown_list = ", ".join(unknown)
            raise ConfigurationError(f"Unknown configuration keys: {unknown_list}")

        return parsed

    def build_settings(self, values: Dict[str, Any]) -> BackupSettings:
        for key in self.REQUIRED_KEYS:
            if not values.get(key):
                raise ConfigurationError(f"Required configuration key '{key}' must be set.")

        backup_dirs = self._string_list(values, "backup_dirs")
        if not backup_dirs:
            raise ConfigurationError("'backup_dirs' must list at least one directory to back up.")

        options: Dict[str, Any] = {
            "staging_dir": str(values["staging_dir"]),
            "repo_path": str(values["repo_path"]),
            "backup_dirs": tuple(backup_dirs),
            "exclude_paths": tuple(self._string_list(values, "exclude_paths")),
            "databases": tuple(self._database_targets(values.get("databases"))),
        }

        for key in ("compose_file", "secrets_file", "lock_file", "host_id", "compression", "webhook_url"):
            if values.get(key) is not None:
                options[key] = str(values[key])

        for key in self.POSITIVE_INT_KEYS:
            if key in values:
                options[key] = self._positive_number(values[key], key, int)

        for key in self.POSITIVE_FLOAT_KEYS:
            if key in values:
                options[key] = self._positive_number(values[key], key, float)

        if "lock_timeout" in values:
            lock_timeout = self._number(values["lock_timeout"], "lock_timeout", float)
            if lock_timeout < 0:
                raise ConfigurationError("'lock_timeout' must be zero or a positive number of seconds.")
            options["lock_timeout"] = lock_timeout

        for key in ("manage_services", "stop_database_services", "resource_nice"):
            if key in values:
                if not isinstance(values[key], bool):
                    raise ConfigurationError(f"'{key}' must be true or false.")
                options[key] = values[key]

        return BackupSettings(**options)

    def _string_list(self, values: Dict[str, Any], key: str) -> List[str]:
        raw = values.get(key)
        if raw is None:
            return []
        if isinstance(raw, str) or not isinstance(raw, (list, tuple)):
            raise ConfigurationError(f"'{key}' must be a list of paths.")
        if not all(isinstance(item, str) and item.strip() for item in raw):
            raise ConfigurationError(f"'{key}' entries must be non-empty strings.")
        return [item.strip() for item in raw]

    def _database_targets(self, raw) -> List[DatabaseTarget]:
        if raw is None:
            return []
        if not isinstance(raw, list):
            raise ConfigurationError("'databases' must be a list of database entries.")

        targets: Dict[str, DatabaseTarget] = {}
        for index, entry in enumerate(raw):
            if not isinstance(entry, dict):
                raise ConfigurationError(f"Database entry #{index + 1} must be a mapping.")

            unknown = sorted(set(entry.keys()) - self.DATABASE_KEYS)
            if unknown:
                raise ConfigurationError(
                    f"Database entry #{index + 1} has unknown keys: {', '.join(unknown)}"
                )

            container = str(entry.get("container") or "").strip()
            engine_name = str(entry.get("type") or "").strip()
            if not container or not engine_name:
                raise ConfigurationError(
                    f"Database entry #{index + 1} must define 'container' and 'type'."
                )

            try:
                engine = EngineType.parse(engine_name)
            except ValueError as exc:
                supported = ", ".join(engine_type.value for engine_type in EngineType)
                raise ConfigurationError(
                    f"Unknown database type '{engine_name}' for container '{container}'. "
                    f"Supported types: {supported}"
                ) from exc

            username = str(entry.get("username") or "").strip()
            if engine.requires_credential and not username:
                raise ConfigurationError(
                    f"Database '{container}' ({engine.value}) requires a 'username'."
                )

            password_secret = entry.get("password_secret")
            if container in targets:
                logger.warning("Database '%s' already configured, overwriting", container)
            targets[container] = DatabaseTarget(
                container=container,
                engine=engine,
                username=username,
                password_secret=str(password_secret) if password_secret else None,
            )

        return list(targets.values())

    def _positive_number(self, value, key: str, kind):
        number = self._number(value, key, kind)
        if number <= 0:
            raise ConfigurationError(f"'{key}' must be a positive number.")
        return number

    @staticmethod
    def _number(value, key: str, kind):
        if isinstance(value, bool):
            raise ConfigurationError(f"'{key}' must be a number.")
        try:
            number = kind(value)
        except (TypeError, ValueError) as exc:
            raise ConfigurationError(f"'{key}' must be a number.") from exc
        if kind is int and number != value and not isinstance(value, str):
            raise ConfigurationError(f"'{key}' must be an integer.")
        return number
