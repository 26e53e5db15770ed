import logging
import os
import signal
import socket
import subprocess
import time
from datetime import datetime
from typing import Callable, Dict, List, Optional

import requests
from dotenv import dotenv_values
from rich.console import Console

from .constants import BASELINE_EXCLUDES, FILE_MODE, RESOURCE_NICE_CMD, TIMESTAMP_FORMAT
from .errors import BackupError, ConfigurationError
from .models import (
    ArchiveHandle,
    BackupSettings,
    DumpArtifact,
    EngineType,
    RunContext,
    SecretStore,
    ServiceStopSet,
)
from .services.borg import BorgService
from .services.command_runner import CommandRunner
from .services.database import DatabaseService
from .services.docker_runtime import DockerRuntimeService, ServiceLifecycleManager
from .services.filesystem import FileSystemService
from .services.lock import ExecutionLock
from .services.metrics import MetricsService
from .services.notification import NotificationService
from .services.passphrase import PassphraseBroker
from .services.path_guard import PathGuard
from .services.preflight import PreflightService
from .services.progress import ProgressIndicator
from .services.verifier import ArchiveVerifier

console = Console()
logger = logging.getLogger("borgrunner")

DEFAULT_CREDENTIAL_KEYS = {
    EngineType.MYSQL: "MYSQL_ROOT_PASSWORD",
    EngineType.MARIADB: "MYSQL_ROOT_PASSWORD",
    EngineType.POSTGRES: "POSTGRES_PASSWORD",
}


class BackupRunner:
    """Runs one backup invocation from lock acquisition to lock release."""

    def __init__(
        self,
        settings: BackupSettings,
        dry_run: bool = False,
        check_only: bool = False,
        no_prune: bool = False,
        repo_check: bool = False,
        check_sqlite: bool = False,
        verify_only: bool = False,
        archive: Optional[str] = None,
        debug: bool = False,
        secrets_owner_uid: int = 0,
        requests_module=requests,
        passphrase_temp_dir: Optional[str] = None,
    ):
        self.settings = settings
        self.run_context = self._build_run_context(
            dry_run=dry_run,
            check_only=check_only,
            no_prune=no_prune,
            repo_check=repo_check,
            check_sqlite=check_sqlite,
            verify_only=verify_only,
            verify_archive=archive,
            debug=debug,
        )
        self.passphrase_temp_dir = passphrase_temp_dir

        self.secrets: Optional[SecretStore] = None
        self.current_step_name: Optional[str] = None
        self.dump_dir: Optional[str] = None
        self.dump_package: Optional[str] = None
        self.artifacts: List[DumpArtifact] = []
        self.dumps_created = False
        self.archive_handle: Optional[ArchiveHandle] = None
        self.stop_set = ServiceStopSet()
        self._log_handler: Optional[logging.Handler] = None
        self._previous_signal_handlers: Dict[int, object] = {}

        self.nice_prefix = list(RESOURCE_NICE_CMD) if settings.resource_nice else []
        self.filesystem_service = FileSystemService(logger=logger, console=console)
        self.path_guard = PathGuard(secrets_owner_uid=secrets_owner_uid)
        self.command_runner = CommandRunner(logger=logger)
        self.lock = ExecutionLock(self.run_context.lock_file, logger=logger, timeout=settings.lock_timeout)
        self.progress = ProgressIndicator(console)
        self.notification_service = NotificationService(
            settings.webhook_url,
            logger=logger,
            requests_module=requests_module,
        )
        self.preflight_service = PreflightService(logger=logger, console=console, run_cmd=self._run_cmd)
        self.docker_runtime_service = DockerRuntimeService(
            logger=logger,
            console=console,
            compose_file=self.run_context.compose_file,
            run_cmd=self._run_cmd,
            subprocess_module=subprocess,
        )
        self.service_manager = ServiceLifecycleManager(
            self.docker_runtime_service,
            logger=logger,
            console=console,
            stop_set=self.stop_set,
            operation_timeout=settings.service_operation_timeout,
            poll_interval=settings.service_poll_interval,
            max_iterations=settings.max_dependency_iterations,
        )
        self.metrics_service = MetricsService(
            self.run_context.log_dir,
            logger=logger,
            filesystem_service=self.filesystem_service,
        )

        # need the passphrase, built by load_secrets()
        self.passphrase_broker: Optional[PassphraseBroker] = None
        self.borg_service: Optional[BorgService] = None
        self.database_service: Optional[DatabaseService] = None
        self.verifier: Optional[ArchiveVerifier] = None

    def _build_run_context(self, **flags) -> RunContext:
        host_id = self.settings.host_id or socket.getfqdn() or socket.gethostname()
        timestamp = datetime.now().strftime(TIMESTAMP_FORMAT)
        return RunContext(
            host_id=host_id,
            timestamp=timestamp,
            archive_name=f"{host_id}-{timestamp}",
            started_at=time.time(),
            staging_dir=self.settings.staging_dir,
            repo_path=self.settings.repo_path,
            compose_file=self.settings.compose_file,
            secrets_file=self.settings.secrets_file,
            lock_file=self.settings.lock_file,
            log_dir=os.path.join(self.settings.staging_dir, "logs"),
            **flags,
        )

    def _run_cmd(self, cmd: List[str], check: bool = True, capture_output: bool = False, **kwargs):
        return self.command_runner.run(cmd, check=check, capture_output=capture_output, **kwargs)

    def _run_step(self, name: str, callback: Callable, *args, **kwargs):
        self.current_step_name = name
        logger.debug("Step started: %s", name)
        started = time.monotonic()
        result = callback(*args, **kwargs)
        logger.debug("Step finished: %s (%.1fs)", name, time.monotonic() - started)
        self.current_step_name = None
        return result

    def validate_configuration(self):
        """Static checks that must pass before the lock is touched."""
        console.print("[blue]Validating configuration...[/blue]")
        logger.info("Validating configuration...")
        ctx = self.run_context

        for key in ("staging_dir", "repo_path", "compose_file", "secrets_file", "lock_file"):
            self.path_guard.validate_path(getattr(ctx, key), must_be_absolute=True, key=key)
        for path in self.settings.backup_dirs:
            self.path_guard.validate_path(path, must_be_absolute=True, key="backup_dirs")
        for path in self.settings.exclude_paths:
            self.path_guard.validate_path(path, must_be_absolute=True, key="exclude_paths")

        excluded_by = self.path_guard.covering_exclude(
            ctx.staging_dir,
            list(BASELINE_EXCLUDES) + list(self.settings.exclude_paths),
        )
        if excluded_by:
            raise ConfigurationError(
                f"STAGING_DIR ({ctx.staging_dir}) lies under the backup exclude {excluded_by}; "
                "the database dump package would be left out of the archive."
            )

        if self.settings.manage_services and not os.path.exists(ctx.compose_file):
            raise ConfigurationError(f"Docker Compose file does not exist: {ctx.compose_file}")

        self.path_guard.validate_secrets_file(ctx.secrets_file)

        try:
            self.filesystem_service.ensure_dir(ctx.staging_dir)
        except OSError as exc:
            raise ConfigurationError(f"STAGING_DIR ({ctx.staging_dir}) cannot be created: {exc}") from exc
        if not os.access(ctx.staging_dir, os.W_OK):
            raise ConfigurationError(f"STAGING_DIR ({ctx.staging_dir}) is not writable by the running user")

        self.load_secrets()

    def _uses_compose(self) -> bool:
        return bool(self.settings.databases) or self.settings.manage_services

    def load_secrets(self):
        values = dotenv_values(self.run_context.secrets_file)
        passphrase = values.get("BORG_PASSPHRASE")
        if not passphrase:
            raise ConfigurationError(f"BORG_PASSPHRASE must be set in {self.run_context.secrets_file}")

        credentials: Dict[str, str] = {}
        for target in self.settings.databases:
            key = target.password_secret or DEFAULT_CREDENTIAL_KEYS.get(target.engine)
            if key and values.get(key):
                credentials[target.container] = str(values[key])
            elif target.password_secret:
                logger.warning(
                    "Secret '%s' for database '%s' is not set in the secrets file.",
                    target.password_secret,
                    target.container,
                )

        self.secrets = SecretStore(passphrase=str(passphrase), credentials=credentials)
        self._build_secret_services()

    def _build_secret_services(self):
        self.passphrase_broker = PassphraseBroker(
            self.secrets.passphrase,
            logger=logger,
            temp_dir=self.passphrase_temp_dir,
        )
        self.borg_service = BorgService(
            logger=logger,
            console=console,
            command_runner=self.command_runner,
            passphrase_broker=self.passphrase_broker,
            filesystem_service=self.filesystem_service,
            repo_path=self.run_context.repo_path,
            nice_prefix=self.nice_prefix,
        )
        self.database_service = DatabaseService(
            logger=logger,
            console=console,
            runtime=self.docker_runtime_service,
            command_runner=self.command_runner,
            path_guard=self.path_guard,
            filesystem_service=self.filesystem_service,
            secrets=self.secrets,
            nice_prefix=self.nice_prefix,
        )
        self.verifier = ArchiveVerifier(
            logger=logger,
            console=console,
            borg_service=self.borg_service,
            path_guard=self.path_guard,
            filesystem_service=self.filesystem_service,
            staging_dir=self.run_context.staging_dir,
            backup_dirs=self.settings.backup_dirs,
        )

    def attach_log_file(self):
        log_dir = self.run_context.log_dir
        self.filesystem_service.ensure_dir(log_dir)
        log_file = os.path.join(log_dir, f"bootstrap_{self.run_context.timestamp}.log")
        handler = logging.FileHandler(log_file)
        handler.setLevel(logging.DEBUG if self.run_context.debug else logging.INFO)
        handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(message)s"))
        logger.addHandler(handler)
        self.filesystem_service.set_permissions(log_file, FILE_MODE)
        self._log_handler = handler

    def detach_log_file(self):
        handler, self._log_handler = self._log_handler, None
        if handler is not None:
            logger.removeHandler(handler)
            handler.close()

    def perform_pre_flight_checks(self):
        ctx = self.run_context
        self.preflight_service.check_dependencies()
        if self._uses_compose():
            if os.path.exists(ctx.compose_file):
                self.docker_runtime_service.validate_compose_file()
            else:
                logger.warning(
                    "Docker Compose file not found at %s. Database dumps will be skipped.",
                    ctx.compose_file,
                )
        self.preflight_service.check_system_health(
            self.settings.max_system_load,
            [ctx.repo_path, ctx.staging_dir],
            self.settings.min_free_space_gb,
        )
        self.borg_service.break_stale_lock()
        if self.borg_service.repository_exists():
            self.borg_service.probe_repository()

    def run_repository_check(self):
        logger.info("Performing a full check of the Borg repository...")
        self.progress.start("Verifying repository integrity with --verify-data")
        try:
            self.borg_service.check_repository(verify_data=True)
        finally:
            self.progress.stop()

    def stop_dependent_services(self):
        if not self.settings.manage_services:
            logger.info("Zero-downtime mode: no services to stop.")
            return
        db_services = [target.container for target in self.settings.databases]
        dependents = self.service_manager.discover_dependents(db_services)
        self.service_manager.stop(dependents)

    def stop_database_services(self):
        if not (self.settings.manage_services and self.settings.stop_database_services):
            return
        self.service_manager.stop([target.container for target in self.settings.databases])

    def restart_services(self):
        if not self.stop_set:
            return
        self.service_manager.start()

    def run_database_dumps(self):
        if not self.settings.databases:
            logger.info("No databases configured; skipping dumps.")
            return
        self.dump_dir = self.database_service.create_dump_dir(self.run_context.staging_dir)
        self.artifacts, self.dumps_created = self.database_service.dump_all(
            list(self.settings.databases),
            self.dump_dir,
        )

    def verify_dump_integrity(self):
        self.database_service.verify_integrity(self.artifacts)

    def run_borg_backup(self):
        ctx = self.run_context
        console.print("[blue]Starting Borg backup...[/blue]")
        logger.info("Starting Borg backup...")

        self.borg_service.ensure_repository(dry_run=ctx.dry_run)
        excludes = self.borg_service.build_excludes(self.settings.exclude_paths)

        if self.dumps_created and self.dump_dir and os.path.isdir(self.dump_dir):
            self.dump_package = self.borg_service.package_dumps(
                self.dump_dir,
                ctx.staging_dir,
                ctx.timestamp,
            )

        self.progress.start("Creating backup archive")
        try:
            handle = self.borg_service.create_archive(
                ctx.archive_name,
                self.settings.backup_dirs,
                excludes,
                self.settings.compression,
                dump_package=self.dump_package,
                dry_run=ctx.dry_run,
            )
        finally:
            self.progress.stop()
        if not ctx.dry_run:
            self.archive_handle = handle

        if ctx.no_prune:
            logger.info("Pruning disabled (--no-prune).")
            return
        if ctx.dry_run:
            self.borg_service.prune(self.settings.retention_days, dry_run=True)
            return

        self.progress.start("Pruning old archives")
        try:
            self.borg_service.prune(self.settings.retention_days)
        finally:
            self.progress.stop()

    def verify_archive_integrity(self):
        if self.run_context.dry_run or self.archive_handle is None:
            return
        self.verifier.verify(
            self.archive_handle,
            dumps_expected=self.dumps_created,
            timestamp=self.run_context.timestamp,
        )

    def check_backed_up_sqlite_integrity(self):
        if self.run_context.dry_run or self.archive_handle is None:
            return
        self.verifier.check_sqlite_databases(self.archive_handle)

    def verify_existing_archive(self):
        ctx = self.run_context
        name = ctx.verify_archive or self.borg_service.latest_archive()
        if not name:
            raise BackupError(f"No archives found in repository {ctx.repo_path}.")

        handle = ArchiveHandle(repo=ctx.repo_path, name=name)
        logger.info("Verify-only mode: checking archive %s", handle)
        self.verifier.verify(handle, dumps_expected=False, timestamp=None)
        if ctx.check_sqlite:
            self.verifier.check_sqlite_databases(handle)

    def collect_metrics(self):
        if self.run_context.dry_run or self.archive_handle is None:
            return
        info = self.borg_service.archive_info(self.archive_handle)
        try:
            self.metrics_service.collect(
                self.run_context.timestamp,
                self.run_context.archive_name,
                info,
                self.run_context.started_at,
            )
        except OSError as exc:
            raise BackupError(f"Failed to write metrics file: {exc}") from exc

    def cleanup_artifacts(self):
        if self.dump_package:
            self.filesystem_service.cleanup_file(self.dump_package)
            self.dump_package = None
        if self.dump_dir:
            logger.info("Cleaning up temporary dump directory...")
            self.filesystem_service.cleanup_dir(self.dump_dir)
            self.dump_dir = None

    def recover_services(self):
        """Compensating step for a failed run: bring back what this run stopped."""
        if not self.stop_set:
            return
        if self.service_manager.recover():
            logger.info("Recovery: services stopped by this run are running again.")
        else:
            logger.error("Recovery: some services could not be restarted. Manual action required.")

    def _install_signal_handlers(self):
        def _terminate(signum, _frame):
            raise KeyboardInterrupt(f"Received signal {signum}")

        for signum in (signal.SIGTERM, signal.SIGHUP):
            try:
                self._previous_signal_handlers[signum] = signal.signal(signum, _terminate)
            except ValueError:
                # not in the main thread
                pass

    def _restore_signal_handlers(self):
        for signum, handler in self._previous_signal_handlers.items():
            signal.signal(signum, handler)
        self._previous_signal_handlers = {}

    def _handle_failure(self, message: str):
        self.progress.stop()
        step = f" (step: {self.current_step_name})" if self.current_step_name else ""
        console.print(f"[bold red]FATAL ERROR:[/bold red] {message}")
        logger.error("FATAL ERROR: %s%s", message, step)
        self.notification_service.send(
            "failure",
            f"Backup failed on {self.run_context.host_id}: {message}",
        )
        if self.archive_handle is not None:
            logger.warning(
                "The backup for archive '%s' may be incomplete due to the error.",
                self.archive_handle.name,
            )
            logger.warning(
                "It will NOT be deleted automatically. Manual inspection of the repository is recommended."
            )
        self.recover_services()

    def run(self) -> int:
        exit_code = 1
        ctx = self.run_context
        previous_umask = os.umask(0o077)
        self._install_signal_handlers()

        try:
            logger.info("--- Starting Borg Backup ---")
            if ctx.dry_run:
                logger.info("--- DRY RUN MODE ENABLED ---")

            self._run_step("validate_configuration", self.validate_configuration)
            self.attach_log_file()
            self._run_step("acquire_lock", self.lock.acquire)
            self._run_step("pre_flight_checks", self.perform_pre_flight_checks)

            if ctx.check_only:
                logger.info("--- Pre-flight checks completed successfully ---")
                exit_code = 0
                return exit_code

            if ctx.verify_only:
                self._run_step("verify_existing_archive", self.verify_existing_archive)
                logger.info("--- Archive verification completed successfully ---")
                exit_code = 0
                return exit_code

            if ctx.repo_check:
                self._run_step("repository_check", self.run_repository_check)

            if not ctx.dry_run:
                self._run_step("stop_dependent_services", self.stop_dependent_services)
                self._run_step("database_dumps", self.run_database_dumps)
                self._run_step("verify_dump_integrity", self.verify_dump_integrity)
                self._run_step("stop_database_services", self.stop_database_services)

            self._run_step("borg_backup", self.run_borg_backup)
            self._run_step("verify_archive_integrity", self.verify_archive_integrity)

            if ctx.check_sqlite:
                self._run_step("check_sqlite", self.check_backed_up_sqlite_integrity)

            self._run_step("restart_services", self.restart_services)
            self._run_step("collect_metrics", self.collect_metrics)
            self.metrics_service.print_summary(ctx.archive_name, self.dumps_created, self.settings.retention_days)
            self.metrics_service.rotate_logs(self.settings.log_retention_days)

            console.print("[bold green]Backup completed successfully.[/bold green]")
            logger.info("--- Backup Completed Successfully ---")
            self.notification_service.send(
                "success",
                f"Backup completed successfully on {ctx.host_id}. Archive: {ctx.archive_name}",
            )
            exit_code = 0
            return exit_code

        except KeyboardInterrupt as exc:
            self._handle_failure(f"Interrupted ({exc or 'operation cancelled by user'}).")
            exit_code = 1
            return exit_code
        except BackupError as exc:
            self._handle_failure(str(exc))
            exit_code = 1
            return exit_code
        except Exception as exc:
            logger.exception("Unexpected error")
            self._handle_failure(f"Unexpected error: {exc}")
            exit_code = 1
            return exit_code
        finally:
            self.progress.stop()
            self._finalize()
            os.umask(previous_umask)
            self._restore_signal_handlers()
            logger.info(
                "Script execution time: %s seconds. Exited with status %s.",
                int(time.time() - ctx.started_at),
                exit_code,
            )
            self.detach_log_file()

    def _finalize(self):
        # each step is independent: one failing must not skip the others
        self.cleanup_artifacts()
        if self.passphrase_broker is not None:
            try:
                self.passphrase_broker.erase_outstanding()
            except BackupError as exc:
                logger.error(str(exc))
        self.lock.release()
