import logging

import click
from rich.logging import RichHandler

from .core import BackupRunner
from .errors import BackupError
from .services.config_loader import ConfigLoader

logging.basicConfig(
    level="INFO",
    format="%(message)s",
    datefmt="[%X]",
    handlers=[RichHandler(rich_tracebacks=True, show_level=False, show_path=False)],
)


@click.command(
    epilog=(
        "Exit status: 0 when the run succeeds, 1 when it fails (including configuration "
        "errors), 2 when the command line itself is invalid."
    )
)
@click.option(
    "--config",
    required=False,
    type=click.Path(),
    envvar="BORGRUNNER_CONFIG",
    help="Path to the YAML configuration file. Defaults to ./borgrunner.yml or /etc/borgrunner/borgrunner.yml.",
)
@click.option("--dry-run", is_flag=True, help="Simulate the backup without creating an archive or stopping services.")
@click.option("--check-only", is_flag=True, help="Run pre-flight checks only and exit.")
@click.option("--no-prune", is_flag=True, help="Skip pruning of old archives.")
@click.option("--repo-check", is_flag=True, help="Run a full repository check (--verify-data) before the backup.")
@click.option("--check-sqlite", is_flag=True, help="Check SQLite databases found in the archive after the backup.")
@click.option("--verify-only", is_flag=True, help="Verify an existing archive instead of creating a new one.")
@click.option(
    "--archive",
    required=False,
    help="Archive name to verify with --verify-only (default: the most recent archive).",
)
@click.option("--debug", is_flag=True, help="Enable debug logging.")
def main(config, dry_run, check_only, no_prune, repo_check, check_sqlite, verify_only, archive, debug):
    """Back up Docker hosts with Borg, including consistent database dumps."""
    logger = logging.getLogger("borgrunner")

    if archive and not verify_only:
        raise click.UsageError("--archive can only be used together with --verify-only.")

    if debug:
        logging.getLogger().setLevel(logging.DEBUG)
        logger.setLevel(logging.DEBUG)
    else:
        logger.setLevel(logging.INFO)

    try:
        config_loader = ConfigLoader()
        config_path = config_loader.resolve_path(config)
        settings = config_loader.build_settings(config_loader.load(config_path))
    except BackupError as exc:
        raise click.ClickException(str(exc)) from exc

    runner = BackupRunner(
        settings,
        dry_run=dry_run,
        check_only=check_only,
        no_prune=no_prune,
        repo_check=repo_check,
        check_sqlite=check_sqlite,
        verify_only=verify_only,
        archive=archive,
        debug=debug,
    )

    raise SystemExit(runner.run())


if __name__ == "__main__":
    main()
