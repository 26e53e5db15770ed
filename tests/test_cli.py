from click.testing import CliRunner

import borgrunner.cli as cli_module


def _write_config(tmp_path, extra=""):
    config_file = tmp_path / "borgrunner.yml"
    config_file.write_text(
        "staging_dir: /srv/staging\n"
        "repo_path: /srv/borg-repo\n"
        "backup_dirs:\n"
        "  - /data\n"
        "retention_days: 5\n" + extra,
        encoding="utf-8",
    )
    return config_file


class FakeRunner:
    captured = {}
    exit_code = 0

    def __init__(self, settings, **kwargs):
        FakeRunner.captured = {"settings": settings, **kwargs}

    def run(self):
        return FakeRunner.exit_code


def test_cli_builds_settings_from_config_and_flags(tmp_path, monkeypatch):
    config_file = _write_config(tmp_path)
    monkeypatch.setattr(cli_module, "BackupRunner", FakeRunner)
    FakeRunner.exit_code = 0

    result = CliRunner().invoke(cli_module.main, ["--config", str(config_file), "--dry-run", "--no-prune"])

    assert result.exit_code == 0
    captured = FakeRunner.captured
    assert captured["settings"].retention_days == 5
    assert captured["settings"].backup_dirs == ("/data",)
    assert captured["dry_run"] is True
    assert captured["no_prune"] is True
    assert captured["verify_only"] is False


def test_cli_uses_default_config_file_when_present(tmp_path, monkeypatch):
    _write_config(tmp_path)
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(cli_module, "BackupRunner", FakeRunner)

    result = CliRunner().invoke(cli_module.main, [])

    assert result.exit_code == 0
    assert FakeRunner.captured["settings"].staging_dir == "/srv/staging"


def test_cli_reads_config_path_from_environment(tmp_path, monkeypatch):
    config_file = _write_config(tmp_path)
    monkeypatch.setattr(cli_module, "BackupRunner", FakeRunner)

    result = CliRunner().invoke(cli_module.main, [], env={"BORGRUNNER_CONFIG": str(config_file)})

    assert result.exit_code == 0
    assert FakeRunner.captured["settings"].repo_path == "/srv/borg-repo"


def test_cli_propagates_runner_exit_code(tmp_path, monkeypatch):
    config_file = _write_config(tmp_path)
    monkeypatch.setattr(cli_module, "BackupRunner", FakeRunner)
    FakeRunner.exit_code = 1

    try:
        result = CliRunner().invoke(cli_module.main, ["--config", str(config_file)])
    finally:
        FakeRunner.exit_code = 0

    assert result.exit_code == 1


def test_cli_reports_invalid_configuration(tmp_path, monkeypatch):
    config_file = _write_config(tmp_path, extra="unexpected: true\n")
    monkeypatch.setattr(cli_module, "BackupRunner", FakeRunner)

    result = CliRunner().invoke(cli_module.main, ["--config", str(config_file)])

    assert result.exit_code == 1
    assert "Unknown configuration keys: unexpected" in result.output


def test_cli_rejects_archive_without_verify_only(tmp_path, monkeypatch):
    config_file = _write_config(tmp_path)
    monkeypatch.setattr(cli_module, "BackupRunner", FakeRunner)

    result = CliRunner().invoke(cli_module.main, ["--config", str(config_file), "--archive", "host-1"])

    assert result.exit_code == 2
    assert "--verify-only" in result.output


def test_cli_passes_archive_for_verify_only(tmp_path, monkeypatch):
    config_file = _write_config(tmp_path)
    monkeypatch.setattr(cli_module, "BackupRunner", FakeRunner)

    result = CliRunner().invoke(
        cli_module.main,
        ["--config", str(config_file), "--verify-only", "--archive", "host-2024-05-01_02-00-00"],
    )

    assert result.exit_code == 0
    assert FakeRunner.captured["verify_only"] is True
    assert FakeRunner.captured["archive"] == "host-2024-05-01_02-00-00"


def test_cli_rejects_unknown_option():
    result = CliRunner().invoke(cli_module.main, ["--definitely-not-an-option"])

    assert result.exit_code == 2


def test_cli_help_documents_exit_statuses():
    result = CliRunner().invoke(cli_module.main, ["--help"])

    assert result.exit_code == 0
    assert "Exit status: 0 when the run succeeds, 1 when it fails" in " ".join(result.output.split())
    assert "2 when the command line itself is invalid" in " ".join(result.output.split())
