import json
import logging
import sys
from pathlib import Path

import pytest
from click.testing import CliRunner

from archivist import __version__
from archivist.cli import cli
from archivist.observability import LOGGER_NAME
from archivist.state import StateStore


@pytest.fixture(autouse=True)
def _detach_cli_logging():
    yield
    logger = logging.getLogger(LOGGER_NAME)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
    logger.propagate = True


def _write_config(tmp_path: Path, code: str = "print('synced')") -> Path:
    repo = tmp_path / "repos" / "photos"
    repo.mkdir(parents=True, exist_ok=True)
    config_path = tmp_path / "config.toml"
    config_path.write_text(
        f"""
[supervisor]
state_dir = "{tmp_path / 'state'}"

[routines.sync]
args = {json.dumps([sys.executable, "-c", code])}
timeout_seconds = 60

[[repositories]]
name = "photos"
path = "{repo}"

[repositories.routines.sync]
interval_seconds = 3600
""",
        encoding="utf-8",
    )
    return config_path


def test_version_flag_prints_exact_line() -> None:
    runner = CliRunner()

    result = runner.invoke(cli, ["--version"], env={"ARCHIVIST_CONFIG": "/nonexistent/archivist.toml"})

    assert result.exit_code == 0
    assert result.output == f"version: {__version__}\n"


def test_status_lists_pairs_as_json(tmp_path: Path) -> None:
    config_path = _write_config(tmp_path)
    runner = CliRunner()

    result = runner.invoke(cli, ["--config", str(config_path), "status"])

    assert result.exit_code == 0, result.output
    payload = json.loads(result.output)
    assert payload["version"] == __version__
    assert payload["running_pid"] is None
    assert payload["paused"] is False
    [pair] = payload["pairs"]
    assert (pair["repository"], pair["routine"], pair["status"]) == ("photos", "sync", "due")


def test_status_reports_unparsable_config(tmp_path: Path) -> None:
    config_path = tmp_path / "config.toml"
    config_path.write_text("[supervisor\n", encoding="utf-8")

    result = CliRunner().invoke(cli, ["--config", str(config_path), "status"])

    assert result.exit_code == 1
    assert "Unable to parse" in result.output


def test_run_with_unparsable_config_exits_with_startup_code(tmp_path: Path) -> None:
    config_path = tmp_path / "config.toml"
    config_path.write_text("[supervisor\n", encoding="utf-8")

    result = CliRunner().invoke(cli, ["--config", str(config_path)])

    assert result.exit_code == 4


def test_trigger_runs_inline_when_no_supervisor_is_running(tmp_path: Path) -> None:
    config_path = _write_config(tmp_path)
    runner = CliRunner()

    result = runner.invoke(cli, ["--config", str(config_path), "trigger", "photos", "sync"])

    assert result.exit_code == 0, result.output
    assert '"outcome": "success"' in result.output

    history = runner.invoke(cli, ["--config", str(config_path), "history", "photos", "sync"])
    assert history.exit_code == 0
    [record] = json.loads(history.output)
    assert record["trigger"] == "manual"
    assert record["excerpt"] == "synced"


def test_trigger_exits_nonzero_when_routine_fails(tmp_path: Path) -> None:
    config_path = _write_config(tmp_path, code="import sys; sys.exit(3)")

    result = CliRunner().invoke(cli, ["--config", str(config_path), "trigger", "photos", "sync"])

    assert result.exit_code == 1
    assert '"outcome": "permanent-failure"' in result.output


def test_trigger_is_queued_for_a_running_supervisor(tmp_path: Path, monkeypatch) -> None:
    config_path = _write_config(tmp_path)
    monkeypatch.setattr(StateStore, "running_pid", lambda self: 4242)
    monkeypatch.setattr("archivist.cli._notify_running", lambda store: 4242)

    result = CliRunner().invoke(cli, ["--config", str(config_path), "trigger", "photos", "sync"])

    assert result.exit_code == 0, result.output
    assert "supervisor pid 4242" in result.output
    store = StateStore(tmp_path / "state")
    assert store.consume_triggers() == [("photos", "sync")]
    assert store.get_history("photos", "sync") == []


def test_trigger_rejects_unconfigured_pair(tmp_path: Path) -> None:
    config_path = _write_config(tmp_path)

    result = CliRunner().invoke(cli, ["--config", str(config_path), "trigger", "photos", "reclaim"])

    assert result.exit_code == 1
    assert "No routine 'reclaim'" in result.output


def test_history_without_runs(tmp_path: Path) -> None:
    config_path = _write_config(tmp_path)

    result = CliRunner().invoke(cli, ["--config", str(config_path), "history", "photos", "sync"])

    assert result.exit_code == 0
    assert "No runs recorded for photos/sync." in result.output


def test_pause_and_resume_toggle_persisted_flag(tmp_path: Path) -> None:
    config_path = _write_config(tmp_path)
    runner = CliRunner()

    paused = runner.invoke(cli, ["--config", str(config_path), "pause"])
    status = json.loads(runner.invoke(cli, ["--config", str(config_path), "status"]).output)
    assert paused.exit_code == 0
    assert status["paused"] is True

    resumed = runner.invoke(cli, ["--config", str(config_path), "resume"])
    status = json.loads(runner.invoke(cli, ["--config", str(config_path), "status"]).output)
    assert resumed.exit_code == 0
    assert status["paused"] is False


def test_mistyped_retry_value_is_reported_without_traceback(tmp_path: Path) -> None:
    config_path = _write_config(tmp_path)
    config_path.write_text(
        config_path.read_text(encoding="utf-8") + '\n[retry]\nbase_delay_seconds = "soon"\n',
        encoding="utf-8",
    )
    runner = CliRunner()

    status = runner.invoke(cli, ["--config", str(config_path), "status"])
    run = runner.invoke(cli, ["--config", str(config_path)])

    assert status.exit_code == 1
    assert "base_delay_seconds must be a number" in status.output
    assert isinstance(status.exception, SystemExit)
    assert run.exit_code == 4
    assert isinstance(run.exception, SystemExit)
