import json
import os
from pathlib import Path

import pytest

from deploy_agent.cli import EXIT_FAILED, EXIT_OK, EXIT_USAGE, build_parser, run_cli


@pytest.fixture
def site(tmp_path):
    root = tmp_path / "site"
    config = {
        "targets": {"local": {"transport": "local", "deploy_root": str(root)}},
        "default_targets": "local",
        "reporting": {"log_dir": str(tmp_path / "logs")},
        "pipeline": [
            {"type": "command", "name": "build", "command": "echo $REVISION > BUILT"},
            {"type": "activate"},
            {"type": "reload_service", "service": "app", "command": "true"},
        ],
    }
    path = tmp_path / "deploy_agent.json"
    path.write_text(json.dumps(config), encoding="utf-8")
    return root, str(path), tmp_path / "logs"


def test_deploy_and_rollback(site, capsys):
    root, config_path, _ = site
    assert run_cli(["--config", config_path, "deploy", "--revision", "abc123"]) == EXIT_OK
    assert run_cli(["--config", config_path, "deploy", "-r", "def456"]) == EXIT_OK
    assert os.readlink(root / "current") == str(root / "releases" / "def456")

    assert run_cli(["--config", config_path, "rollback", "--targets", "local"]) == EXIT_OK
    assert os.readlink(root / "current") == str(root / "releases" / "abc123")

    assert run_cli(["--config", config_path, "releases"]) == EXIT_OK
    out = capsys.readouterr().out
    assert "* abc123" in out
    assert "def456" in out


def test_rollback_without_history_exits_failed(site):
    _, config_path, _ = site
    assert run_cli(["--config", config_path, "rollback"]) == EXIT_FAILED


def test_unknown_target_is_a_usage_error(site):
    _, config_path, _ = site
    assert run_cli(["--config", config_path, "deploy", "-r", "abc123", "-t", "nowhere"]) == EXIT_USAGE


def test_missing_config_is_a_usage_error(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    assert run_cli(["--config", str(tmp_path / "missing.json"), "releases"]) == EXIT_USAGE


def test_deploy_from_event_file(site, tmp_path):
    root, config_path, _ = site
    event = tmp_path / "push.json"
    event.write_text(json.dumps({"ref": "refs/heads/main", "after": "abc123"}), encoding="utf-8")
    assert run_cli(["--config", config_path, "deploy", "--event", str(event)]) == EXIT_OK
    assert (root / "current" / "BUILT").read_text().strip() == "abc123"


def test_revision_and_ref_are_exclusive():
    with pytest.raises(SystemExit):
        build_parser().parse_args(["deploy", "--revision", "a", "--ref", "main"])


def test_logs_lists_and_shows_runs(site, capsys):
    _, config_path, log_dir = site
    run_cli(["--config", config_path, "deploy", "-r", "abc123"])
    capsys.readouterr()

    assert run_cli(["logs", "--log-dir", str(log_dir), "--list"]) == EXIT_OK
    listing = capsys.readouterr().out
    assert "active" in listing
    assert "abc123" in listing

    assert run_cli(["logs", "--log-dir", str(log_dir), "--latest"]) == EXIT_OK
    shown = capsys.readouterr().out
    assert "build" in shown
    assert "reload-app" in shown

    assert run_cli(["logs", "--log-dir", str(log_dir), "--file", "nope.json"]) == EXIT_FAILED


def test_logs_without_directory(tmp_path, capsys):
    assert run_cli(["logs", "--log-dir", str(Path(tmp_path) / "none")]) == EXIT_OK
    assert "No run logs" in capsys.readouterr().out
