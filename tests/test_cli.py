"""Tests for the forgectl CLI."""
from __future__ import annotations

import json
from pathlib import Path

import pytest
import yaml
from typer.testing import CliRunner, Result

from forgectl import __version__, cli
from forgectl.cli import app

runner = CliRunner()


@pytest.fixture()
def config_file(tmp_path: Path) -> Path:
    """Write a config that keeps all state inside the test directory."""
    path = tmp_path / "config.yml"
    path.write_text(
        yaml.safe_dump(
            {
                "state_dir": str(tmp_path / "state"),
                "logs_dir": str(tmp_path / "logs"),
                "runtime_dir": str(tmp_path / "run"),
                "templates_dir": str(tmp_path / "templates"),
                "lock_timeout": 2,
            }
        ),
        encoding="utf-8",
    )
    return path


@pytest.fixture()
def key_file(tmp_path: Path, private_key_pem: str) -> Path:
    path = tmp_path / "id_rsa"
    path.write_text(private_key_pem, encoding="utf-8")
    return path


@pytest.fixture()
def fake_ssh(monkeypatch: pytest.MonkeyPatch, executor):
    """Route worker commands to the in-memory executor."""
    monkeypatch.setattr(cli, "SshExecutor", lambda **_: executor)
    return executor


def _invoke(config_file: Path, *args: str, user: str = "alice") -> Result:
    return runner.invoke(app, ["--config-file", str(config_file), "--user", user, *args])


def _register_server(config_file: Path, key_file: Path) -> None:
    result = _invoke(config_file, "server", "add", "web-1", "--host", "203.0.113.10")
    assert result.exit_code == 0, result.stdout
    for credential_type, ssh_user in (("root", "root"), ("app", "forge")):
        result = _invoke(
            config_file,
            "credential",
            "add",
            "1",
            "--ssh-user",
            ssh_user,
            "--type",
            credential_type,
            "--key",
            str(key_file),
        )
        assert result.exit_code == 0, result.stdout


def _operations(config_file: Path) -> list[dict[str, object]]:
    log = config_file.parent / "logs" / "operations.jsonl"
    return [json.loads(line) for line in log.read_text(encoding="utf-8").splitlines()]


def test_version_flag(config_file: Path) -> None:
    """``--version`` prints the package version."""
    result = _invoke(config_file, "--version")

    assert result.exit_code == 0
    assert f"forgectl {__version__}" in result.stdout


def test_server_list_is_scoped_to_owner(config_file: Path, key_file: Path) -> None:
    """Users only see the servers they own, without key material."""
    _register_server(config_file, key_file)

    mine = _invoke(config_file, "server", "list", "--json")
    theirs = _invoke(config_file, "server", "list", "--json", user="bob")

    assert mine.exit_code == 0
    payload = json.loads(mine.stdout)
    assert payload["servers"] == [
        {"id": 1, "name": "web-1", "host": "203.0.113.10", "ssh_port": 22, "credentials": ["root", "app"]}
    ]
    assert "PRIVATE KEY" not in mine.stdout
    assert json.loads(theirs.stdout) == {"servers": []}


@pytest.mark.mutation_timeout
def test_queue_run_and_progress(config_file: Path, key_file: Path, fake_ssh) -> None:
    """A queued install runs on the worker and reports its milestones."""
    _register_server(config_file, key_file)

    queued = _invoke(config_file, "php", "install", "1", "8.3")
    assert queued.exit_code == 0, queued.stdout
    assert "Queued installation for PHP installation #1 (job #1)" in queued.stdout

    jobs = json.loads(_invoke(config_file, "jobs", "list", "--json").stdout)
    assert [(entry["job"], entry["record_id"]) for entry in jobs["jobs"]] == [("php_install", 1)]

    worked = _invoke(config_file, "worker", "run", "--once")
    assert worked.exit_code == 0, worked.stdout
    assert "completed: 1" in worked.stdout
    assert any("php8.3-fpm" in command for command in fake_ssh.commands)

    progress = json.loads(_invoke(config_file, "progress", "php", "1", "--json").stdout)
    assert progress["status"] == "active"
    assert progress["progress"]["milestone"] == "complete"
    assert progress["progress"]["current_step"] == progress["progress"]["total_steps"]

    ops = [entry["op"] for entry in _operations(config_file)]
    assert "php php_install" in ops
    assert "worker run" in ops


@pytest.mark.mutation_timeout
def test_failed_job_and_retry(config_file: Path, key_file: Path, fake_ssh) -> None:
    """A failing job exits with the provider code and can be retried."""
    _register_server(config_file, key_file)
    fake_ssh.fail_on("apt-get update", stderr="Could not get lock /var/lib/dpkg/lock-frontend")
    _invoke(config_file, "php", "install", "1", "8.3")

    worked = _invoke(config_file, "worker", "run")
    assert worked.exit_code == 4
    assert "failed: 1" in worked.stdout

    failed = json.loads(_invoke(config_file, "jobs", "list", "--failed", "--json").stdout)
    assert failed["jobs"][0]["job"] == "php_install"

    shown = json.loads(_invoke(config_file, "progress", "php", "1", "--json").stdout)
    assert shown["status"] == "failed"
    assert "Could not get lock" in shown["error_log"]
    assert shown["events"][-1]["status"] == "failed"

    retried = _invoke(config_file, "php", "retry", "1", "--server", "1")
    assert retried.exit_code == 0, retried.stdout
    assert "Retrying php_install for php #1" in retried.stdout
    assert len(json.loads(_invoke(config_file, "jobs", "list", "--json").stdout)["jobs"]) == 1


def test_exit_codes(config_file: Path, key_file: Path) -> None:
    """Validation, authorization and lookup failures map to their exit codes."""
    _register_server(config_file, key_file)

    assert _invoke(config_file, "php", "install", "1", "eight").exit_code == 2
    assert _invoke(config_file, "php", "install", "1", "8.3", user="mallory").exit_code == 5
    assert _invoke(config_file, "server", "show", "42").exit_code == 2
    assert _invoke(config_file, "server", "show", "1", user="mallory").exit_code == 5
    assert _invoke(config_file, "site", "remove", "7").exit_code == 2

    errors = [entry for entry in _operations(config_file) if entry["result"]["status"] == "error"]
    assert {entry["result"]["rc"] for entry in errors} == {2, 5}


def test_show_redacts_database_password(config_file: Path, key_file: Path) -> None:
    """The generated MySQL root password is never printed."""
    _register_server(config_file, key_file)
    _invoke(config_file, "database", "install", "1")

    result = _invoke(config_file, "database", "show", "1", "--json")

    assert result.exit_code == 0, result.stdout
    payload = json.loads(result.stdout)
    assert payload["configuration"]["root_password"] == "********"
    assert payload["status"] == "pending"


def test_config_show_json(config_file: Path) -> None:
    """The effective configuration is rendered after merges."""
    result = _invoke(config_file, "config", "show", "--json")

    assert result.exit_code == 0
    payload = json.loads(result.stdout)
    assert payload["config_file"] == str(config_file)
    assert payload["lock_timeout"] == 2
    assert payload["ssh"]["read_timeout"] == 30.0
    assert payload["queue"]["expire_after"] == 900


def test_invalid_config_exits_with_validation_code(tmp_path: Path) -> None:
    """Unknown config keys stop the CLI before any command runs."""
    config = tmp_path / "config.yml"
    config.write_text("bogus: true\n", encoding="utf-8")

    result = runner.invoke(app, ["--config-file", str(config), "config", "show"])

    assert result.exit_code == 2
