import json
import os
from pathlib import Path

import pytest
from click.testing import CliRunner

from foreman.cli import cli
from foreman.config import load_config
from foreman.state.store import TeamStateError


@pytest.fixture
def runner(tmp_path: Path, monkeypatch) -> CliRunner:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("FOREMAN_TEAM_STATE_ROOT", str(tmp_path / "state"))
    monkeypatch.delenv("FOREMAN_DISPATCH_LOCK_TIMEOUT_MS", raising=False)
    monkeypatch.delenv("FOREMAN_DISPATCH_ACK_TIMEOUT_MS", raising=False)
    return CliRunner()


def _ok(runner: CliRunner, args: list[str]) -> str:
    result = runner.invoke(cli, args)
    assert result.exit_code == 0, result.output
    return result.output


def _create_team(runner: CliRunner) -> None:
    _ok(
        runner,
        [
            "team",
            "create",
            "demo",
            "--worker",
            "worker-1",
            "--worker",
            "worker-2",
            "--task",
            "ship the parser",
            "--dispatch-mode",
            "transport_direct",
        ],
    )


def test_init_writes_config_and_state_root(runner: CliRunner, tmp_path: Path) -> None:
    output = _ok(runner, ["init"])

    assert "State root:" in output
    assert (tmp_path / "state").is_dir()
    assert load_config(tmp_path / "foreman.toml").dispatch.transport == "file"


def test_cli_full_team_lifecycle(runner: CliRunner, tmp_path: Path) -> None:
    _ok(runner, ["init"])
    _create_team(runner)
    assert _ok(runner, ["team", "list"]).split() == ["demo"]

    _ok(runner, ["worker", "heartbeat", "demo", "worker-1", "--pid", str(os.getpid())])
    created = json.loads(_ok(runner, ["task", "create", "demo", "Parser", "--code-change"]))
    assert created["id"] == "1"

    assert "Assigned task 1 to worker-1" in _ok(runner, ["task", "assign", "demo", "1", "worker-1"])
    inbox = json.loads(_ok(runner, ["worker", "inbox", "demo", "worker-1"]))
    assert "# New Task Assignment" in inbox["inbox"]
    assert inbox["triggers"] == 1

    _ok(runner, ["worker", "status", "demo", "worker-1", "working", "--task", "1"])
    _ok(
        runner,
        [
            "task",
            "complete",
            "demo",
            "1",
            "worker-1",
            "--result",
            "Verification: `pytest -q` passed",
        ],
    )

    snapshot = json.loads(_ok(runner, ["monitor", "demo"]))
    assert snapshot["phase"] == "complete"
    assert snapshot["task_counts"]["completed"] == 1
    assert "tasks" not in snapshot

    status = json.loads(_ok(runner, ["status", "demo"]))
    assert status["phase"] == "complete"

    _ok(runner, ["worker", "heartbeat", "demo", "worker-1", "--stopped"])
    assert "Team demo shut down" in _ok(runner, ["shutdown", "demo"])
    assert _ok(runner, ["team", "list"]).strip() == ""


def test_shutdown_is_blocked_by_open_tasks(runner: CliRunner) -> None:
    _create_team(runner)
    _ok(runner, ["task", "create", "demo", "Parser"])

    result = runner.invoke(cli, ["shutdown", "demo"])

    assert result.exit_code != 0
    assert "shutdown_gate_blocked:pending=1" in result.output


def test_assign_to_silent_worker_reports_failure(runner: CliRunner) -> None:
    _create_team(runner)
    _ok(runner, ["task", "create", "demo", "Parser"])

    result = runner.invoke(cli, ["task", "assign", "demo", "1", "worker-2"])

    assert result.exit_code != 0
    assert "worker_notify_failed" in result.output
    listing = _ok(runner, ["task", "list", "demo", "--status", "pending"])
    assert "Parser" in listing


def test_claim_and_release_from_the_worker_side(runner: CliRunner) -> None:
    _create_team(runner)
    _ok(runner, ["task", "create", "demo", "Parser"])

    claimed = json.loads(_ok(runner, ["task", "claim", "demo", "1", "worker-2"]))
    conflict = runner.invoke(cli, ["task", "claim", "demo", "1", "worker-1"])
    released = _ok(
        runner, ["task", "release", "demo", "1", "worker-2", "--token", claimed["token"]]
    )

    assert conflict.exit_code != 0
    assert "claim_conflict" in conflict.output
    assert "Released task 1" in released


def test_messages_and_mark_read(runner: CliRunner, tmp_path: Path) -> None:
    _create_team(runner)
    _ok(runner, ["worker", "heartbeat", "demo", "worker-2", "--pid", str(os.getpid())])

    sent = _ok(runner, ["send", "demo", "leader", "worker-2", "rebase please"])
    message_id = sent.split()[1]
    inbox = json.loads(_ok(runner, ["worker", "inbox", "demo", "worker-2"]))
    assert [item["body"] for item in inbox["messages"]] == ["rebase please"]

    _ok(runner, ["worker", "mark-read", "demo", "worker-2", message_id])
    inbox = json.loads(_ok(runner, ["worker", "inbox", "demo", "worker-2"]))
    assert inbox["messages"] == []

    requests = json.loads(_ok(runner, ["dispatch", "list", "demo", "--status", "notified"]))
    [request] = requests
    _ok(runner, ["dispatch", "delivered", "demo", request["request_id"]])
    delivered = json.loads(_ok(runner, ["dispatch", "list", "demo", "--status", "delivered"]))
    assert [item["request_id"] for item in delivered] == [request["request_id"]]


def test_shutdown_ack_needs_a_request(runner: CliRunner) -> None:
    _create_team(runner)

    result = runner.invoke(cli, ["worker", "ack-shutdown", "demo", "worker-1", "accept"])

    assert result.exit_code != 0
    assert "No shutdown request pending" in result.output


def test_unknown_team_is_a_clean_error(runner: CliRunner) -> None:
    result = runner.invoke(cli, ["status", "ghost"])

    assert result.exit_code != 0
    assert "ghost" in result.output
    assert "Traceback" not in result.output


@pytest.mark.parametrize(
    "args",
    [
        ["worker", "heartbeat", "Bad Name", "worker-1"],
        ["worker", "status", "Bad Name", "worker-1", "idle"],
        ["worker", "ack-shutdown", "Bad Name", "worker-1", "accept"],
        ["worker", "inbox", "Bad Name", "worker-1"],
        ["task", "complete", "Bad Name", "1", "worker-1"],
    ],
)
def test_invalid_team_name_is_a_clean_error(runner: CliRunner, args: list[str]) -> None:
    result = runner.invoke(cli, args)

    assert result.exit_code != 0
    assert "Invalid team name" in result.output
    assert "Traceback" not in result.output
    assert not isinstance(result.exception, TeamStateError)
