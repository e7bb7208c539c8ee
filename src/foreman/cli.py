from __future__ import annotations

import asyncio
import json
import logging
import os
import shlex
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import asdict
from pathlib import Path
from typing import Any

import click

from foreman.config import DISPATCH_MODES, load_config, resolve_state_root, save_config
from foreman.runtime import TeamRuntime
from foreman.state.dispatch import DispatchQueue
from foreman.state.mailbox import Mailbox
from foreman.state.store import TeamStateError, utcnow_iso
from foreman.state.team import WORKER_STATES, TeamPolicy, WorkerHeartbeat, WorkerStatus
from foreman.transport.base import TransportError
from foreman.transport.file import read_triggers

logger = logging.getLogger(__name__)

config_option = click.option(
    "--config", "config_value", default="foreman.toml", show_default=True
)


def _resolve_config_path(repo_root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = repo_root / config_path
    return config_path.resolve()


def _load_runtime(config_value: str) -> TeamRuntime:
    repo_root = Path.cwd().resolve()
    config = load_config(_resolve_config_path(repo_root, config_value))
    state_root = resolve_state_root(config, repo_root)
    return TeamRuntime(state_root, config, cwd=repo_root)


@contextmanager
def _cli_errors() -> Iterator[None]:
    try:
        yield
    except (TeamStateError, TransportError) as exc:
        raise click.ClickException(str(exc)) from exc


def _echo_json(payload: Any) -> None:
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


def _log_delivery_event(event: dict[str, Any]) -> None:
    logger.info("%s", json.dumps(event, ensure_ascii=False, sort_keys=True))


@click.group()
@click.option("--verbose", is_flag=True, default=False, help="Log at debug level.")
def cli(verbose: bool) -> None:
    """Foreman CLI."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@cli.command("init")
@config_option
def init_command(config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_config_path(repo_root, config_value)
    config = load_config(config_path)
    save_config(config_path, config)
    state_root = resolve_state_root(config, repo_root)
    state_root.mkdir(parents=True, exist_ok=True)
    click.echo(f"Config: {config_path}")
    click.echo(f"State root: {state_root}")


@cli.group("team")
def team_group() -> None:
    """Create and inspect teams."""


@team_group.command("create")
@click.argument("name")
@click.option("--worker", "workers", multiple=True, required=True)
@click.option("--task", "team_task", default="", help="What the team is working on.")
@click.option("--leader", default="leader", show_default=True)
@click.option("--dispatch-mode", type=click.Choice(DISPATCH_MODES), default=None)
@click.option("--ack-timeout-ms", type=int, default=None)
@click.option("--delegation-only", is_flag=True, default=False)
@click.option("--plan-approval", is_flag=True, default=False)
@click.option("--worker-command", default=None, help="Command line used to start each worker.")
@config_option
def team_create_command(
    name: str,
    workers: tuple[str, ...],
    team_task: str,
    leader: str,
    dispatch_mode: str | None,
    ack_timeout_ms: int | None,
    delegation_only: bool,
    plan_approval: bool,
    worker_command: str | None,
    config_value: str,
) -> None:
    runtime = _load_runtime(config_value)
    defaults = runtime.config.team
    policy = TeamPolicy(
        dispatch_mode=dispatch_mode or runtime.config.dispatch.mode,
        dispatch_ack_timeout_ms=ack_timeout_ms,
        delegation_only=delegation_only or defaults.delegation_only,
        plan_approval_required=plan_approval or defaults.plan_approval_required,
    )
    command = shlex.split(worker_command) if worker_command else None
    with _cli_errors():
        record = asyncio.run(
            runtime.create_team(
                name, team_task, list(workers), leader=leader, policy=policy, worker_command=command
            )
        )
    _echo_json(record.to_dict())


@team_group.command("list")
@config_option
def team_list_command(config_value: str) -> None:
    runtime = _load_runtime(config_value)
    for name in runtime.list_teams():
        click.echo(name)


@cli.group("task")
def task_group() -> None:
    """Create, assign and settle tasks."""


@task_group.command("create")
@click.argument("team")
@click.argument("subject")
@click.option("--description", default="")
@click.option("--depends-on", "depends_on", multiple=True)
@click.option("--code-change", is_flag=True, default=False)
@config_option
def task_create_command(
    team: str,
    subject: str,
    description: str,
    depends_on: tuple[str, ...],
    code_change: bool,
    config_value: str,
) -> None:
    runtime = _load_runtime(config_value)
    with _cli_errors():
        task = runtime.create_task(
            team,
            subject,
            description,
            depends_on=list(depends_on),
            requires_code_change=code_change,
        )
    _echo_json(task.to_dict())


@task_group.command("list")
@click.argument("team")
@click.option("--status", default=None)
@config_option
def task_list_command(team: str, status: str | None, config_value: str) -> None:
    runtime = _load_runtime(config_value)
    with _cli_errors():
        runtime.team(team).require_config()
        tasks = runtime.tasks(team).list_tasks()
    for task in tasks:
        if status and task.status != status:
            continue
        owner = task.owner or "-"
        click.echo(f"{task.id:>4} {task.status:<11} {owner:<12} {task.subject}")


@task_group.command("show")
@click.argument("team")
@click.argument("task_id")
@config_option
def task_show_command(team: str, task_id: str, config_value: str) -> None:
    runtime = _load_runtime(config_value)
    with _cli_errors():
        task = runtime.tasks(team).read_task(task_id)
    if task is None:
        raise click.ClickException(f"Task not found: {task_id}")
    _echo_json(task.to_dict())


@task_group.command("assign")
@click.argument("team")
@click.argument("task_id")
@click.argument("worker")
@config_option
def task_assign_command(team: str, task_id: str, worker: str, config_value: str) -> None:
    runtime = _load_runtime(config_value)
    with _cli_errors():
        task = asyncio.run(runtime.assign_task(team, task_id, worker))
    click.echo(f"Assigned task {task.id} to {worker}")


@task_group.command("reassign")
@click.argument("team")
@click.argument("task_id")
@click.argument("from_worker")
@click.argument("to_worker")
@config_option
def task_reassign_command(
    team: str, task_id: str, from_worker: str, to_worker: str, config_value: str
) -> None:
    runtime = _load_runtime(config_value)
    with _cli_errors():
        task = asyncio.run(runtime.reassign_task(team, task_id, from_worker, to_worker))
    click.echo(f"Reassigned task {task.id} from {from_worker} to {to_worker}")


@task_group.command("claim")
@click.argument("team")
@click.argument("task_id")
@click.argument("worker")
@click.option("--expected-version", type=int, default=None)
@config_option
def task_claim_command(
    team: str, task_id: str, worker: str, expected_version: int | None, config_value: str
) -> None:
    runtime = _load_runtime(config_value)
    with _cli_errors():
        result = runtime.tasks(team).claim(task_id, worker, expected_version)
    if not result.ok:
        detail = f":{','.join(result.dependencies)}" if result.dependencies else ""
        raise click.ClickException(f"{result.error}{detail}")
    _echo_json({"task_id": result.task.id if result.task else task_id, "token": result.claim_token})


def _settle(
    team: str,
    task_id: str,
    worker: str,
    to_status: str,
    token: str | None,
    config_value: str,
    *,
    result: str | None = None,
    error: str | None = None,
) -> None:
    runtime = _load_runtime(config_value)
    with _cli_errors():
        registry = runtime.tasks(team)
        task = registry.read_task(task_id)
        if task is None:
            raise click.ClickException(f"Task not found: {task_id}")
        if token is None and task.claim is not None and task.claim.owner == worker:
            token = task.claim.token
        if token is None:
            raise click.ClickException(f"{worker} holds no claim on task {task.id}")
        outcome = registry.transition(
            task.id, "in_progress", to_status, token, result=result, error=error
        )
    if not outcome.ok:
        raise click.ClickException(outcome.error or "transition_failed")
    click.echo(f"Task {task.id} {to_status}")


@task_group.command("complete")
@click.argument("team")
@click.argument("task_id")
@click.argument("worker")
@click.option("--result", "result_text", default="")
@click.option("--token", default=None)
@config_option
def task_complete_command(
    team: str, task_id: str, worker: str, result_text: str, token: str | None, config_value: str
) -> None:
    _settle(team, task_id, worker, "completed", token, config_value, result=result_text)


@task_group.command("fail")
@click.argument("team")
@click.argument("task_id")
@click.argument("worker")
@click.option("--error", "error_text", default="")
@click.option("--token", default=None)
@config_option
def task_fail_command(
    team: str, task_id: str, worker: str, error_text: str, token: str | None, config_value: str
) -> None:
    _settle(team, task_id, worker, "failed", token, config_value, error=error_text)


@task_group.command("release")
@click.argument("team")
@click.argument("task_id")
@click.argument("worker")
@click.option("--token", default=None)
@config_option
def task_release_command(
    team: str, task_id: str, worker: str, token: str | None, config_value: str
) -> None:
    runtime = _load_runtime(config_value)
    with _cli_errors():
        result = runtime.tasks(team).release(task_id, token, worker)
    if not result.ok:
        raise click.ClickException(result.error or "release_failed")
    click.echo(f"Released task {result.task.id if result.task else task_id}")


@cli.command("approve")
@click.argument("team")
@click.argument("task_id")
@click.option("--reject", "rejected", is_flag=True, default=False)
@click.option("--reason", default="")
@click.option("--reviewer", default="leader", show_default=True)
@config_option
def approve_command(
    team: str, task_id: str, rejected: bool, reason: str, reviewer: str, config_value: str
) -> None:
    runtime = _load_runtime(config_value)
    with _cli_errors():
        approval = runtime.approve_task(
            team,
            task_id,
            status="rejected" if rejected else "approved",
            reviewer=reviewer,
            reason=reason,
        )
    click.echo(f"Task {approval.task_id} {approval.status}")


@cli.command("send")
@click.argument("team")
@click.argument("from_worker")
@click.argument("to_worker")
@click.argument("body")
@config_option
def send_command(team: str, from_worker: str, to_worker: str, body: str, config_value: str) -> None:
    runtime = _load_runtime(config_value)
    with _cli_errors():
        message = asyncio.run(runtime.send_message(team, from_worker, to_worker, body))
    click.echo(f"Sent {message.message_id} to {to_worker}")


@cli.command("broadcast")
@click.argument("team")
@click.argument("from_worker")
@click.argument("body")
@config_option
def broadcast_command(team: str, from_worker: str, body: str, config_value: str) -> None:
    runtime = _load_runtime(config_value)
    with _cli_errors():
        outcomes = asyncio.run(runtime.broadcast_message(team, from_worker, body))
    for outcome in outcomes:
        state = "ok" if outcome.ok else "failed"
        click.echo(f"{outcome.to_worker} {state} {outcome.reason}")


@cli.command("monitor")
@click.argument("team")
@config_option
def monitor_command(team: str, config_value: str) -> None:
    runtime = _load_runtime(config_value)
    with _cli_errors():
        snapshot = asyncio.run(runtime.monitor(team))
    payload = snapshot.to_dict()
    payload.pop("tasks", None)
    _echo_json(payload)


@cli.command("status")
@click.argument("team")
@config_option
def status_command(team: str, config_value: str) -> None:
    runtime = _load_runtime(config_value)
    with _cli_errors():
        payload = runtime.status(team)
    _echo_json(payload)


@cli.command("drain")
@click.argument("team", required=False)
@config_option
def drain_command(team: str | None, config_value: str) -> None:
    """Deliver pending hook-preferred dispatch requests once."""
    runtime = _load_runtime(config_value)
    with _cli_errors():
        summary = asyncio.run(runtime.drain(team, event_hook=_log_delivery_event))
    _echo_json(asdict(summary))


@cli.command("shutdown")
@click.argument("team")
@click.option("--force", is_flag=True, default=False)
@config_option
def shutdown_command(team: str, force: bool, config_value: str) -> None:
    runtime = _load_runtime(config_value)
    with _cli_errors():
        report = asyncio.run(runtime.shutdown(team, force=force))
    click.echo(f"Team {report.team} shut down")
    if report.terminated:
        click.echo(f"Terminated: {', '.join(report.terminated)}")


@cli.group("dispatch")
def dispatch_group() -> None:
    """Inspect and confirm dispatch requests."""


@dispatch_group.command("list")
@click.argument("team")
@click.option("--status", default=None)
@config_option
def dispatch_list_command(team: str, status: str | None, config_value: str) -> None:
    runtime = _load_runtime(config_value)
    with _cli_errors():
        requests = DispatchQueue(runtime.team(team)).list_requests(status=status)
    _echo_json([request.to_dict() for request in requests])


@dispatch_group.command("delivered")
@click.argument("team")
@click.argument("request_id")
@config_option
def dispatch_delivered_command(team: str, request_id: str, config_value: str) -> None:
    runtime = _load_runtime(config_value)
    with _cli_errors():
        request = DispatchQueue(runtime.team(team)).mark_delivered(request_id, "worker_confirmed")
    if request is None:
        raise click.ClickException(f"Request {request_id} is not awaiting delivery")
    click.echo(f"Request {request.request_id} {request.status}")


@cli.group("worker")
def worker_group() -> None:
    """Commands run by workers to report back to the leader."""


@worker_group.command("heartbeat")
@click.argument("team")
@click.argument("worker")
@click.option("--pid", type=int, default=None, help="Defaults to the parent shell's pid.")
@click.option("--stopped", is_flag=True, default=False)
@config_option
def worker_heartbeat_command(
    team: str, worker: str, pid: int | None, stopped: bool, config_value: str
) -> None:
    runtime = _load_runtime(config_value)
    with _cli_errors():
        store = runtime.team(team)
        store.require_config()
        previous = store.read_heartbeat(worker) or WorkerHeartbeat()
        heartbeat = WorkerHeartbeat(
            pid=pid or previous.pid or os.getppid(),
            last_turn_at=utcnow_iso(),
            turn_count=previous.turn_count + 1,
            alive=not stopped,
        )
        store.write_heartbeat(worker, heartbeat)
    click.echo(f"{worker} turn {heartbeat.turn_count}")


@worker_group.command("status")
@click.argument("team")
@click.argument("worker")
@click.argument("state", type=click.Choice(sorted(WORKER_STATES)))
@click.option("--task", "task_id", default=None)
@click.option("--reason", default=None)
@config_option
def worker_status_command(
    team: str,
    worker: str,
    state: str,
    task_id: str | None,
    reason: str | None,
    config_value: str,
) -> None:
    runtime = _load_runtime(config_value)
    with _cli_errors():
        store = runtime.team(team)
        store.require_config()
        store.write_worker_status(
            worker, WorkerStatus(state=state, current_task_id=task_id, reason=reason)
        )
    click.echo(f"{worker} {state}")


@worker_group.command("ack-shutdown")
@click.argument("team")
@click.argument("worker")
@click.argument("decision", type=click.Choice(["accept", "reject"]))
@click.option("--reason", default=None)
@config_option
def worker_ack_shutdown_command(
    team: str, worker: str, decision: str, reason: str | None, config_value: str
) -> None:
    runtime = _load_runtime(config_value)
    with _cli_errors():
        store = runtime.team(team)
        if store.read_shutdown_request(worker) is None:
            raise click.ClickException(f"No shutdown request pending for {worker}")
        store.write_shutdown_ack(worker, decision, reason)
    click.echo(f"{worker} {decision}ed shutdown")


@worker_group.command("inbox")
@click.argument("team")
@click.argument("worker")
@config_option
def worker_inbox_command(team: str, worker: str, config_value: str) -> None:
    """Print the current inbox and unread mailbox messages."""
    runtime = _load_runtime(config_value)
    with _cli_errors():
        store = runtime.team(team)
        store.require_config()
        inbox = store.read_inbox(worker)
        messages = [item for item in Mailbox(store).list_messages(worker) if item.is_pending]
    _echo_json(
        {
            "inbox": inbox,
            "messages": [asdict(item) for item in messages],
            "triggers": len(read_triggers(runtime.state_root, team, worker)),
        }
    )


@worker_group.command("mark-read")
@click.argument("team")
@click.argument("worker")
@click.argument("message_id")
@config_option
def worker_mark_read_command(team: str, worker: str, message_id: str, config_value: str) -> None:
    runtime = _load_runtime(config_value)
    with _cli_errors():
        found = Mailbox(runtime.team(team)).mark_delivered(worker, message_id)
    if not found:
        raise click.ClickException(f"Message not found: {message_id}")
    click.echo(f"Message {message_id} read")
