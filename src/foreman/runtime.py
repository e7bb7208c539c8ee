from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from foreman.config import ForemanConfig, resolve_lock_timeout_ms
from foreman.delivery import DeliveryAgent, DeliveryEventHook, DrainSummary
from foreman.dispatcher import Dispatcher, trigger_for_inbox
from foreman.monitor import TeamMonitor, TeamSnapshot, count_tasks
from foreman.shutdown import ShutdownGate, ShutdownReport
from foreman.state.lock import LockSettings
from foreman.state.mailbox import Mailbox, MailboxMessage
from foreman.state.store import TeamStateError
from foreman.state.tasks import Task, TaskRegistry
from foreman.state.team import (
    DEFAULT_LEADER,
    TaskApproval,
    TeamPolicy,
    TeamRecord,
    TeamStore,
    WorkerHeartbeat,
    WorkerInfo,
)
from foreman.transport.base import (
    DispatchOutcome,
    WorkerLaunchError,
    WorkerTarget,
    WorkerTransport,
)
from foreman.transport.file import FileTransport
from foreman.transport.process import ProcessTransport, WorkerProcessRegistry

logger = logging.getLogger(__name__)


class AssignmentError(TeamStateError):
    """Raised when a task cannot be handed to a worker.

    ``str(exc)`` is the machine-readable reason, e.g. ``plan_approval_required``
    or ``worker_assignment_failed:claim_conflict``.
    """


class MessageDeliveryError(TeamStateError):
    """Raised when a stored mailbox message could not be announced to its recipient."""


def assignment_inbox(worker: str, team_name: str, task: Task, claim_token: str) -> str:
    return (
        "# New Task Assignment\n\n"
        f"**Worker:** {worker}\n"
        f"**Task ID:** {task.id}\n"
        f"**Claim token:** {claim_token}\n\n"
        "## Task Description\n\n"
        f"{task.description or task.subject}\n\n"
        "## Instructions\n\n"
        "1. The task is already claimed for you; do not claim it again.\n"
        "2. Do the work.\n"
        f"3. Report with `foreman task complete {team_name} {task.id} {worker} --result ...`\n"
        f"   or `foreman task fail {team_name} {task.id} {worker} --error ...`.\n"
        f"4. Set your status with `foreman worker status {team_name} {worker} idle`.\n"
    )


def cancellation_inbox(task_id: str, reason: str) -> str:
    return (
        "# Assignment Cancelled\n\n"
        f"Task {task_id} was not dispatched due to {reason}.\n"
        "Do not execute this task from prior inbox content.\n"
    )


class TeamRuntime:
    """Leader-side facade over the shared team state.

    One runtime per leader process. It owns the worker transport (and, for the
    process transport, the live worker handles) and builds the per-team
    stores, dispatcher, monitor and shutdown gate on demand.
    """

    def __init__(
        self,
        state_root: Path,
        config: ForemanConfig | None = None,
        *,
        transport: WorkerTransport | None = None,
        cwd: Path | None = None,
    ) -> None:
        self.state_root = state_root
        self.config = config or ForemanConfig.default()
        self.cwd = cwd or Path.cwd()
        self.workers = WorkerProcessRegistry()
        self.transport = transport or self._build_transport()
        self.lock_settings = LockSettings(
            timeout_seconds=resolve_lock_timeout_ms(self.config.lock.timeout_ms) / 1000,
            stale_after_seconds=self.config.lock.stale_after_seconds,
            poll_interval_seconds=self.config.lock.poll_interval_ms / 1000,
        )

    def _build_transport(self) -> WorkerTransport:
        if self.config.dispatch.transport == "process":
            return ProcessTransport(self.workers)
        return FileTransport(self.state_root)

    def team(self, name: str) -> TeamStore:
        return TeamStore(self.state_root, name, self.lock_settings)

    def tasks(self, name: str) -> TaskRegistry:
        return TaskRegistry(self.team(name))

    def dispatcher(self, name: str) -> Dispatcher:
        return Dispatcher(self.team(name), self.transport, config=self.config.dispatch)

    def list_teams(self) -> list[str]:
        root = self.state_root / "team"
        if not root.is_dir():
            return []
        return sorted(path.name for path in root.iterdir() if (path / "config.json").is_file())

    async def create_team(
        self,
        name: str,
        task: str,
        workers: list[str],
        *,
        leader: str = DEFAULT_LEADER,
        policy: TeamPolicy | None = None,
        worker_command: list[str] | None = None,
    ) -> TeamRecord:
        defaults = self.config.team
        policy = policy or TeamPolicy(
            dispatch_mode=self.config.dispatch.mode,
            delegation_only=defaults.delegation_only,
            plan_approval_required=defaults.plan_approval_required,
        )
        record = TeamRecord(
            name=name,
            task=task,
            leader=leader,
            max_workers=defaults.max_workers,
            workers=[
                WorkerInfo(name=worker, index=index) for index, worker in enumerate(workers, 1)
            ],
            policy=policy,
        )
        store = self.team(name)
        store.create(record)

        command = worker_command if worker_command is not None else defaults.worker_command
        if command:
            try:
                await self._launch_workers(store, record, list(command))
            except WorkerLaunchError:
                await self._stop_launched(record)
                store.cleanup()
                raise
        return store.require_config()

    async def _launch_workers(
        self, store: TeamStore, record: TeamRecord, command: list[str]
    ) -> None:
        if not isinstance(self.transport, ProcessTransport):
            raise WorkerLaunchError(
                "Launching workers needs the process transport",
                transport=self.transport.name,
                retriable=False,
            )
        pids: dict[str, int] = {}
        for info in record.workers:
            target = WorkerTarget(team=record.name, worker=info.name, worker_index=info.index)
            env = {
                "FOREMAN_TEAM": record.name,
                "FOREMAN_WORKER": info.name,
                "FOREMAN_TEAM_STATE_ROOT": str(self.state_root),
            }
            handle = await self.transport.spawn(target, command, cwd=self.cwd, env=env)
            pids[info.name] = handle.pid
            store.write_heartbeat(info.name, WorkerHeartbeat(pid=handle.pid))
            ready = await self.transport.wait_until_ready(
                target, timeout_seconds=self.config.monitor.worker_ready_timeout_seconds
            )
            if not ready:
                raise WorkerLaunchError(
                    f"Worker {info.name} exited before becoming ready",
                    transport=self.transport.name,
                )

        def _record_pids(current: TeamRecord) -> None:
            for worker in current.workers:
                worker.pid = pids.get(worker.name, worker.pid)

        store.update_config(_record_pids)

    async def _stop_launched(self, record: TeamRecord) -> None:
        for info in record.workers:
            await self.transport.terminate(WorkerTarget(team=record.name, worker=info.name))

    def create_task(
        self,
        team: str,
        subject: str,
        description: str = "",
        *,
        depends_on: list[str] | None = None,
        requires_code_change: bool = False,
    ) -> Task:
        registry = self.tasks(team)
        dependencies = list(depends_on or [])
        status = "pending"
        if dependencies:
            unmet = [
                item
                for item in dependencies
                if (found := registry.read_task(item)) is None or found.status != "completed"
            ]
            if unmet:
                status = "blocked"
        return registry.create_task(
            subject,
            description,
            status=status,
            depends_on=dependencies,
            requires_code_change=requires_code_change,
        )

    def approve_task(
        self,
        team: str,
        task_id: str,
        *,
        status: str = "approved",
        reviewer: str = DEFAULT_LEADER,
        reason: str = "",
    ) -> TaskApproval:
        task = self.tasks(team).read_task(task_id)
        if task is None:
            raise TeamStateError(f"Task {task_id} not found")
        approval = TaskApproval(
            task_id=task.id,
            required=task.requires_code_change,
            status=status,
            reviewer=reviewer,
            decision_reason=reason,
        )
        self.team(team).write_approval(approval)
        return approval

    def _check_policy(self, store: TeamStore, record: TeamRecord, task: Task, worker: str) -> None:
        if record.policy.delegation_only and worker == record.leader:
            raise AssignmentError("delegation_only_violation")
        if record.policy.plan_approval_required and task.requires_code_change:
            approval = store.read_approval(task.id)
            if approval is None or approval.status != "approved":
                raise AssignmentError("plan_approval_required")

    async def assign_task(self, team: str, task_id: str, worker: str) -> Task:
        store = self.team(team)
        registry = TaskRegistry(store)
        task = registry.read_task(task_id)
        if task is None:
            raise AssignmentError(f"Task {task_id} not found")
        record = store.require_config()
        self._check_policy(store, record, task, worker)
        if record.worker(worker) is None:
            raise AssignmentError(f"Worker {worker} not found in team {record.name}")

        if task.status == "blocked" and registry.compute_readiness(task.id).ready:
            promoted = registry.update_task(task.id, {"status": "pending", "blocked_by": []})
            task = promoted or task

        claim = registry.claim(task.id, worker, expected_version=task.version)
        if not claim.ok or claim.claim_token is None:
            if claim.error == "blocked_dependency":
                raise AssignmentError(f"blocked_dependency:{','.join(claim.dependencies)}")
            raise AssignmentError(claim.error or "claim_failed")

        claimed = claim.task or task
        try:
            outcome = await self.dispatcher(team).dispatch_inbox(
                worker,
                assignment_inbox(worker, record.name, claimed, claim.claim_token),
                trigger_message=trigger_for_inbox(worker, record.name),
                correlation_key=f"assign:{claimed.id}:{worker}",
            )
            if not outcome.ok:
                raise AssignmentError("worker_notify_failed")
        except Exception as exc:
            # The claim already took effect; undo it whatever the dispatch raised.
            reason = str(exc).strip() or "worker_assignment_failed"
            released = registry.release(claimed.id, claim.claim_token, worker)
            try:
                store.write_inbox(worker, cancellation_inbox(claimed.id, reason))
            except OSError as inbox_exc:
                logger.warning("Could not write cancellation inbox for %s: %s", worker, inbox_exc)
            if not released.ok:
                raise AssignmentError(f"{reason}:{released.error}") from exc
            if reason == "worker_notify_failed":
                raise AssignmentError("worker_notify_failed") from exc
            raise AssignmentError(f"worker_assignment_failed:{reason}") from exc

        def _track(current: TeamRecord) -> None:
            info = current.worker(worker)
            if info is not None and claimed.id not in info.assigned_tasks:
                info.assigned_tasks.append(claimed.id)

        store.update_config(_track)
        logger.info("Assigned task %s to %s in team %s", claimed.id, worker, team)
        return claimed

    async def reassign_task(
        self, team: str, task_id: str, from_worker: str, to_worker: str
    ) -> Task:
        """Take a task away from ``from_worker`` (typically dead) and assign it again."""
        registry = self.tasks(team)
        task = registry.read_task(task_id)
        if task is None:
            raise AssignmentError(f"Task {task_id} not found")
        if task.status == "in_progress" and task.owner == from_worker:
            released = registry.release(task.id, None, from_worker)
            if not released.ok:
                raise AssignmentError(f"reassign_release_failed:{released.error}")
        return await self.assign_task(team, task.id, to_worker)

    async def send_message(
        self, team: str, from_worker: str, to_worker: str, body: str
    ) -> MailboxMessage:
        store = self.team(team)
        record = store.require_config()
        message = Mailbox(store).send_direct(from_worker, to_worker, body)
        if to_worker == record.leader:
            # The leader reads its own mailbox; there is no process to notify.
            return message
        if record.worker(to_worker) is None:
            raise MessageDeliveryError(f"Worker {to_worker} not found in team {record.name}")
        outcome = await self.dispatcher(team).dispatch_mailbox(message)
        if not outcome.ok:
            raise MessageDeliveryError(f"mailbox_notify_failed:{outcome.reason}")
        return message

    async def broadcast_message(
        self, team: str, from_worker: str, body: str
    ) -> list[DispatchOutcome]:
        store = self.team(team)
        dispatcher = self.dispatcher(team)
        outcomes: list[DispatchOutcome] = []
        for message in Mailbox(store).broadcast(from_worker, body):
            outcome = await dispatcher.dispatch_mailbox(message)
            if not outcome.ok:
                logger.warning(
                    "Broadcast to %s not confirmed: %s", message.to_worker, outcome.reason
                )
            outcomes.append(outcome)
        return outcomes

    async def monitor(self, team: str) -> TeamSnapshot:
        store = self.team(team)
        monitor = TeamMonitor(
            store,
            self.transport,
            dispatcher=Dispatcher(store, self.transport, config=self.config.dispatch),
            config=self.config.monitor,
        )
        return await monitor.tick()

    def status(self, team: str) -> dict[str, Any]:
        """Read-only summary from the task files and the last monitor snapshot."""
        store = self.team(team)
        record = store.require_config()
        tasks = TaskRegistry(store).list_tasks()
        phase = store.read_phase()
        snapshot = store.read_snapshot()
        return {
            "team": record.name,
            "task": record.task,
            "phase": phase.current_phase if phase else None,
            "workers": [worker.name for worker in record.workers],
            "task_counts": count_tasks(tasks),
            "last_monitor": snapshot.monitor_timings if snapshot else None,
        }

    async def drain(
        self,
        team: str | None = None,
        *,
        event_hook: DeliveryEventHook | None = None,
    ) -> DrainSummary:
        """Run one delivery-agent tick over one team or every team."""
        summary = DrainSummary()
        budget = self.config.dispatch.max_per_tick
        for name in [team] if team else self.list_teams():
            remaining = budget - summary.processed
            if remaining <= 0:
                break
            agent = DeliveryAgent(
                self.team(name), self.transport, config=self.config.dispatch, event_hook=event_hook
            )
            summary.merge(await agent.drain(max_per_tick=remaining))
        return summary

    async def shutdown(self, team: str, *, force: bool = False) -> ShutdownReport:
        store = self.team(team)
        gate = ShutdownGate(
            store,
            self.transport,
            dispatcher=Dispatcher(store, self.transport, config=self.config.dispatch),
            config=self.config.shutdown,
        )
        report = await gate.shutdown(force=force)
        for handle in self.workers.handles(team):
            self.workers.remove(handle.team, handle.worker)
        return report

