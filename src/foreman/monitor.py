from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass, field
from typing import Any

from foreman.config import MonitorConfig
from foreman.dispatcher import Dispatcher, trigger_for_mailbox
from foreman.phase import has_structured_verification_evidence, infer_phase_target, reconcile_phase
from foreman.state.mailbox import Mailbox
from foreman.state.store import utcnow_iso
from foreman.state.tasks import TASK_STATUSES, Task, TaskRegistry
from foreman.state.team import MonitorSnapshot, TeamRecord, TeamStore, WorkerHeartbeat, WorkerStatus
from foreman.transport.base import WorkerTarget, WorkerTransport

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class WorkerSnapshot:
    name: str
    alive: bool
    status: WorkerStatus
    heartbeat: WorkerHeartbeat | None
    assigned_tasks: list[str] = field(default_factory=list)
    turns_without_progress: int = 0


@dataclass(slots=True)
class TeamSnapshot:
    team: str
    phase: str
    workers: list[WorkerSnapshot]
    task_counts: dict[str, int]
    tasks: list[Task]
    all_tasks_terminal: bool
    dead_workers: list[str] = field(default_factory=list)
    non_reporting_workers: list[str] = field(default_factory=list)
    recommendations: list[str] = field(default_factory=list)
    timings: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _elapsed_ms(started: float) -> float:
    return round((time.perf_counter() - started) * 1000, 2)


def count_tasks(tasks: list[Task]) -> dict[str, int]:
    counts = {status: 0 for status in sorted(TASK_STATUSES)}
    for task in tasks:
        counts[task.status] = counts.get(task.status, 0) + 1
    counts["total"] = len(tasks)
    return counts


class TeamMonitor:
    """Polling reconciler for one team.

    A tick reads tasks and worker records without taking locks, derives
    lifecycle events by diffing against the previous snapshot, reconciles the
    persisted phase, pushes pending mailbox messages and finally replaces the
    snapshot. Repeating a tick with no intervening changes writes no new
    events and no new phase transitions.
    """

    def __init__(
        self,
        team: TeamStore,
        transport: WorkerTransport,
        *,
        dispatcher: Dispatcher | None = None,
        config: MonitorConfig | None = None,
    ) -> None:
        self.team = team
        self.transport = transport
        self.dispatcher = dispatcher or Dispatcher(team, transport)
        self.config = config or MonitorConfig()
        self.registry = TaskRegistry(team)
        self.mailbox = Mailbox(team)

    def _target(
        self, record: TeamRecord, worker: str, heartbeat: WorkerHeartbeat | None
    ) -> WorkerTarget:
        info = record.worker(worker)
        pid = (info.pid if info else None) or (heartbeat.pid if heartbeat else None)
        return WorkerTarget(
            team=record.name,
            worker=worker,
            worker_index=info.index if info else None,
            pane_id=info.pane_id if info else None,
            pid=pid,
        )

    def _is_alive(self, target: WorkerTarget) -> bool:
        try:
            return self.transport.is_alive(target)
        except Exception as exc:
            logger.warning("Liveness check for %s failed: %s", target.worker, exc)
            return False

    def _scan_workers(
        self,
        record: TeamRecord,
        tasks_by_id: dict[str, Task],
        previous: MonitorSnapshot | None,
    ) -> list[WorkerSnapshot]:
        workers: list[WorkerSnapshot] = []
        for info in record.workers:
            status = self.team.read_worker_status(info.name)
            heartbeat = self.team.read_heartbeat(info.name)
            alive = self._is_alive(self._target(record, info.name, heartbeat))

            turns_without_progress = 0
            current_task = tasks_by_id.get(status.current_task_id or "")
            if (
                heartbeat is not None
                and previous is not None
                and status.state == "working"
                and current_task is not None
                and current_task.status in {"pending", "in_progress"}
                and previous.worker_task_id_by_name.get(info.name, "") == current_task.id
            ):
                previous_turns = int(previous.worker_turn_count_by_name.get(info.name, 0) or 0)
                turns_without_progress = max(0, heartbeat.turn_count - previous_turns)

            workers.append(
                WorkerSnapshot(
                    name=info.name,
                    alive=alive,
                    status=status,
                    heartbeat=heartbeat,
                    assigned_tasks=list(info.assigned_tasks),
                    turns_without_progress=turns_without_progress,
                )
            )
        return workers

    def _emit_derived_events(
        self,
        tasks: list[Task],
        workers: list[WorkerSnapshot],
        previous: MonitorSnapshot | None,
        completed_event_task_ids: dict[str, bool],
    ) -> None:
        if previous is None:
            return
        events = self.team.events
        for task in tasks:
            previous_status = previous.task_status_by_id.get(task.id)
            if previous_status is None or previous_status == "completed":
                continue
            if task.status != "completed":
                continue
            if completed_event_task_ids.get(task.id) or task.terminal_event_emitted:
                continue
            events.append("task_completed", worker=task.owner or "unknown", task_id=task.id)
            completed_event_task_ids[task.id] = True

        for worker in workers:
            was_alive = previous.worker_alive_by_name.get(worker.name)
            if was_alive is True and not worker.alive:
                events.append(
                    "worker_stopped",
                    worker=worker.name,
                    task_id=worker.status.current_task_id,
                    reason=worker.status.reason,
                )
            previous_state = previous.worker_state_by_name.get(worker.name)
            if previous_state and previous_state != "idle" and worker.status.state == "idle":
                events.append(
                    "worker_idle",
                    worker=worker.name,
                    task_id=worker.status.current_task_id,
                    reason=f"previous_state:{previous_state}",
                )

    async def deliver_pending_mailbox(
        self,
        record: TeamRecord,
        workers: list[WorkerSnapshot],
        previous_notified: dict[str, str],
    ) -> dict[str, str]:
        """Notify workers about unread messages; returns the notified-id map."""
        alive = {worker.name: worker.alive for worker in workers}
        notified: dict[str, str] = {}
        for info in record.workers:
            pending = [item for item in self.mailbox.list_messages(info.name) if item.is_pending]
            for message in pending:
                notified[message.message_id] = (
                    message.notified_at or previous_notified.get(message.message_id) or ""
                )
            if not alive.get(info.name, False):
                continue
            for message in pending:
                if message.notified_at or previous_notified.get(message.message_id):
                    continue
                outcome = await self.dispatcher.dispatch_mailbox(
                    message,
                    trigger_message=trigger_for_mailbox(info.name, record.name),
                    reuse_existing=True,
                )
                if outcome.ok:
                    notified[message.message_id] = utcnow_iso()
                else:
                    logger.info(
                        "Mailbox message %s for %s not notified: %s",
                        message.message_id,
                        info.name,
                        outcome.reason,
                    )
        return {key: value for key, value in notified.items() if value}

    async def tick(self) -> TeamSnapshot:
        started = time.perf_counter()
        record = self.team.require_config()
        previous = self.team.read_snapshot()

        list_started = time.perf_counter()
        tasks = self.registry.list_tasks()
        list_tasks_ms = _elapsed_ms(list_started)
        tasks_by_id = {task.id: task for task in tasks}

        scan_started = time.perf_counter()
        workers = self._scan_workers(record, tasks_by_id, previous)
        worker_scan_ms = _elapsed_ms(scan_started)

        dead_workers: list[str] = []
        non_reporting: list[str] = []
        recommendations: list[str] = []
        for worker in workers:
            if not worker.alive:
                dead_workers.append(worker.name)
                for task in tasks:
                    if task.status == "in_progress" and task.owner == worker.name:
                        recommendations.append(f"Reassign task-{task.id} from dead {worker.name}")
            elif worker.turns_without_progress > self.config.non_reporting_turns:
                non_reporting.append(worker.name)
                recommendations.append(f"Send reminder to non-reporting {worker.name}")

        counts = count_tasks(tasks)
        unverified = [
            task
            for task in tasks
            if task.status == "completed"
            and task.requires_code_change
            and not has_structured_verification_evidence(task.result)
        ]
        for task in unverified:
            recommendations.append(
                f"Verification evidence missing for task-{task.id}; "
                "require structured PASS/FAIL evidence before terminal success"
            )

        target = infer_phase_target(counts, verification_pending=bool(unverified))
        reconciliation = reconcile_phase(self.team.read_phase(), target)
        if reconciliation.changed:
            self.team.write_phase(reconciliation.state)
            last = reconciliation.state.transitions[-1]
            logger.info("Team %s phase %s -> %s", record.name, last["from"], last["to"])

        completed_ids = dict(previous.completed_event_task_ids) if previous else {}
        self._emit_derived_events(tasks, workers, previous, completed_ids)

        mailbox_started = time.perf_counter()
        notified = await self.deliver_pending_mailbox(
            record, workers, previous.mailbox_notified_by_message_id if previous else {}
        )
        mailbox_delivery_ms = _elapsed_ms(mailbox_started)

        timings = {
            "list_tasks_ms": list_tasks_ms,
            "worker_scan_ms": worker_scan_ms,
            "mailbox_delivery_ms": mailbox_delivery_ms,
            "total_ms": _elapsed_ms(started),
            "updated_at": utcnow_iso(),
        }
        self.team.write_snapshot(
            MonitorSnapshot(
                task_status_by_id={task.id: task.status for task in tasks},
                worker_alive_by_name={worker.name: worker.alive for worker in workers},
                worker_state_by_name={worker.name: worker.status.state for worker in workers},
                worker_turn_count_by_name={
                    worker.name: worker.heartbeat.turn_count if worker.heartbeat else 0
                    for worker in workers
                },
                worker_task_id_by_name={
                    worker.name: worker.status.current_task_id or "" for worker in workers
                },
                mailbox_notified_by_message_id=notified,
                completed_event_task_ids=completed_ids,
                monitor_timings=timings,
            )
        )

        return TeamSnapshot(
            team=record.name,
            phase=reconciliation.state.current_phase,
            workers=workers,
            task_counts=counts,
            tasks=tasks,
            all_tasks_terminal=counts["pending"] + counts["blocked"] + counts["in_progress"] == 0,
            dead_workers=dead_workers,
            non_reporting_workers=non_reporting,
            recommendations=recommendations,
            timings=timings,
        )
