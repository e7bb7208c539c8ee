from __future__ import annotations

import logging
import shutil
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Literal

from foreman.config import ABSOLUTE_MAX_WORKERS, DISPATCH_MODES
from foreman.state.events import EventLog
from foreman.state.lock import DirectoryLock, LockSettings
from foreman.state.store import (
    TeamNotFoundError,
    TeamPaths,
    TeamStateError,
    read_json,
    utcnow_iso,
    validate_name,
    write_json_atomic,
    write_text_atomic,
)

logger = logging.getLogger(__name__)

WorkerState = Literal["idle", "working", "blocked", "done", "failed", "draining", "unknown"]
WORKER_STATES = {"idle", "working", "blocked", "done", "failed", "draining", "unknown"}
TeamPhase = Literal["team-exec", "team-verify", "complete", "cancelled"]
TERMINAL_PHASES = {"complete", "cancelled"}
DEFAULT_LEADER = "leader"


@dataclass(slots=True)
class TeamPolicy:
    dispatch_mode: str = "hook_preferred_with_fallback"
    dispatch_ack_timeout_ms: int | None = None
    delegation_only: bool = False
    plan_approval_required: bool = False

    @classmethod
    def from_dict(cls, data: Any) -> TeamPolicy:
        if not isinstance(data, dict):
            return cls()
        mode = str(data.get("dispatch_mode") or "")
        ack = data.get("dispatch_ack_timeout_ms")
        return cls(
            dispatch_mode=mode if mode in DISPATCH_MODES else "hook_preferred_with_fallback",
            dispatch_ack_timeout_ms=int(ack) if isinstance(ack, int | float) and ack > 0 else None,
            delegation_only=data.get("delegation_only") is True,
            plan_approval_required=data.get("plan_approval_required") is True,
        )


@dataclass(slots=True)
class WorkerInfo:
    name: str
    index: int
    pane_id: str | None = None
    pid: int | None = None
    assigned_tasks: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WorkerInfo:
        return cls(
            name=str(data["name"]),
            index=int(data.get("index", 0)),
            pane_id=data.get("pane_id"),
            pid=data.get("pid"),
            assigned_tasks=[str(item) for item in data.get("assigned_tasks", []) or []],
        )


@dataclass(slots=True)
class TeamRecord:
    name: str
    task: str
    leader: str = DEFAULT_LEADER
    max_workers: int = 8
    workers: list[WorkerInfo] = field(default_factory=list)
    next_task_id: int | None = 1
    policy: TeamPolicy = field(default_factory=TeamPolicy)
    created_at: str = field(default_factory=utcnow_iso)

    @property
    def worker_count(self) -> int:
        return len(self.workers)

    def worker(self, name: str) -> WorkerInfo | None:
        for worker in self.workers:
            if worker.name == name:
                return worker
        return None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TeamRecord:
        next_task_id = data.get("next_task_id")
        return cls(
            name=str(data["name"]),
            task=str(data.get("task", "")),
            leader=str(data.get("leader") or DEFAULT_LEADER),
            max_workers=int(data.get("max_workers", 8)),
            workers=[
                WorkerInfo.from_dict(item)
                for item in data.get("workers", []) or []
                if isinstance(item, dict) and item.get("name")
            ],
            next_task_id=(
                int(next_task_id)
                if isinstance(next_task_id, int) and not isinstance(next_task_id, bool)
                else None
            ),
            policy=TeamPolicy.from_dict(data.get("policy")),
            created_at=str(data.get("created_at") or utcnow_iso()),
        )

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["worker_count"] = self.worker_count
        return payload


@dataclass(slots=True)
class WorkerStatus:
    state: str = "unknown"
    current_task_id: str | None = None
    reason: str | None = None
    updated_at: str | None = None

    @classmethod
    def from_dict(cls, data: Any) -> WorkerStatus:
        if not isinstance(data, dict):
            return cls()
        state = str(data.get("state") or "unknown")
        task_id = data.get("current_task_id")
        return cls(
            state=state if state in WORKER_STATES else "unknown",
            current_task_id=str(task_id) if task_id not in (None, "") else None,
            reason=data.get("reason"),
            updated_at=data.get("updated_at"),
        )


@dataclass(slots=True)
class WorkerHeartbeat:
    pid: int | None = None
    last_turn_at: str | None = None
    turn_count: int = 0
    alive: bool = True

    @classmethod
    def from_dict(cls, data: Any) -> WorkerHeartbeat | None:
        if not isinstance(data, dict):
            return None
        try:
            turn_count = int(data.get("turn_count", 0))
        except (TypeError, ValueError):
            turn_count = 0
        return cls(
            pid=data.get("pid"),
            last_turn_at=data.get("last_turn_at"),
            turn_count=turn_count,
            alive=data.get("alive") is not False,
        )


@dataclass(slots=True)
class ShutdownAck:
    status: str
    reason: str | None = None
    updated_at: str | None = None


@dataclass(slots=True)
class TaskApproval:
    task_id: str
    required: bool
    status: str
    reviewer: str
    decision_reason: str
    decided_at: str = field(default_factory=utcnow_iso)


@dataclass(slots=True)
class PhaseState:
    current_phase: str = "team-exec"
    transitions: list[dict[str, Any]] = field(default_factory=list)
    updated_at: str = field(default_factory=utcnow_iso)


@dataclass(slots=True)
class MonitorSnapshot:
    task_status_by_id: dict[str, str] = field(default_factory=dict)
    worker_alive_by_name: dict[str, bool] = field(default_factory=dict)
    worker_state_by_name: dict[str, str] = field(default_factory=dict)
    worker_turn_count_by_name: dict[str, int] = field(default_factory=dict)
    worker_task_id_by_name: dict[str, str] = field(default_factory=dict)
    mailbox_notified_by_message_id: dict[str, str] = field(default_factory=dict)
    completed_event_task_ids: dict[str, bool] = field(default_factory=dict)
    monitor_timings: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Any) -> MonitorSnapshot | None:
        if not isinstance(data, dict):
            return None

        def _mapping(key: str) -> dict[str, Any]:
            value = data.get(key)
            return dict(value) if isinstance(value, dict) else {}

        return cls(
            task_status_by_id=_mapping("task_status_by_id"),
            worker_alive_by_name=_mapping("worker_alive_by_name"),
            worker_state_by_name=_mapping("worker_state_by_name"),
            worker_turn_count_by_name=_mapping("worker_turn_count_by_name"),
            worker_task_id_by_name=_mapping("worker_task_id_by_name"),
            mailbox_notified_by_message_id=_mapping("mailbox_notified_by_message_id"),
            completed_event_task_ids=_mapping("completed_event_task_ids"),
            monitor_timings=_mapping("monitor_timings"),
        )


class TeamStore:
    """Team-level records: config, worker files, phase, snapshot and approvals."""

    def __init__(
        self,
        state_root: Path,
        team: str,
        lock_settings: LockSettings | None = None,
    ) -> None:
        self.paths = TeamPaths(state_root=state_root, team=validate_name(team, kind="team"))
        self.lock_settings = lock_settings or LockSettings()
        self.events = EventLog(self.paths)

    @property
    def name(self) -> str:
        return self.paths.team

    def lock(self, path: Path) -> DirectoryLock:
        return DirectoryLock(path, self.lock_settings)

    def exists(self) -> bool:
        return self.paths.config.is_file()

    def create(self, record: TeamRecord) -> TeamRecord:
        if self.exists():
            raise TeamStateError(f"Team {self.name} already exists")
        if not record.workers:
            raise TeamStateError("A team needs at least one worker")
        limit = min(record.max_workers, ABSOLUTE_MAX_WORKERS)
        if len(record.workers) > limit:
            raise TeamStateError(f"Team {self.name} allows at most {limit} workers")
        names = [worker.name for worker in record.workers]
        if len(set(names)) != len(names):
            raise TeamStateError("Worker names must be unique")
        for worker_name in names:
            validate_name(worker_name, kind="worker")
            if worker_name == record.leader:
                raise TeamStateError(f"Worker name {worker_name} collides with the leader")

        for directory in (
            self.paths.tasks_dir,
            self.paths.root / "claims",
            self.paths.dispatch_requests.parent,
            self.paths.mailbox_dir,
            self.paths.events.parent,
            self.paths.root / "approvals",
        ):
            directory.mkdir(parents=True, exist_ok=True)
        for worker in record.workers:
            write_json_atomic(
                self.paths.worker_dir(worker.name) / "identity.json",
                {"name": worker.name, "index": worker.index, "team": self.name},
            )
            if worker.pid is not None:
                self.write_heartbeat(worker.name, WorkerHeartbeat(pid=worker.pid))
        write_json_atomic(self.paths.phase, asdict(PhaseState()))
        self.write_config(record)
        logger.info("Created team %s with %d workers", self.name, len(record.workers))
        return record

    def read_config(self) -> TeamRecord | None:
        payload = read_json(self.paths.config)
        if not isinstance(payload, dict) or not payload.get("name"):
            return None
        try:
            return TeamRecord.from_dict(payload)
        except (KeyError, TypeError, ValueError):
            return None

    def require_config(self) -> TeamRecord:
        record = self.read_config()
        if record is None:
            raise TeamNotFoundError(self.name)
        return record

    def write_config(self, record: TeamRecord) -> None:
        write_json_atomic(self.paths.config, record.to_dict())

    @contextmanager
    def config_lock(self) -> Iterator[str]:
        with self.lock(self.paths.config_lock).held() as token:
            yield token

    def update_config(self, updater: Callable[[TeamRecord], None]) -> TeamRecord:
        with self.config_lock():
            record = self.require_config()
            updater(record)
            self.write_config(record)
            return record

    def read_worker_status(self, worker: str) -> WorkerStatus:
        return WorkerStatus.from_dict(read_json(self.paths.worker_dir(worker) / "status.json"))

    def write_worker_status(self, worker: str, status: WorkerStatus) -> None:
        status.updated_at = utcnow_iso()
        write_json_atomic(self.paths.worker_dir(worker) / "status.json", asdict(status))

    def read_heartbeat(self, worker: str) -> WorkerHeartbeat | None:
        payload = read_json(self.paths.worker_dir(worker) / "heartbeat.json")
        return WorkerHeartbeat.from_dict(payload)

    def write_heartbeat(self, worker: str, heartbeat: WorkerHeartbeat) -> None:
        write_json_atomic(self.paths.worker_dir(worker) / "heartbeat.json", asdict(heartbeat))

    def write_inbox(self, worker: str, content: str) -> Path:
        inbox = self.paths.worker_dir(worker) / "inbox.md"
        write_text_atomic(inbox, content)
        return inbox

    def read_inbox(self, worker: str) -> str | None:
        try:
            return (self.paths.worker_dir(worker) / "inbox.md").read_text(encoding="utf-8")
        except FileNotFoundError:
            return None

    def write_shutdown_request(self, worker: str, requested_by: str) -> None:
        write_json_atomic(
            self.paths.worker_dir(worker) / "shutdown-request.json",
            {"requested_at": utcnow_iso(), "requested_by": requested_by},
        )

    def read_shutdown_request(self, worker: str) -> dict[str, Any] | None:
        payload = read_json(self.paths.worker_dir(worker) / "shutdown-request.json")
        return payload if isinstance(payload, dict) else None

    def write_shutdown_ack(self, worker: str, status: str, reason: str | None = None) -> None:
        if status not in {"accept", "reject"}:
            raise TeamStateError(f"Invalid shutdown ack status: {status}")
        write_json_atomic(
            self.paths.worker_dir(worker) / "shutdown-ack.json",
            {"status": status, "reason": reason, "updated_at": utcnow_iso()},
        )

    def read_shutdown_ack(self, worker: str) -> ShutdownAck | None:
        payload = read_json(self.paths.worker_dir(worker) / "shutdown-ack.json")
        if not isinstance(payload, dict) or payload.get("status") not in {"accept", "reject"}:
            return None
        return ShutdownAck(
            status=str(payload["status"]),
            reason=payload.get("reason"),
            updated_at=payload.get("updated_at"),
        )

    def clear_shutdown_ack(self, worker: str) -> None:
        (self.paths.worker_dir(worker) / "shutdown-ack.json").unlink(missing_ok=True)

    def read_phase(self) -> PhaseState | None:
        payload = read_json(self.paths.phase)
        if not isinstance(payload, dict) or not isinstance(payload.get("current_phase"), str):
            return None
        transitions = payload.get("transitions")
        return PhaseState(
            current_phase=payload["current_phase"],
            transitions=list(transitions) if isinstance(transitions, list) else [],
            updated_at=str(payload.get("updated_at") or utcnow_iso()),
        )

    def write_phase(self, phase: PhaseState) -> None:
        write_json_atomic(self.paths.phase, asdict(phase))

    def read_snapshot(self) -> MonitorSnapshot | None:
        return MonitorSnapshot.from_dict(read_json(self.paths.monitor_snapshot))

    def write_snapshot(self, snapshot: MonitorSnapshot) -> None:
        write_json_atomic(self.paths.monitor_snapshot, asdict(snapshot))

    def read_approval(self, task_id: str) -> TaskApproval | None:
        payload = read_json(self.paths.approval(task_id))
        if not isinstance(payload, dict):
            return None
        try:
            return TaskApproval(
                task_id=str(payload["task_id"]),
                required=payload.get("required") is not False,
                status=str(payload.get("status", "pending")),
                reviewer=str(payload.get("reviewer", "")),
                decision_reason=str(payload.get("decision_reason", "")),
                decided_at=str(payload.get("decided_at") or utcnow_iso()),
            )
        except KeyError:
            return None

    def write_approval(self, approval: TaskApproval) -> None:
        if approval.status not in {"pending", "approved", "rejected"}:
            raise TeamStateError(f"Invalid approval status: {approval.status}")
        write_json_atomic(self.paths.approval(approval.task_id), asdict(approval))
        self.events.append(
            "approval_decision",
            worker=approval.reviewer or DEFAULT_LEADER,
            task_id=approval.task_id,
            reason=f"{approval.status}:{approval.decision_reason}",
        )

    def cleanup(self) -> None:
        shutil.rmtree(self.paths.root, ignore_errors=True)
        logger.info("Removed state for team %s", self.name)
