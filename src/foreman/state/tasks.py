from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from datetime import timedelta
from typing import Any, Literal
from uuid import uuid4

from foreman.state.lock import DirectoryLock
from foreman.state.store import (
    TaskValidationError,
    parse_iso,
    read_json,
    utcnow,
    utcnow_iso,
    validate_task_id,
    write_json_atomic,
)
from foreman.state.team import TeamStore

logger = logging.getLogger(__name__)

TaskStatus = Literal["pending", "in_progress", "completed", "failed", "blocked"]
TASK_STATUSES = {"pending", "in_progress", "completed", "failed", "blocked"}
TERMINAL_STATUSES = {"completed", "failed"}
ALLOWED_TRANSITIONS = {("in_progress", "completed"), ("in_progress", "failed")}
UPDATABLE_FIELDS = {
    "subject",
    "description",
    "status",
    "owner",
    "depends_on",
    "blocked_by",
    "requires_code_change",
    "result",
    "error",
    "completed_at",
}


def _id_list(value: Any) -> list[str]:
    return [str(item) for item in value] if isinstance(value, list) else []


@dataclass(slots=True)
class TaskClaim:
    owner: str
    token: str
    leased_until: str


@dataclass(slots=True)
class Task:
    id: str
    subject: str
    description: str
    status: str = "pending"
    owner: str | None = None
    claim: TaskClaim | None = None
    version: int = 1
    depends_on: list[str] = field(default_factory=list)
    blocked_by: list[str] = field(default_factory=list)
    requires_code_change: bool = False
    result: str | None = None
    error: str | None = None
    created_at: str = field(default_factory=utcnow_iso)
    completed_at: str | None = None
    terminal_event_emitted: bool = False

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Task | None:
        try:
            raw_claim = payload.get("claim")
            claim = None
            if isinstance(raw_claim, dict):
                claim = TaskClaim(
                    owner=str(raw_claim.get("owner") or ""),
                    token=str(raw_claim.get("token") or ""),
                    leased_until=str(raw_claim.get("leased_until") or ""),
                )
            status = str(payload.get("status", "pending"))
            if status not in TASK_STATUSES:
                return None
            return cls(
                id=str(payload["id"]),
                subject=str(payload.get("subject", "")),
                description=str(payload.get("description", "")),
                status=status,
                owner=payload.get("owner") or None,
                claim=claim,
                version=int(payload.get("version", 1)),
                depends_on=_id_list(payload.get("depends_on")),
                blocked_by=_id_list(payload.get("blocked_by")),
                requires_code_change=payload.get("requires_code_change") is True,
                result=payload.get("result"),
                error=payload.get("error"),
                created_at=str(payload.get("created_at") or utcnow_iso()),
                completed_at=payload.get("completed_at"),
                terminal_event_emitted=payload.get("terminal_event_emitted") is True,
            )
        except (KeyError, TypeError, ValueError):
            return None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class TaskReadiness:
    ready: bool
    reason: str | None = None
    dependencies: list[str] = field(default_factory=list)


@dataclass(slots=True)
class ClaimResult:
    ok: bool
    task: Task | None = None
    claim_token: str | None = None
    error: str | None = None
    dependencies: list[str] = field(default_factory=list)


@dataclass(slots=True)
class TransitionResult:
    ok: bool
    task: Task | None = None
    error: str | None = None


@dataclass(slots=True)
class ReleaseResult:
    ok: bool
    task: Task | None = None
    error: str | None = None


def _lease_expired(claim: TaskClaim) -> bool:
    leased_until = parse_iso(claim.leased_until)
    return leased_until is None or utcnow() > leased_until


class TaskRegistry:
    """Durable task records with optimistic claims and leased ownership.

    Every write to a task happens under its ``claims/task-<id>.lock``
    directory lock, so each successful mutation bumps ``version`` exactly once.
    """

    def __init__(self, team: TeamStore, *, lease_seconds: float | None = None) -> None:
        self.team = team
        self.paths = team.paths
        self.lease_seconds = (
            lease_seconds if lease_seconds is not None else team.lock_settings.stale_after_seconds
        )

    def _task_lock(self, task_id: str) -> DirectoryLock:
        return self.team.lock(self.paths.task_lock(task_id))

    def _load(self, task_id: str) -> Task | None:
        payload = read_json(self.paths.task(task_id))
        if not isinstance(payload, dict):
            return None
        task = Task.from_dict(payload)
        if task is None or task.id != task_id:
            return None
        return task

    def _store(self, task: Task) -> None:
        write_json_atomic(self.paths.task(task.id), task.to_dict())

    def read_task(self, task_id: str) -> Task | None:
        try:
            normalized = validate_task_id(task_id)
        except TaskValidationError:
            return None
        return self._load(normalized)

    def list_tasks(self) -> list[Task]:
        if not self.paths.tasks_dir.is_dir():
            return []
        tasks: list[Task] = []
        for path in self.paths.tasks_dir.glob("task-*.json"):
            task_id = path.stem[len("task-") :]
            if not task_id.isdigit():
                continue
            task = self._load(task_id)
            if task is not None:
                tasks.append(task)
        return sorted(tasks, key=lambda item: int(item.id))

    def _highest_task_id(self) -> int:
        highest = 0
        if self.paths.tasks_dir.is_dir():
            for path in self.paths.tasks_dir.glob("task-*.json"):
                suffix = path.stem[len("task-") :]
                if suffix.isdigit():
                    highest = max(highest, int(suffix))
        return highest

    def create_task(
        self,
        subject: str,
        description: str,
        *,
        status: str = "pending",
        owner: str | None = None,
        depends_on: list[str] | None = None,
        requires_code_change: bool = False,
    ) -> Task:
        if status not in TASK_STATUSES:
            raise TaskValidationError(f"Invalid task status: {status!r}")
        dependencies = [validate_task_id(item) for item in depends_on or []]
        self.team.require_config()

        with self.team.config_lock():
            record = self.team.require_config()
            next_id = record.next_task_id
            if next_id is None:
                # Configs without a counter fall back to scanning existing files.
                next_id = self._highest_task_id() + 1
            while self.paths.task(str(next_id)).exists():
                next_id += 1
            task = Task(
                id=str(next_id),
                subject=subject,
                description=description,
                status=status,
                owner=owner,
                depends_on=dependencies,
                blocked_by=list(dependencies) if status == "blocked" else [],
                requires_code_change=requires_code_change,
                completed_at=utcnow_iso() if status == "completed" else None,
            )
            self._store(task)
            record.next_task_id = next_id + 1
            self.team.write_config(record)
        logger.info("Created task %s for team %s", task.id, self.team.name)
        return task

    def update_task(self, task_id: str, updates: dict[str, Any]) -> Task | None:
        task_id = validate_task_id(task_id)
        if "status" in updates and updates["status"] not in TASK_STATUSES:
            raise TaskValidationError(f"Invalid task status: {updates['status']!r}")
        if updates.get("status") == "in_progress":
            raise TaskValidationError("Tasks enter in_progress only through claim()")
        with self._task_lock(task_id).held():
            current = self._load(task_id)
            if current is None:
                return None
            if current.is_terminal and updates.get("status", current.status) != current.status:
                raise TaskValidationError(
                    f"Task {task_id} is already {current.status}; its status is final"
                )
            payload = current.to_dict()
            for key, value in updates.items():
                if key not in UPDATABLE_FIELDS:
                    logger.debug("Ignoring non-updatable task field %s", key)
                    continue
                if key in {"depends_on", "blocked_by"} and not isinstance(value, list):
                    value = []
                payload[key] = value
            payload["version"] = current.version + 1
            updated = Task.from_dict(payload)
            if updated is None:
                raise TaskValidationError(f"Task {task_id} update produced an invalid record")
            self._store(updated)
            return updated

    def compute_readiness(self, task_id: str) -> TaskReadiness:
        task = self.read_task(task_id)
        if task is None:
            return TaskReadiness(ready=False, reason="task_not_found")
        return self._readiness(task)

    def _readiness(self, task: Task) -> TaskReadiness:
        unmet: list[str] = []
        for dependency_id in task.depends_on:
            dependency = self.read_task(dependency_id)
            if dependency is None or dependency.status != "completed":
                unmet.append(dependency_id)
        if unmet:
            return TaskReadiness(ready=False, reason="blocked_dependency", dependencies=unmet)
        return TaskReadiness(ready=True)

    def claim(self, task_id: str, worker: str, expected_version: int | None = None) -> ClaimResult:
        try:
            task_id = validate_task_id(task_id)
        except TaskValidationError:
            return ClaimResult(ok=False, error="task_not_found")
        with self._task_lock(task_id).held():
            task = self._load(task_id)
            if task is None:
                return ClaimResult(ok=False, error="task_not_found")

            readiness = self._readiness(task)
            if not readiness.ready:
                return ClaimResult(
                    ok=False,
                    task=task,
                    error="blocked_dependency",
                    dependencies=readiness.dependencies,
                )

            if task.status != "pending":
                return ClaimResult(ok=False, task=task, error="claim_conflict")
            if task.owner and task.owner != worker:
                return ClaimResult(ok=False, task=task, error="claim_conflict")
            if task.claim is not None:
                return ClaimResult(ok=False, task=task, error="claim_conflict")
            if expected_version is not None and expected_version != task.version:
                return ClaimResult(ok=False, task=task, error="claim_conflict")

            token = uuid4().hex
            leased_until = utcnow() + timedelta(seconds=self.lease_seconds)
            task.status = "in_progress"
            task.owner = worker
            task.claim = TaskClaim(owner=worker, token=token, leased_until=leased_until.isoformat())
            task.blocked_by = []
            task.version += 1
            self._store(task)
        logger.debug("Worker %s claimed task %s", worker, task_id)
        return ClaimResult(ok=True, task=task, claim_token=token)

    def transition(
        self,
        task_id: str,
        from_status: str,
        to_status: str,
        claim_token: str,
        *,
        result: str | None = None,
        error: str | None = None,
    ) -> TransitionResult:
        if (from_status, to_status) not in ALLOWED_TRANSITIONS:
            return TransitionResult(ok=False, error="invalid_transition")
        try:
            task_id = validate_task_id(task_id)
        except TaskValidationError:
            return TransitionResult(ok=False, error="task_not_found")

        with self._task_lock(task_id).held():
            task = self._load(task_id)
            if task is None:
                return TransitionResult(ok=False, error="task_not_found")
            if task.status != from_status:
                return TransitionResult(ok=False, task=task, error="invalid_transition")
            claim = task.claim
            if claim is None or claim.owner != task.owner or claim.token != claim_token:
                return TransitionResult(ok=False, task=task, error="claim_conflict")
            if _lease_expired(claim):
                return TransitionResult(ok=False, task=task, error="lease_expired")

            task.status = to_status
            task.claim = None
            if result is not None:
                task.result = result
            if error is not None:
                task.error = error
            task.completed_at = utcnow_iso()
            task.terminal_event_emitted = True
            task.version += 1
            self._store(task)

        event_type = "task_completed" if to_status == "completed" else "task_failed"
        self.team.events.append(event_type, worker=task.owner or "unknown", task_id=task.id)
        return TransitionResult(ok=True, task=task)

    def release(self, task_id: str, claim_token: str | None, worker: str) -> ReleaseResult:
        try:
            task_id = validate_task_id(task_id)
        except TaskValidationError:
            return ReleaseResult(ok=False, error="task_not_found")
        with self._task_lock(task_id).held():
            task = self._load(task_id)
            if task is None:
                return ReleaseResult(ok=False, error="task_not_found")
            if task.is_terminal:
                return ReleaseResult(ok=False, task=task, error="already_terminal")
            claim = task.claim
            token_matches = (
                claim is not None
                and claim_token is not None
                and claim.token == claim_token
                and not _lease_expired(claim)
            )
            owner_matches = claim is not None and claim.owner == worker
            if not (token_matches or owner_matches):
                return ReleaseResult(ok=False, task=task, error="claim_conflict")

            task.status = "pending"
            task.owner = None
            task.claim = None
            task.version += 1
            self._store(task)
        logger.debug("Released claim on task %s for %s", task_id, worker)
        return ReleaseResult(ok=True, task=task)
