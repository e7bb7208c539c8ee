from __future__ import annotations

import json
import os
import re
import tempfile
from contextlib import suppress
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

TEAM_NAME_PATTERN = re.compile(r"^[a-z0-9][a-z0-9-]{0,29}$")
WORKER_NAME_PATTERN = re.compile(r"^[a-z0-9][a-z0-9-]{0,63}$")
TASK_ID_PATTERN = re.compile(r"^\d{1,20}$")


class TeamStateError(RuntimeError):
    """Raised when shared team-state operations fail."""


class TeamNotFoundError(TeamStateError):
    """Raised when a team directory or its config is missing."""

    def __init__(self, team: str) -> None:
        super().__init__(f"Team {team} not found")
        self.team = team


class TaskValidationError(TeamStateError):
    """Raised when a task patch or task id is malformed."""


class LockTimeoutError(TeamStateError):
    """Raised when a directory lock could not be acquired before its deadline."""

    def __init__(self, message: str, *, lock_path: Path, knob: str) -> None:
        super().__init__(message)
        self.lock_path = lock_path
        self.knob = knob


def utcnow() -> datetime:
    return datetime.now(UTC)


def utcnow_iso() -> str:
    return utcnow().isoformat()


def parse_iso(value: object) -> datetime | None:
    if not isinstance(value, str) or not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def validate_name(value: str, *, kind: str) -> str:
    pattern = TEAM_NAME_PATTERN if kind == "team" else WORKER_NAME_PATTERN
    if not pattern.match(value):
        raise TeamStateError(f"Invalid {kind} name: {value!r}")
    return value


def validate_task_id(task_id: str) -> str:
    normalized = str(task_id).strip()
    if normalized.startswith("task-"):
        normalized = normalized[len("task-") :]
    if not TASK_ID_PATTERN.match(normalized):
        raise TaskValidationError(f"Invalid task id: {task_id!r}")
    return normalized


def write_text_atomic(path: Path, content: str) -> None:
    """Write to a sibling temp file then rename over the target."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, temp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(content)
        os.replace(temp_name, path)
    except BaseException:
        with suppress(FileNotFoundError):
            os.unlink(temp_name)
        raise


def write_json_atomic(path: Path, payload: Any) -> None:
    write_text_atomic(path, json.dumps(payload, ensure_ascii=False, indent=2) + "\n")


def read_json(path: Path, default: Any = None) -> Any:
    try:
        content = path.read_text(encoding="utf-8")
    except (FileNotFoundError, NotADirectoryError):
        return default
    try:
        return json.loads(content)
    except json.JSONDecodeError:
        return default


def append_json_line(path: Path, payload: dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    line = json.dumps(payload, ensure_ascii=False, separators=(",", ":"))
    with path.open("a", encoding="utf-8") as handle:
        handle.write(line + "\n")


@dataclass(slots=True, frozen=True)
class TeamPaths:
    """On-disk layout for one team below the state root."""

    state_root: Path
    team: str

    @property
    def root(self) -> Path:
        return self.state_root / "team" / self.team

    @property
    def config(self) -> Path:
        return self.root / "config.json"

    @property
    def config_lock(self) -> Path:
        return self.root / ".lock-config"

    @property
    def tasks_dir(self) -> Path:
        return self.root / "tasks"

    def task(self, task_id: str) -> Path:
        return self.tasks_dir / f"task-{task_id}.json"

    def task_lock(self, task_id: str) -> Path:
        return self.root / "claims" / f"task-{task_id}.lock"

    @property
    def dispatch_requests(self) -> Path:
        return self.root / "dispatch" / "requests.json"

    @property
    def dispatch_lock(self) -> Path:
        return self.root / "dispatch" / ".lock"

    @property
    def mailbox_dir(self) -> Path:
        return self.root / "mailbox"

    def mailbox(self, worker: str) -> Path:
        return self.mailbox_dir / f"{worker}.json"

    def mailbox_lock(self, worker: str) -> Path:
        return self.mailbox_dir / f".lock-{worker}"

    def worker_dir(self, worker: str) -> Path:
        return self.root / "workers" / worker

    def approval(self, task_id: str) -> Path:
        return self.root / "approvals" / f"task-{task_id}.json"

    @property
    def events(self) -> Path:
        return self.root / "events" / "events.ndjson"

    @property
    def phase(self) -> Path:
        return self.root / "phase.json"

    @property
    def monitor_snapshot(self) -> Path:
        return self.root / "monitor-snapshot.json"
