from __future__ import annotations

import logging
import os
import signal
from pathlib import Path

from foreman.state.store import TeamPaths, append_json_line, utcnow_iso
from foreman.state.team import TeamStore, WorkerHeartbeat
from foreman.transport.base import DispatchOutcome, TransportError, WorkerTarget, WorkerTransport
from foreman.transport.process import pid_alive

logger = logging.getLogger(__name__)

TRIGGER_FILE = "triggers.ndjson"


class FileTransport(WorkerTransport):
    """Triggers are appended to ``workers/<worker>/triggers.ndjson``.

    Used when the leader does not own the worker processes (for example when
    every leader action is a separate CLI invocation). Workers poll their
    trigger file; liveness comes from the heartbeat they write.
    """

    name = "trigger_file"

    def __init__(self, state_root: Path) -> None:
        self.state_root = state_root

    def _trigger_path(self, target: WorkerTarget) -> Path:
        return TeamPaths(self.state_root, target.team).worker_dir(target.worker) / TRIGGER_FILE

    def _heartbeat(self, target: WorkerTarget) -> WorkerHeartbeat | None:
        return TeamStore(self.state_root, target.team).read_heartbeat(target.worker)

    async def notify(
        self, target: WorkerTarget, message: str, *, timeout_seconds: float
    ) -> DispatchOutcome:
        _ = timeout_seconds
        if not self.is_alive(target):
            return DispatchOutcome(ok=False, transport=self.name, reason="worker_not_alive")
        try:
            append_json_line(self._trigger_path(target), {"message": message, "at": utcnow_iso()})
        except OSError as exc:
            return DispatchOutcome(
                ok=False, transport=self.name, reason=f"trigger_write_failed:{exc}"
            )
        return DispatchOutcome(ok=True, transport=self.name, reason="trigger_file_written")

    def is_alive(self, target: WorkerTarget) -> bool:
        try:
            heartbeat = self._heartbeat(target)
        except OSError:
            return False
        if heartbeat is None or not heartbeat.alive:
            return False
        pid = target.pid or heartbeat.pid
        return pid_alive(pid) if pid else True

    async def confirm_delivery(self, target: WorkerTarget, message: str) -> bool:
        _ = message
        return self._trigger_path(target).is_file() and self.is_alive(target)

    async def terminate(self, target: WorkerTarget) -> None:
        store = TeamStore(self.state_root, target.team)
        heartbeat = store.read_heartbeat(target.worker) or WorkerHeartbeat()
        pid = target.pid or heartbeat.pid
        if pid and pid_alive(pid):
            try:
                os.kill(pid, signal.SIGTERM)
            except ProcessLookupError:
                pass
            except PermissionError as exc:
                raise TransportError(
                    f"Cannot signal worker pid {pid}: {exc}", transport=self.name
                ) from exc
        heartbeat.alive = False
        store.write_heartbeat(target.worker, heartbeat)
        logger.info("Marked worker %s/%s stopped", target.team, target.worker)


def read_triggers(state_root: Path, team: str, worker: str) -> list[str]:
    path = TeamPaths(state_root, team).worker_dir(worker) / TRIGGER_FILE
    try:
        lines = path.read_text(encoding="utf-8").splitlines()
    except FileNotFoundError:
        return []
    return [line for line in lines if line.strip()]
