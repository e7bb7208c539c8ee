from __future__ import annotations

import asyncio
import logging
import os
import signal
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path

from foreman.state.store import utcnow_iso
from foreman.transport.base import (
    DispatchOutcome,
    TransportError,
    WorkerLaunchError,
    WorkerTarget,
    WorkerTransport,
)

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class WorkerHandle:
    team: str
    worker: str
    process: asyncio.subprocess.Process
    started_at: str = field(default_factory=utcnow_iso)

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def running(self) -> bool:
        return self.process.returncode is None


class WorkerProcessRegistry:
    """Live worker handles owned by one runtime, keyed by team and worker."""

    def __init__(self) -> None:
        self._handles: dict[tuple[str, str], WorkerHandle] = {}

    def register(self, handle: WorkerHandle) -> None:
        self._handles[(handle.team, handle.worker)] = handle

    def get(self, team: str, worker: str) -> WorkerHandle | None:
        return self._handles.get((team, worker))

    def remove(self, team: str, worker: str) -> WorkerHandle | None:
        return self._handles.pop((team, worker), None)

    def handles(self, team: str) -> list[WorkerHandle]:
        return [handle for (owner, _), handle in self._handles.items() if owner == team]


def pid_alive(pid: int | None) -> bool:
    if not pid or pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except OSError:
        return False
    return True


class ProcessTransport(WorkerTransport):
    """Workers run as child processes; trigger messages go to their stdin."""

    name = "prompt_stdin"

    def __init__(
        self,
        registry: WorkerProcessRegistry | None = None,
        *,
        terminate_grace_seconds: float = 5.0,
    ) -> None:
        self.registry = registry if registry is not None else WorkerProcessRegistry()
        self.terminate_grace_seconds = terminate_grace_seconds

    async def spawn(
        self,
        target: WorkerTarget,
        command: list[str],
        *,
        cwd: Path | None = None,
        env: Mapping[str, str] | None = None,
    ) -> WorkerHandle:
        if not command:
            raise WorkerLaunchError("Worker command is empty", transport=self.name, retriable=False)
        child_env = os.environ.copy()
        if env:
            child_env.update(env)
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(cwd) if cwd else None,
                env=child_env,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except FileNotFoundError as exc:
            raise WorkerLaunchError(
                f"Worker binary not found: {command[0]}",
                transport=self.name,
                retriable=False,
            ) from exc
        handle = WorkerHandle(team=target.team, worker=target.worker, process=process)
        self.registry.register(handle)
        logger.info("Started worker %s/%s (pid %d)", target.team, target.worker, process.pid)
        return handle

    async def notify(
        self, target: WorkerTarget, message: str, *, timeout_seconds: float
    ) -> DispatchOutcome:
        handle = self.registry.get(target.team, target.worker)
        if handle is None:
            return DispatchOutcome(ok=False, transport=self.name, reason="worker_handle_missing")
        stdin = handle.process.stdin
        if stdin is None or not handle.running or stdin.is_closing():
            return DispatchOutcome(ok=False, transport=self.name, reason="worker_stdin_closed")
        try:
            stdin.write(message.rstrip("\n").encode("utf-8") + b"\n")
            await asyncio.wait_for(stdin.drain(), timeout=timeout_seconds)
        except TimeoutError:
            return DispatchOutcome(ok=False, transport=self.name, reason="prompt_stdin_timeout")
        except (BrokenPipeError, ConnectionResetError) as exc:
            return DispatchOutcome(
                ok=False, transport=self.name, reason=f"prompt_stdin_failed:{exc}"
            )
        return DispatchOutcome(ok=True, transport=self.name, reason="prompt_stdin_sent")

    def is_alive(self, target: WorkerTarget) -> bool:
        handle = self.registry.get(target.team, target.worker)
        if handle is not None:
            return handle.running
        return pid_alive(target.pid)

    async def confirm_delivery(self, target: WorkerTarget, message: str) -> bool:
        _ = message
        return self.is_alive(target)

    async def wait_until_ready(
        self,
        target: WorkerTarget,
        *,
        timeout_seconds: float,
        initial_delay_seconds: float = 0.05,
        max_delay_seconds: float = 1.0,
    ) -> bool:
        """Poll liveness with exponential backoff until the deadline."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout_seconds
        delay = initial_delay_seconds
        while True:
            if self.is_alive(target):
                return True
            remaining = deadline - loop.time()
            if remaining <= 0:
                return False
            await asyncio.sleep(min(delay, remaining))
            delay = min(delay * 2, max_delay_seconds)

    async def terminate(self, target: WorkerTarget) -> None:
        handle = self.registry.remove(target.team, target.worker)
        if handle is None:
            if pid_alive(target.pid):
                self._signal_pid(target.pid, signal.SIGTERM)
            return
        process = handle.process
        if process.returncode is not None:
            return
        if process.stdin is not None and not process.stdin.is_closing():
            process.stdin.close()
        process.terminate()
        try:
            await asyncio.wait_for(process.wait(), timeout=self.terminate_grace_seconds)
        except TimeoutError:
            logger.warning("Worker %s/%s ignored SIGTERM; killing", target.team, target.worker)
            process.kill()
            await process.wait()

    @staticmethod
    def _signal_pid(pid: int | None, signum: int) -> None:
        if not pid:
            return
        try:
            os.kill(pid, signum)
        except ProcessLookupError:
            return
        except PermissionError as exc:
            raise TransportError(f"Cannot signal worker pid {pid}: {exc}") from exc
