from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field

from foreman.config import ShutdownConfig
from foreman.dispatcher import Dispatcher
from foreman.monitor import count_tasks
from foreman.state.store import TeamStateError
from foreman.state.tasks import TaskRegistry
from foreman.state.team import TeamRecord, TeamStore
from foreman.transport.base import TransportError, WorkerTarget, WorkerTransport

logger = logging.getLogger(__name__)


class ShutdownGateBlocked(TeamStateError):
    """Raised when unfinished or failed tasks block an unforced shutdown."""


class ShutdownRejected(TeamStateError):
    """Raised when a worker rejects an unforced shutdown."""


class ShutdownTeardownError(TeamStateError):
    """Raised when workers survive forced termination."""


def shutdown_inbox(team: str, worker: str) -> str:
    return (
        "# Shutdown Request\n\n"
        f"The leader of team {team} is shutting the team down.\n"
        "1. Finish or release your current task.\n"
        f"2. Run `foreman worker ack-shutdown {team} {worker} accept` "
        "(or `reject --reason ...` if you cannot stop now).\n"
        "3. Exit.\n"
    )


@dataclass(slots=True)
class ShutdownReport:
    team: str
    forced: bool
    acks: dict[str, str] = field(default_factory=dict)
    terminated: list[str] = field(default_factory=list)


class ShutdownGate:
    def __init__(
        self,
        team: TeamStore,
        transport: WorkerTransport,
        *,
        dispatcher: Dispatcher | None = None,
        config: ShutdownConfig | None = None,
    ) -> None:
        self.team = team
        self.transport = transport
        self.dispatcher = dispatcher or Dispatcher(team, transport)
        self.config = config or ShutdownConfig()

    def check_gate(self, *, force: bool) -> None:
        counts = count_tasks(TaskRegistry(self.team).list_tasks())
        if force:
            self.team.events.append(
                "shutdown_gate_forced", worker=self._leader(), reason=f"total={counts['total']}"
            )
            return
        blocking = ("pending", "blocked", "in_progress", "failed")
        allowed = not any(counts[status] for status in blocking)
        self.team.events.append(
            "shutdown_gate",
            worker=self._leader(),
            reason=(
                f"allowed={str(allowed).lower()} total={counts['total']} "
                f"pending={counts['pending']} blocked={counts['blocked']} "
                f"in_progress={counts['in_progress']} completed={counts['completed']} "
                f"failed={counts['failed']}"
            ),
        )
        if not allowed:
            raise ShutdownGateBlocked(
                f"shutdown_gate_blocked:pending={counts['pending']},blocked={counts['blocked']},"
                f"in_progress={counts['in_progress']},failed={counts['failed']}"
            )

    def _leader(self) -> str:
        record = self.team.read_config()
        return record.leader if record else "leader"

    def _target(self, record: TeamRecord, worker: str) -> WorkerTarget:
        heartbeat = self.team.read_heartbeat(worker)
        info = record.worker(worker)
        return WorkerTarget(
            team=record.name,
            worker=worker,
            worker_index=info.index if info else None,
            pane_id=info.pane_id if info else None,
            pid=(info.pid if info else None) or (heartbeat.pid if heartbeat else None),
        )

    def _is_alive(self, target: WorkerTarget) -> bool:
        try:
            return self.transport.is_alive(target)
        except Exception as exc:
            logger.warning("Liveness check for %s failed: %s", target.worker, exc)
            return False

    def _alive_workers(self, record: TeamRecord) -> list[str]:
        return [
            info.name for info in record.workers if self._is_alive(self._target(record, info.name))
        ]

    async def _signal_workers(self, record: TeamRecord) -> None:
        for info in record.workers:
            self.team.clear_shutdown_ack(info.name)
            self.team.write_shutdown_request(info.name, record.leader)
            if not self._is_alive(self._target(record, info.name)):
                continue
            try:
                outcome = await self.dispatcher.dispatch_inbox(
                    info.name,
                    shutdown_inbox(record.name, info.name),
                    correlation_key=f"shutdown:{info.name}",
                )
            except Exception as exc:
                # The worker may already be gone; teardown below still handles it.
                logger.info("Shutdown signal to %s failed: %s", info.name, exc)
                continue
            if not outcome.ok:
                logger.info("Shutdown signal to %s not confirmed: %s", info.name, outcome.reason)

    async def _collect_acks(self, record: TeamRecord, *, force: bool) -> dict[str, str]:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.config.ack_timeout_seconds
        acks: dict[str, str] = {}
        rejected: dict[str, str] = {}
        while True:
            for info in record.workers:
                ack = self.team.read_shutdown_ack(info.name)
                if ack is None or info.name in acks:
                    continue
                acks[info.name] = ack.status
                if ack.status == "reject":
                    rejected[info.name] = ack.reason or "no_reason"
                    reason = f"reject:{rejected[info.name]}"
                else:
                    reason = "accept"
                self.team.events.append("shutdown_ack", worker=info.name, reason=reason)
            if rejected and not force:
                detail = ",".join(f"{worker}:{reason}" for worker, reason in rejected.items())
                raise ShutdownRejected(f"shutdown_rejected:{detail}")
            if not self._alive_workers(record):
                break
            remaining = deadline - loop.time()
            if remaining <= 0:
                break
            await asyncio.sleep(min(self.config.poll_interval_seconds, remaining))
        return acks

    async def _terminate_survivors(self, record: TeamRecord) -> list[str]:
        terminated: list[str] = []
        for worker in self._alive_workers(record):
            try:
                await self.transport.terminate(self._target(record, worker))
            except TransportError as exc:
                logger.warning("Failed to terminate %s/%s: %s", record.name, worker, exc)
                continue
            terminated.append(worker)
        survivors = self._alive_workers(record)
        if survivors:
            raise ShutdownTeardownError(
                f"Workers still running after termination: {', '.join(survivors)}"
            )
        return terminated

    async def shutdown(self, *, force: bool = False) -> ShutdownReport:
        record = self.team.read_config()
        if record is None:
            self.team.cleanup()
            return ShutdownReport(team=self.team.name, forced=force)

        self.check_gate(force=force)
        await self._signal_workers(record)
        acks = await self._collect_acks(record, force=force)
        terminated = await self._terminate_survivors(record)
        if terminated:
            logger.info("Terminated workers %s of team %s", ", ".join(terminated), record.name)
        self.team.cleanup()
        return ShutdownReport(team=record.name, forced=force, acks=acks, terminated=terminated)
