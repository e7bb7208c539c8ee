from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass


class TransportError(RuntimeError):
    """Raised when a worker transport cannot deliver or manage a worker."""

    def __init__(
        self,
        message: str,
        *,
        transport: str | None = None,
        retriable: bool = True,
    ) -> None:
        super().__init__(message)
        self.transport = transport
        self.retriable = retriable


class WorkerLaunchError(TransportError):
    """Raised when a worker process cannot be started."""


@dataclass(slots=True, frozen=True)
class WorkerTarget:
    team: str
    worker: str
    worker_index: int | None = None
    pane_id: str | None = None
    pid: int | None = None


@dataclass(slots=True)
class DispatchOutcome:
    ok: bool
    transport: str
    reason: str
    request_id: str | None = None
    message_id: str | None = None
    to_worker: str | None = None

    @property
    def confirmed(self) -> bool:
        if not self.ok:
            return False
        return not (self.transport == "hook" and self.reason == "queued_for_hook_dispatch")


class WorkerTransport(ABC):
    """Delivery channel from the leader to a worker process."""

    name: str = "transport"

    @abstractmethod
    async def notify(
        self, target: WorkerTarget, message: str, *, timeout_seconds: float
    ) -> DispatchOutcome:
        """Deliver a trigger message; must return before ``timeout_seconds``."""

    @abstractmethod
    def is_alive(self, target: WorkerTarget) -> bool:
        """Best-effort liveness probe. Never raises."""

    async def confirm_delivery(self, target: WorkerTarget, message: str) -> bool:
        """Re-observe the destination after ``notify``."""
        _ = target, message
        return True

    async def terminate(self, target: WorkerTarget) -> None:
        _ = target
