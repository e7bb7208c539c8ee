from pathlib import Path

import pytest

from foreman.state.lock import LockSettings
from foreman.state.team import TeamRecord, TeamStore, WorkerInfo
from foreman.transport.base import DispatchOutcome, WorkerTarget, WorkerTransport


class FakeTransport(WorkerTransport):
    """In-memory transport that records every trigger it was asked to send."""

    name = "fake"

    def __init__(self, *, notify_ok: bool = True, confirm: bool = True) -> None:
        self.notify_ok = notify_ok
        self.confirm = confirm
        self.alive: dict[str, bool] = {}
        self.sent: list[tuple[str, str]] = []
        self.terminated: list[str] = []

    async def notify(
        self, target: WorkerTarget, message: str, *, timeout_seconds: float
    ) -> DispatchOutcome:
        _ = timeout_seconds
        self.sent.append((target.worker, message))
        if not self.notify_ok:
            return DispatchOutcome(ok=False, transport=self.name, reason="fake_refused")
        return DispatchOutcome(ok=True, transport=self.name, reason="fake_sent")

    def is_alive(self, target: WorkerTarget) -> bool:
        return self.alive.get(target.worker, True)

    async def confirm_delivery(self, target: WorkerTarget, message: str) -> bool:
        _ = target, message
        return self.confirm

    async def terminate(self, target: WorkerTarget) -> None:
        self.terminated.append(target.worker)
        self.alive[target.worker] = False


class CrashingTransport(FakeTransport):
    """Fake transport whose chosen calls raise a non-transport error."""

    def __init__(self, *failing: str, **kwargs: bool) -> None:
        super().__init__(**kwargs)
        self.failing = set(failing)

    def _maybe_crash(self, call: str) -> None:
        if call in self.failing:
            raise RuntimeError("transport crashed")

    async def notify(
        self, target: WorkerTarget, message: str, *, timeout_seconds: float
    ) -> DispatchOutcome:
        self._maybe_crash("notify")
        return await super().notify(target, message, timeout_seconds=timeout_seconds)

    def is_alive(self, target: WorkerTarget) -> bool:
        self._maybe_crash("is_alive")
        return super().is_alive(target)

    async def confirm_delivery(self, target: WorkerTarget, message: str) -> bool:
        self._maybe_crash("confirm_delivery")
        return await super().confirm_delivery(target, message)


FAST_LOCKS = LockSettings(timeout_seconds=1.0, poll_interval_seconds=0.005)


def create_team(
    state_root: Path,
    name: str = "demo",
    workers: tuple[str, ...] = ("worker-1", "worker-2"),
    *,
    dispatch_mode: str = "transport_direct",
    **policy: object,
) -> TeamStore:
    store = TeamStore(state_root, name, FAST_LOCKS)
    record = TeamRecord(
        name=name,
        task="ship it",
        workers=[WorkerInfo(name=worker, index=index) for index, worker in enumerate(workers, 1)],
    )
    record.policy.dispatch_mode = dispatch_mode
    for key, value in policy.items():
        setattr(record.policy, key, value)
    store.create(record)
    return store


@pytest.fixture
def state_root(tmp_path: Path) -> Path:
    return tmp_path / "state"


@pytest.fixture
def team(state_root: Path) -> TeamStore:
    return create_team(state_root)


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()
