import asyncio
from pathlib import Path

from conftest import CrashingTransport, FakeTransport, create_team

from foreman.config import DispatchConfig
from foreman.delivery import DeliveryAgent, DrainSummary
from foreman.state.dispatch import DispatchQueue
from foreman.state.mailbox import Mailbox
from foreman.state.team import TeamStore

FAST = DispatchConfig(verify_rounds=2, verify_delay_ms=1, notify_timeout_seconds=1.0)


def _queue_hook_request(team: TeamStore, worker: str = "worker-1", **kwargs: object) -> str:
    queued = DispatchQueue(team).enqueue(
        kwargs.pop("kind", "inbox"),
        worker,
        "read your inbox",
        transport_preference="hook_preferred_with_fallback",
        **kwargs,
    )
    return queued.request.request_id


def test_confirmed_delivery_marks_request_notified(state_root: Path) -> None:
    team = create_team(state_root)
    request_id = _queue_hook_request(team)
    events: list[dict] = []
    agent = DeliveryAgent(team, FakeTransport(), config=FAST, event_hook=events.append)

    summary = asyncio.run(agent.drain())

    assert summary == DrainSummary(processed=1, skipped=0, failed=0)
    request = DispatchQueue(team).read(request_id)
    assert request.status == "notified"
    assert request.attempt_count == 1
    assert request.last_reason == "fake_confirmed"
    assert [event["event"] for event in events] == ["dispatch_notified"]


def test_unconfirmed_delivery_retries_then_fails(state_root: Path) -> None:
    team = create_team(state_root)
    request_id = _queue_hook_request(team)
    events: list[dict] = []
    agent = DeliveryAgent(
        team, FakeTransport(confirm=False), config=FAST, event_hook=events.append
    )
    queue = DispatchQueue(team)

    asyncio.run(agent.drain())
    first = queue.read(request_id)
    assert first.status == "pending"
    assert first.attempt_count == 1
    assert first.last_reason == "fake_unconfirmed"

    asyncio.run(agent.drain())
    summary = asyncio.run(agent.drain())

    final = queue.read(request_id)
    assert final.status == "failed"
    assert final.attempt_count == 3
    assert final.last_reason == "unconfirmed_after_max_retries"
    assert summary.failed == 1
    assert [event["event"] for event in events] == [
        "dispatch_unconfirmed_retry",
        "dispatch_unconfirmed_retry",
        "dispatch_failed",
    ]


def test_crashing_confirmation_counts_as_unconfirmed(state_root: Path) -> None:
    team = create_team(state_root)
    request_id = _queue_hook_request(team)
    events: list[dict] = []
    agent = DeliveryAgent(
        team, CrashingTransport("confirm_delivery"), config=FAST, event_hook=events.append
    )

    summary = asyncio.run(agent.drain())

    assert summary == DrainSummary(processed=0, skipped=1, failed=0)
    request = DispatchQueue(team).read(request_id)
    assert request.status == "pending"
    assert request.attempt_count == 1
    assert request.last_reason == "fake_unconfirmed"
    assert [event["event"] for event in events] == ["dispatch_unconfirmed_retry"]


def test_refused_notification_fails_immediately(state_root: Path) -> None:
    team = create_team(state_root)
    request_id = _queue_hook_request(team)
    agent = DeliveryAgent(team, FakeTransport(notify_ok=False), config=FAST)

    summary = asyncio.run(agent.drain())

    assert summary.failed == 1
    request = DispatchQueue(team).read(request_id)
    assert request.status == "failed"
    assert request.last_reason == "fake_refused"


def test_direct_mode_requests_are_left_to_the_leader(state_root: Path) -> None:
    team = create_team(state_root)
    DispatchQueue(team).enqueue(
        "inbox", "worker-1", "go", transport_preference="transport_direct"
    )
    transport = FakeTransport()
    agent = DeliveryAgent(team, transport, config=FAST)

    summary = asyncio.run(agent.drain())

    assert summary == DrainSummary(processed=0, skipped=1, failed=0)
    assert transport.sent == []


def test_drain_respects_the_per_tick_budget(state_root: Path) -> None:
    team = create_team(state_root)
    for index in range(4):
        _queue_hook_request(team, inbox_correlation_key=f"k{index}")
    transport = FakeTransport()
    agent = DeliveryAgent(team, transport, config=FAST)

    summary = asyncio.run(agent.drain(max_per_tick=3))

    assert summary.processed == 3
    assert len(DispatchQueue(team).list_requests(status="pending")) == 1
    assert asyncio.run(agent.drain(max_per_tick=0)) == DrainSummary()


def test_mailbox_request_stamps_message_notified(state_root: Path) -> None:
    team = create_team(state_root)
    mailbox = Mailbox(team)
    message = mailbox.send_direct("leader", "worker-2", "status?")
    _queue_hook_request(team, "worker-2", kind="mailbox", message_id=message.message_id)
    agent = DeliveryAgent(team, FakeTransport(), config=FAST)

    asyncio.run(agent.drain())

    stored = mailbox.list_messages("worker-2")[0]
    assert stored.notified_at is not None
    assert stored.delivered_at is None


def test_request_settled_by_leader_is_not_overwritten(state_root: Path) -> None:
    team = create_team(state_root)
    request_id = _queue_hook_request(team)
    queue = DispatchQueue(team)

    class _LeaderWinsTransport(FakeTransport):
        async def notify(self, target, message, *, timeout_seconds):
            queue.mark_notified(request_id, "fallback_confirmed:leader")
            return await super().notify(target, message, timeout_seconds=timeout_seconds)

    events: list[dict] = []
    agent = DeliveryAgent(team, _LeaderWinsTransport(), config=FAST, event_hook=events.append)

    asyncio.run(agent.drain())

    request = queue.read(request_id)
    assert request.status == "notified"
    assert request.last_reason == "fallback_confirmed:leader"
    assert events[0]["event"] == "dispatch_already_settled"
    assert events[0]["status"] == "notified"


def test_drain_on_missing_team_is_a_no_op(state_root: Path) -> None:
    agent = DeliveryAgent(TeamStore(state_root, "ghost"), FakeTransport(), config=FAST)

    assert asyncio.run(agent.drain()) == DrainSummary()
