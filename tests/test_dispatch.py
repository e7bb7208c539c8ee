from pathlib import Path

import pytest

from foreman.state.dispatch import DispatchQueue, DispatchRequest, apply_status_transition
from foreman.state.store import TeamNotFoundError, TeamStateError
from foreman.state.team import TeamStore


def _request(status: str = "pending") -> DispatchRequest:
    return DispatchRequest(
        request_id="req-1",
        kind="inbox",
        to_worker="worker-1",
        trigger_message="check inbox",
        status=status,
    )


def test_apply_status_transition_is_pure_compare_and_swap() -> None:
    original = _request()

    updated = apply_status_transition(
        original, "pending", "notified", {"last_reason": "hook", "status": "delivered"}, now="T1"
    )

    assert original.status == "pending"
    assert original.notified_at is None
    assert updated.status == "notified"
    assert updated.notified_at == "T1"
    assert updated.updated_at == "T1"
    assert updated.last_reason == "hook"


def test_apply_status_transition_refuses_wrong_expected_status() -> None:
    assert apply_status_transition(_request("notified"), "pending", "failed") is None


def test_apply_status_transition_refuses_unlisted_edges() -> None:
    assert apply_status_transition(_request("failed"), "failed", "notified") is None
    assert apply_status_transition(_request("delivered"), "delivered", "pending") is None
    assert apply_status_transition(_request(), "pending", "delivered") is None


def test_failed_to_failed_patches_metadata_without_moving_the_timestamp() -> None:
    failed = apply_status_transition(_request(), "pending", "failed", now="T1")

    patched = apply_status_transition(
        failed, "failed", "failed", {"last_reason": "fallback_confirmed"}, now="T2"
    )

    assert patched.status == "failed"
    assert patched.failed_at == "T1"
    assert patched.last_reason == "fallback_confirmed"


def test_enqueue_requires_existing_team(state_root: Path) -> None:
    queue = DispatchQueue(TeamStore(state_root, "ghost"))

    with pytest.raises(TeamNotFoundError):
        queue.enqueue("inbox", "worker-1", "hi")


def test_enqueue_validates_kind_and_mailbox_message_id(team: TeamStore) -> None:
    queue = DispatchQueue(team)

    with pytest.raises(TeamStateError):
        queue.enqueue("carrier-pigeon", "worker-1", "hi")
    with pytest.raises(TeamStateError):
        queue.enqueue("mailbox", "worker-1", "hi")


def test_mailbox_requests_dedupe_on_message_id(team: TeamStore) -> None:
    queue = DispatchQueue(team)

    first = queue.enqueue("mailbox", "worker-1", "hi", message_id="m-1")
    second = queue.enqueue("mailbox", "worker-1", "hi again", message_id="m-1")

    assert first.deduped is False
    assert second.deduped is True
    assert second.request.request_id == first.request.request_id
    assert len(queue.list_requests()) == 1


def test_inbox_requests_dedupe_on_pending_correlation_key(team: TeamStore) -> None:
    queue = DispatchQueue(team)
    first = queue.enqueue("inbox", "worker-1", "go", inbox_correlation_key="assign:1:worker-1")

    duplicate = queue.enqueue(
        "inbox", "worker-1", "go", inbox_correlation_key="assign:1:worker-1"
    )
    queue.transition(first.request.request_id, "pending", "failed")
    retry = queue.enqueue("inbox", "worker-1", "go", inbox_correlation_key="assign:1:worker-1")

    assert duplicate.deduped is True
    assert retry.deduped is False
    assert retry.request.request_id != first.request.request_id


def test_mark_notified_is_idempotent_and_sticky(team: TeamStore) -> None:
    queue = DispatchQueue(team)
    request = queue.enqueue("inbox", "worker-1", "go").request

    first = queue.mark_notified(request.request_id, "hook_confirmed")
    again = queue.mark_notified(request.request_id, "fallback_confirmed")

    assert first.status == "notified"
    assert again.notified_at == first.notified_at
    assert again.last_reason == "hook_confirmed"
    assert queue.transition(request.request_id, "pending", "failed") is None
    assert queue.read(request.request_id).status == "notified"


def test_mark_delivered_only_after_notified(team: TeamStore) -> None:
    queue = DispatchQueue(team)
    request = queue.enqueue("inbox", "worker-1", "go").request

    assert queue.mark_delivered(request.request_id) is None
    queue.mark_notified(request.request_id)
    delivered = queue.mark_delivered(request.request_id, "worker_confirmed")

    assert delivered.status == "delivered"
    assert delivered.delivered_at
    assert queue.mark_delivered(request.request_id).status == "delivered"


def test_failed_request_cannot_be_notified(team: TeamStore) -> None:
    queue = DispatchQueue(team)
    request = queue.enqueue("inbox", "worker-1", "go").request
    queue.transition(request.request_id, "pending", "failed", {"last_reason": "boom"})

    assert queue.mark_notified(request.request_id) is None
    assert queue.read(request.request_id).status == "failed"


def test_list_requests_filters(team: TeamStore) -> None:
    queue = DispatchQueue(team)
    queue.enqueue("inbox", "worker-1", "go")
    queue.enqueue("mailbox", "worker-2", "mail", message_id="m-1")

    assert [item.to_worker for item in queue.list_requests(kind="mailbox")] == ["worker-2"]
    assert len(queue.list_requests(status="pending")) == 2
    assert queue.list_requests(to_worker="worker-3") == []
