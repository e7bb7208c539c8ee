import threading
from pathlib import Path

import pytest

from foreman.state.store import (
    TaskValidationError,
    TeamNotFoundError,
    utcnow_iso,
    write_json_atomic,
)
from foreman.state.tasks import ClaimResult, TaskClaim, TaskRegistry
from foreman.state.team import TeamStore


def test_create_task_allocates_sequential_ids(team: TeamStore) -> None:
    registry = TaskRegistry(team)

    first = registry.create_task("Parser", "write the parser")
    second = registry.create_task("Docs", "document it")

    assert (first.id, second.id) == ("1", "2")
    assert team.require_config().next_task_id == 3
    assert [task.id for task in registry.list_tasks()] == ["1", "2"]
    assert registry.read_task("task-2").subject == "Docs"


def test_create_task_requires_existing_team(state_root: Path) -> None:
    registry = TaskRegistry(TeamStore(state_root, "ghost"))

    with pytest.raises(TeamNotFoundError):
        registry.create_task("x", "y")


def test_create_task_without_counter_scans_existing_files(team: TeamStore) -> None:
    registry = TaskRegistry(team)
    registry.create_task("one", "")
    registry.create_task("two", "")
    team.update_config(lambda record: setattr(record, "next_task_id", None))

    third = registry.create_task("three", "")

    assert third.id == "3"


def test_claim_moves_task_in_progress_with_lease(team: TeamStore) -> None:
    registry = TaskRegistry(team)
    task = registry.create_task("Parser", "")

    result = registry.claim(task.id, "worker-1", expected_version=task.version)

    assert result.ok is True
    assert result.claim_token
    assert result.task.status == "in_progress"
    assert result.task.owner == "worker-1"
    assert result.task.claim.token == result.claim_token
    assert result.task.version == task.version + 1


def test_only_one_claim_wins(team: TeamStore) -> None:
    registry = TaskRegistry(team)
    task = registry.create_task("Parser", "")

    first = registry.claim(task.id, "worker-1", expected_version=task.version)
    second = registry.claim(task.id, "worker-2", expected_version=task.version)

    assert first.ok is True
    assert second.ok is False
    assert second.error == "claim_conflict"


def test_claim_rejects_stale_expected_version(team: TeamStore) -> None:
    registry = TaskRegistry(team)
    task = registry.create_task("Parser", "")
    registry.update_task(task.id, {"description": "changed"})

    result = registry.claim(task.id, "worker-1", expected_version=task.version)

    assert result.ok is False
    assert result.error == "claim_conflict"


def test_claim_reports_missing_task(team: TeamStore) -> None:
    registry = TaskRegistry(team)

    assert registry.claim("99", "worker-1").error == "task_not_found"
    assert registry.claim("not-a-task", "worker-1").error == "task_not_found"


def test_blocked_dependency_is_reported_before_conflicts(team: TeamStore) -> None:
    registry = TaskRegistry(team)
    base = registry.create_task("Base", "")
    dependent = registry.create_task("Dependent", "", status="blocked", depends_on=[base.id])

    result = registry.claim(dependent.id, "worker-1", expected_version=999)

    assert result.ok is False
    assert result.error == "blocked_dependency"
    assert result.dependencies == [base.id]


def test_readiness_follows_dependency_completion(team: TeamStore) -> None:
    registry = TaskRegistry(team)
    base = registry.create_task("Base", "")
    dependent = registry.create_task("Dependent", "", depends_on=[base.id])

    assert registry.compute_readiness(dependent.id).ready is False
    claim = registry.claim(base.id, "worker-1")
    registry.transition(base.id, "in_progress", "completed", claim.claim_token)

    assert registry.compute_readiness(dependent.id).ready is True
    assert registry.claim(dependent.id, "worker-2").ok is True


def test_transition_completes_and_emits_one_event(team: TeamStore) -> None:
    registry = TaskRegistry(team)
    task = registry.create_task("Parser", "")
    claim = registry.claim(task.id, "worker-1")

    result = registry.transition(
        task.id, "in_progress", "completed", claim.claim_token, result="done"
    )

    assert result.ok is True
    assert result.task.status == "completed"
    assert result.task.claim is None
    assert result.task.result == "done"
    assert result.task.completed_at
    assert result.task.terminal_event_emitted is True
    events = team.events.read("task_completed")
    assert [(event["task_id"], event["worker"]) for event in events] == [(task.id, "worker-1")]


def test_transition_rejects_wrong_token_and_illegal_edges(team: TeamStore) -> None:
    registry = TaskRegistry(team)
    task = registry.create_task("Parser", "")
    claim = registry.claim(task.id, "worker-1")

    assert registry.transition(task.id, "in_progress", "completed", "bogus").error == (
        "claim_conflict"
    )
    assert registry.transition(task.id, "pending", "completed", claim.claim_token).error == (
        "invalid_transition"
    )
    assert registry.transition(task.id, "completed", "failed", claim.claim_token).error == (
        "invalid_transition"
    )
    assert registry.read_task(task.id).status == "in_progress"


def test_transition_after_lease_expiry_is_refused(team: TeamStore) -> None:
    registry = TaskRegistry(team, lease_seconds=-1)
    task = registry.create_task("Parser", "")
    claim = registry.claim(task.id, "worker-1")

    result = registry.transition(task.id, "in_progress", "failed", claim.claim_token)

    assert result.ok is False
    assert result.error == "lease_expired"


def test_terminal_task_is_never_resurrected(team: TeamStore) -> None:
    registry = TaskRegistry(team)
    task = registry.create_task("Parser", "")
    claim = registry.claim(task.id, "worker-1")
    registry.transition(task.id, "in_progress", "failed", claim.claim_token, error="broken")

    assert registry.claim(task.id, "worker-2").error == "claim_conflict"
    assert registry.release(task.id, claim.claim_token, "worker-1").error == "already_terminal"
    assert registry.read_task(task.id).status == "failed"


def test_release_by_token_or_owner(team: TeamStore) -> None:
    registry = TaskRegistry(team)
    task = registry.create_task("Parser", "")
    registry.claim(task.id, "worker-1")

    assert registry.release(task.id, "bogus", "worker-2").error == "claim_conflict"
    released = registry.release(task.id, None, "worker-1")

    assert released.ok is True
    assert released.task.status == "pending"
    assert released.task.owner is None
    assert released.task.claim is None
    assert registry.claim(task.id, "worker-2").ok is True


def test_versions_increase_on_every_mutation(team: TeamStore) -> None:
    registry = TaskRegistry(team)
    task = registry.create_task("Parser", "")
    versions = [task.version]

    versions.append(registry.update_task(task.id, {"subject": "Parser v2"}).version)
    claim = registry.claim(task.id, "worker-1")
    versions.append(claim.task.version)
    versions.append(registry.release(task.id, claim.claim_token, "worker-1").task.version)

    assert versions == sorted(set(versions))


def test_update_task_validates_status_and_ignores_unknown_fields(team: TeamStore) -> None:
    registry = TaskRegistry(team)
    task = registry.create_task("Parser", "")

    with pytest.raises(TaskValidationError):
        registry.update_task(task.id, {"status": "archived"})

    updated = registry.update_task(task.id, {"depends_on": "1", "version": 50, "colour": "red"})
    assert updated.depends_on == []
    assert updated.version == task.version + 1
    assert registry.update_task("42", {"subject": "nope"}) is None


def test_update_task_cannot_reopen_a_finished_task(team: TeamStore) -> None:
    registry = TaskRegistry(team)
    task = registry.create_task("Parser", "")
    claim = registry.claim(task.id, "worker-1")
    registry.transition(task.id, "in_progress", "completed", claim.claim_token)

    with pytest.raises(TaskValidationError):
        registry.update_task(task.id, {"status": "pending"})

    renamed = registry.update_task(task.id, {"subject": "Parser v2", "status": "completed"})
    assert renamed.subject == "Parser v2"
    assert registry.read_task(task.id).status == "completed"


def test_update_task_refuses_to_start_work_without_a_claim(team: TeamStore) -> None:
    registry = TaskRegistry(team)
    task = registry.create_task("Parser", "")

    with pytest.raises(TaskValidationError):
        registry.update_task(task.id, {"status": "in_progress", "owner": "worker-1"})

    assert registry.read_task(task.id).status == "pending"
    assert registry.read_task(task.id).version == task.version


def test_claim_conflicts_with_leftover_claim_on_pending_task(team: TeamStore) -> None:
    registry = TaskRegistry(team)
    task = registry.create_task("Parser", "")
    task.claim = TaskClaim(owner="worker-2", token="leftover", leased_until=utcnow_iso())
    write_json_atomic(team.paths.task(task.id), task.to_dict())

    result = registry.claim(task.id, "worker-1")

    assert result.ok is False
    assert result.error == "claim_conflict"
    assert registry.read_task(task.id).status == "pending"


def test_claim_conflicts_with_task_owned_by_another_worker(team: TeamStore) -> None:
    registry = TaskRegistry(team)
    task = registry.create_task("Parser", "", owner="worker-2")

    assert registry.claim(task.id, "worker-1").error == "claim_conflict"
    assert registry.claim(task.id, "worker-2").ok is True


def test_owner_can_release_after_lease_expiry(team: TeamStore) -> None:
    registry = TaskRegistry(team, lease_seconds=-1)
    task = registry.create_task("Parser", "")
    claim = registry.claim(task.id, "worker-1")

    stranger = registry.release(task.id, claim.claim_token, "worker-2")
    assert stranger.ok is False
    assert stranger.error == "claim_conflict"

    released = registry.release(task.id, None, "worker-1")
    assert released.ok is True
    assert released.task.status == "pending"
    assert released.task.claim is None


def test_concurrent_claims_have_a_single_winner(team: TeamStore) -> None:
    registry = TaskRegistry(team)
    task = registry.create_task("Parser", "")
    results: list[ClaimResult] = []
    barrier = threading.Barrier(4)

    def _claim(worker: str) -> None:
        barrier.wait()
        results.append(TaskRegistry(team).claim(task.id, worker))

    threads = [threading.Thread(target=_claim, args=(f"worker-{i}",)) for i in range(1, 5)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    winners = [result for result in results if result.ok]
    assert len(winners) == 1
    assert sorted(result.error for result in results if not result.ok) == ["claim_conflict"] * 3
    assert registry.read_task(task.id).owner == winners[0].task.owner
