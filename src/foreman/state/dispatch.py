from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field, replace
from typing import Any, Literal
from uuid import uuid4

from foreman.state.store import (
    TeamNotFoundError,
    TeamStateError,
    read_json,
    utcnow_iso,
    write_json_atomic,
)
from foreman.state.team import TeamStore

logger = logging.getLogger(__name__)

DispatchKind = Literal["inbox", "mailbox"]
DispatchStatus = Literal["pending", "notified", "delivered", "failed"]
DISPATCH_KINDS = {"inbox", "mailbox"}
DISPATCH_STATUSES = {"pending", "notified", "delivered", "failed"}
ALLOWED_DISPATCH_TRANSITIONS = {
    ("pending", "notified"),
    ("pending", "failed"),
    ("notified", "delivered"),
    # metadata patch on a failed request; never a way back out of failed
    ("failed", "failed"),
}
PATCHABLE_FIELDS = {"last_reason", "attempt_count", "pane_id", "worker_index"}
STATUS_TIMESTAMP_FIELD = {
    "notified": "notified_at",
    "delivered": "delivered_at",
    "failed": "failed_at",
}


@dataclass(slots=True)
class DispatchRequest:
    request_id: str
    kind: str
    to_worker: str
    trigger_message: str
    worker_index: int | None = None
    pane_id: str | None = None
    message_id: str | None = None
    inbox_correlation_key: str | None = None
    transport_preference: str = "hook_preferred_with_fallback"
    fallback_allowed: bool = True
    status: str = "pending"
    attempt_count: int = 0
    last_reason: str | None = None
    created_at: str = field(default_factory=utcnow_iso)
    updated_at: str = field(default_factory=utcnow_iso)
    notified_at: str | None = None
    delivered_at: str | None = None
    failed_at: str | None = None

    @classmethod
    def from_dict(cls, payload: Any) -> DispatchRequest | None:
        if not isinstance(payload, dict):
            return None
        try:
            request = cls(
                request_id=str(payload["request_id"]),
                kind=str(payload["kind"]),
                to_worker=str(payload["to_worker"]),
                trigger_message=str(payload.get("trigger_message", "")),
                worker_index=payload.get("worker_index"),
                pane_id=payload.get("pane_id"),
                message_id=payload.get("message_id"),
                inbox_correlation_key=payload.get("inbox_correlation_key"),
                transport_preference=str(
                    payload.get("transport_preference") or "hook_preferred_with_fallback"
                ),
                fallback_allowed=payload.get("fallback_allowed") is not False,
                status=str(payload.get("status", "pending")),
                attempt_count=int(payload.get("attempt_count", 0)),
                last_reason=payload.get("last_reason"),
                created_at=str(payload.get("created_at") or utcnow_iso()),
                updated_at=str(payload.get("updated_at") or utcnow_iso()),
                notified_at=payload.get("notified_at"),
                delivered_at=payload.get("delivered_at"),
                failed_at=payload.get("failed_at"),
            )
        except (KeyError, TypeError, ValueError):
            return None
        if request.kind not in DISPATCH_KINDS or request.status not in DISPATCH_STATUSES:
            return None
        return request

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class EnqueueResult:
    request: DispatchRequest
    deduped: bool = False


def apply_status_transition(
    record: DispatchRequest,
    expected_status: str,
    target_status: str,
    patch: dict[str, Any] | None = None,
    *,
    now: str | None = None,
) -> DispatchRequest | None:
    """Compare-and-swap on a loaded request.

    Returns the updated copy, or ``None`` when the record is no longer in
    ``expected_status`` or the move is not an allowed edge. The input record is
    never modified.
    """
    if record.status != expected_status:
        return None
    if (expected_status, target_status) not in ALLOWED_DISPATCH_TRANSITIONS:
        return None
    timestamp = now or utcnow_iso()
    changes: dict[str, Any] = {
        key: value for key, value in (patch or {}).items() if key in PATCHABLE_FIELDS
    }
    changes["status"] = target_status
    changes["updated_at"] = timestamp
    stamp_field = STATUS_TIMESTAMP_FIELD[target_status]
    if getattr(record, stamp_field) is None or expected_status != target_status:
        changes[stamp_field] = timestamp
    return replace(record, **changes)


class DispatchQueue:
    """Team-wide list of dispatch requests in ``dispatch/requests.json``.

    The whole list is rewritten under ``dispatch/.lock`` on every change.
    """

    def __init__(self, team: TeamStore) -> None:
        self.team = team
        self.paths = team.paths

    def _read_all(self) -> list[DispatchRequest]:
        payload = read_json(self.paths.dispatch_requests, default=[])
        if not isinstance(payload, list):
            return []
        requests: list[DispatchRequest] = []
        for item in payload:
            request = DispatchRequest.from_dict(item)
            if request is not None:
                requests.append(request)
        return requests

    def _write_all(self, requests: list[DispatchRequest]) -> None:
        write_json_atomic(self.paths.dispatch_requests, [item.to_dict() for item in requests])

    @contextmanager
    def locked(self) -> Iterator[list[DispatchRequest]]:
        """Hold the dispatch lock; the yielded list is written back on exit."""
        if not self.team.exists():
            raise TeamNotFoundError(self.team.name)
        with self.team.lock(self.paths.dispatch_lock).held():
            requests = self._read_all()
            yield requests
            self._write_all(requests)

    def enqueue(
        self,
        kind: str,
        to_worker: str,
        trigger_message: str,
        *,
        message_id: str | None = None,
        worker_index: int | None = None,
        pane_id: str | None = None,
        inbox_correlation_key: str | None = None,
        transport_preference: str = "hook_preferred_with_fallback",
        fallback_allowed: bool = True,
    ) -> EnqueueResult:
        if kind not in DISPATCH_KINDS:
            raise TeamStateError(f"Invalid dispatch kind: {kind}")
        if kind == "mailbox" and not message_id:
            raise TeamStateError("Mailbox dispatch requests need a message_id")

        with self.locked() as requests:
            for existing in requests:
                if existing.kind != kind or existing.to_worker != to_worker:
                    continue
                if message_id and existing.message_id == message_id:
                    return EnqueueResult(request=existing, deduped=True)
                if (
                    kind == "inbox"
                    and inbox_correlation_key
                    and existing.inbox_correlation_key == inbox_correlation_key
                    and existing.status == "pending"
                ):
                    return EnqueueResult(request=existing, deduped=True)

            request = DispatchRequest(
                request_id=uuid4().hex,
                kind=kind,
                to_worker=to_worker,
                trigger_message=trigger_message,
                worker_index=worker_index,
                pane_id=pane_id,
                message_id=message_id,
                inbox_correlation_key=inbox_correlation_key,
                transport_preference=transport_preference,
                fallback_allowed=fallback_allowed,
            )
            requests.append(request)
        logger.debug("Enqueued %s dispatch %s for %s", kind, request.request_id, to_worker)
        return EnqueueResult(request=request)

    def read(self, request_id: str) -> DispatchRequest | None:
        for request in self._read_all():
            if request.request_id == request_id:
                return request
        return None

    def list_requests(
        self,
        *,
        status: str | None = None,
        kind: str | None = None,
        to_worker: str | None = None,
    ) -> list[DispatchRequest]:
        return [
            request
            for request in self._read_all()
            if (status is None or request.status == status)
            and (kind is None or request.kind == kind)
            and (to_worker is None or request.to_worker == to_worker)
        ]

    def transition(
        self,
        request_id: str,
        from_status: str,
        to_status: str,
        patch: dict[str, Any] | None = None,
    ) -> DispatchRequest | None:
        with self.locked() as requests:
            for index, request in enumerate(requests):
                if request.request_id != request_id:
                    continue
                updated = apply_status_transition(request, from_status, to_status, patch)
                if updated is None:
                    logger.debug(
                        "Refused dispatch %s %s->%s (current %s)",
                        request_id,
                        from_status,
                        to_status,
                        request.status,
                    )
                    return None
                requests[index] = updated
                return updated
        return None

    def mark_notified(self, request_id: str, reason: str | None = None) -> DispatchRequest | None:
        patch = {"last_reason": reason} if reason else None
        with self.locked() as requests:
            for index, request in enumerate(requests):
                if request.request_id != request_id:
                    continue
                if request.status in {"notified", "delivered"}:
                    return request
                updated = apply_status_transition(request, "pending", "notified", patch)
                if updated is not None:
                    requests[index] = updated
                return updated
        return None

    def mark_delivered(self, request_id: str, reason: str | None = None) -> DispatchRequest | None:
        patch = {"last_reason": reason} if reason else None
        with self.locked() as requests:
            for index, request in enumerate(requests):
                if request.request_id != request_id:
                    continue
                if request.status == "delivered":
                    return request
                updated = apply_status_transition(request, "notified", "delivered", patch)
                if updated is not None:
                    requests[index] = updated
                return updated
        return None
