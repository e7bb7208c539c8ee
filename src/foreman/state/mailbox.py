from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field
from typing import Any
from uuid import uuid4

from foreman.state.store import read_json, utcnow_iso, validate_name, write_json_atomic
from foreman.state.team import TeamStore


@dataclass(slots=True)
class MailboxMessage:
    message_id: str
    from_worker: str
    to_worker: str
    body: str
    created_at: str = field(default_factory=utcnow_iso)
    notified_at: str | None = None
    delivered_at: str | None = None

    @property
    def is_pending(self) -> bool:
        return self.delivered_at is None

    @classmethod
    def from_dict(cls, payload: Any) -> MailboxMessage | None:
        if not isinstance(payload, dict):
            return None
        try:
            return cls(
                message_id=str(payload["message_id"]),
                from_worker=str(payload["from_worker"]),
                to_worker=str(payload["to_worker"]),
                body=str(payload.get("body", "")),
                created_at=str(payload.get("created_at") or utcnow_iso()),
                notified_at=payload.get("notified_at"),
                delivered_at=payload.get("delivered_at"),
            )
        except KeyError:
            return None


class Mailbox:
    """Per-worker message lists in ``mailbox/<worker>.json``."""

    def __init__(self, team: TeamStore) -> None:
        self.team = team
        self.paths = team.paths

    def _read(self, worker: str) -> list[MailboxMessage]:
        payload = read_json(self.paths.mailbox(worker))
        if not isinstance(payload, dict) or not isinstance(payload.get("messages"), list):
            return []
        messages: list[MailboxMessage] = []
        for item in payload["messages"]:
            message = MailboxMessage.from_dict(item)
            if message is not None:
                messages.append(message)
        return messages

    @contextmanager
    def _locked(self, worker: str) -> Iterator[list[MailboxMessage]]:
        self.team.require_config()
        with self.team.lock(self.paths.mailbox_lock(worker)).held():
            messages = self._read(worker)
            yield messages
            write_json_atomic(
                self.paths.mailbox(worker),
                {"worker": worker, "messages": [asdict(item) for item in messages]},
            )

    def send_direct(self, from_worker: str, to_worker: str, body: str) -> MailboxMessage:
        validate_name(to_worker, kind="worker")
        message = MailboxMessage(
            message_id=uuid4().hex,
            from_worker=from_worker,
            to_worker=to_worker,
            body=body,
        )
        with self._locked(to_worker) as messages:
            messages.append(message)
        self.team.events.append("message_received", worker=to_worker, message_id=message.message_id)
        return message

    def broadcast(self, from_worker: str, body: str) -> list[MailboxMessage]:
        workers = self.team.require_config().workers
        recipients = [worker for worker in workers if worker.name != from_worker]
        return [self.send_direct(from_worker, worker.name, body) for worker in recipients]

    def list_messages(self, worker: str) -> list[MailboxMessage]:
        return self._read(worker)

    def _stamp(self, worker: str, message_id: str, field_name: str) -> bool:
        with self._locked(worker) as messages:
            for message in messages:
                if message.message_id != message_id:
                    continue
                if getattr(message, field_name) is None:
                    setattr(message, field_name, utcnow_iso())
                return True
        return False

    def mark_notified(self, worker: str, message_id: str) -> bool:
        return self._stamp(worker, message_id, "notified_at")

    def mark_delivered(self, worker: str, message_id: str) -> bool:
        return self._stamp(worker, message_id, "delivered_at")
