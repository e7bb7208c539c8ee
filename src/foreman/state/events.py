from __future__ import annotations

import json
import logging
from typing import Any
from uuid import uuid4

from foreman.state.store import TeamPaths, append_json_line, utcnow_iso

logger = logging.getLogger(__name__)

EVENT_TYPES = {
    "task_completed",
    "task_failed",
    "worker_idle",
    "worker_stopped",
    "message_received",
    "shutdown_ack",
    "shutdown_gate",
    "shutdown_gate_forced",
    "approval_decision",
}


class EventLog:
    """Append-only lifecycle log, one JSON object per line.

    Appends are best-effort: a failed write is logged and never propagates to
    the operation that produced the event.
    """

    def __init__(self, paths: TeamPaths) -> None:
        self.paths = paths

    def append(
        self,
        event_type: str,
        *,
        worker: str,
        task_id: str | None = None,
        message_id: str | None = None,
        reason: str | None = None,
    ) -> dict[str, Any] | None:
        if event_type not in EVENT_TYPES:
            logger.warning("Dropping unknown event type %s", event_type)
            return None
        event: dict[str, Any] = {
            "event_id": uuid4().hex,
            "team": self.paths.team,
            "type": event_type,
            "worker": worker,
            "created_at": utcnow_iso(),
        }
        if task_id is not None:
            event["task_id"] = task_id
        if message_id is not None:
            event["message_id"] = message_id
        if reason is not None:
            event["reason"] = reason
        try:
            append_json_line(self.paths.events, event)
        except OSError as exc:
            logger.warning(
                "Failed to append %s event for team %s: %s", event_type, self.paths.team, exc
            )
            return None
        return event

    def read(self, event_type: str | None = None) -> list[dict[str, Any]]:
        try:
            lines = self.paths.events.read_text(encoding="utf-8").splitlines()
        except FileNotFoundError:
            return []
        events: list[dict[str, Any]] = []
        for line in lines:
            if not line.strip():
                continue
            try:
                payload = json.loads(line)
            except json.JSONDecodeError:
                continue
            if not isinstance(payload, dict):
                continue
            if event_type is None or payload.get("type") == event_type:
                events.append(payload)
        return events
