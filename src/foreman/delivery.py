from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, replace
from typing import Any

from foreman.config import DispatchConfig
from foreman.dispatcher import HOOK_PREFERRED
from foreman.state.dispatch import DispatchQueue, DispatchRequest, apply_status_transition
from foreman.state.mailbox import Mailbox
from foreman.state.store import utcnow_iso
from foreman.state.team import TeamStore
from foreman.transport.base import DispatchOutcome, TransportError, WorkerTarget, WorkerTransport

logger = logging.getLogger(__name__)

DeliveryEventHook = Callable[[dict[str, Any]], None]


@dataclass(slots=True)
class DrainSummary:
    processed: int = 0
    skipped: int = 0
    failed: int = 0

    def merge(self, other: DrainSummary) -> None:
        self.processed += other.processed
        self.skipped += other.skipped
        self.failed += other.failed


def _patch_pending(request: DispatchRequest, **changes: Any) -> DispatchRequest | None:
    if request.status != "pending":
        return None
    return replace(request, updated_at=utcnow_iso(), **changes)


class DeliveryAgent:
    """Delivers pending hook-preferred dispatch requests for one team.

    Requests are picked and their attempt counted under the dispatch lock,
    delivered with the lock released, and then settled through the same
    compare-and-swap the leader uses. A request whose delivery could not be
    confirmed stays pending until ``max_unconfirmed_attempts`` is reached.
    """

    def __init__(
        self,
        team: TeamStore,
        transport: WorkerTransport,
        *,
        config: DispatchConfig | None = None,
        event_hook: DeliveryEventHook | None = None,
    ) -> None:
        self.team = team
        self.transport = transport
        self.config = config or DispatchConfig()
        self.queue = DispatchQueue(team)
        self.mailbox = Mailbox(team)
        self.event_hook = event_hook

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    def _pick(self, limit: int) -> tuple[list[DispatchRequest], int]:
        picked: list[DispatchRequest] = []
        skipped = 0
        with self.queue.locked() as requests:
            for index, request in enumerate(requests):
                if len(picked) >= limit:
                    break
                if request.status != "pending" or request.transport_preference != HOOK_PREFERRED:
                    skipped += 1
                    continue
                counted = _patch_pending(request, attempt_count=max(0, request.attempt_count) + 1)
                if counted is None:
                    continue
                requests[index] = counted
                picked.append(counted)
        return picked, skipped

    def _target(self, request: DispatchRequest) -> WorkerTarget:
        heartbeat = self.team.read_heartbeat(request.to_worker)
        return WorkerTarget(
            team=self.team.name,
            worker=request.to_worker,
            worker_index=request.worker_index,
            pane_id=request.pane_id,
            pid=heartbeat.pid if heartbeat else None,
        )

    async def inject(self, request: DispatchRequest) -> DispatchOutcome:
        """Send the trigger and verify it landed across bounded rounds."""
        target = self._target(request)
        timeout = self.config.notify_timeout_seconds
        try:
            outcome = await asyncio.wait_for(
                self.transport.notify(target, request.trigger_message, timeout_seconds=timeout),
                timeout=timeout + 1.0,
            )
        except TimeoutError:
            return DispatchOutcome(ok=False, transport=self.transport.name, reason="notify_timeout")
        except (TransportError, OSError) as exc:
            return DispatchOutcome(
                ok=False, transport=self.transport.name, reason=f"notify_exception:{exc}"
            )
        if not outcome.ok:
            return outcome

        for _ in range(max(1, self.config.verify_rounds)):
            await asyncio.sleep(self.config.verify_delay_ms / 1000)
            if await self._confirmed(target, request.trigger_message):
                return DispatchOutcome(
                    ok=True, transport=outcome.transport, reason=f"{outcome.transport}_confirmed"
                )
        return DispatchOutcome(
            ok=True, transport=outcome.transport, reason=f"{outcome.transport}_unconfirmed"
        )

    async def _confirmed(self, target: WorkerTarget, message: str) -> bool:
        try:
            return await self.transport.confirm_delivery(target, message)
        except Exception as exc:
            logger.warning("Delivery confirmation for %s failed: %s", target.worker, exc)
            return False

    def _settle(self, request: DispatchRequest, outcome: DispatchOutcome) -> tuple[str, bool]:
        """Record one delivery attempt.

        Returns the resulting status and whether this attempt decided it. A
        request the leader settled first comes back with ``False``.
        """
        unconfirmed = outcome.ok and outcome.reason.endswith("_unconfirmed")
        max_attempts = max(1, self.config.max_unconfirmed_attempts)
        with self.queue.locked() as requests:
            for index, current in enumerate(requests):
                if current.request_id != request.request_id:
                    continue
                if unconfirmed and request.attempt_count < max_attempts:
                    updated = _patch_pending(current, last_reason=outcome.reason)
                    settled = "pending"
                elif unconfirmed:
                    updated = apply_status_transition(
                        current,
                        "pending",
                        "failed",
                        {"last_reason": "unconfirmed_after_max_retries"},
                    )
                    settled = "failed"
                elif outcome.ok:
                    updated = apply_status_transition(
                        current, "pending", "notified", {"last_reason": outcome.reason}
                    )
                    settled = "notified"
                else:
                    updated = apply_status_transition(
                        current, "pending", "failed", {"last_reason": outcome.reason}
                    )
                    settled = "failed"
                if updated is None:
                    return current.status, False
                requests[index] = updated
                return settled, True
        return "missing", False

    async def drain(self, max_per_tick: int | None = None) -> DrainSummary:
        limit = self.config.max_per_tick if max_per_tick is None else max_per_tick
        summary = DrainSummary()
        if limit <= 0 or not self.team.exists():
            return summary
        picked, summary.skipped = self._pick(limit)

        for request in picked:
            outcome = await self.inject(request)
            settled, applied = self._settle(request, outcome)
            event = {
                "team": self.team.name,
                "request_id": request.request_id,
                "worker": request.to_worker,
                "message_id": request.message_id,
                "attempt": request.attempt_count,
                "reason": outcome.reason,
            }
            if not applied:
                summary.skipped += 1
                self._emit({"event": "dispatch_already_settled", "status": settled, **event})
                continue
            if settled == "pending":
                summary.skipped += 1
                self._emit({"event": "dispatch_unconfirmed_retry", **event})
                continue
            summary.processed += 1
            if settled == "notified":
                if request.kind == "mailbox" and request.message_id:
                    self.mailbox.mark_notified(request.to_worker, request.message_id)
                self._emit({"event": "dispatch_notified", **event})
            else:
                summary.failed += 1
                self._emit({"event": "dispatch_failed", **event})
        logger.debug(
            "Drained team %s: processed=%d skipped=%d failed=%d",
            self.team.name,
            summary.processed,
            summary.skipped,
            summary.failed,
        )
        return summary
