from __future__ import annotations

import asyncio
import logging

from foreman.config import DispatchConfig, resolve_ack_timeout_ms
from foreman.state.dispatch import DispatchQueue, DispatchRequest
from foreman.state.mailbox import Mailbox, MailboxMessage
from foreman.state.store import TeamStateError
from foreman.state.team import TeamRecord, TeamStore
from foreman.transport.base import DispatchOutcome, TransportError, WorkerTarget, WorkerTransport

logger = logging.getLogger(__name__)

HOOK_PREFERRED = "hook_preferred_with_fallback"
RECEIPT_STATUSES = {"notified", "delivered", "failed"}


def trigger_for_inbox(worker: str, team: str) -> str:
    return f"Team {team}: new instructions for {worker}. Read your inbox and follow it."


def trigger_for_mailbox(worker: str, team: str, count: int = 1) -> str:
    noun = "message" if count == 1 else "messages"
    return f"Team {team}: {count} new {noun} for {worker}. Check your mailbox."


class Dispatcher:
    """Leader-side delivery of inbox instructions and mailbox messages.

    Every notification is recorded as a dispatch request first. In
    hook-preferred mode the leader waits for a separate delivery agent to
    confirm the request and only notifies the worker itself when that receipt
    fails or never arrives. Both actors settle the request through the queue's
    compare-and-swap, so at most one success is ever recorded.
    """

    def __init__(
        self,
        team: TeamStore,
        transport: WorkerTransport,
        *,
        config: DispatchConfig | None = None,
        queue: DispatchQueue | None = None,
        mailbox: Mailbox | None = None,
    ) -> None:
        self.team = team
        self.transport = transport
        self.config = config or DispatchConfig()
        self.queue = queue or DispatchQueue(team)
        self.mailbox = mailbox or Mailbox(team)

    def ack_timeout_seconds(self, record: TeamRecord) -> float:
        timeout_ms = resolve_ack_timeout_ms(
            record.policy.dispatch_ack_timeout_ms, self.config.ack_timeout_ms
        )
        return timeout_ms / 1000

    def target_for(self, record: TeamRecord, worker: str) -> WorkerTarget:
        info = record.worker(worker)
        if info is None:
            raise TeamStateError(f"Worker {worker} not found in team {record.name}")
        heartbeat = self.team.read_heartbeat(worker)
        pid = info.pid or (heartbeat.pid if heartbeat else None)
        return WorkerTarget(
            team=record.name,
            worker=worker,
            worker_index=info.index,
            pane_id=info.pane_id,
            pid=pid,
        )

    async def notify_direct(self, target: WorkerTarget, message: str) -> DispatchOutcome:
        timeout = self.config.notify_timeout_seconds
        try:
            return await asyncio.wait_for(
                self.transport.notify(target, message, timeout_seconds=timeout),
                timeout=timeout + 1.0,
            )
        except TimeoutError:
            return DispatchOutcome(ok=False, transport=self.transport.name, reason="notify_timeout")
        except (TransportError, OSError) as exc:
            return DispatchOutcome(
                ok=False, transport=self.transport.name, reason=f"notify_exception:{exc}"
            )

    async def wait_for_receipt(
        self,
        request_id: str,
        *,
        timeout_seconds: float,
        poll_seconds: float | None = None,
    ) -> DispatchRequest | None:
        if poll_seconds is None:
            poll_seconds = self.config.receipt_poll_ms / 1000
        poll = max(0.025, poll_seconds)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + max(0.0, timeout_seconds)
        while loop.time() <= deadline:
            request = self.queue.read(request_id)
            if request is None:
                return None
            if request.status in RECEIPT_STATUSES:
                return request
            await asyncio.sleep(poll)
        return self.queue.read(request_id)

    async def dispatch_inbox(
        self,
        worker: str,
        inbox: str,
        *,
        trigger_message: str | None = None,
        correlation_key: str | None = None,
    ) -> DispatchOutcome:
        record = self.team.require_config()
        target = self.target_for(record, worker)
        trigger = trigger_message or trigger_for_inbox(worker, record.name)
        self.team.write_inbox(worker, inbox)
        mode = record.policy.dispatch_mode
        queued = self.queue.enqueue(
            "inbox",
            worker,
            trigger,
            worker_index=target.worker_index,
            pane_id=target.pane_id,
            inbox_correlation_key=correlation_key,
            transport_preference=mode,
            fallback_allowed=mode == HOOK_PREFERRED,
        )
        if queued.deduped:
            return DispatchOutcome(
                ok=False,
                transport="none",
                reason="duplicate_pending_dispatch_request",
                request_id=queued.request.request_id,
                to_worker=worker,
            )
        if mode != HOOK_PREFERRED:
            return await self._notify_now(queued.request, target)
        return await self._finalize_hook_preferred(
            queued.request, target, self.ack_timeout_seconds(record)
        )

    async def dispatch_mailbox(
        self,
        message: MailboxMessage,
        *,
        trigger_message: str | None = None,
        reuse_existing: bool = False,
    ) -> DispatchOutcome:
        """Notify ``message.to_worker`` about a stored mailbox message.

        With ``reuse_existing`` a request already queued for the same message is
        finalized again instead of being reported as a duplicate.
        """
        record = self.team.require_config()
        worker = message.to_worker
        target = self.target_for(record, worker)
        trigger = trigger_message or trigger_for_mailbox(worker, record.name)
        mode = record.policy.dispatch_mode
        queued = self.queue.enqueue(
            "mailbox",
            worker,
            trigger,
            message_id=message.message_id,
            worker_index=target.worker_index,
            pane_id=target.pane_id,
            transport_preference=mode,
            fallback_allowed=mode == HOOK_PREFERRED,
        )
        if queued.deduped and not reuse_existing:
            return DispatchOutcome(
                ok=False,
                transport="none",
                reason="duplicate_pending_dispatch_request",
                request_id=queued.request.request_id,
                message_id=message.message_id,
                to_worker=worker,
            )
        if mode != HOOK_PREFERRED:
            outcome = await self._notify_now(queued.request, target)
        else:
            outcome = await self._finalize_hook_preferred(
                queued.request, target, self.ack_timeout_seconds(record)
            )
        outcome.message_id = message.message_id
        if outcome.ok:
            self.mailbox.mark_notified(worker, message.message_id)
        return outcome

    async def _notify_now(self, request: DispatchRequest, target: WorkerTarget) -> DispatchOutcome:
        outcome = await self.notify_direct(target, request.trigger_message)
        outcome.request_id = request.request_id
        outcome.to_worker = target.worker
        if outcome.confirmed:
            self.queue.mark_notified(request.request_id, outcome.reason)
        else:
            self.queue.transition(
                request.request_id, "pending", "failed", {"last_reason": outcome.reason}
            )
        return outcome

    async def _finalize_hook_preferred(
        self, request: DispatchRequest, target: WorkerTarget, timeout_seconds: float
    ) -> DispatchOutcome:
        request_id = request.request_id
        receipt = await self.wait_for_receipt(request_id, timeout_seconds=timeout_seconds)
        if receipt is not None and receipt.status in {"notified", "delivered"}:
            return DispatchOutcome(
                ok=True,
                transport="hook",
                reason=f"hook_receipt_{receipt.status}",
                request_id=request_id,
                to_worker=target.worker,
            )

        fallback = await self.notify_direct(target, request.trigger_message)
        if receipt is not None and receipt.status == "failed":
            if fallback.ok:
                reason = f"fallback_confirmed_after_failed_receipt:{fallback.reason}"
            else:
                reason = f"fallback_attempted_but_unconfirmed:{fallback.reason}"
            self.queue.transition(request_id, "failed", "failed", {"last_reason": reason})
            return DispatchOutcome(
                ok=fallback.ok,
                transport=fallback.transport,
                reason=reason,
                request_id=request_id,
                to_worker=target.worker,
            )

        if fallback.ok:
            marked = self.queue.mark_notified(request_id, f"fallback_confirmed:{fallback.reason}")
            if marked is None:
                # The delivery agent failed the request while we were notifying.
                self.queue.transition(
                    request_id,
                    "failed",
                    "failed",
                    {"last_reason": f"fallback_confirmed_after_failed_receipt:{fallback.reason}"},
                )
            logger.info("Hook receipt for %s timed out; leader fallback delivered", request_id)
            return DispatchOutcome(
                ok=True,
                transport=fallback.transport,
                reason=f"hook_timeout_fallback_confirmed:{fallback.reason}",
                request_id=request_id,
                to_worker=target.worker,
            )

        reason = f"fallback_attempted_but_unconfirmed:{fallback.reason}"
        current = self.queue.read(request_id)
        if current is not None and current.status != "failed":
            self.queue.transition(request_id, current.status, "failed", {"last_reason": reason})
        logger.warning("Dispatch %s to %s failed: %s", request_id, target.worker, reason)
        return DispatchOutcome(
            ok=False,
            transport=fallback.transport,
            reason=reason,
            request_id=request_id,
            to_worker=target.worker,
        )
