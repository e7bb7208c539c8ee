from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass

from foreman.state.store import utcnow_iso
from foreman.state.team import TERMINAL_PHASES, PhaseState

_VERIFICATION_SECTION = (
    re.compile(r"verification(?:\s+evidence)?\s*:", re.IGNORECASE),
    re.compile(r"##\s*verification", re.IGNORECASE),
)
_EVIDENCE_SIGNALS = (
    re.compile(r"\b(pass|passed|fail|failed)\b", re.IGNORECASE),
    re.compile(r"`[^`]+`"),
    re.compile(r"\b(command|test|build|typecheck|lint)\b", re.IGNORECASE),
)


def has_structured_verification_evidence(summary: str | None) -> bool:
    """True when ``summary`` carries a verification section with a concrete signal."""
    if not isinstance(summary, str):
        return False
    text = summary.strip()
    if not text:
        return False
    if not any(pattern.search(text) for pattern in _VERIFICATION_SECTION):
        return False
    return any(pattern.search(text) for pattern in _EVIDENCE_SIGNALS)


def infer_phase_target(counts: Mapping[str, int], *, verification_pending: bool = False) -> str:
    active = counts.get("pending", 0) + counts.get("blocked", 0) + counts.get("in_progress", 0)
    if active > 0:
        return "team-exec"
    if verification_pending:
        return "team-verify"
    return "complete"


@dataclass(slots=True)
class PhaseReconciliation:
    state: PhaseState
    changed: bool


def reconcile_phase(persisted: PhaseState | None, target: str) -> PhaseReconciliation:
    """Move the persisted phase toward ``target``.

    Reconciling twice against the same target is a no-op. A terminal phase
    is only left when tasks reopen, which is recorded with reason
    ``tasks_reopened``.
    """
    base = persisted or PhaseState()
    if base.current_phase == target:
        return PhaseReconciliation(state=base, changed=False)

    if base.current_phase in TERMINAL_PHASES:
        if target in TERMINAL_PHASES:
            return PhaseReconciliation(state=base, changed=False)
        reason = "tasks_reopened"
    else:
        reason = "task_counts"

    now = utcnow_iso()
    transition = {"from": base.current_phase, "to": target, "at": now, "reason": reason}
    state = PhaseState(
        current_phase=target,
        transitions=[*base.transitions, transition],
        updated_at=now,
    )
    return PhaseReconciliation(state=state, changed=True)
