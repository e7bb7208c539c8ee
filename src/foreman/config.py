from __future__ import annotations

import json
import os
import tomllib
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

TransportName = Literal["file", "process"]
TRANSPORTS: tuple[str, ...] = ("file", "process")

DispatchMode = Literal["hook_preferred_with_fallback", "transport_direct", "prompt_stdin"]
DISPATCH_MODES: tuple[str, ...] = (
    "hook_preferred_with_fallback",
    "transport_direct",
    "prompt_stdin",
)

STATE_ROOT_ENV = "FOREMAN_TEAM_STATE_ROOT"
LOCK_TIMEOUT_ENV = "FOREMAN_DISPATCH_LOCK_TIMEOUT_MS"
ACK_TIMEOUT_ENV = "FOREMAN_DISPATCH_ACK_TIMEOUT_MS"

DEFAULT_LOCK_TIMEOUT_MS = 5_000
MIN_LOCK_TIMEOUT_MS = 1_000
MAX_LOCK_TIMEOUT_MS = 120_000

DEFAULT_ACK_TIMEOUT_MS = 10_000
MIN_ACK_TIMEOUT_MS = 100
MAX_ACK_TIMEOUT_MS = 10_000

ABSOLUTE_MAX_WORKERS = 20


@dataclass(slots=True)
class StateConfig:
    root: str = ".foreman/state"


@dataclass(slots=True)
class LockConfig:
    timeout_ms: int = DEFAULT_LOCK_TIMEOUT_MS
    stale_after_seconds: float = 300.0
    poll_interval_ms: int = 25


@dataclass(slots=True)
class DispatchConfig:
    mode: DispatchMode = "hook_preferred_with_fallback"
    transport: TransportName = "file"
    ack_timeout_ms: int = DEFAULT_ACK_TIMEOUT_MS
    receipt_poll_ms: int = 50
    notify_timeout_seconds: float = 5.0
    max_per_tick: int = 5
    max_unconfirmed_attempts: int = 3
    verify_rounds: int = 3
    verify_delay_ms: int = 250


@dataclass(slots=True)
class MonitorConfig:
    non_reporting_turns: int = 5
    worker_ready_timeout_seconds: float = 10.0


@dataclass(slots=True)
class ShutdownConfig:
    ack_timeout_seconds: float = 15.0
    poll_interval_seconds: float = 2.0


@dataclass(slots=True)
class TeamDefaults:
    max_workers: int = 8
    delegation_only: bool = False
    plan_approval_required: bool = False
    worker_command: list[str] = field(default_factory=list)


@dataclass(slots=True)
class ForemanConfig:
    state: StateConfig = field(default_factory=StateConfig)
    lock: LockConfig = field(default_factory=LockConfig)
    dispatch: DispatchConfig = field(default_factory=DispatchConfig)
    monitor: MonitorConfig = field(default_factory=MonitorConfig)
    shutdown: ShutdownConfig = field(default_factory=ShutdownConfig)
    team: TeamDefaults = field(default_factory=TeamDefaults)

    @classmethod
    def default(cls) -> ForemanConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> ForemanConfig:
        return cls(
            state=StateConfig(**data.get("state", {})),
            lock=LockConfig(**data.get("lock", {})),
            dispatch=DispatchConfig(**data.get("dispatch", {})),
            monitor=MonitorConfig(**data.get("monitor", {})),
            shutdown=ShutdownConfig(**data.get("shutdown", {})),
            team=TeamDefaults(**data.get("team", {})),
        )

    def to_dict(self) -> dict:
        return {
            "state": {
                "root": self.state.root,
            },
            "lock": {
                "timeout_ms": self.lock.timeout_ms,
                "stale_after_seconds": self.lock.stale_after_seconds,
                "poll_interval_ms": self.lock.poll_interval_ms,
            },
            "dispatch": {
                "mode": self.dispatch.mode,
                "transport": self.dispatch.transport,
                "ack_timeout_ms": self.dispatch.ack_timeout_ms,
                "receipt_poll_ms": self.dispatch.receipt_poll_ms,
                "notify_timeout_seconds": self.dispatch.notify_timeout_seconds,
                "max_per_tick": self.dispatch.max_per_tick,
                "max_unconfirmed_attempts": self.dispatch.max_unconfirmed_attempts,
                "verify_rounds": self.dispatch.verify_rounds,
                "verify_delay_ms": self.dispatch.verify_delay_ms,
            },
            "monitor": {
                "non_reporting_turns": self.monitor.non_reporting_turns,
                "worker_ready_timeout_seconds": self.monitor.worker_ready_timeout_seconds,
            },
            "shutdown": {
                "ack_timeout_seconds": self.shutdown.ack_timeout_seconds,
                "poll_interval_seconds": self.shutdown.poll_interval_seconds,
            },
            "team": {
                "max_workers": self.team.max_workers,
                "delegation_only": self.team.delegation_only,
                "plan_approval_required": self.team.plan_approval_required,
                "worker_command": list(self.team.worker_command),
            },
        }


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0").rstrip(".")
        return rendered if rendered else "0"
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: ForemanConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    section_order = ["state", "lock", "dispatch", "monitor", "shutdown", "team"]
    for section in section_order:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> ForemanConfig:
    if not path.exists():
        return ForemanConfig.default()
    return ForemanConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))


def save_config(path: Path, config: ForemanConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")


def _parse_positive_int(raw: object) -> int | None:
    if raw is None or isinstance(raw, bool):
        return None
    try:
        value = int(float(str(raw).strip()))
    except (ValueError, OverflowError):
        return None
    return value if value > 0 else None


def _clamp(value: int, lower: int, upper: int) -> int:
    return max(lower, min(upper, value))


def resolve_lock_timeout_ms(
    configured_ms: int | None = None, env: Mapping[str, str] | None = None
) -> int:
    """Environment wins over the config file; the result is clamped to [1s, 120s]."""
    environ = os.environ if env is None else env
    value = (
        _parse_positive_int(environ.get(LOCK_TIMEOUT_ENV))
        or _parse_positive_int(configured_ms)
        or DEFAULT_LOCK_TIMEOUT_MS
    )
    return _clamp(value, MIN_LOCK_TIMEOUT_MS, MAX_LOCK_TIMEOUT_MS)


def resolve_ack_timeout_ms(
    policy_ms: object = None,
    configured_ms: int | None = None,
    env: Mapping[str, str] | None = None,
) -> int:
    """Team policy wins, then the environment, then the config file.

    Over-large values clamp down to the 10s default rather than failing.
    """
    environ = os.environ if env is None else env
    value = (
        _parse_positive_int(policy_ms)
        or _parse_positive_int(environ.get(ACK_TIMEOUT_ENV))
        or _parse_positive_int(configured_ms)
        or DEFAULT_ACK_TIMEOUT_MS
    )
    return _clamp(value, MIN_ACK_TIMEOUT_MS, MAX_ACK_TIMEOUT_MS)


def resolve_state_root(
    config: ForemanConfig, cwd: Path, env: Mapping[str, str] | None = None
) -> Path:
    environ = os.environ if env is None else env
    raw = (environ.get(STATE_ROOT_ENV) or "").strip() or config.state.root
    root = Path(raw).expanduser()
    if not root.is_absolute():
        root = cwd / root
    return root.resolve()
