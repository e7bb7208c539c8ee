from foreman.state.dispatch import DispatchQueue, DispatchRequest, apply_status_transition
from foreman.state.events import EventLog
from foreman.state.lock import DirectoryLock, LockSettings
from foreman.state.mailbox import Mailbox, MailboxMessage
from foreman.state.store import (
    LockTimeoutError,
    TaskValidationError,
    TeamNotFoundError,
    TeamPaths,
    TeamStateError,
)
from foreman.state.tasks import Task, TaskRegistry
from foreman.state.team import TeamStore

__all__ = [
    "DirectoryLock",
    "DispatchQueue",
    "DispatchRequest",
    "EventLog",
    "LockSettings",
    "LockTimeoutError",
    "Mailbox",
    "MailboxMessage",
    "Task",
    "TaskRegistry",
    "TaskValidationError",
    "TeamNotFoundError",
    "TeamPaths",
    "TeamStateError",
    "TeamStore",
    "apply_status_transition",
]
