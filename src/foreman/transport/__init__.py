from foreman.transport.base import (
    DispatchOutcome,
    TransportError,
    WorkerLaunchError,
    WorkerTarget,
    WorkerTransport,
)
from foreman.transport.file import FileTransport
from foreman.transport.process import ProcessTransport, WorkerHandle, WorkerProcessRegistry

__all__ = [
    "DispatchOutcome",
    "FileTransport",
    "ProcessTransport",
    "TransportError",
    "WorkerHandle",
    "WorkerLaunchError",
    "WorkerProcessRegistry",
    "WorkerTarget",
    "WorkerTransport",
]
