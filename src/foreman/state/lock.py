from __future__ import annotations

import logging
import os
import shutil
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from uuid import uuid4

from foreman.config import DEFAULT_LOCK_TIMEOUT_MS, LOCK_TIMEOUT_ENV
from foreman.state.store import LockTimeoutError

logger = logging.getLogger(__name__)

OWNER_FILE = "owner"


@dataclass(slots=True, frozen=True)
class LockSettings:
    timeout_seconds: float = DEFAULT_LOCK_TIMEOUT_MS / 1000
    stale_after_seconds: float = 300.0
    poll_interval_seconds: float = 0.025
    timeout_knob: str = LOCK_TIMEOUT_ENV


class DirectoryLock:
    """Mutual exclusion through exclusive ``mkdir`` of a lock directory.

    The directory holds an ``owner`` file with a random token. A lock whose
    directory is older than ``stale_after_seconds`` is assumed abandoned and
    removed so the next attempt can take it over.
    """

    def __init__(self, path: Path, settings: LockSettings | None = None) -> None:
        self.path = path
        self.settings = settings or LockSettings()

    def _age_seconds(self) -> float | None:
        try:
            return time.time() - self.path.stat().st_mtime
        except FileNotFoundError:
            return None

    def acquire(self) -> str:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        deadline = time.monotonic() + self.settings.timeout_seconds
        while True:
            try:
                os.mkdir(self.path)
            except FileExistsError:
                age = self._age_seconds()
                if age is None:
                    continue
                if age > self.settings.stale_after_seconds:
                    logger.warning("Reclaiming stale lock %s (age %.1fs)", self.path, age)
                    shutil.rmtree(self.path, ignore_errors=True)
                    continue
                if time.monotonic() >= deadline:
                    timeout_ms = int(self.settings.timeout_seconds * 1000)
                    raise LockTimeoutError(
                        f"Timed out after {timeout_ms}ms acquiring lock {self.path}. "
                        f"Set {self.settings.timeout_knob} to wait longer.",
                        lock_path=self.path,
                        knob=self.settings.timeout_knob,
                    ) from None
                time.sleep(self.settings.poll_interval_seconds)
                continue

            token = uuid4().hex
            try:
                (self.path / OWNER_FILE).write_text(token, encoding="utf-8")
            except OSError:
                shutil.rmtree(self.path, ignore_errors=True)
                raise
            return token

    def release(self, token: str) -> bool:
        try:
            current = (self.path / OWNER_FILE).read_text(encoding="utf-8").strip()
        except (FileNotFoundError, NotADirectoryError):
            return False
        if current != token:
            logger.debug("Lock %s is held by another owner; leaving it in place", self.path)
            return False
        shutil.rmtree(self.path, ignore_errors=True)
        return True

    @contextmanager
    def held(self) -> Iterator[str]:
        token = self.acquire()
        try:
            yield token
        finally:
            self.release(token)
