import os
import threading
import time
from pathlib import Path

import pytest

from foreman.config import LOCK_TIMEOUT_ENV
from foreman.state.lock import OWNER_FILE, DirectoryLock, LockSettings
from foreman.state.store import LockTimeoutError


def test_acquire_writes_owner_token_and_release_removes_directory(tmp_path: Path) -> None:
    lock = DirectoryLock(tmp_path / "locks" / "task-1.lock")

    token = lock.acquire()

    assert (lock.path / OWNER_FILE).read_text(encoding="utf-8") == token
    assert lock.release(token) is True
    assert not lock.path.exists()


def test_release_with_foreign_token_keeps_lock(tmp_path: Path) -> None:
    lock = DirectoryLock(tmp_path / "held.lock")
    token = lock.acquire()

    assert lock.release("someone-else") is False
    assert lock.path.exists()
    assert lock.release(token) is True


def test_timeout_names_the_env_knob(tmp_path: Path) -> None:
    settings = LockSettings(timeout_seconds=0.05, poll_interval_seconds=0.01)
    holder = DirectoryLock(tmp_path / "busy.lock", settings)
    holder.acquire()

    with pytest.raises(LockTimeoutError) as excinfo:
        DirectoryLock(tmp_path / "busy.lock", settings).acquire()

    assert LOCK_TIMEOUT_ENV in str(excinfo.value)
    assert excinfo.value.knob == LOCK_TIMEOUT_ENV
    assert excinfo.value.lock_path == tmp_path / "busy.lock"


def test_stale_lock_is_reclaimed(tmp_path: Path) -> None:
    path = tmp_path / "stale.lock"
    path.mkdir()
    (path / OWNER_FILE).write_text("dead-process", encoding="utf-8")
    old = time.time() - 600
    os.utime(path, (old, old))

    lock = DirectoryLock(path, LockSettings(timeout_seconds=0.05, stale_after_seconds=300.0))
    token = lock.acquire()

    assert (path / OWNER_FILE).read_text(encoding="utf-8") == token


def test_held_serializes_concurrent_critical_sections(tmp_path: Path) -> None:
    settings = LockSettings(timeout_seconds=5.0, poll_interval_seconds=0.001)
    counter_path = tmp_path / "counter.txt"
    counter_path.write_text("0", encoding="utf-8")

    def _bump() -> None:
        for _ in range(20):
            with DirectoryLock(tmp_path / "counter.lock", settings).held():
                value = int(counter_path.read_text(encoding="utf-8"))
                counter_path.write_text(str(value + 1), encoding="utf-8")

    threads = [threading.Thread(target=_bump) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert counter_path.read_text(encoding="utf-8") == "80"
    assert not (tmp_path / "counter.lock").exists()


def test_held_releases_on_error(tmp_path: Path) -> None:
    lock = DirectoryLock(tmp_path / "boom.lock")

    with pytest.raises(ValueError), lock.held():
        raise ValueError("boom")

    assert not lock.path.exists()
