"""Tests for exclusive-create lock files.

A lock is held by whoever creates the file first.  A lock whose holder
has died is broken by the next waiter; a lock held by a live process
makes waiters time out.
"""

from pathlib import Path

import pytest

from py_ckp.errors import RegistryBusyError
from py_ckp.lockfile import FileLock
from py_ckp.process.tracker import ProcessRole, ProcessTracker

SHORT_TIMEOUT = 0.1


class TestFileLock:
    """Verify acquire, release and stale-lock recovery."""

    def test_acquire_and_release(self, tmp_path: Path) -> None:
        """The lock file exists exactly while the lock is held."""
        path = tmp_path / "projects.json.lock"
        with FileLock(path) as lock:
            assert lock.held
            assert path.exists()
        assert not lock.held
        assert not path.exists()

    def test_holder_record_written(self, tmp_path: Path) -> None:
        """The lock file names the holder's pid and start time."""
        path = tmp_path / "x.lock"
        with FileLock(path):
            me = ProcessTracker().current(ProcessRole.TOOL)
            assert path.read_text() == me.to_line()

    def test_live_holder_times_out(self, tmp_path: Path) -> None:
        """A second acquirer should time out while the holder lives."""
        path = tmp_path / "x.lock"
        with FileLock(path), pytest.raises(RegistryBusyError):
            FileLock(path, timeout=SHORT_TIMEOUT).acquire()

    def test_dead_holder_is_broken(self, tmp_path: Path) -> None:
        """A lock left by a dead process should be taken over."""
        path = tmp_path / "x.lock"
        path.write_text("999999999:1.0")
        with FileLock(path, timeout=SHORT_TIMEOUT) as lock:
            assert lock.held

    def test_garbage_lock_is_broken(self, tmp_path: Path) -> None:
        """A lock file with unreadable content is stale."""
        path = tmp_path / "x.lock"
        path.write_text("not a record")
        with FileLock(path, timeout=SHORT_TIMEOUT) as lock:
            assert lock.held

    def test_release_when_not_held(self, tmp_path: Path) -> None:
        """Releasing an unacquired lock is a no-op."""
        path = tmp_path / "x.lock"
        path.write_text("someone else")
        FileLock(path).release()
        assert path.exists()
