"""Exclusive-create lock files for shared state.

Three kinds of file are mutated by independent command invocations: the
project registry, a project's port map and occurrent records.  Each
mutation is a read-modify-write, so it runs under a lock file created
with ``O_CREAT | O_EXCL``: exactly one creator wins.

The lock file holds the holder's ``<pid>:<start_time>``.  A waiter that
finds the holder dead (the PID-reuse-safe check from the process
tracker) breaks the lock instead of waiting for a crashed command.
Waiting is bounded; expiry raises ``RegistryBusyError``.
"""

from __future__ import annotations

import contextlib
import os
import random
import time
from typing import TYPE_CHECKING, Self

from py_ckp.errors import InvalidFormatError, RegistryBusyError
from py_ckp.process.tracker import ProcessRecord, ProcessRole, ProcessTracker

if TYPE_CHECKING:
    from pathlib import Path
    from types import TracebackType

_BACKOFF_START = 0.01
_BACKOFF_MAX = 0.2

# A lock file that is still empty after this long belongs to a creator
# that died between open() and write().
_EMPTY_LOCK_AGE = 2.0


class FileLock:
    """A cross-process lock held by exclusively creating *path*."""

    def __init__(
        self,
        path: Path,
        *,
        timeout: float = 5.0,
        tracker: ProcessTracker | None = None,
    ) -> None:
        """Create an (unacquired) lock.

        Args:
            path: The lock file.
            timeout: Seconds to wait before giving up.
            tracker: Used to decide whether a holder is still alive.

        """
        self._path = path
        self._timeout = timeout
        self._tracker = tracker or ProcessTracker()
        self._held = False

    @property
    def held(self) -> bool:
        """Return True while this instance holds the lock."""
        return self._held

    def acquire(self) -> None:
        """Block until the lock is held.

        Raises:
            RegistryBusyError: If a live holder keeps it past the timeout.

        """
        self._path.parent.mkdir(parents=True, exist_ok=True)
        me = self._tracker.current(ProcessRole.TOOL)
        deadline = time.monotonic() + self._timeout
        delay = _BACKOFF_START
        while True:
            try:
                fd = os.open(self._path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
            except FileExistsError:
                if self._break_if_stale():
                    continue
                if time.monotonic() >= deadline:
                    msg = f"Timed out after {self._timeout}s waiting for lock {self._path}"
                    raise RegistryBusyError(msg, subject=str(self._path)) from None
                time.sleep(delay + random.uniform(0, delay))  # noqa: S311
                delay = min(delay * 2, _BACKOFF_MAX)
                continue
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(me.to_line())
            self._held = True
            return

    def release(self) -> None:
        """Release the lock (no-op if not held)."""
        if self._held:
            self._path.unlink(missing_ok=True)
            self._held = False

    def _break_if_stale(self) -> bool:
        try:
            text = self._path.read_text(encoding="utf-8")
            age = time.time() - self._path.stat().st_mtime
        except FileNotFoundError:
            return True
        if not text.strip():
            if age < _EMPTY_LOCK_AGE:
                return False
        else:
            try:
                holder = ProcessRecord.from_line(text, ProcessRole.TOOL)
            except InvalidFormatError:
                holder = None
            if holder is not None and self._tracker.is_alive(holder):
                return False
        # Move the stale file aside first; only one waiter wins the rename.
        aside = self._path.with_name(f"{self._path.name}.stale.{os.getpid()}")
        try:
            os.rename(self._path, aside)
        except FileNotFoundError:
            return True
        if aside.read_text(encoding="utf-8") != text:
            # A new holder replaced the stale file before our rename: put it back.
            with contextlib.suppress(FileExistsError):
                os.link(aside, self._path)
        aside.unlink(missing_ok=True)
        return True

    def __enter__(self) -> Self:
        """Acquire on entry."""
        self.acquire()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        """Release on exit."""
        self.release()
