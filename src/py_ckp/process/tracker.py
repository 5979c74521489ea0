"""Process tracker — PID-reuse-safe liveness.

A pid on its own says nothing about *which* process it names: once a
process exits, the OS is free to hand the same number to something
else.  The tracker therefore identifies a process by the pair
``(pid, start_time)`` and treats the record as valid only while the OS
reports exactly that start time for that pid.

State machine of one record::

    record() ──► live ──(process exits)──► stale
                  │                           │
                  └──── pid reused ───────────┘   (start time differs)

Key concepts:
    - **Exact equality** — no tolerance window.  Rounding or clock drift
      would turn a recycled pid into a false positive.
    - **Zombies are dead** — a process that has exited but not been
      reaped still has a pid and a start time; it is not alive.
    - **Process-state files** — one line, ``<pid>:<start_time>``,
      written atomically and re-verified on every read.
    - **Injectable probe** — the OS query is a plain callable so tests
      can simulate PID reuse without waiting for the kernel to recycle
      a real pid.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING, TypeAlias

import psutil

from py_ckp.errors import InvalidFormatError, ProcessError, ProcessNotFoundError
from py_ckp.persistence import atomic_write_text

if TYPE_CHECKING:
    from collections.abc import Callable
    from pathlib import Path

StartTimeProbe: TypeAlias = "Callable[[int], float | None]"


class ProcessRole(StrEnum):
    """What an OS process does for its kernel."""

    TOOL = "tool"
    GOVERNOR = "governor"


@dataclass(frozen=True)
class ProcessRecord:
    """Identity of one OS process backing a kernel.

    Attributes:
        pid: The platform process id.
        start_time: OS-reported creation time (epoch seconds).
        role: Whether the process is the tool or the governor.

    """

    pid: int
    start_time: float
    role: ProcessRole

    def to_line(self) -> str:
        """Format as ``<pid>:<start_time>``.

        ``repr`` gives the shortest string that parses back to the same
        float, so the round trip through a file is exact.
        """
        return f"{self.pid}:{self.start_time!r}"

    @classmethod
    def from_line(cls, text: str, role: ProcessRole) -> ProcessRecord:
        """Parse a ``<pid>:<start_time>`` line.

        Raises:
            InvalidFormatError: If the line is not two numeric fields.

        """
        line = text.strip()
        pid_text, _, start_text = line.partition(":")
        try:
            pid = int(pid_text)
            start_time = float(start_text)
        except ValueError:
            msg = f"Malformed process-state line {line!r} (expected <pid>:<start_time>)"
            raise InvalidFormatError(msg, subject=line) from None
        if pid <= 0:
            msg = f"Malformed process-state line {line!r}: pid must be positive"
            raise InvalidFormatError(msg, subject=line)
        return cls(pid=pid, start_time=start_time, role=role)


def os_start_time(pid: int) -> float | None:
    """Return the OS start time of *pid*, or None if it is gone.

    Zombies are reported as gone.  A process we are not allowed to
    inspect is neither alive nor dead as far as we can tell, so that
    case is an error rather than a guess.

    Raises:
        ProcessError: If the OS denies access to the process.

    """
    try:
        proc = psutil.Process(pid)
        if proc.status() == psutil.STATUS_ZOMBIE:
            return None
        return proc.create_time()
    except (psutil.NoSuchProcess, psutil.ZombieProcess):
        return None
    except psutil.AccessDenied as exc:
        msg = f"Access denied while inspecting pid {pid}"
        raise ProcessError(msg, subject=str(pid)) from exc


class ProcessTracker:
    """Authoritative liveness and identity checks for recorded processes."""

    def __init__(self, start_time_of: StartTimeProbe = os_start_time) -> None:
        """Create a tracker.

        Args:
            start_time_of: Returns a pid's start time or None if absent.

        """
        self._start_time_of = start_time_of

    def record(self, pid: int, role: ProcessRole) -> ProcessRecord:
        """Capture *pid* together with its current start time.

        Raises:
            ProcessNotFoundError: If the pid vanished before the query.

        """
        start_time = self._start_time_of(pid)
        if start_time is None:
            msg = f"Process {pid} ({role}) exited before it could be recorded"
            raise ProcessNotFoundError(msg, subject=str(pid))
        return ProcessRecord(pid=pid, start_time=start_time, role=role)

    def is_alive(self, record: ProcessRecord) -> bool:
        """Return True only if *record.pid* still has exactly *record.start_time*."""
        return self.is_running(record.pid, record.start_time)

    def is_running(self, pid: int, start_time: float) -> bool:
        """Return True if *pid* exists and started at exactly *start_time*."""
        current = self._start_time_of(pid)
        return current is not None and current == start_time

    def current(self, role: ProcessRole) -> ProcessRecord:
        """Return a record for the calling process itself."""
        return self.record(os.getpid(), role)

    def write_state(self, path: Path, record: ProcessRecord) -> None:
        """Write *record* to the process-state file at *path* atomically."""
        path.parent.mkdir(parents=True, exist_ok=True)
        atomic_write_text(path, record.to_line() + "\n")

    def read_state(self, path: Path, role: ProcessRole) -> ProcessRecord | None:
        """Read the process-state file at *path*.

        Returns:
            The stored record, or None if the file does not exist.  The
            record is *not* verified; call ``is_alive`` for that.

        Raises:
            InvalidFormatError: If the file content is malformed.

        """
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        return ProcessRecord.from_line(text, role)

    def live_record(self, path: Path, role: ProcessRole) -> ProcessRecord | None:
        """Return the record at *path* only if its process is alive.

        Stale and malformed files both read as "nothing live"; they are
        left in place for the owner to overwrite or remove.
        """
        try:
            record = self.read_state(path, role)
        except InvalidFormatError:
            return None
        if record is None or not self.is_alive(record):
            return None
        return record

    def clear_state(self, path: Path, record: ProcessRecord | None = None) -> bool:
        """Remove the state file at *path* once its process is verified dead.

        Args:
            path: The process-state file.
            record: The record the caller believes the file holds.  When
                given, the file is only removed if it still holds it, so a
                newer record written by another command is never lost.

        Returns:
            True if a file was removed.

        Raises:
            ProcessError: If the recorded process is still alive.

        """
        try:
            current = self.read_state(path, record.role if record else ProcessRole.TOOL)
        except InvalidFormatError:
            current = None
        if record is not None and current is not None and current.pid != record.pid:
            return False
        if current is not None and self.is_alive(current):
            msg = f"Refusing to clear {path.name}: process {current.pid} is still alive"
            raise ProcessError(msg, subject=str(current.pid))
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        return True
