"""Tests for PID-reuse-safe process tracking.

A pid alone does not identify a process: once it exits the OS may give
the number to something else.  The tracker pairs every pid with the
start time the OS reported when it was recorded and only trusts the
record while the OS still reports exactly that start time.

Key properties:
    - Exact equality, no tolerance window.
    - Zombies are dead.
    - State files are one ``<pid>:<start_time>`` line, written atomically.
"""

import os
import subprocess
import time
from pathlib import Path

import pytest

from py_ckp.errors import InvalidFormatError, ProcessError, ProcessNotFoundError
from py_ckp.process.tracker import ProcessRecord, ProcessRole, ProcessTracker, os_start_time

START = 1718000000.25
OTHER_START = 1718000999.5


class _FakeProbe:
    """A start-time oracle whose answers the test controls."""

    def __init__(self) -> None:
        """Start with no processes."""
        self.start_times: dict[int, float] = {}

    def __call__(self, pid: int) -> float | None:
        """Return the configured start time, or None if absent."""
        return self.start_times.get(pid)


def _tracker_with(pid: int, start: float) -> tuple[ProcessTracker, _FakeProbe]:
    """Create a tracker whose probe knows one process."""
    probe = _FakeProbe()
    probe.start_times[pid] = start
    return ProcessTracker(start_time_of=probe), probe


# -- Cycle 1: Records ---------------------------------------------------------


class TestProcessRecord:
    """Verify the state-file line format."""

    def test_line_round_trip_is_exact(self) -> None:
        """Formatting and parsing should reproduce the float exactly."""
        record = ProcessRecord(pid=42, start_time=START, role=ProcessRole.TOOL)
        assert ProcessRecord.from_line(record.to_line(), ProcessRole.TOOL) == record

    def test_line_format(self) -> None:
        """The line should be '<pid>:<start_time>'."""
        record = ProcessRecord(pid=42, start_time=START, role=ProcessRole.TOOL)
        assert record.to_line() == "42:1718000000.25"

    @pytest.mark.parametrize("line", ["", "42", "abc:1.0", "42:soon", "0:1.0", "-3:1.0"])
    def test_malformed_lines(self, line: str) -> None:
        """Malformed lines should raise InvalidFormatError."""
        with pytest.raises(InvalidFormatError):
            ProcessRecord.from_line(line, ProcessRole.TOOL)


# -- Cycle 2: Liveness --------------------------------------------------------


class TestLiveness:
    """Verify exact start-time matching."""

    def test_record_captures_start_time(self) -> None:
        """record() should capture the probe's start time."""
        tracker, _ = _tracker_with(100, START)
        record = tracker.record(100, ProcessRole.TOOL)
        assert record.start_time == START
        assert record.role is ProcessRole.TOOL

    def test_record_missing_pid_raises(self) -> None:
        """Recording a pid that is gone should raise ProcessNotFoundError."""
        tracker, _ = _tracker_with(100, START)
        with pytest.raises(ProcessNotFoundError):
            tracker.record(101, ProcessRole.TOOL)

    def test_alive_while_start_time_matches(self) -> None:
        """A record is alive while the OS reports the same start time."""
        tracker, _ = _tracker_with(100, START)
        assert tracker.is_alive(tracker.record(100, ProcessRole.TOOL))

    def test_exited_process_is_dead(self) -> None:
        """A record whose pid disappeared is dead."""
        tracker, probe = _tracker_with(100, START)
        record = tracker.record(100, ProcessRole.TOOL)
        del probe.start_times[100]
        assert not tracker.is_alive(record)

    def test_reused_pid_is_dead(self) -> None:
        """A pid now owned by a different process is not our process."""
        tracker, probe = _tracker_with(100, START)
        record = tracker.record(100, ProcessRole.TOOL)
        probe.start_times[100] = OTHER_START
        assert not tracker.is_alive(record)

    def test_no_tolerance_window(self) -> None:
        """Even a tiny start-time difference means a different process."""
        tracker, probe = _tracker_with(100, START)
        record = tracker.record(100, ProcessRole.TOOL)
        probe.start_times[100] = START + 0.01
        assert not tracker.is_alive(record)

    def test_current_process_is_alive(self) -> None:
        """The real tracker should see the test process as alive."""
        tracker = ProcessTracker()
        record = tracker.current(ProcessRole.GOVERNOR)
        assert record.pid == os.getpid()
        assert tracker.is_alive(record)

    def test_exited_child_is_dead(self) -> None:
        """A real child that exited should read as dead."""
        child = subprocess.Popen(["sleep", "30"])
        tracker = ProcessTracker()
        record = tracker.record(child.pid, ProcessRole.TOOL)
        child.kill()
        child.wait()
        assert not tracker.is_alive(record)

    def test_zombie_is_dead(self) -> None:
        """An exited but unreaped child should read as dead."""
        child = subprocess.Popen(["true"])
        try:
            assert _wait_for_zombie(child.pid)
            assert os_start_time(child.pid) is None
        finally:
            child.wait()


def _wait_for_zombie(pid: int) -> bool:
    """Poll until *pid* is no longer reported as running."""
    deadline = time.monotonic() + 5
    while time.monotonic() < deadline:
        if os_start_time(pid) is None:
            return True
        time.sleep(0.02)
    return False


# -- Cycle 3: State files -----------------------------------------------------


class TestStateFiles:
    """Verify process-state file handling."""

    def test_write_and_read(self, tmp_path: Path) -> None:
        """A written state file should read back the same record."""
        tracker, _ = _tracker_with(100, START)
        record = tracker.record(100, ProcessRole.TOOL)
        path = tmp_path / "k" / ".tool.pid"
        tracker.write_state(path, record)
        assert path.read_text() == "100:1718000000.25\n"
        assert tracker.read_state(path, ProcessRole.TOOL) == record

    def test_read_missing_returns_none(self, tmp_path: Path) -> None:
        """A missing state file means no record."""
        tracker, _ = _tracker_with(100, START)
        assert tracker.read_state(tmp_path / "absent.pid", ProcessRole.TOOL) is None

    def test_read_malformed_raises(self, tmp_path: Path) -> None:
        """A corrupt state file should raise InvalidFormatError."""
        path = tmp_path / ".tool.pid"
        path.write_text("garbage")
        tracker, _ = _tracker_with(100, START)
        with pytest.raises(InvalidFormatError):
            tracker.read_state(path, ProcessRole.TOOL)

    def test_live_record_ignores_stale_file(self, tmp_path: Path) -> None:
        """A file naming a reused pid reads as nothing live."""
        tracker, probe = _tracker_with(100, START)
        path = tmp_path / ".tool.pid"
        tracker.write_state(path, tracker.record(100, ProcessRole.TOOL))
        probe.start_times[100] = OTHER_START
        assert tracker.live_record(path, ProcessRole.TOOL) is None
        assert path.exists()

    def test_clear_refuses_live_process(self, tmp_path: Path) -> None:
        """A state file is never removed while its process lives."""
        tracker, _ = _tracker_with(100, START)
        path = tmp_path / ".tool.pid"
        tracker.write_state(path, tracker.record(100, ProcessRole.TOOL))
        with pytest.raises(ProcessError, match="still alive"):
            tracker.clear_state(path)
        assert path.exists()

    def test_clear_removes_dead_record(self, tmp_path: Path) -> None:
        """Once the process is gone the file can be removed."""
        tracker, probe = _tracker_with(100, START)
        path = tmp_path / ".tool.pid"
        record = tracker.record(100, ProcessRole.TOOL)
        tracker.write_state(path, record)
        del probe.start_times[100]
        assert tracker.clear_state(path, record)
        assert not path.exists()

    def test_clear_keeps_newer_record(self, tmp_path: Path) -> None:
        """A file rewritten by another command is left alone."""
        tracker, probe = _tracker_with(100, START)
        probe.start_times[200] = OTHER_START
        path = tmp_path / ".tool.pid"
        old = tracker.record(100, ProcessRole.TOOL)
        tracker.write_state(path, tracker.record(200, ProcessRole.TOOL))
        assert not tracker.clear_state(path, old)
        assert path.exists()
