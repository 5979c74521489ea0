"""Tests for the runtime log.

The logger records structured entries for lifecycle and routing
events.  It provides a trail of what happened, when, to which kernel,
and which component did it.
"""

from pathlib import Path

from py_ckp.logging import LogEntry, Logger, LogLevel, project_logger, runtime_log_path


class TestLogLevel:
    """Verify log level ordering."""

    def test_levels_are_ordered(self) -> None:
        """DEBUG < INFO < WARNING < ERROR."""
        assert LogLevel.DEBUG < LogLevel.INFO
        assert LogLevel.INFO < LogLevel.WARNING
        assert LogLevel.WARNING < LogLevel.ERROR


class TestLogEntry:
    """Verify log entry structure."""

    def test_entry_has_fields(self) -> None:
        """A log entry should store level, message, source, and kernel."""
        entry = LogEntry(
            level=LogLevel.INFO,
            message="started",
            source="manager",
            kernel="Producer",
        )
        assert entry.level is LogLevel.INFO
        assert entry.message == "started"
        assert entry.source == "manager"
        assert entry.kernel == "Producer"

    def test_entry_str(self) -> None:
        """String representation should include level, source and kernel."""
        entry = LogEntry(level=LogLevel.WARNING, message="port busy", source="registry")
        assert str(entry) == "[WARNING] registry: port busy"
        scoped = LogEntry(level=LogLevel.ERROR, message="died", source="manager", kernel="A")
        assert str(scoped) == "[ERROR] manager(A): died"

    def test_format_line_is_timestamped(self) -> None:
        """A file line should start with the ISO timestamp."""
        entry = LogEntry(level=LogLevel.INFO, message="x", source="s")
        assert entry.format_line().startswith(entry.timestamp.isoformat())


class TestLogger:
    """Verify the logger."""

    def test_log_stores_entries(self) -> None:
        """Logged entries should be retrievable."""
        logger = Logger()
        logger.log(LogLevel.INFO, "started", source="manager")
        assert len(logger.entries) == 1
        assert logger.entries[0].message == "started"

    def test_entries_are_ordered(self) -> None:
        """Entries should be in chronological order."""
        logger = Logger()
        logger.log(LogLevel.INFO, "first", source="test")
        logger.log(LogLevel.INFO, "second", source="test")
        assert [e.message for e in logger.entries] == ["first", "second"]

    def test_min_level_drops_entries(self) -> None:
        """Entries below the minimum level are discarded."""
        logger = Logger(min_level=LogLevel.WARNING)
        logger.log(LogLevel.INFO, "noise", source="test")
        logger.log(LogLevel.ERROR, "signal", source="test")
        assert [e.message for e in logger.entries] == ["signal"]

    def test_filter(self) -> None:
        """Filtering should combine level, source and kernel."""
        logger = Logger()
        logger.log(LogLevel.INFO, "a", source="manager", kernel="A")
        logger.log(LogLevel.ERROR, "b", source="manager", kernel="B")
        logger.log(LogLevel.ERROR, "c", source="router", kernel="B")
        assert [e.message for e in logger.filter(min_level=LogLevel.ERROR)] == ["b", "c"]
        assert [e.message for e in logger.filter(source="manager", kernel="B")] == ["b"]

    def test_entries_is_a_copy(self) -> None:
        """Mutating the returned list must not affect the log."""
        logger = Logger()
        logger.log(LogLevel.INFO, "a", source="test")
        logger.entries.clear()
        assert len(logger.entries) == 1

    def test_clear(self) -> None:
        """Clearing should remove every entry."""
        logger = Logger()
        logger.log(LogLevel.INFO, "a", source="test")
        logger.clear()
        assert logger.entries == []

    def test_sink_appends_lines(self, tmp_path: Path) -> None:
        """A sink file should receive one line per kept entry."""
        sink = tmp_path / "logs" / "runtime.log"
        logger = Logger(min_level=LogLevel.INFO, sink=sink)
        logger.log(LogLevel.DEBUG, "dropped", source="test")
        logger.log(LogLevel.INFO, "kept", source="test", kernel="A")
        lines = sink.read_text().splitlines()
        assert len(lines) == 1
        assert lines[0].endswith("[INFO] test(A): kept")

    def test_capacity_keeps_newest(self) -> None:
        """Past its capacity the buffer drops the oldest entries."""
        logger = Logger(capacity=2)
        for message in ("a", "b", "c"):
            logger.log(LogLevel.INFO, message, source="test")
        assert [e.message for e in logger.entries] == ["b", "c"]


class TestProjectLogger:
    """Verify the per-project runtime log."""

    def test_runtime_log_path(self, tmp_path: Path) -> None:
        """The runtime log lives in a hidden directory under concepts/."""
        assert runtime_log_path(tmp_path) == tmp_path / "concepts" / ".logs" / "runtime.log"

    def test_project_logger_writes_runtime_log(self, tmp_path: Path) -> None:
        """A project logger appends kept entries to the runtime log."""
        logger = project_logger(tmp_path, LogLevel.WARNING)
        logger.log(LogLevel.INFO, "quiet", source="test")
        logger.log(LogLevel.WARNING, "loud", source="test")
        assert runtime_log_path(tmp_path).read_text().splitlines()[0].endswith("test: loud")
