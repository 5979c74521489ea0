"""Runtime logging — a structured trail of lifecycle and routing events.

Every component that changes state on disk (the kernel manager, the
project registry, the evidence store, the edge router) reports what it
did through a ``Logger``:

- **LogLevel** — severity levels ordered for filtering (DEBUG < ERROR).
- **LogEntry** — a single structured record (level, message, source, kernel).
- **Logger** — an append-only buffer with filtering, an optional
  minimum level, and an optional file sink.

Design choices:
    - **IntEnum for levels** so they compare naturally with ``<``.
    - **Frozen dataclass for entries** — log records should be immutable.
    - **Bounded buffer** — the in-memory buffer keeps only the newest
      ``capacity`` entries, so a long-lived process (the web API) does
      not grow without limit.
    - **Project trail** — components that own a project default to a
      sink at ``concepts/.logs/runtime.log`` (``runtime_log_path``), so
      warnings such as skipped receipts outlive the command.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import IntEnum
from typing import TYPE_CHECKING

from py_ckp.urn import CONCEPTS_DIR

if TYPE_CHECKING:
    from pathlib import Path

DEFAULT_CAPACITY = 1000
LOGS_DIR = ".logs"
RUNTIME_LOG_FILE = "runtime.log"


class LogLevel(IntEnum):
    """Severity levels for log entries."""

    DEBUG = 0
    INFO = 1
    WARNING = 2
    ERROR = 3


@dataclass(frozen=True)
class LogEntry:
    """A single structured log record.

    Attributes:
        level: The severity of this event.
        message: A human-readable description of what happened.
        source: The component that generated the event (e.g. "manager").
        kernel: The kernel the event concerns, if any.
        timestamp: When the event was logged (UTC).

    """

    level: LogLevel
    message: str
    source: str
    kernel: str = ""
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    def __str__(self) -> str:
        """Format as ``[LEVEL] source: message`` (with ``(kernel)`` if set)."""
        where = f"{self.source}({self.kernel})" if self.kernel else self.source
        return f"[{self.level.name}] {where}: {self.message}"

    def format_line(self) -> str:
        """Format as a timestamped line for a log file."""
        return f"{self.timestamp.isoformat()} {self}"


class Logger:
    """Append-only log buffer with filtering.

    Entries below ``min_level`` are dropped on arrival.  When ``sink`` is
    set, every kept entry is also appended to that file.  Only the newest
    ``capacity`` entries stay in memory.
    """

    def __init__(
        self,
        *,
        min_level: LogLevel = LogLevel.DEBUG,
        sink: Path | None = None,
        capacity: int = DEFAULT_CAPACITY,
    ) -> None:
        """Create an empty logger.

        Args:
            min_level: Entries below this level are discarded.
            sink: Optional file that receives one line per entry.
            capacity: Maximum number of entries kept in memory.

        """
        self._entries: deque[LogEntry] = deque(maxlen=capacity)
        self._min_level = min_level
        self._sink = sink

    @property
    def entries(self) -> list[LogEntry]:
        """Return all log entries in chronological order."""
        return list(self._entries)

    def log(
        self,
        level: LogLevel,
        message: str,
        *,
        source: str,
        kernel: str = "",
    ) -> None:
        """Append a new entry to the log.

        Args:
            level: Severity of the event.
            message: Human-readable event description.
            source: Component that generated the event.
            kernel: Kernel the event concerns.

        """
        if level < self._min_level:
            return
        entry = LogEntry(level=level, message=message, source=source, kernel=kernel)
        self._entries.append(entry)
        if self._sink is not None:
            self._sink.parent.mkdir(parents=True, exist_ok=True)
            with self._sink.open("a", encoding="utf-8") as handle:
                handle.write(entry.format_line() + "\n")

    def filter(
        self,
        *,
        min_level: LogLevel | None = None,
        source: str | None = None,
        kernel: str | None = None,
    ) -> list[LogEntry]:
        """Return entries matching the given criteria.

        Args:
            min_level: If set, only return entries at or above this level.
            source: If set, only return entries from this source.
            kernel: If set, only return entries about this kernel.

        Returns:
            A filtered list of log entries.

        """
        result = list(self._entries)
        if min_level is not None:
            result = [e for e in result if e.level >= min_level]
        if source is not None:
            result = [e for e in result if e.source == source]
        if kernel is not None:
            result = [e for e in result if e.kernel == kernel]
        return result

    def clear(self) -> None:
        """Remove all log entries."""
        self._entries.clear()


def runtime_log_path(project_root: Path) -> Path:
    """Return ``<project>/concepts/.logs/runtime.log``."""
    return project_root / CONCEPTS_DIR / LOGS_DIR / RUNTIME_LOG_FILE


def project_logger(project_root: Path, min_level: LogLevel = LogLevel.DEBUG) -> Logger:
    """Return a logger that also appends to the project's runtime log."""
    return Logger(min_level=min_level, sink=runtime_log_path(project_root))
