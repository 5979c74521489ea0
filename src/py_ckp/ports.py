"""Port allocation — a private, non-overlapping range per project.

Every registered project owns a *slot*.  A slot maps to a fixed block
of ``PORT_RANGE_SIZE`` ports::

    slot 1  →  56000 – 56199   (discovery port 56043)
    slot 2  →  56200 – 56399   (discovery port 56243)
    ...
    slot 47 →  65200 – 65399   (the last slot below 65536)

``range_for`` and ``discovery_port`` are pure functions of the slot, so
two projects can never collide no matter how many commands run at once.

Inside its range a project hands ports to its hot kernels through a
``PortMap`` persisted as ``<project>/.ckports``.  The discovery port is
never handed out.

Key concepts:
    - **Protocol constants** — ``BASE_PORT``, ``PORT_RANGE_SIZE`` and
      ``DISCOVERY_OFFSET`` are defined once here.  Changing any of them
      is a protocol change and breaks the contract test.
    - **Bind probe** — a candidate port is only assigned if a TCP bind on
      127.0.0.1 succeeds.  The probe is injectable for tests.
"""

from __future__ import annotations

import socket
from dataclasses import dataclass
from typing import TYPE_CHECKING

from py_ckp.errors import InvalidFormatError, PortUnavailableError
from py_ckp.lockfile import FileLock
from py_ckp.persistence import dump_json, load_json

if TYPE_CHECKING:
    from collections.abc import Callable, Iterator
    from pathlib import Path

BASE_PORT = 56000
PORT_RANGE_SIZE = 200
DISCOVERY_OFFSET = 43
MAX_PORT = 65535
MAX_SLOT = (MAX_PORT - BASE_PORT + 1) // PORT_RANGE_SIZE

PORT_MAP_FILE = ".ckports"


@dataclass(frozen=True)
class PortRange:
    """An inclusive block of ports ``[start, end]``."""

    start: int
    end: int

    def __contains__(self, port: object) -> bool:
        """Return True if *port* lies inside the range."""
        return isinstance(port, int) and self.start <= port <= self.end

    def __len__(self) -> int:
        """Return the number of ports in the range."""
        return self.end - self.start + 1

    def __iter__(self) -> Iterator[int]:
        """Iterate over the ports in ascending order."""
        return iter(range(self.start, self.end + 1))

    def overlaps(self, other: PortRange) -> bool:
        """Return True if the two ranges share at least one port."""
        return self.start <= other.end and other.start <= self.end

    def __str__(self) -> str:
        """Format as ``start-end``."""
        return f"{self.start}-{self.end}"


def _check_slot(slot: int) -> None:
    if not 1 <= slot <= MAX_SLOT:
        msg = f"Slot {slot} is outside 1..{MAX_SLOT}"
        raise ValueError(msg)


def range_for(slot: int) -> PortRange:
    """Return the port range reserved for *slot*.

    Raises:
        ValueError: If *slot* is outside ``1..MAX_SLOT``.

    """
    _check_slot(slot)
    start = BASE_PORT + (slot - 1) * PORT_RANGE_SIZE
    return PortRange(start=start, end=start + PORT_RANGE_SIZE - 1)


def discovery_port(slot: int) -> int:
    """Return the discovery/health port of *slot*.

    Raises:
        ValueError: If *slot* is outside ``1..MAX_SLOT``.

    """
    return range_for(slot).start + DISCOVERY_OFFSET


def port_is_free(port: int) -> bool:
    """Return True if a TCP socket can bind *port* on 127.0.0.1."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        try:
            sock.bind(("127.0.0.1", port))
        except OSError:
            return False
    return True


class PortMap:
    """Per-project assignment of ports to hot kernels.

    The map is loaded from and saved to ``<project>/.ckports``::

        {"basePort": 56000, "allocations": {"System.Gateway": 56001}}

    ``allocate`` and ``release`` run a locked load-modify-save cycle so
    two ``start`` commands in the same project never share a port.
    """

    def __init__(
        self,
        project_root: Path,
        port_range: PortRange,
        *,
        is_free: Callable[[int], bool] = port_is_free,
        lock_timeout: float = 5.0,
    ) -> None:
        """Create an empty map for *project_root* within *port_range*.

        Call ``load`` to read existing allocations.
        """
        self._path = project_root / PORT_MAP_FILE
        self._lock = FileLock(project_root / f"{PORT_MAP_FILE}.lock", timeout=lock_timeout)
        self._range = port_range
        self._is_free = is_free
        self._allocations: dict[str, int] = {}

    @property
    def path(self) -> Path:
        """Return the ``.ckports`` file path."""
        return self._path

    @property
    def port_range(self) -> PortRange:
        """Return the range ports are allocated from."""
        return self._range

    @property
    def reserved(self) -> int:
        """Return the discovery port, which is never allocated."""
        return self._range.start + DISCOVERY_OFFSET

    def allocations(self) -> dict[str, int]:
        """Return a copy of the kernel -> port assignments."""
        return dict(self._allocations)

    def get(self, kernel: str) -> int | None:
        """Return the port assigned to *kernel*, if any."""
        return self._allocations.get(kernel)

    def load(self) -> None:
        """Read allocations from disk.

        A missing file means no allocations.  Entries outside the current
        range (left over from an earlier slot) are dropped.

        Raises:
            InvalidFormatError: If the file is not a valid port map.

        """
        try:
            data = load_json(self._path)
        except FileNotFoundError:
            self._allocations = {}
            return
        except ValueError as exc:
            msg = f"Malformed port map {self._path}: {exc}"
            raise InvalidFormatError(msg, subject=str(self._path)) from exc
        allocations = data.get("allocations") if isinstance(data, dict) else None
        if not isinstance(allocations, dict):
            msg = f"Malformed port map {self._path}: missing 'allocations'"
            raise InvalidFormatError(msg, subject=str(self._path))
        self._allocations = {
            str(kernel): port
            for kernel, port in allocations.items()
            if isinstance(port, int) and port in self._range and port != self.reserved
        }

    def save(self) -> None:
        """Write allocations to disk atomically."""
        self._path.parent.mkdir(parents=True, exist_ok=True)
        dump_json(self._path, {"basePort": self._range.start, "allocations": self._allocations})

    def allocate(self, kernel: str, preferred_offset: int | None = None) -> int:
        """Assign a port to *kernel*, reusing an existing assignment.

        Args:
            kernel: The hot kernel that needs a port.
            preferred_offset: Offset into the range to try first.

        Returns:
            The assigned port.

        Raises:
            PortUnavailableError: If every port in the range is taken.

        """
        with self._lock:
            self.load()
            existing = self._allocations.get(kernel)
            if existing is not None:
                return existing
            port = self._pick(preferred_offset)
            if port is None:
                msg = f"No free port in {self._range} for kernel {kernel}"
                raise PortUnavailableError(msg, subject=kernel)
            self._allocations[kernel] = port
            self.save()
            return port

    def release(self, kernel: str) -> bool:
        """Drop *kernel*'s assignment; return True if it had one."""
        with self._lock:
            self.load()
            if self._allocations.pop(kernel, None) is None:
                return False
            self.save()
            return True

    def clear(self) -> None:
        """Drop every assignment."""
        with self._lock:
            self._allocations = {}
            self.save()

    def _pick(self, preferred_offset: int | None) -> int | None:
        taken = set(self._allocations.values()) | {self.reserved}
        candidates = list(self._range)
        if preferred_offset is not None and 0 <= preferred_offset < len(self._range):
            candidates.insert(0, self._range.start + preferred_offset)
        for port in candidates:
            if port not in taken and self._is_free(port):
                return port
        return None
