"""Project registry — which directories are projects, and their port slots.

Every project that runs kernels registers once.  Registration assigns
the project a *slot* (see ``py_ckp.ports``) and so a private port range
no other project on the host can collide with.

The registry is one JSON file shared by every command on the host::

    ~/.config/conceptkernel/projects/projects.json

    {"projects": [
        {"name": "recipes", "path": "/home/me/recipes", "slot": 1,
         "discoveryPort": 56043, "portRange": {"start": 56000, "end": 56199},
         "registeredAt": "2024-06-10T08:00:00+00:00"}
    ]}

Lifecycle:
    - Every query (``list``, ``get``, ``resolve``) re-reads the file, so a
      long-lived handle sees projects registered or removed elsewhere.
    - Every mutation takes the registry lock file, *re-loads*, applies
      the change and saves with write-temp-then-rename, so two concurrent
      ``register`` calls can never pick the same slot.

Lookup:
    - ``resolve`` walks upward from a directory (default: the cwd) and
      returns the nearest registered root, so any subdirectory of a
      project resolves to it.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

from py_ckp.config import RuntimeConfig
from py_ckp.errors import (
    AlreadyRegisteredError,
    InvalidFormatError,
    NotAProjectError,
    PortUnavailableError,
)
from py_ckp.lockfile import FileLock
from py_ckp.logging import Logger, LogLevel
from py_ckp.persistence import dump_json, load_json
from py_ckp.ports import MAX_SLOT, PortRange, discovery_port, port_is_free, range_for

if TYPE_CHECKING:
    from collections.abc import Callable

    from py_ckp.process.tracker import ProcessTracker

REGISTRY_FILE = "projects.json"
LOCK_FILE = "projects.json.lock"
REGISTRY_LOG_FILE = "registry.log"
SLOT_ATTEMPTS = 3

_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")
_SOURCE = "registry"


@dataclass(frozen=True)
class ProjectEntry:
    """A registered project.

    Attributes:
        name: Unique project name.
        path: Absolute, resolved project root.
        slot: Port-allocation slot.
        registered_at: When the project was registered.

    """

    name: str
    path: Path
    slot: int
    registered_at: datetime

    @property
    def port_range(self) -> PortRange:
        """Return the project's port range."""
        return range_for(self.slot)

    @property
    def discovery_port(self) -> int:
        """Return the project's discovery port."""
        return discovery_port(self.slot)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the registry JSON shape."""
        port_range = self.port_range
        return {
            "name": self.name,
            "path": str(self.path),
            "slot": self.slot,
            "discoveryPort": self.discovery_port,
            "portRange": {"start": port_range.start, "end": port_range.end},
            "registeredAt": self.registered_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ProjectEntry:
        """Deserialize an entry produced by ``to_dict()``.

        Derived fields (ports) are recomputed from the slot, not trusted.
        """
        return cls(
            name=str(data["name"]),
            path=Path(data["path"]),
            slot=int(data["slot"]),
            registered_at=datetime.fromisoformat(data["registeredAt"]),
        )


class ProjectRegistry:
    """The host-wide table of registered projects."""

    def __init__(
        self,
        registry_dir: Path | None = None,
        *,
        config: RuntimeConfig | None = None,
        tracker: ProcessTracker | None = None,
        logger: Logger | None = None,
        port_probe: Callable[[int], bool] = port_is_free,
    ) -> None:
        """Create a registry handle (every query re-reads the file).

        Args:
            registry_dir: Directory holding ``projects.json``; defaults to
                ``config.registry_dir``.
            config: Runtime configuration (lock timeout, default dir).
            tracker: Used to detect a crashed lock holder.
            logger: Receives registration events (defaults to
                ``registry.log`` beside the registry file).
            port_probe: Returns True if a port is free; used to skip slots
                whose discovery port something else already holds.

        """
        self._config = config or RuntimeConfig.from_env()
        self._dir = registry_dir or self._config.registry_dir
        self._lock = FileLock(
            self._dir / LOCK_FILE, timeout=self._config.lock_timeout, tracker=tracker
        )
        self._logger = logger or Logger(sink=self._dir / REGISTRY_LOG_FILE)
        self._port_probe = port_probe
        self._entries: list[ProjectEntry] = []

    @property
    def path(self) -> Path:
        """Return the registry file path."""
        return self._dir / REGISTRY_FILE

    # -- Lifecycle ------------------------------------------------------------

    def load(self) -> None:
        """Read the registry file; a missing file is an empty registry.

        Raises:
            InvalidFormatError: If the file is not a valid registry.

        """
        try:
            data = load_json(self.path)
        except FileNotFoundError:
            data = {"projects": []}
        except ValueError as exc:
            msg = f"Malformed project registry {self.path}: {exc}"
            raise InvalidFormatError(msg, subject=str(self.path)) from exc
        try:
            self._entries = [ProjectEntry.from_dict(item) for item in data["projects"]]
        except (KeyError, TypeError, ValueError) as exc:
            msg = f"Malformed project registry {self.path}: {exc}"
            raise InvalidFormatError(msg, subject=str(self.path)) from exc

    def save(self) -> None:
        """Write the registry file atomically."""
        self._dir.mkdir(parents=True, exist_ok=True)
        dump_json(self.path, {"projects": [entry.to_dict() for entry in self._entries]})

    # -- Queries --------------------------------------------------------------

    def list(self) -> list[ProjectEntry]:
        """Return all entries in registration order."""
        self.load()
        return list(self._entries)

    def get(self, name: str) -> ProjectEntry:
        """Return the project called *name*.

        Raises:
            NotAProjectError: If no project has that name.

        """
        self.load()
        for entry in self._entries:
            if entry.name == name:
                return entry
        msg = f"No registered project named {name!r}"
        raise NotAProjectError(msg, subject=name)

    def resolve(self, path_hint: Path | str | None = None) -> ProjectEntry:
        """Return the nearest registered project enclosing *path_hint*.

        Args:
            path_hint: Starting directory (defaults to the cwd).

        Raises:
            NotAProjectError: If no ancestor is a registered project.

        """
        self.load()
        start = Path(path_hint).expanduser().resolve() if path_hint else Path.cwd().resolve()
        by_path = {entry.path: entry for entry in self._entries}
        for candidate in (start, *start.parents):
            entry = by_path.get(candidate)
            if entry is not None:
                return entry
        msg = f"{start} is not inside a registered project"
        raise NotAProjectError(msg, subject=str(start))

    # -- Mutations ------------------------------------------------------------

    def register(self, path: Path | str, name: str | None = None) -> ProjectEntry:
        """Register *path* as a project and assign it a slot.

        Args:
            path: The project root (made absolute and resolved).
            name: Project name (defaults to the directory name).

        Returns:
            The new entry.

        Raises:
            AlreadyRegisteredError: If the path or name is already present.
            PortUnavailableError: If no usable slot is left.
            InvalidFormatError: If the name is not a plain identifier.

        """
        root = Path(path).expanduser().resolve()
        project_name = name or root.name
        if not _NAME_RE.match(project_name):
            msg = f"Invalid project name {project_name!r}"
            raise InvalidFormatError(msg, subject=project_name)
        with self._lock:
            self.load()
            for entry in self._entries:
                if entry.path == root:
                    msg = f"{root} is already registered as {entry.name!r}"
                    raise AlreadyRegisteredError(msg, subject=str(root))
                if entry.name == project_name:
                    msg = f"Project name {project_name!r} is already used by {entry.path}"
                    raise AlreadyRegisteredError(msg, subject=project_name)
            slot = self._next_slot()
            entry = ProjectEntry(
                name=project_name,
                path=root,
                slot=slot,
                registered_at=datetime.now(UTC),
            )
            self._entries.append(entry)
            self.save()
        self._logger.log(
            LogLevel.INFO,
            f"registered {project_name} at {root} (slot {slot}, ports {entry.port_range})",
            source=_SOURCE,
        )
        return entry

    def remove(self, name: str) -> ProjectEntry:
        """Unregister the project called *name*, freeing its slot.

        Raises:
            NotAProjectError: If no project has that name.

        """
        with self._lock:
            self.load()
            entry = self.get(name)
            self._entries.remove(entry)
            self.save()
        self._logger.log(LogLevel.INFO, f"removed {name} (slot {entry.slot})", source=_SOURCE)
        return entry

    def _next_slot(self) -> int:
        used = {entry.slot for entry in self._entries}
        top = max(used, default=0)
        candidates = list(range(top + 1, MAX_SLOT + 1))
        candidates += [s for s in range(1, top) if s not in used]
        for slot in candidates[:SLOT_ATTEMPTS]:
            if self._port_probe(discovery_port(slot)):
                return slot
            self._logger.log(
                LogLevel.WARNING,
                f"slot {slot} skipped: discovery port {discovery_port(slot)} is busy",
                source=_SOURCE,
            )
        msg = f"No usable port slot (tried {candidates[:SLOT_ATTEMPTS] or 'none'})"
        raise PortUnavailableError(msg)
