"""Storage driver — read and write bytes at a logical location.

The evidence layer never touches paths directly; it asks a
``StorageDriver`` to read or write at a ``StorageLocation``.  Locations
come in three closed variants:

- ``LocalPath`` — a path, absolute or relative to the project root.
- ``RemoteUrl`` — an ``http(s)://``, ``s3://`` or similar URL.
- ``UrnRef`` — a kernel URN with a stage, e.g.
  ``ckp://Producer:v1#storage/tx_1.inst/receipt.json``.

Only the local driver ships with the runtime.  It resolves URN
references through ``py_ckp.urn.resolve`` and refuses remote URLs with
``UnsupportedLocationError``; a remote backend is a separate
implementation of the same interface.

Design choices:
    - **Closed variants, runtime selection** — ``location_from`` picks the
      variant from the string's shape and ``driver_for`` picks the
      driver from the variant.  No plugin discovery.
    - **Atomic writes** — every write goes through ``py_ckp.persistence``.
"""

from __future__ import annotations

import os
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import TypeAlias

from py_ckp.errors import UnsupportedLocationError
from py_ckp.persistence import atomic_create_bytes, atomic_write_bytes
from py_ckp.urn import SCHEME, resolve

_REMOTE_RE = re.compile(r"^[a-z][a-z0-9+.-]*://", re.IGNORECASE)


@dataclass(frozen=True)
class LocalPath:
    """A filesystem path."""

    path: Path


@dataclass(frozen=True)
class RemoteUrl:
    """A location served by a remote backend."""

    url: str


@dataclass(frozen=True)
class UrnRef:
    """A location addressed by a kernel URN (usually with a stage)."""

    urn: str


StorageLocation: TypeAlias = LocalPath | RemoteUrl | UrnRef


def location_from(value: str | Path) -> StorageLocation:
    """Classify *value* as one of the location variants."""
    if isinstance(value, Path):
        return LocalPath(value)
    if value.startswith(SCHEME):
        return UrnRef(value)
    if _REMOTE_RE.match(value):
        return RemoteUrl(value)
    return LocalPath(Path(value))


class StorageDriver(ABC):
    """Byte-level access to storage locations."""

    @abstractmethod
    def read_bytes(self, location: StorageLocation) -> bytes:
        """Return the content at *location*.

        Raises:
            FileNotFoundError: If nothing is stored there.

        """

    @abstractmethod
    def write_bytes(
        self, location: StorageLocation, data: bytes, *, exclusive: bool = False
    ) -> None:
        """Store *data* at *location*.

        Args:
            location: Where to write.
            data: The full content.
            exclusive: Fail with ``FileExistsError`` instead of replacing.

        """

    @abstractmethod
    def append_bytes(self, location: StorageLocation, data: bytes) -> None:
        """Append *data* to the content at *location*, creating it if needed."""

    @abstractmethod
    def create_link(self, location: StorageLocation, target: StorageLocation) -> None:
        """Create a reference at *location* pointing to *target*.

        Raises:
            FileExistsError: If something is already at *location*.

        """

    @abstractmethod
    def exists(self, location: StorageLocation) -> bool:
        """Return True if something is stored at *location*."""

    @abstractmethod
    def list_names(self, location: StorageLocation) -> list[str]:
        """Return the entry names directly under *location* (sorted)."""


class LocalStorageDriver(StorageDriver):
    """Storage on the local filesystem of one project."""

    def __init__(self, project_root: Path) -> None:
        """Create a driver resolving relative paths and URNs against *project_root*."""
        self._project_root = project_root

    def locate(self, location: StorageLocation) -> Path:
        """Return the concrete path for *location*.

        Raises:
            UnsupportedLocationError: For remote URLs.

        """
        match location:
            case LocalPath(path=path):
                return path if path.is_absolute() else self._project_root / path
            case UrnRef(urn=urn):
                return resolve(urn, self._project_root)
            case RemoteUrl(url=url):
                msg = f"The local storage driver cannot reach {url}"
                raise UnsupportedLocationError(msg, subject=url)

    def read_bytes(self, location: StorageLocation) -> bytes:
        """Return the file content at *location*."""
        return self.locate(location).read_bytes()

    def write_bytes(
        self, location: StorageLocation, data: bytes, *, exclusive: bool = False
    ) -> None:
        """Atomically write *data*, creating parent directories."""
        path = self.locate(location)
        path.parent.mkdir(parents=True, exist_ok=True)
        if exclusive:
            atomic_create_bytes(path, data)
        else:
            atomic_write_bytes(path, data)

    def append_bytes(self, location: StorageLocation, data: bytes) -> None:
        """Append *data* with a single ``O_APPEND`` write."""
        path = self.locate(location)
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("ab") as handle:
            handle.write(data)

    def create_link(self, location: StorageLocation, target: StorageLocation) -> None:
        """Create a relative symlink; creation is atomic and exclusive."""
        path = self.locate(location)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.symlink_to(os.path.relpath(self.locate(target), path.parent))

    def exists(self, location: StorageLocation) -> bool:
        """Return True if the path exists (symlinks are followed)."""
        return self.locate(location).exists()

    def list_names(self, location: StorageLocation) -> list[str]:
        """Return directory entry names, or an empty list if absent."""
        path = self.locate(location)
        if not path.is_dir():
            return []
        return sorted(entry.name for entry in path.iterdir())


def driver_for(location: StorageLocation, project_root: Path) -> StorageDriver:
    """Return the driver able to serve *location*.

    Raises:
        UnsupportedLocationError: If no bundled driver handles it.

    """
    if isinstance(location, RemoteUrl):
        msg = f"No storage driver is installed for {location.url}"
        raise UnsupportedLocationError(msg, subject=location.url)
    return LocalStorageDriver(project_root)
