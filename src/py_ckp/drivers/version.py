"""Version driver — snapshots of a kernel's definition.

A kernel directory may be versioned by one of several backends, chosen
by a marker in the directory:

=================  ==============
Marker             Backend
=================  ==============
``.git``           git
``.s3-versioned``  s3
``.version``       filesystem
(none)             unversioned
=================  ==============

Only the filesystem backend is bundled.  It keeps numbered snapshots of
the kernel's *definition* (``conceptkernel.yaml`` and ``tool/``) under
``.versions/``; queues, storage, logs and process-state files are data,
not definition, and are never snapshotted.

Layout::

    <kernel>/.version                 current version id
    <kernel>/.versions/v3/manifest.json
    <kernel>/.versions/v3/files/...
    <kernel>/.versions/tags.json      {"release-1": "v3"}
"""

from __future__ import annotations

import re
import shutil
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from py_ckp.errors import NotFoundError, UnsupportedBackendError
from py_ckp.persistence import atomic_write_text, create_json, dump_json, load_json

if TYPE_CHECKING:
    from pathlib import Path

VERSION_MARKER = ".version"
VERSIONS_DIR = ".versions"
_SNAPSHOT_ITEMS = ("conceptkernel.yaml", "tool")
_IGNORED = shutil.ignore_patterns(".*.pid", "__pycache__")
_TAG_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


class VersionBackend(StrEnum):
    """Versioning backends, detected from directory markers."""

    GIT = "git"
    S3 = "s3"
    FILESYSTEM = "filesystem"
    NONE = "none"


_MARKERS = (
    (".git", VersionBackend.GIT),
    (".s3-versioned", VersionBackend.S3),
    (VERSION_MARKER, VersionBackend.FILESYSTEM),
)


def detect_backend(kernel_dir: Path) -> VersionBackend:
    """Return the backend whose marker is present in *kernel_dir*."""
    for marker, backend in _MARKERS:
        if (kernel_dir / marker).exists():
            return backend
    return VersionBackend.NONE


@dataclass(frozen=True)
class VersionInfo:
    """One recorded version."""

    id: str
    message: str
    created_at: datetime

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the manifest shape."""
        return {"id": self.id, "message": self.message, "createdAt": self.created_at.isoformat()}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> VersionInfo:
        """Deserialize a manifest produced by ``to_dict()``."""
        return cls(
            id=data["id"],
            message=data.get("message", ""),
            created_at=datetime.fromisoformat(data["createdAt"]),
        )


class VersionDriver(ABC):
    """Create, commit and tag versions of one kernel."""

    backend: VersionBackend

    @abstractmethod
    def is_initialized(self) -> bool:
        """Return True if the kernel is under version control."""

    @abstractmethod
    def init(self) -> None:
        """Put the kernel under version control."""

    @abstractmethod
    def get_version(self) -> VersionInfo | None:
        """Return the current version, or None before the first commit."""

    @abstractmethod
    def create_version(self, message: str) -> str:
        """Commit the current definition and return the new version id."""

    @abstractmethod
    def tag(self, name: str, version_id: str | None = None) -> None:
        """Attach *name* to *version_id* (default: the current version)."""

    @abstractmethod
    def list_versions(self) -> list[str]:
        """Return version ids, oldest first."""


class FilesystemVersionDriver(VersionDriver):
    """Numbered snapshots kept inside the kernel directory."""

    backend = VersionBackend.FILESYSTEM

    def __init__(self, kernel_dir: Path) -> None:
        """Create a driver for *kernel_dir*."""
        self._dir = kernel_dir

    @property
    def _marker(self) -> Path:
        return self._dir / VERSION_MARKER

    @property
    def _versions(self) -> Path:
        return self._dir / VERSIONS_DIR

    def is_initialized(self) -> bool:
        """Return True once ``init`` has run."""
        return self._marker.exists()

    def init(self) -> None:
        """Create the marker and snapshot directory (idempotent)."""
        self._versions.mkdir(parents=True, exist_ok=True)
        if not self._marker.exists():
            atomic_write_text(self._marker, "")

    def get_version(self) -> VersionInfo | None:
        """Return the version named in the marker file."""
        if not self.is_initialized():
            return None
        current = self._marker.read_text(encoding="utf-8").strip()
        if not current:
            return None
        return self._info(current)

    def create_version(self, message: str) -> str:
        """Snapshot the definition as the next ``v<n>``.

        Raises:
            NotFoundError: If the driver was never initialized.

        """
        if not self.is_initialized():
            msg = f"{self._dir} is not under version control"
            raise NotFoundError(msg, subject=str(self._dir))
        number = len(self.list_versions()) + 1
        while True:
            version_id = f"v{number}"
            target = self._versions / version_id
            try:
                target.mkdir()
            except FileExistsError:
                number += 1
                continue
            break
        files = target / "files"
        files.mkdir()
        for item in _SNAPSHOT_ITEMS:
            source = self._dir / item
            if source.is_dir():
                shutil.copytree(source, files / item, ignore=_IGNORED)
            elif source.is_file():
                shutil.copy2(source, files / item)
        info = VersionInfo(id=version_id, message=message, created_at=datetime.now(UTC))
        create_json(target / "manifest.json", info.to_dict())
        atomic_write_text(self._marker, version_id + "\n")
        return version_id

    def tag(self, name: str, version_id: str | None = None) -> None:
        """Record *name* for a version in ``tags.json``.

        Raises:
            NotFoundError: If the version does not exist.
            ValueError: If *name* is not a plain tag name.

        """
        if not _TAG_RE.match(name):
            msg = f"Invalid tag name {name!r}"
            raise ValueError(msg)
        current = self.get_version()
        target = version_id or (current.id if current else None)
        if target is None or target not in self.list_versions():
            msg = f"No version {target!r} to tag in {self._dir}"
            raise NotFoundError(msg, subject=str(target))
        tags = self.tags()
        tags[name] = target
        dump_json(self._versions / "tags.json", tags)

    def tags(self) -> dict[str, str]:
        """Return tag name -> version id."""
        try:
            return dict(load_json(self._versions / "tags.json"))
        except FileNotFoundError:
            return {}

    def list_versions(self) -> list[str]:
        """Return committed version ids in numeric order."""
        if not self._versions.is_dir():
            return []
        ids = [
            p.name
            for p in self._versions.iterdir()
            if p.is_dir() and p.name[1:].isdigit() and (p / "manifest.json").exists()
        ]
        return sorted(ids, key=lambda v: int(v[1:]))

    def _info(self, version_id: str) -> VersionInfo:
        try:
            return VersionInfo.from_dict(load_json(self._versions / version_id / "manifest.json"))
        except FileNotFoundError:
            msg = f"Version {version_id} is missing from {self._versions}"
            raise NotFoundError(msg, subject=version_id) from None


def create_driver(kernel_dir: Path, backend: VersionBackend) -> VersionDriver | None:
    """Return a driver for *backend*, or None for unversioned kernels.

    Raises:
        UnsupportedBackendError: For backends that are not bundled.

    """
    if backend is VersionBackend.NONE:
        return None
    if backend is VersionBackend.FILESYSTEM:
        return FilesystemVersionDriver(kernel_dir)
    msg = f"The {backend} version backend is not installed"
    raise UnsupportedBackendError(msg, subject=str(kernel_dir))


def detect_driver(kernel_dir: Path) -> VersionDriver | None:
    """Detect the backend of *kernel_dir* and return its driver."""
    return create_driver(kernel_dir, detect_backend(kernel_dir))
