"""Edge registry — typed, directed relations between kernels.

An edge says "instances of *Source* relate to *Target* by *PREDICATE*".
Each edge is stored once per ``(predicate, source)`` pair::

    concepts/.edges/PRODUCES.Producer/edge.json

    {"urn": "ckp://Edge.PRODUCES.Producer-to-Consumer:v1",
     "predicate": "PRODUCES", "source": "Producer", "target": "Consumer",
     "version": "v1", "createdAt": "2024-06-10T08:00:00+00:00"}

Cross-project edges add ``"targetProject": "<registered name>"`` and the
target is located through the project registry at routing time.

Key concepts:
    - **One edge per (predicate, source)** — the edge directory is
      claimed with an exclusive ``mkdir``, so a second ``create_edge``
      for the same pair fails with ``EdgeExistsError``.  The target is
      always read from ``edge.json``, never from the directory name.
    - **Delivery vs. gate predicates** — PRODUCES, NOTIFIES, TRIGGERS
      and ANNOUNCES deliver instances.  REQUIRES and VALIDATES only gate
      deliveries; LLM_ASSIST is advisory.
"""

from __future__ import annotations

import shutil
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from py_ckp.errors import (
    EdgeExistsError,
    EdgeNotFoundError,
    InvalidFormatError,
    KernelNotFoundError,
    NotAProjectError,
    UnresolvableKernelError,
)
from py_ckp.kernel import Kernel
from py_ckp.logging import LogLevel, project_logger
from py_ckp.persistence import create_json, load_json
from py_ckp.urn import (
    CONCEPTS_DIR,
    EDGES_DIR,
    EdgeUrn,
    Predicate,
    kernel_name,
    parse,
    parse_predicate,
)

if TYPE_CHECKING:
    from pathlib import Path

    from py_ckp.logging import Logger
    from py_ckp.project.registry import ProjectRegistry

EDGE_FILE = "edge.json"
DEFAULT_VERSION = "v1"
DELIVERY_PREDICATES = frozenset(
    {Predicate.PRODUCES, Predicate.NOTIFIES, Predicate.TRIGGERS, Predicate.ANNOUNCES}
)

_SOURCE = "edges"


@dataclass(frozen=True)
class Edge:
    """A stored edge.

    Attributes:
        predicate: The relation type.
        source: The producing kernel (always local).
        target: The receiving kernel.
        version: The edge version.
        created_at: When the edge was created.
        target_project: Registered name of the target's project, or None
            for a local target.

    """

    predicate: Predicate
    source: str
    target: str
    version: str
    created_at: datetime
    target_project: str | None = None

    @property
    def urn(self) -> EdgeUrn:
        """Return the parsed edge URN."""
        return EdgeUrn(self.predicate, self.source, self.target, self.version)

    @property
    def directory_name(self) -> str:
        """Return ``<PREDICATE>.<Source>``."""
        return self.urn.directory_name

    @property
    def delivers(self) -> bool:
        """Return True if routing this edge materializes an inbox entry."""
        return self.predicate in DELIVERY_PREDICATES

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the ``edge.json`` shape."""
        data: dict[str, Any] = {
            "urn": str(self.urn),
            "predicate": str(self.predicate),
            "source": self.source,
            "target": self.target,
            "version": self.version,
            "createdAt": self.created_at.isoformat(),
        }
        if self.target_project:
            data["targetProject"] = self.target_project
        return data

    @classmethod
    def from_dict(cls, data: Any, *, source: str = EDGE_FILE) -> Edge:
        """Deserialize an ``edge.json`` document.

        Raises:
            InvalidFormatError: If fields are missing or malformed.

        """
        try:
            return cls(
                predicate=parse_predicate(data["predicate"]),
                source=kernel_name(data["source"]),
                target=kernel_name(data["target"]),
                version=str(data["version"]),
                created_at=datetime.fromisoformat(data["createdAt"]),
                target_project=data.get("targetProject") or None,
            )
        except (KeyError, TypeError, ValueError) as exc:
            msg = f"Malformed edge metadata {source}: {exc}"
            raise InvalidFormatError(msg, subject=source) from exc


class EdgeRegistry:
    """The edges of one project."""

    def __init__(
        self,
        project_root: Path,
        *,
        projects: ProjectRegistry | None = None,
        logger: Logger | None = None,
    ) -> None:
        """Create a registry for *project_root*.

        Args:
            project_root: The project the edges belong to.
            projects: Project registry used to locate cross-project
                targets; cross-project edges are refused without one.
            logger: Receives create/remove events (defaults to the project
                runtime log).

        """
        self._root = project_root
        self._projects = projects
        self._logger = logger or project_logger(project_root)

    @property
    def project_root(self) -> Path:
        """Return the project root."""
        return self._root

    @property
    def edges_dir(self) -> Path:
        """Return ``concepts/.edges``."""
        return self._root / CONCEPTS_DIR / EDGES_DIR

    # -- Mutations ------------------------------------------------------------

    def create_edge(
        self,
        predicate: Predicate | str,
        source: str,
        target: str,
        target_project: str | None = None,
        version: str = DEFAULT_VERSION,
    ) -> Edge:
        """Create an edge from *source* to *target*.

        Args:
            predicate: One of the ``Predicate`` values.
            source: A kernel of this project (name or URN).
            target: The receiving kernel (name or URN).
            target_project: Registered project holding *target*, if it is
                not this project.
            version: The edge version.

        Returns:
            The stored edge.

        Raises:
            InvalidPredicateError: If *predicate* is not in the vocabulary.
            UnresolvableKernelError: If either kernel cannot be found.
            EdgeExistsError: If the ``(predicate, source)`` pair is taken.

        """
        pred = predicate if isinstance(predicate, Predicate) else parse_predicate(predicate)
        edge = Edge(
            predicate=pred,
            source=kernel_name(source),
            target=kernel_name(target),
            version=version,
            created_at=datetime.now(UTC),
            target_project=target_project,
        )
        parse(str(edge.urn))
        self._require_kernel(self._root, edge.source, "source")
        self._require_kernel(self.target_root(edge), edge.target, "target")

        self.edges_dir.mkdir(parents=True, exist_ok=True)
        directory = self.edges_dir / edge.directory_name
        try:
            directory.mkdir()
        except FileExistsError:
            msg = f"An edge {edge.directory_name} already exists in {self._root}"
            raise EdgeExistsError(msg, subject=edge.directory_name) from None
        try:
            create_json(directory / EDGE_FILE, edge.to_dict())
        except (OSError, TypeError, ValueError):
            # Free the directory name so the edge can be created again.
            shutil.rmtree(directory, ignore_errors=True)
            raise
        self._logger.log(LogLevel.INFO, f"created {edge.urn}", source=_SOURCE, kernel=edge.source)
        return edge

    def remove_edge(self, urn: str) -> Edge:
        """Delete the edge named by *urn*.

        Deliveries already in target inboxes are left in place.

        Raises:
            EdgeNotFoundError: If no such edge exists.

        """
        edge = self.get_edge(urn)
        shutil.rmtree(self.edges_dir / edge.directory_name)
        self._logger.log(LogLevel.INFO, f"removed {edge.urn}", source=_SOURCE, kernel=edge.source)
        return edge

    # -- Queries --------------------------------------------------------------

    def get_edge(self, urn: str) -> Edge:
        """Return the stored edge named by *urn*.

        Raises:
            InvalidFormatError: If *urn* is not an edge URN.
            EdgeNotFoundError: If the stored edge differs or is absent.

        """
        parsed = parse(urn)
        if not isinstance(parsed, EdgeUrn):
            msg = f"{urn} is not an edge URN"
            raise InvalidFormatError(msg, subject=urn)
        try:
            edge = self._read(self.edges_dir / parsed.directory_name)
        except FileNotFoundError:
            edge = None
        if edge is None or edge.urn != parsed:
            msg = f"Edge {urn} not found in {self._root}"
            raise EdgeNotFoundError(msg, subject=urn)
        return edge

    def list_edges(self) -> list[Edge]:
        """Return every readable edge, ordered by ``<PREDICATE>.<Source>``.

        Malformed edge directories are skipped with a warning.
        """
        if not self.edges_dir.is_dir():
            return []
        edges = []
        for directory in sorted(self.edges_dir.iterdir(), key=lambda p: p.name.lower()):
            if not directory.is_dir() or directory.name.startswith("."):
                continue
            try:
                edge = self._read(directory)
            except (OSError, InvalidFormatError) as exc:
                self._logger.log(
                    LogLevel.WARNING, f"skipping edge {directory.name}: {exc}", source=_SOURCE
                )
                continue
            edges.append(edge)
        return edges

    def edges_from(self, kernel: str) -> list[Edge]:
        """Return the outgoing edges of *kernel*."""
        name = kernel_name(kernel)
        return [edge for edge in self.list_edges() if edge.source == name]

    def edges_to(self, kernel: str) -> list[Edge]:
        """Return the local edges whose target is *kernel*."""
        name = kernel_name(kernel)
        return [
            edge
            for edge in self.list_edges()
            if edge.target == name and edge.target_project is None
        ]

    def target_root(self, edge: Edge) -> Path:
        """Return the project root that holds *edge*'s target.

        Raises:
            UnresolvableKernelError: If the target project is unknown.

        """
        if edge.target_project is None:
            return self._root
        if self._projects is None:
            msg = f"Cannot resolve project {edge.target_project!r} without a project registry"
            raise UnresolvableKernelError(msg, subject=edge.target)
        try:
            return self._projects.get(edge.target_project).path
        except NotAProjectError as exc:
            msg = f"Target project {edge.target_project!r} of {edge.urn} is not registered"
            raise UnresolvableKernelError(msg, subject=edge.target) from exc

    # -- Internals ------------------------------------------------------------

    def _read(self, directory: Path) -> Edge:
        path = directory / EDGE_FILE
        try:
            data = load_json(path)
        except ValueError as exc:
            msg = f"Malformed edge metadata {path}: {exc}"
            raise InvalidFormatError(msg, subject=str(path)) from exc
        edge = Edge.from_dict(data, source=str(path))
        if edge.directory_name != directory.name:
            msg = f"{path} describes {edge.directory_name}, not {directory.name}"
            raise InvalidFormatError(msg, subject=str(path))
        return edge

    @staticmethod
    def _require_kernel(project_root: Path, name: str, role: str) -> Kernel:
        try:
            return Kernel.load(project_root, name)
        except KernelNotFoundError as exc:
            msg = f"Edge {role} {name} does not exist in {project_root}"
            raise UnresolvableKernelError(msg, subject=name) from exc
