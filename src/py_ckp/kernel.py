"""Kernels — named, versioned units with their own directory subtree.

A kernel is a *continuant*: it exists as long as its directory does.
Everything about it lives under ``<project>/concepts/<Name>/``::

    conceptkernel.yaml      configuration
    storage/                produced instances (<id>.inst/receipt.json)
    queue/inbox/            direct jobs and per-edge delivery directories
    queue/staging/          claimed work
    queue/ready/            finished work awaiting pickup
    queue/archive/          processed jobs
    logs/                   tool output and runtime log
    tool/                   the tool's code
    tx.jsonl                one line per produced instance
    .tool.pid               tool process-state file
    tool/.governor.pid      governor process-state file

Key concepts:
    - **Hot vs. cold** — a hot kernel's tool is a long-running server with
      a port; a cold kernel's tool is spawned per unit of work and exits.
    - **Configuration** — ``conceptkernel.yaml`` names the kernel's URN,
      its ``<runtime>:<hot|cold>`` type, its entrypoint, an optional
      governor command, and the allowlist of edges that may deliver into
      its inbox (``spec.queue_contract.edges``; missing allows all,
      empty allows none).
"""

from __future__ import annotations

import shlex
import sys
from dataclasses import dataclass, replace
from enum import StrEnum
from typing import TYPE_CHECKING, Any

import yaml

from py_ckp.errors import InvalidFormatError, KernelExistsError, KernelNotFoundError
from py_ckp.persistence import atomic_write_text
from py_ckp.urn import CONCEPTS_DIR, KernelUrn, kernel_name, parse_kernel

if TYPE_CHECKING:
    from pathlib import Path

CONFIG_FILE = "conceptkernel.yaml"
TOOL_STATE_FILE = ".tool.pid"
GOVERNOR_STATE_FILE = "tool/.governor.pid"
TX_LOG_FILE = "tx.jsonl"
QUEUE_STAGES = ("inbox", "staging", "ready", "archive")

_INTERPRETERS = {"python": sys.executable, "node": "node"}


class KernelKind(StrEnum):
    """How a kernel's tool process runs."""

    HOT = "hot"
    COLD = "cold"


@dataclass(frozen=True)
class QueueStats:
    """Number of pending entries per queue stage."""

    inbox: int = 0
    staging: int = 0
    ready: int = 0

    def to_dict(self) -> dict[str, int]:
        """Serialize to a plain dict."""
        return {"inbox": self.inbox, "staging": self.staging, "ready": self.ready}


@dataclass(frozen=True)
class KernelConfig:
    """The parsed content of ``conceptkernel.yaml``."""

    name: str
    version: str
    kind: KernelKind = KernelKind.COLD
    runtime: str = "python"
    entrypoint: str = "tool/main.py"
    governor: str | None = None
    allowed_edges: tuple[str, ...] | None = None

    @property
    def urn(self) -> KernelUrn:
        """Return ``ckp://Name:version``."""
        return KernelUrn(self.name, self.version)

    @property
    def type(self) -> str:
        """Return the ``<runtime>:<kind>`` type string."""
        return f"{self.runtime}:{self.kind}"

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the YAML document shape."""
        metadata: dict[str, Any] = {
            "name": str(self.urn),
            "type": self.type,
            "version": self.version,
            "entrypoint": self.entrypoint,
        }
        if self.governor:
            metadata["governor"] = self.governor
        data: dict[str, Any] = {
            "apiVersion": "conceptkernel/v1",
            "kind": "Kernel",
            "metadata": metadata,
        }
        if self.allowed_edges is not None:
            data["spec"] = {"queue_contract": {"edges": list(self.allowed_edges)}}
        return data

    @classmethod
    def from_dict(cls, data: Any, *, source: str = CONFIG_FILE) -> KernelConfig:
        """Build a config from a parsed YAML document.

        Raises:
            InvalidFormatError: If required fields are missing or malformed.

        """
        if not isinstance(data, dict) or not isinstance(data.get("metadata"), dict):
            msg = f"{source}: expected a mapping with a 'metadata' section"
            raise InvalidFormatError(msg, subject=source)
        metadata = data["metadata"]
        urn = parse_kernel(str(metadata.get("name", "")))
        runtime, _, kind_text = str(metadata.get("type", "python:cold")).partition(":")
        try:
            kind = KernelKind(kind_text or KernelKind.COLD)
        except ValueError:
            msg = f"{source}: type must be '<runtime>:hot' or '<runtime>:cold'"
            raise InvalidFormatError(msg, subject=source) from None
        contract = ((data.get("spec") or {}).get("queue_contract") or {}).get("edges")
        if contract is not None and not isinstance(contract, list):
            msg = f"{source}: spec.queue_contract.edges must be a list"
            raise InvalidFormatError(msg, subject=source)
        return cls(
            name=urn.name,
            version=urn.version,
            kind=kind,
            runtime=runtime or "python",
            entrypoint=str(metadata.get("entrypoint", "tool/main.py")),
            governor=metadata.get("governor") or None,
            allowed_edges=None if contract is None else tuple(str(edge) for edge in contract),
        )


class Kernel:
    """A kernel directory and its configuration."""

    def __init__(self, project_root: Path, config: KernelConfig) -> None:
        """Wrap an existing kernel; use ``load`` or ``create`` instead."""
        self._project_root = project_root
        self._config = config

    # -- Construction ---------------------------------------------------------

    @classmethod
    def load(cls, project_root: Path, name: str) -> Kernel:
        """Read the kernel called *name* (a bare name or kernel URN).

        Raises:
            KernelNotFoundError: If the kernel directory or config is absent.
            InvalidFormatError: If the config cannot be parsed.

        """
        bare = kernel_name(name)
        config_path = kernel_dir(project_root, bare) / CONFIG_FILE
        try:
            text = config_path.read_text(encoding="utf-8")
        except FileNotFoundError:
            msg = f"Kernel {bare} not found in {project_root}"
            raise KernelNotFoundError(msg, subject=bare) from None
        try:
            data = yaml.safe_load(text)
        except yaml.YAMLError as exc:
            msg = f"{config_path}: {exc}"
            raise InvalidFormatError(msg, subject=str(config_path)) from exc
        config = KernelConfig.from_dict(data, source=str(config_path))
        if config.name != bare:
            msg = f"{config_path} declares {config.name}, expected {bare}"
            raise InvalidFormatError(
                msg, subject=str(config_path), expected=bare, actual=config.name
            )
        return cls(project_root, config)

    @classmethod
    def create(cls, project_root: Path, config: KernelConfig) -> Kernel:
        """Materialize a new kernel subtree.

        Raises:
            KernelExistsError: If the kernel directory already exists.

        """
        parse_kernel(str(config.urn))
        root = kernel_dir(project_root, config.name)
        root.parent.mkdir(parents=True, exist_ok=True)
        try:
            root.mkdir()
        except FileExistsError:
            msg = f"Kernel {config.name} already exists in {project_root}"
            raise KernelExistsError(msg, subject=config.name) from None
        for stage in QUEUE_STAGES:
            (root / "queue" / stage).mkdir(parents=True)
        for sub in ("storage", "logs", "tool"):
            (root / sub).mkdir()
        kernel = cls(project_root, config)
        kernel.save()
        return kernel

    def save(self) -> None:
        """Write ``conceptkernel.yaml`` atomically."""
        text = yaml.safe_dump(self._config.to_dict(), sort_keys=False)
        atomic_write_text(self.config_path, text)

    def allow_edge(self, edge_urn: str) -> None:
        """Add *edge_urn* to this kernel's queue-contract allowlist.

        A kernel without a contract gets one, so from then on only the
        listed edges are accepted.
        """
        current = self._config.allowed_edges or ()
        if edge_urn in current:
            return
        self._config = replace(self._config, allowed_edges=(*current, edge_urn))
        self.save()

    # -- Identity -------------------------------------------------------------

    @property
    def config(self) -> KernelConfig:
        """Return the parsed configuration."""
        return self._config

    @property
    def name(self) -> str:
        """Return the kernel name."""
        return self._config.name

    @property
    def version(self) -> str:
        """Return the kernel version."""
        return self._config.version

    @property
    def urn(self) -> KernelUrn:
        """Return the kernel URN."""
        return self._config.urn

    @property
    def kind(self) -> KernelKind:
        """Return hot or cold."""
        return self._config.kind

    @property
    def project_root(self) -> Path:
        """Return the enclosing project root."""
        return self._project_root

    # -- Layout ---------------------------------------------------------------

    @property
    def path(self) -> Path:
        """Return ``concepts/<Name>``."""
        return kernel_dir(self._project_root, self.name)

    @property
    def config_path(self) -> Path:
        """Return the ``conceptkernel.yaml`` path."""
        return self.path / CONFIG_FILE

    @property
    def storage_dir(self) -> Path:
        """Return the instance storage directory."""
        return self.path / "storage"

    @property
    def inbox_dir(self) -> Path:
        """Return ``queue/inbox``."""
        return self.queue_dir("inbox")

    def queue_dir(self, stage: str) -> Path:
        """Return ``queue/<stage>``."""
        return self.path / "queue" / stage

    @property
    def logs_dir(self) -> Path:
        """Return the logs directory."""
        return self.path / "logs"

    @property
    def tool_dir(self) -> Path:
        """Return the tool directory."""
        return self.path / "tool"

    @property
    def tool_state_path(self) -> Path:
        """Return the tool process-state file."""
        return self.path / TOOL_STATE_FILE

    @property
    def governor_state_path(self) -> Path:
        """Return the governor process-state file."""
        return self.path / GOVERNOR_STATE_FILE

    @property
    def tx_log(self) -> Path:
        """Return the ``tx.jsonl`` transaction log."""
        return self.path / TX_LOG_FILE

    # -- Behaviour ------------------------------------------------------------

    def tool_command(self) -> list[str]:
        """Return the argv that starts this kernel's tool.

        ``python`` and ``node`` runtimes run the entrypoint file with
        their interpreter; any other runtime treats the entrypoint as a
        command line.
        """
        interpreter = _INTERPRETERS.get(self._config.runtime)
        if interpreter is None:
            return shlex.split(self._config.entrypoint)
        return [interpreter, str(self.path / self._config.entrypoint)]

    def governor_command(self) -> list[str] | None:
        """Return the governor argv, or None if none is configured."""
        return shlex.split(self._config.governor) if self._config.governor else None

    def allows(self, edge_urn: str) -> bool:
        """Return True if *edge_urn* may deliver into this kernel.

        Without a queue contract every edge is accepted; an empty one
        accepts none.  Entries match exactly or as a single-``*`` pattern
        (``*``, ``prefix*`` or ``prefix*suffix``).
        """
        if self._config.allowed_edges is None:
            return True
        return any(_edge_matches(pattern, edge_urn) for pattern in self._config.allowed_edges)

    def queue_stats(self) -> QueueStats:
        """Count pending entries in inbox, staging and ready.

        Edge deliveries in ``inbox/<PREDICATE>.<Source>/`` count
        individually, as do loose files directly in each stage.
        """
        return QueueStats(
            inbox=_count_entries(self.inbox_dir),
            staging=_count_entries(self.queue_dir("staging")),
            ready=_count_entries(self.queue_dir("ready")),
        )

    def __repr__(self) -> str:
        """Show the URN and kind."""
        return f"Kernel({self.urn}, {self.kind})"


def kernel_dir(project_root: Path, name: str) -> Path:
    """Return ``<project_root>/concepts/<name>``."""
    return project_root / CONCEPTS_DIR / name


def list_kernels(project_root: Path) -> list[str]:
    """Return the names of kernels in *project_root*, case-insensitively sorted."""
    concepts = project_root / CONCEPTS_DIR
    if not concepts.is_dir():
        return []
    names = [
        entry.name
        for entry in concepts.iterdir()
        if not entry.name.startswith(".") and (entry / CONFIG_FILE).is_file()
    ]
    return sorted(names, key=lambda n: (n.lower(), n))


def _count_entries(directory: Path) -> int:
    if not directory.is_dir():
        return 0
    total = 0
    for entry in directory.iterdir():
        if entry.name.startswith("."):
            continue
        if entry.is_dir() and not entry.is_symlink():
            total += sum(1 for child in entry.iterdir() if not child.name.startswith("."))
        else:
            total += 1
    return total


def _edge_matches(pattern: str, edge_urn: str) -> bool:
    if pattern.count("*") != 1:
        return pattern == edge_urn
    prefix, _, suffix = pattern.partition("*")
    return (
        len(edge_urn) >= len(prefix) + len(suffix)
        and edge_urn.startswith(prefix)
        and edge_urn.endswith(suffix)
    )
