"""URN protocol — the three live address forms of the runtime.

Every kernel, edge and process execution is addressed by a ``ckp://``
URN.  Three forms are implemented:

- **Kernel** — ``ckp://<Name>:<version>`` with an optional
  ``#<stage>[/<path>]`` suffix pointing inside the kernel's subtree.
- **Edge** — ``ckp://Edge.<PREDICATE>.<Source>-to-<Target>:<version>``.
- **Process** — ``ckp://Process#<Type>-tx_<timestamp>_<hash>``.

Other namespaces (``Agent``, ``Role``, ``Proof``, ``Consensus`` and any
other ``Process`` shape) are reserved.  The parser rejects them with an
explicit reason instead of accepting a plausible-looking string.

Design choices:
    - **Two entry points** — ``validate`` never raises and returns a
      ``ValidationResult``; ``parse`` returns a typed URN or raises
      ``InvalidFormatError``.  ``validate`` is a thin wrapper around
      ``parse`` so the two can never disagree.
    - **Prefix dispatch first** — the first name segment decides the
      form.  ``Edge.PRODUCES.A-to-B`` is a syntactically valid kernel
      name, so without the dispatch an edge URN would be misread.
    - **Resolution is local** — ``resolve`` maps a URN to a path under
      one project root and never looks at other projects.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path
from typing import TypeAlias

from py_ckp.errors import InvalidFormatError, InvalidPredicateError

SCHEME = "ckp://"
CONCEPTS_DIR = "concepts"
EDGES_DIR = ".edges"
PROCESSES_DIR = ".processes"

_NAME_RE = re.compile(r"^[A-Za-z]+([.-]?[A-Za-z0-9]+)*$")
_VERSION_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._+-]*$")
_KERNEL_RE = re.compile(
    r"^ckp://(?P<name>[^:#/]+):(?P<version>[^#]+)"
    r"(?:#(?P<stage>[^/]+)(?:/(?P<path>.+))?)?$"
)
_EDGE_RE = re.compile(r"^ckp://Edge\.(?P<predicate>[A-Z_]+)\.(?P<pair>[^:]+):(?P<version>.+)$")
_PROCESS_RE = re.compile(
    r"^ckp://Process#(?P<type>[A-Za-z][A-Za-z0-9]*)-tx_(?P<timestamp>\d+)_(?P<digest>[0-9a-f]+)$"
)

_RESERVED = ("Agent", "Role", "Proof", "Consensus")


class UrnKind(StrEnum):
    """The implemented URN forms."""

    KERNEL = "kernel"
    EDGE = "edge"
    PROCESS = "process"


class Predicate(StrEnum):
    """Closed vocabulary of edge predicates."""

    PRODUCES = "PRODUCES"
    REQUIRES = "REQUIRES"
    NOTIFIES = "NOTIFIES"
    VALIDATES = "VALIDATES"
    TRIGGERS = "TRIGGERS"
    ANNOUNCES = "ANNOUNCES"
    LLM_ASSIST = "LLM_ASSIST"


# Stage shortcut -> path inside the kernel directory.
STAGES: dict[str, str] = {
    "inbox": "queue/inbox",
    "staging": "queue/staging",
    "ready": "queue/ready",
    "archive": "queue/archive",
    "storage": "storage",
    "logs": "logs",
    "tool": "tool",
}


def parse_predicate(value: str) -> Predicate:
    """Return the predicate named *value*.

    Raises:
        InvalidPredicateError: If *value* is not in the vocabulary.

    """
    try:
        return Predicate(value)
    except ValueError:
        allowed = ", ".join(p.value for p in Predicate)
        msg = f"Unknown predicate {value!r} (allowed: {allowed})"
        raise InvalidPredicateError(msg, subject=value) from None


@dataclass(frozen=True)
class KernelUrn:
    """A parsed kernel URN, optionally pointing at a stage inside the kernel."""

    name: str
    version: str
    stage: str | None = None
    path: str | None = None

    kind = UrnKind.KERNEL

    def with_stage(self, stage: str, path: str | None = None) -> KernelUrn:
        """Return a copy of this URN addressing *stage* (and *path*)."""
        return parse_kernel(str(KernelUrn(self.name, self.version, stage, path)))

    def base(self) -> KernelUrn:
        """Return the URN without any stage or path."""
        return KernelUrn(self.name, self.version)

    def __str__(self) -> str:
        """Format as ``ckp://Name:version[#stage[/path]]``."""
        text = f"{SCHEME}{self.name}:{self.version}"
        if self.stage is not None:
            text += f"#{self.stage}"
            if self.path is not None:
                text += f"/{self.path}"
        return text


@dataclass(frozen=True)
class EdgeUrn:
    """A parsed edge URN."""

    predicate: Predicate
    source: str
    target: str
    version: str

    kind = UrnKind.EDGE

    @property
    def directory_name(self) -> str:
        """Return the ``<PREDICATE>.<Source>`` storage and queue name."""
        return f"{self.predicate}.{self.source}"

    def __str__(self) -> str:
        """Format as ``ckp://Edge.<PREDICATE>.<Source>-to-<Target>:<version>``."""
        return f"{SCHEME}Edge.{self.predicate}.{self.source}-to-{self.target}:{self.version}"


@dataclass(frozen=True)
class ProcessUrn:
    """A parsed process (occurrent) URN."""

    type: str
    timestamp: str
    digest: str

    kind = UrnKind.PROCESS

    @property
    def tx_id(self) -> str:
        """Return the ``tx_<timestamp>_<hash>`` transaction id."""
        return f"tx_{self.timestamp}_{self.digest}"

    def __str__(self) -> str:
        """Format as ``ckp://Process#<Type>-tx_<timestamp>_<hash>``."""
        return f"{SCHEME}Process#{self.type}-{self.tx_id}"


Urn: TypeAlias = KernelUrn | EdgeUrn | ProcessUrn


@dataclass(frozen=True)
class ValidationResult:
    """Outcome of ``validate`` — never an exception.

    Attributes:
        valid: True when the candidate is one of the implemented forms.
        kind: The form that matched, or None on failure.
        error: The ``InvalidFormatError`` that ``parse`` would raise.

    """

    valid: bool
    kind: UrnKind | None = None
    error: InvalidFormatError | None = None

    @property
    def reason(self) -> str:
        """Return the failure reason, or an empty string when valid."""
        return "" if self.error is None else str(self.error)

    def __bool__(self) -> bool:
        """Truthiness follows validity."""
        return self.valid


def _fail(candidate: str, reason: str) -> InvalidFormatError:
    return InvalidFormatError(f"Invalid URN {candidate!r}: {reason}", subject=candidate)


def _check_name(candidate: str, name: str, role: str) -> None:
    if not name:
        raise _fail(candidate, f"empty {role}")
    if not _NAME_RE.match(name):
        raise _fail(candidate, f"malformed {role} {name!r}")
    head = name.split(".", 1)[0]
    if head in (*_RESERVED, "Edge", "Process"):
        raise _fail(candidate, f"{role} {name!r} uses the reserved {head!r} namespace")


def _check_version(candidate: str, version: str) -> None:
    if not version:
        raise _fail(candidate, "empty version")
    if not _VERSION_RE.match(version):
        raise _fail(candidate, f"malformed version {version!r}")


def parse_kernel(candidate: str) -> KernelUrn:
    """Parse a kernel URN, rejecting every other form.

    Raises:
        InvalidFormatError: If *candidate* is not a kernel URN.

    """
    match = _KERNEL_RE.match(candidate)
    if match is None:
        raise _fail(candidate, "expected ckp://<Name>:<version>[#stage[/path]]")
    name, version = match["name"], match["version"]
    _check_name(candidate, name, "kernel name")
    _check_version(candidate, version)
    stage, path = match["stage"], match["path"]
    if stage is not None and stage not in STAGES:
        raise _fail(candidate, f"unknown stage {stage!r} (allowed: {', '.join(STAGES)})")
    if path is not None and ".." in Path(path).parts:
        raise _fail(candidate, "stage path may not leave the kernel directory")
    return KernelUrn(name, version, stage, path)


def _parse_edge(candidate: str) -> EdgeUrn:
    match = _EDGE_RE.match(candidate)
    if match is None:
        raise _fail(candidate, "expected ckp://Edge.<PREDICATE>.<Source>-to-<Target>:<version>")
    predicate = parse_predicate(match["predicate"])
    source, sep, target = match["pair"].partition("-to-")
    if not sep:
        raise _fail(candidate, "edge is missing the '-to-' separator")
    _check_name(candidate, source, "edge source")
    _check_name(candidate, target, "edge target")
    _check_version(candidate, match["version"])
    return EdgeUrn(predicate, source, target, match["version"])


def _parse_process(candidate: str) -> ProcessUrn:
    match = _PROCESS_RE.match(candidate)
    if match is None:
        reason = "reserved Process form (only Process#<Type>-tx_<ts>_<hash> is supported)"
        raise _fail(candidate, reason)
    return ProcessUrn(match["type"], match["timestamp"], match["digest"])


def parse(candidate: str) -> Urn:
    """Parse *candidate* into one of the implemented URN forms.

    Args:
        candidate: The string to parse.

    Returns:
        A ``KernelUrn``, ``EdgeUrn`` or ``ProcessUrn``.

    Raises:
        InvalidFormatError: For malformed strings and reserved forms.

    """
    if not candidate:
        raise _fail(candidate, "empty string")
    if not candidate.startswith(SCHEME):
        raise _fail(candidate, f"missing {SCHEME} scheme")
    body = candidate[len(SCHEME) :]
    for reserved in _RESERVED:
        if body.startswith(reserved) and not body[len(reserved) :][:1].isalnum():
            raise _fail(candidate, f"the {reserved} namespace is reserved")
    if body.startswith("Process") and not body[len("Process") :][:1].isalnum():
        return _parse_process(candidate)
    if body.startswith("Edge."):
        return _parse_edge(candidate)
    return parse_kernel(candidate)


def validate(candidate: str) -> ValidationResult:
    """Check *candidate* without raising.

    Returns:
        A ``ValidationResult``; on failure ``error`` holds the reason.

    """
    try:
        urn = parse(candidate)
    except InvalidFormatError as exc:
        return ValidationResult(valid=False, error=exc)
    return ValidationResult(valid=True, kind=urn.kind)


def kernel_name(name_or_urn: str) -> str:
    """Return the bare kernel name from a name or a kernel URN.

    Raises:
        InvalidFormatError: If the value is neither.

    """
    if name_or_urn.startswith(SCHEME):
        return parse_kernel(name_or_urn).name
    _check_name(name_or_urn, name_or_urn, "kernel name")
    return name_or_urn


def resolve(urn: str | Urn, project_root: Path) -> Path:
    """Map a URN to its location inside *project_root*.

    Kernel URNs resolve to ``concepts/<Name>`` (plus the stage path),
    edge URNs to their edge directory and process URNs to their
    occurrent record.  The mapping is pure; nothing is checked on disk.

    Raises:
        InvalidFormatError: If *urn* is a string that does not parse.

    """
    parsed = parse(urn) if isinstance(urn, str) else urn
    concepts = project_root / CONCEPTS_DIR
    match parsed:
        case KernelUrn(name=name, stage=None):
            return concepts / name
        case KernelUrn(name=name, stage=stage, path=path):
            location = concepts / name / STAGES[stage]
            return location / path if path else location
        case EdgeUrn():
            return concepts / EDGES_DIR / parsed.directory_name
        case ProcessUrn():
            return concepts / PROCESSES_DIR / parsed.type / f"{parsed.tx_id}.json"
