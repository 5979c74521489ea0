"""Occurrents — time-bounded records of one process execution.

A kernel is a *continuant*: it persists.  Each thing a kernel does (a
routing pass, a tool run) is an *occurrent*: it happens, moves through
phases, and ends.  Every occurrent is addressed by a Process URN::

    ckp://Process#EdgeRoute-tx_1718000000123456_1a2b3c4d

and stored as one JSON file under ``concepts/.processes/<Type>/``.

Phase order::

    accepted → processing → completed
                          ↘ failed

Key concepts:
    - **Temporal parts** — each phase transition is appended to a log of
      ``{phase, timestamp, data}`` entries; nothing is rewritten.
    - **Non-decreasing** — a phase may not rank below the previous one,
      and its timestamp may not be earlier than the previous timestamp.
    - **Terminal phases** — after ``completed`` or ``failed`` nothing
      more may be appended.
    - **Serialized appends** — a phase append is a read-modify-write of
      the record, so it runs under ``<record>.json.lock``.
    - **Fresh tx ids** — a microsecond timestamp plus a short SHA-256
      digest over per-process entropy; the record file is created
      exclusively, so a collision is detected rather than overwritten.
"""

from __future__ import annotations

import hashlib
import os
import re
import secrets
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from itertools import count
from typing import TYPE_CHECKING, Any

# Imported as a module: lockfile itself imports the process package.
from py_ckp import lockfile
from py_ckp.errors import (
    AlreadyExistsError,
    InvalidFormatError,
    InvalidTransitionError,
    OccurrentNotFoundError,
)
from py_ckp.persistence import create_json, dump_json, load_json
from py_ckp.urn import CONCEPTS_DIR, PROCESSES_DIR, ProcessUrn, parse, resolve

if TYPE_CHECKING:
    from pathlib import Path

_TYPE_RE = re.compile(r"^[A-Za-z][A-Za-z0-9]*$")
_MINT_ATTEMPTS = 5
_LOCK_SUFFIX = ".lock"

# Per-process sequence mixed into every digest so two mints in the same
# microsecond still hash differently.
_mint_counter = count()


class Phase(StrEnum):
    """Phases of an occurrent."""

    ACCEPTED = "accepted"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def rank(self) -> int:
        """Return the phase's position in the order (terminal phases share one)."""
        return _RANK[self]

    @property
    def terminal(self) -> bool:
        """Return True for ``completed`` and ``failed``."""
        return self in (Phase.COMPLETED, Phase.FAILED)


_RANK = {Phase.ACCEPTED: 0, Phase.PROCESSING: 1, Phase.COMPLETED: 2, Phase.FAILED: 2}


def _now() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True)
class TemporalPart:
    """One appended phase."""

    phase: Phase
    timestamp: datetime
    data: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a JSON-compatible dict."""
        return {
            "phase": self.phase.value,
            "timestamp": self.timestamp.isoformat(),
            "data": self.data,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TemporalPart:
        """Deserialize a part produced by ``to_dict()``."""
        return cls(
            phase=Phase(data["phase"]),
            timestamp=datetime.fromisoformat(data["timestamp"]),
            data=data.get("data") or {},
        )


@dataclass
class Occurrent:
    """A process execution record.

    Attributes:
        urn: The Process URN.
        participants: Role -> kernel name (``kernel`` is always present).
        temporal_parts: Appended phases, oldest first.
        created_at: When the URN was minted.
        updated_at: When the last phase was appended.
        metadata: Free-form context supplied at mint time.

    """

    urn: ProcessUrn
    participants: dict[str, str]
    temporal_parts: list[TemporalPart] = field(default_factory=list)
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def kernel(self) -> str:
        """Return the kernel that owns this occurrent."""
        return self.participants["kernel"]

    @property
    def phase(self) -> Phase | None:
        """Return the latest phase, or None before the first append."""
        return self.temporal_parts[-1].phase if self.temporal_parts else None

    @property
    def status(self) -> str:
        """Return the latest phase name, or ``pending``."""
        return "pending" if self.phase is None else self.phase.value

    @property
    def start(self) -> datetime | None:
        """Return the timestamp of the first phase."""
        return self.temporal_parts[0].timestamp if self.temporal_parts else None

    @property
    def end(self) -> datetime | None:
        """Return the terminal timestamp, if the occurrent has ended."""
        if self.phase is None or not self.phase.terminal:
            return None
        return self.temporal_parts[-1].timestamp

    @property
    def duration_ms(self) -> int | None:
        """Return milliseconds from first to terminal phase."""
        if self.start is None or self.end is None:
            return None
        return int((self.end - self.start).total_seconds() * 1000)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the on-disk JSON shape."""
        start, end = self.start, self.end
        return {
            "urn": str(self.urn),
            "type": self.urn.type,
            "txId": self.urn.tx_id,
            "participants": self.participants,
            "temporalParts": [part.to_dict() for part in self.temporal_parts],
            "temporalRegion": {
                "start": start.isoformat() if start else None,
                "end": end.isoformat() if end else None,
                "duration": self.duration_ms,
            },
            "status": self.status,
            "metadata": self.metadata,
            "createdAt": self.created_at.isoformat(),
            "updatedAt": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Occurrent:
        """Deserialize a record produced by ``to_dict()``.

        Raises:
            InvalidFormatError: If the URN is not a Process URN.

        """
        urn = parse(data["urn"])
        if not isinstance(urn, ProcessUrn):
            msg = f"Occurrent record carries a non-process URN {data['urn']!r}"
            raise InvalidFormatError(msg, subject=data["urn"])
        return cls(
            urn=urn,
            participants=dict(data["participants"]),
            temporal_parts=[TemporalPart.from_dict(p) for p in data["temporalParts"]],
            created_at=datetime.fromisoformat(data["createdAt"]),
            updated_at=datetime.fromisoformat(data["updatedAt"]),
            metadata=data.get("metadata") or {},
        )


def mint_tx_id(kernel: str, process_type: str) -> str:
    """Return a fresh ``tx_<epoch_us>_<hash>`` transaction id."""
    stamp = time.time_ns() // 1000
    seed = f"{kernel}|{process_type}|{stamp}|{os.getpid()}|{next(_mint_counter)}"
    digest = hashlib.sha256(seed.encode() + secrets.token_bytes(8)).hexdigest()[:8]
    return f"tx_{stamp}_{digest}"


class OccurrentStore:
    """File-backed occurrent records for one project."""

    def __init__(self, project_root: Path) -> None:
        """Create a store rooted at *project_root*."""
        self._project_root = project_root

    @property
    def root(self) -> Path:
        """Return the ``concepts/.processes`` directory."""
        return self._project_root / CONCEPTS_DIR / PROCESSES_DIR

    def next_process_urn(
        self,
        kernel: str,
        process_type: str,
        *,
        participants: dict[str, str] | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> ProcessUrn:
        """Mint a new Process URN and create its (phase-less) record.

        Args:
            kernel: The kernel that owns the execution.
            process_type: CamelCase type name, e.g. ``EdgeRoute``.
            participants: Extra role -> kernel entries.
            metadata: Free-form context stored with the record.

        Returns:
            The new URN.

        Raises:
            InvalidFormatError: If *process_type* is not a bare identifier.

        """
        if not _TYPE_RE.match(process_type):
            msg = f"Invalid process type {process_type!r}"
            raise InvalidFormatError(msg, subject=process_type)
        (self.root / process_type).mkdir(parents=True, exist_ok=True)
        for _ in range(_MINT_ATTEMPTS):
            _, stamp, digest = mint_tx_id(kernel, process_type).split("_")
            urn = ProcessUrn(type=process_type, timestamp=stamp, digest=digest)
            occurrent = Occurrent(
                urn=urn,
                participants={"kernel": kernel, **(participants or {})},
                metadata=dict(metadata or {}),
            )
            try:
                create_json(self._path(urn), occurrent.to_dict())
            except FileExistsError:
                continue
            return urn
        msg = f"Could not mint a unique {process_type} URN for {kernel}"
        raise AlreadyExistsError(msg, subject=kernel)

    def get(self, urn: ProcessUrn | str) -> Occurrent:
        """Load the occurrent for *urn*.

        Raises:
            OccurrentNotFoundError: If no record exists.

        """
        parsed = self._coerce(urn)
        try:
            data = load_json(self._path(parsed))
        except FileNotFoundError:
            msg = f"No occurrent recorded for {parsed}"
            raise OccurrentNotFoundError(msg, subject=str(parsed)) from None
        return Occurrent.from_dict(data)

    def append_phase(
        self,
        urn: ProcessUrn | str,
        phase: Phase,
        payload: dict[str, Any] | None = None,
        *,
        at: datetime | None = None,
    ) -> Occurrent:
        """Append *phase* to the occurrent's temporal parts.

        Args:
            urn: The occurrent to extend.
            phase: The phase being entered.
            payload: Data recorded with the phase.
            at: Timestamp of the transition (defaults to now).

        Returns:
            The updated occurrent.

        Raises:
            OccurrentNotFoundError: If the occurrent does not exist.
            InvalidTransitionError: If the occurrent is terminal, or the
                phase or timestamp goes backwards.
            RegistryBusyError: If another append holds the record too long.

        """
        parsed = self._coerce(urn)
        path = self._path(parsed)
        if not path.is_file():
            msg = f"No occurrent recorded for {parsed}"
            raise OccurrentNotFoundError(msg, subject=str(parsed))
        with lockfile.FileLock(path.with_name(f"{path.name}{_LOCK_SUFFIX}")):
            return self._append(parsed, phase, payload, at)

    def _append(
        self,
        urn: ProcessUrn,
        phase: Phase,
        payload: dict[str, Any] | None,
        at: datetime | None,
    ) -> Occurrent:
        occurrent = self.get(urn)
        when = at or _now()
        if when.tzinfo is None:
            when = when.replace(tzinfo=UTC)
        last = occurrent.temporal_parts[-1] if occurrent.temporal_parts else None
        if last is not None:
            if last.phase.terminal:
                msg = f"Cannot append {phase}: {occurrent.urn} already ended as {last.phase}"
                raise InvalidTransitionError(
                    msg, subject=str(occurrent.urn), expected="non-terminal", actual=last.phase
                )
            if phase.rank < last.phase.rank:
                msg = f"Cannot append {phase} after {last.phase} on {occurrent.urn}"
                raise InvalidTransitionError(
                    msg, subject=str(occurrent.urn), expected=f">= {last.phase}", actual=phase
                )
            if when < last.timestamp:
                msg = (
                    f"Cannot append {phase} at {when.isoformat()}: earlier than "
                    f"{last.phase} at {last.timestamp.isoformat()}"
                )
                raise InvalidTransitionError(
                    msg,
                    subject=str(occurrent.urn),
                    expected=f">= {last.timestamp.isoformat()}",
                    actual=when.isoformat(),
                )
        part = TemporalPart(phase=phase, timestamp=when, data=payload or {})
        occurrent.temporal_parts.append(part)
        occurrent.updated_at = max(when, occurrent.updated_at)
        dump_json(self._path(occurrent.urn), occurrent.to_dict())
        return occurrent

    def query(
        self,
        *,
        process_type: str | None = None,
        kernel: str | None = None,
        status: str | None = None,
        limit: int = 0,
    ) -> list[Occurrent]:
        """Return occurrents matching the filters, newest first.

        Unreadable records are skipped.  ``limit`` of 0 means unbounded.
        """
        if not self.root.is_dir():
            return []
        type_dirs = [self.root / process_type] if process_type else sorted(self.root.iterdir())
        found: list[Occurrent] = []
        for type_dir in type_dirs:
            if not type_dir.is_dir():
                continue
            for path in type_dir.glob("tx_*.json"):
                try:
                    occurrent = Occurrent.from_dict(load_json(path))
                except (OSError, ValueError, KeyError, InvalidFormatError):
                    continue
                if kernel is not None and kernel not in occurrent.participants.values():
                    continue
                if status is not None and occurrent.status != status:
                    continue
                found.append(occurrent)
        found.sort(key=lambda o: (o.created_at, o.urn.tx_id), reverse=True)
        return found[:limit] if limit > 0 else found

    def _coerce(self, urn: ProcessUrn | str) -> ProcessUrn:
        if isinstance(urn, ProcessUrn):
            return urn
        parsed = parse(urn)
        if not isinstance(parsed, ProcessUrn):
            msg = f"{urn!r} is not a Process URN"
            raise InvalidFormatError(msg, subject=urn)
        return parsed

    def _path(self, urn: ProcessUrn) -> Path:
        return resolve(urn, self._project_root)
