"""Evidence store — append-only receipts of what each kernel produced.

When a kernel's tool finishes a unit of work it records an *instance*:
a directory ``storage/<id>.inst/`` holding one ``receipt.json``::

    {"id": "tx_1718000000123456_1a2b3c4d",
     "kernel": "Producer",
     "timestamp": "2024-06-10T08:00:00.123456+00:00",
     ...payload fields...}

Instances are immutable.  The ``<id>.inst`` directory is claimed with an
exclusive ``mkdir`` and the receipt is published create-only, so two
writers can never share an id and a reader never sees half a receipt.

Listing order is case-insensitive lexical by id (``alpha-2`` before
``Beta-1``), independent of creation time.  Malformed receipts are
skipped with a warning rather than failing the listing.
"""

from __future__ import annotations

import contextlib
import json
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from py_ckp.drivers.storage import LocalPath, LocalStorageDriver, StorageDriver, UrnRef
from py_ckp.errors import (
    CkpError,
    InstanceExistsError,
    InstanceNotFoundError,
    InvalidFormatError,
)
from py_ckp.kernel import Kernel
from py_ckp.logging import LogLevel, project_logger
from py_ckp.process.occurrent import mint_tx_id

if TYPE_CHECKING:
    from collections.abc import Iterator, Mapping
    from pathlib import Path

    from py_ckp.logging import Logger

INSTANCE_SUFFIX = ".inst"
RECEIPT_FILE = "receipt.json"
ENVELOPE_KEYS = ("id", "kernel", "timestamp")

_ID_ATTEMPTS = 5
_SOURCE = "evidence"


@dataclass(frozen=True)
class InstanceSummary:
    """One row of an instance listing."""

    id: str
    kernel: str
    timestamp: str
    path: Path


@dataclass(frozen=True)
class InstanceDetail:
    """A full receipt."""

    id: str
    kernel: str
    timestamp: str
    path: Path
    receipt: dict[str, Any]

    @property
    def payload(self) -> dict[str, Any]:
        """Return the receipt without its envelope fields."""
        return {k: v for k, v in self.receipt.items() if k not in ENVELOPE_KEYS}

    def summary(self) -> InstanceSummary:
        """Return the listing row for this instance."""
        return InstanceSummary(self.id, self.kernel, self.timestamp, self.path)


def _check_id(instance_id: str) -> None:
    if (
        not instance_id
        or instance_id.startswith(".")
        or "/" in instance_id
        or "\\" in instance_id
        or instance_id.endswith(INSTANCE_SUFFIX)
    ):
        msg = f"Invalid instance id {instance_id!r}"
        raise InvalidFormatError(msg, subject=instance_id)


class EvidenceStore:
    """Per-kernel instance storage for one project."""

    def __init__(
        self,
        project_root: Path,
        *,
        driver: StorageDriver | None = None,
        logger: Logger | None = None,
    ) -> None:
        """Create a store.

        Args:
            project_root: The project whose kernels are served.
            driver: Byte storage (defaults to the local driver).
            logger: Receives write events and malformed-receipt warnings
                (defaults to the project runtime log).

        """
        self._project_root = project_root
        self._driver = driver or LocalStorageDriver(project_root)
        self._logger = logger or project_logger(project_root)

    @property
    def project_root(self) -> Path:
        """Return the project root."""
        return self._project_root

    def instance_path(self, kernel: str, instance_id: str) -> Path:
        """Return ``concepts/<kernel>/storage/<id>.inst`` (whether or not it exists)."""
        _check_id(instance_id)
        storage_dir = Kernel.load(self._project_root, kernel).storage_dir
        return storage_dir / f"{instance_id}{INSTANCE_SUFFIX}"

    def write_instance(
        self,
        kernel: str,
        payload: Mapping[str, Any],
        instance_id: str | None = None,
    ) -> str:
        """Record a new instance for *kernel*.

        Args:
            kernel: The producing kernel.
            payload: Receipt fields; envelope keys are overwritten.
            instance_id: Explicit id; a fresh ``tx_...`` id if omitted.

        Returns:
            The instance id.

        Raises:
            KernelNotFoundError: If the kernel does not exist.
            InstanceExistsError: If *instance_id* is already taken.
            InvalidFormatError: If the id is invalid or the payload is not
                JSON-serializable.

        """
        owner = Kernel.load(self._project_root, kernel)
        try:
            _encode(dict(payload))
        except (TypeError, ValueError) as exc:
            msg = f"Payload for {owner.name} is not JSON-serializable: {exc}"
            raise InvalidFormatError(msg, subject=owner.name) from exc
        owner.storage_dir.mkdir(parents=True, exist_ok=True)
        attempts = 1 if instance_id is not None else _ID_ATTEMPTS
        for _ in range(attempts):
            candidate = mint_tx_id(owner.name, "Instance") if instance_id is None else instance_id
            _check_id(candidate)
            claimed = owner.storage_dir / f"{candidate}{INSTANCE_SUFFIX}"
            try:
                claimed.mkdir()
            except FileExistsError:
                continue
            break
        else:
            msg = f"Instance {instance_id or candidate} already exists in {owner.name}"
            raise InstanceExistsError(msg, subject=instance_id or candidate)

        timestamp = datetime.now(UTC).isoformat()
        receipt = {**payload, "id": candidate, "kernel": owner.name, "timestamp": timestamp}
        receipt_name = f"{candidate}{INSTANCE_SUFFIX}/{RECEIPT_FILE}"
        receipt_urn = owner.urn.with_stage("storage", receipt_name)
        try:
            self._driver.write_bytes(UrnRef(str(receipt_urn)), _encode(receipt), exclusive=True)
        except (OSError, CkpError):
            # Release the id so a retry can claim it.
            with contextlib.suppress(OSError):
                (claimed / RECEIPT_FILE).unlink(missing_ok=True)
                claimed.rmdir()
            raise
        tx_line = {"txId": candidate, "timestamp": timestamp, "action": "write_instance"}
        self._driver.append_bytes(
            LocalPath(owner.tx_log), (json.dumps(tx_line) + "\n").encode("utf-8")
        )
        self._logger.log(
            LogLevel.INFO, f"wrote instance {candidate}", source=_SOURCE, kernel=owner.name
        )
        return candidate

    def describe_instance(self, kernel: str, instance_id: str) -> InstanceDetail:
        """Return the full receipt of one instance.

        Raises:
            KernelNotFoundError: If the kernel does not exist.
            InstanceNotFoundError: If the instance does not exist.
            InvalidFormatError: If the receipt is unreadable.

        """
        owner = Kernel.load(self._project_root, kernel)
        _check_id(instance_id)
        path = owner.storage_dir / f"{instance_id}{INSTANCE_SUFFIX}"
        try:
            raw = self._driver.read_bytes(LocalPath(path / RECEIPT_FILE))
        except (FileNotFoundError, NotADirectoryError):
            msg = f"Instance {instance_id} not found in {owner.name}"
            raise InstanceNotFoundError(msg, subject=instance_id) from None
        return _detail(owner.name, instance_id, path, raw)

    def iter_instances(self, kernel: str) -> Iterator[InstanceDetail]:
        """Yield every readable instance of *kernel* in listing order."""
        owner = Kernel.load(self._project_root, kernel)
        names = [
            name
            for name in self._driver.list_names(LocalPath(owner.storage_dir))
            if name.endswith(INSTANCE_SUFFIX) and not name.startswith(".")
        ]
        ids = sorted(
            (name.removesuffix(INSTANCE_SUFFIX) for name in names),
            key=lambda i: (i.lower(), i),
        )
        for instance_id in ids:
            path = owner.storage_dir / f"{instance_id}{INSTANCE_SUFFIX}"
            try:
                raw = self._driver.read_bytes(LocalPath(path / RECEIPT_FILE))
                detail = _detail(owner.name, instance_id, path, raw)
            except (OSError, InvalidFormatError) as exc:
                self._logger.log(
                    LogLevel.WARNING,
                    f"skipping unreadable instance {instance_id}: {exc}",
                    source=_SOURCE,
                    kernel=owner.name,
                )
                continue
            yield detail

    def list_instances(self, kernel: str, limit: int = 0) -> list[InstanceSummary]:
        """Return instance summaries in case-insensitive id order.

        Args:
            kernel: The kernel to list.
            limit: Maximum number of rows; 0 means unbounded.

        """
        rows: list[InstanceSummary] = []
        for detail in self.iter_instances(kernel):
            rows.append(detail.summary())
            if limit > 0 and len(rows) >= limit:
                break
        return rows

    def count_instances(self, kernel: str) -> int:
        """Return the number of readable instances of *kernel*."""
        return sum(1 for _ in self.iter_instances(kernel))


def _encode(receipt: dict[str, Any]) -> bytes:
    return (json.dumps(receipt, indent=2) + "\n").encode("utf-8")


def _detail(kernel: str, instance_id: str, path: Path, raw: bytes) -> InstanceDetail:
    try:
        receipt = json.loads(raw)
    except ValueError as exc:
        msg = f"Receipt of {instance_id} is not valid JSON: {exc}"
        raise InvalidFormatError(msg, subject=instance_id) from exc
    if not isinstance(receipt, dict):
        msg = f"Receipt of {instance_id} is not a JSON object"
        raise InvalidFormatError(msg, subject=instance_id)
    return InstanceDetail(
        id=instance_id,
        kernel=str(receipt.get("kernel", kernel)),
        timestamp=str(receipt.get("timestamp", "")),
        path=path,
        receipt=receipt,
    )
