"""Edge router — deliver a produced instance along its outgoing edges.

``route(instance, kernel)`` looks up the producer's outgoing edges and,
for each delivery edge, links the producer's ``<id>.inst`` directory
into the target's inbox::

    concepts/Consumer/queue/inbox/PRODUCES.Producer/tx_1.inst
        -> ../../../../Producer/storage/tx_1.inst

The target's governor notices the new entry and wakes its tool; the
router itself never waits for that.

Per-edge outcomes:

==================  =====================================================
Status              Meaning
==================  =====================================================
DELIVERED           the link was created
ALREADY_DELIVERED   the link already existed (re-routing is a no-op)
DENIED              the target's queue contract does not list the edge
DEFERRED            a REQUIRES or VALIDATES gate is not yet satisfied
SKIPPED             REQUIRES, VALIDATES and LLM_ASSIST never deliver
FAILED              the target or its inbox could not be reached
==================  =====================================================

Gates:
    - An outgoing ``REQUIRES`` edge S→D holds every delivery of S until
      D has produced at least one instance.
    - An incoming ``VALIDATES`` edge V→S holds every delivery of S until
      V has a receipt whose ``validates`` field names the instance.

A problem with one edge is reported in its ``Delivery`` and never stops
the other edges.  Each routing pass is recorded as an ``EdgeRoute``
occurrent.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from py_ckp.drivers.storage import LocalPath, LocalStorageDriver
from py_ckp.edge.registry import EdgeRegistry
from py_ckp.errors import CkpError, KernelNotFoundError
from py_ckp.kernel import Kernel
from py_ckp.logging import LogLevel, project_logger
from py_ckp.process.occurrent import OccurrentStore, Phase
from py_ckp.storage.evidence import INSTANCE_SUFFIX, EvidenceStore
from py_ckp.urn import Predicate

if TYPE_CHECKING:
    from pathlib import Path

    from py_ckp.edge.registry import Edge
    from py_ckp.logging import Logger
    from py_ckp.project.registry import ProjectRegistry

ROUTE_PROCESS_TYPE = "EdgeRoute"
VALIDATES_FIELD = "validates"

_SOURCE = "router"


class DeliveryStatus(StrEnum):
    """Outcome of routing one instance along one edge."""

    DELIVERED = "delivered"
    ALREADY_DELIVERED = "already_delivered"
    DENIED = "denied"
    DEFERRED = "deferred"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass(frozen=True)
class Delivery:
    """The result for one edge."""

    edge: str
    target: str
    status: DeliveryStatus
    path: Path | None = None
    reason: str = ""

    def to_dict(self) -> dict[str, Any]:
        """Serialize for JSON output and occurrent payloads."""
        return {
            "edge": self.edge,
            "target": self.target,
            "status": str(self.status),
            "path": str(self.path) if self.path else None,
            "reason": self.reason,
        }


@dataclass(frozen=True)
class RoutingOutcome:
    """The result of one ``route`` call."""

    instance: str
    kernel: str
    deliveries: tuple[Delivery, ...]
    process: str

    def with_status(self, status: DeliveryStatus) -> list[Delivery]:
        """Return the deliveries that ended in *status*."""
        return [d for d in self.deliveries if d.status is status]

    @property
    def delivered(self) -> list[Delivery]:
        """Return the deliveries that created a link."""
        return self.with_status(DeliveryStatus.DELIVERED)

    @property
    def failed(self) -> list[Delivery]:
        """Return the deliveries that failed."""
        return self.with_status(DeliveryStatus.FAILED)

    def to_dict(self) -> dict[str, Any]:
        """Serialize for JSON output."""
        return {
            "instance": self.instance,
            "kernel": self.kernel,
            "process": self.process,
            "deliveries": [d.to_dict() for d in self.deliveries],
        }


class EdgeRouter:
    """Routes instances of one project's kernels."""

    def __init__(
        self,
        project_root: Path,
        *,
        edges: EdgeRegistry | None = None,
        projects: ProjectRegistry | None = None,
        occurrents: OccurrentStore | None = None,
        logger: Logger | None = None,
    ) -> None:
        """Create a router.

        Args:
            project_root: The producing project.
            edges: Edge registry (created from *projects* if omitted).
            projects: Project registry for cross-project targets.
            occurrents: Where routing passes are recorded.
            logger: Receives routing events (defaults to the project runtime log).

        """
        self._root = project_root
        self._logger = logger or project_logger(project_root)
        self._edges = edges or EdgeRegistry(project_root, projects=projects, logger=self._logger)
        self._occurrents = occurrents or OccurrentStore(project_root)
        self._evidence = EvidenceStore(project_root, logger=self._logger)

    def route(self, instance_id: str, kernel: str) -> RoutingOutcome:
        """Deliver *instance_id* of *kernel* along every outgoing edge.

        Routing twice is safe: existing links report ALREADY_DELIVERED.

        Raises:
            KernelNotFoundError: If the producer does not exist.
            InstanceNotFoundError: If the instance does not exist.

        """
        source = Kernel.load(self._root, kernel)
        instance = self._evidence.describe_instance(source.name, instance_id)
        edges = self._edges.edges_from(source.name)
        process = self._occurrents.next_process_urn(
            source.name,
            ROUTE_PROCESS_TYPE,
            participants={str(edge.predicate).lower(): edge.target for edge in edges},
            metadata={"instance": instance_id, "edgeCount": len(edges)},
        )
        self._occurrents.append_phase(process, Phase.ACCEPTED)
        self._occurrents.append_phase(
            process, Phase.PROCESSING, {"edges": [str(edge.urn) for edge in edges]}
        )

        hold = self._gate(source, instance_id, edges)
        deliveries = tuple(self._deliver(edge, instance.path, instance_id, hold) for edge in edges)

        counts = {str(s): sum(1 for d in deliveries if d.status is s) for s in DeliveryStatus}
        failed = counts[DeliveryStatus.FAILED] > 0
        self._occurrents.append_phase(
            process,
            Phase.FAILED if failed else Phase.COMPLETED,
            {"counts": counts, "deliveries": [d.to_dict() for d in deliveries]},
        )
        summary = ", ".join(f"{n} {s}" for s, n in counts.items() if n) or "no outgoing edges"
        self._logger.log(
            LogLevel.WARNING if failed else LogLevel.INFO,
            f"routed {instance_id}: {summary}",
            source=_SOURCE,
            kernel=source.name,
        )
        return RoutingOutcome(instance_id, source.name, deliveries, str(process))

    # -- Gates ----------------------------------------------------------------

    def _gate(self, source: Kernel, instance_id: str, edges: list[Edge]) -> str | None:
        """Return why deliveries of *instance_id* must wait, or None."""
        for edge in edges:
            if edge.predicate is not Predicate.REQUIRES:
                continue
            try:
                store = EvidenceStore(self._edges.target_root(edge), logger=self._logger)
                produced = store.count_instances(edge.target)
            except CkpError as exc:
                return f"required kernel {edge.target} is unavailable: {exc}"
            if produced == 0:
                return f"requires an instance of {edge.target}"
        for edge in self._edges.edges_to(source.name):
            if edge.predicate is not Predicate.VALIDATES:
                continue
            if not self._validated_by(edge.source, instance_id):
                return f"awaiting validation by {edge.source}"
        return None

    def _validated_by(self, validator: str, instance_id: str) -> bool:
        try:
            return any(
                detail.receipt.get(VALIDATES_FIELD) == instance_id
                for detail in self._evidence.iter_instances(validator)
            )
        except KernelNotFoundError:
            return False

    # -- Delivery -------------------------------------------------------------

    def _deliver(
        self, edge: Edge, instance_dir: Path, instance_id: str, hold: str | None
    ) -> Delivery:
        urn = str(edge.urn)
        if not edge.delivers:
            return Delivery(urn, edge.target, DeliveryStatus.SKIPPED, reason="does not deliver")
        if hold is not None:
            return Delivery(urn, edge.target, DeliveryStatus.DEFERRED, reason=hold)
        try:
            target_root = self._edges.target_root(edge)
            target = Kernel.load(target_root, edge.target)
        except CkpError as exc:
            return Delivery(urn, edge.target, DeliveryStatus.FAILED, reason=str(exc))
        if not target.allows(urn):
            reason = f"{urn} is not in the queue contract of {target.name}"
            return Delivery(urn, edge.target, DeliveryStatus.DENIED, reason=reason)

        link = target.inbox_dir / edge.directory_name / f"{instance_id}{INSTANCE_SUFFIX}"
        driver = LocalStorageDriver(target_root)
        try:
            driver.create_link(LocalPath(link.absolute()), LocalPath(instance_dir.absolute()))
        except FileExistsError:
            return Delivery(urn, edge.target, DeliveryStatus.ALREADY_DELIVERED, link)
        except OSError as exc:
            return Delivery(urn, edge.target, DeliveryStatus.FAILED, link, reason=str(exc))
        return Delivery(urn, edge.target, DeliveryStatus.DELIVERED, link)
