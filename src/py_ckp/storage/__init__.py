"""Evidence storage — immutable instance receipts."""

from py_ckp.storage.evidence import EvidenceStore, InstanceDetail, InstanceSummary

__all__ = ["EvidenceStore", "InstanceDetail", "InstanceSummary"]
