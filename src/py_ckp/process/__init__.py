"""Process subsystem — liveness records and process occurrents.

Re-exports public symbols so callers can write::

    from py_ckp.process import ProcessTracker, OccurrentStore, Phase
"""

from py_ckp.process.occurrent import Occurrent, OccurrentStore, Phase, TemporalPart, mint_tx_id
from py_ckp.process.tracker import (
    ProcessRecord,
    ProcessRole,
    ProcessTracker,
    StartTimeProbe,
    os_start_time,
)

__all__ = [
    "Occurrent",
    "OccurrentStore",
    "Phase",
    "ProcessRecord",
    "ProcessRole",
    "ProcessTracker",
    "StartTimeProbe",
    "TemporalPart",
    "mint_tx_id",
    "os_start_time",
]
