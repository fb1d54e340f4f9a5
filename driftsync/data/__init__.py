"""Record kinds and local storage.

The SQLite store lives in ``driftsync.data.database``; it depends on the
sync package for conflict detection, so it is not imported here.
"""

from .records import (
    PENDING,
    RECORD_TYPES,
    SYNCED,
    Patient,
    Payment,
    SyncableRecord,
    Visit,
)

__all__ = [
    "PENDING",
    "RECORD_TYPES",
    "SYNCED",
    "Patient",
    "Payment",
    "SyncableRecord",
    "Visit",
]
