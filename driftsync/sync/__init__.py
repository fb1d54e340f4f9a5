"""Offline-first sync core.

Operation queue, lifecycle state machine, conflict detection and
resolution, metrics, and the engine that runs sync passes.
"""

from .conflicts import ConflictResolver, detect_conflict
from .engine import SyncEngine
from .exceptions import (
    DataIntegrityError,
    InvalidTransitionError,
    NetworkError,
    NetworkErrorType,
    StorageError,
    SyncError,
    SyncInProgressError,
)
from .metrics import SyncMetrics, SyncSample
from .models import (
    BackupData,
    ConflictResolution,
    ConflictType,
    ResolutionStrategy,
    SyncConflict,
    SyncResult,
    SyncResultStatus,
)
from .operation_queue import NetworkOperation, OperationFailure, OperationQueue
from .state import SyncState, SyncStateMachine, SyncStatus

__all__ = [
    "BackupData",
    "ConflictResolution",
    "ConflictResolver",
    "ConflictType",
    "DataIntegrityError",
    "InvalidTransitionError",
    "NetworkError",
    "NetworkErrorType",
    "NetworkOperation",
    "OperationFailure",
    "OperationQueue",
    "ResolutionStrategy",
    "StorageError",
    "SyncConflict",
    "SyncEngine",
    "SyncError",
    "SyncInProgressError",
    "SyncMetrics",
    "SyncResult",
    "SyncResultStatus",
    "SyncSample",
    "SyncState",
    "SyncStateMachine",
    "SyncStatus",
    "detect_conflict",
]
