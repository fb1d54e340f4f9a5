"""Sync lifecycle state machine.

Exactly one SyncState is live per process. Every transition replaces it
with a new immutable snapshot and publishes that snapshot to subscribers.
"""

import logging
from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Any

from ..events import EventChannel
from .exceptions import InvalidTransitionError, SyncInProgressError

logger = logging.getLogger(__name__)


class SyncStatus(Enum):
    IDLE = "idle"
    SYNCING = "syncing"
    BACKING_UP = "backingUp"
    RESTORING = "restoring"
    ERROR = "error"


ACTIVE_STATUSES = frozenset(
    {SyncStatus.SYNCING, SyncStatus.BACKING_UP, SyncStatus.RESTORING}
)


@dataclass(frozen=True)
class SyncState:
    """Observable snapshot of the sync lifecycle."""

    status: SyncStatus = SyncStatus.IDLE
    progress: float | None = None
    current_operation: str | None = None
    pending_changes: int = 0
    conflicts: tuple[str, ...] = ()
    error_message: str | None = None
    last_sync_time: datetime | None = None
    last_backup_time: datetime | None = None

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    @property
    def has_conflicts(self) -> bool:
        return bool(self.conflicts)

    @property
    def can_manual_sync(self) -> bool:
        """Manual sync is offered only when nothing else is happening."""
        return self.status == SyncStatus.IDLE

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "progress": self.progress,
            "current_operation": self.current_operation,
            "pending_changes": self.pending_changes,
            "conflicts": list(self.conflicts),
            "error_message": self.error_message,
            "last_sync_time": (
                self.last_sync_time.isoformat() if self.last_sync_time else None
            ),
            "last_backup_time": (
                self.last_backup_time.isoformat() if self.last_backup_time else None
            ),
        }


class SyncStateMachine:
    """Owns the live SyncState and enforces allowed transitions.

    idle -> syncing | backingUp | restoring -> idle
    any active status -> error -> idle (only via reset)
    """

    def __init__(self, initial: SyncState | None = None):
        self._state = initial or SyncState()
        self.changes: EventChannel[SyncState] = EventChannel("sync_state")

    @property
    def state(self) -> SyncState:
        return self._state

    def _set(self, new_state: SyncState) -> SyncState:
        previous = self._state
        self._state = new_state
        if previous.status != new_state.status:
            logger.debug(f"Sync state {previous.status.value} -> {new_state.status.value}")
        self.changes.publish(new_state)
        return new_state

    def begin(self, status: SyncStatus, operation: str | None = None) -> SyncState:
        """Enter an active status.

        Raises:
            SyncInProgressError: If the machine is not idle.
            InvalidTransitionError: If status is not an active status.
        """
        if status not in ACTIVE_STATUSES:
            raise InvalidTransitionError(self._state.status.value, status.value)
        if self._state.status != SyncStatus.IDLE:
            raise SyncInProgressError(self._state.status.value)
        return self._set(
            replace(
                self._state,
                status=status,
                progress=0.0,
                current_operation=operation,
                error_message=None,
            )
        )

    def update_progress(self, progress: float, operation: str | None = None) -> SyncState:
        """Report progress of the active operation.

        Values are clamped to [0, 1] and never move backwards.
        """
        if not self._state.is_active:
            raise InvalidTransitionError(self._state.status.value, "progress")
        clamped = min(max(progress, 0.0), 1.0)
        current = self._state.progress or 0.0
        return self._set(
            replace(
                self._state,
                progress=max(current, clamped),
                current_operation=operation or self._state.current_operation,
            )
        )

    def complete(self) -> SyncState:
        """Leave the active status successfully and return to idle."""
        if not self._state.is_active:
            raise InvalidTransitionError(self._state.status.value, SyncStatus.IDLE.value)
        now = datetime.now()
        finished = self._state.status
        return self._set(
            replace(
                self._state,
                status=SyncStatus.IDLE,
                progress=None,
                current_operation=None,
                last_sync_time=(
                    now if finished == SyncStatus.SYNCING else self._state.last_sync_time
                ),
                last_backup_time=(
                    now
                    if finished == SyncStatus.BACKING_UP
                    else self._state.last_backup_time
                ),
            )
        )

    def fail(self, message: str) -> SyncState:
        """Abandon the active operation and enter the error status."""
        if not self._state.is_active:
            raise InvalidTransitionError(self._state.status.value, SyncStatus.ERROR.value)
        logger.error(f"{self._state.status.value} failed: {message}")
        return self._set(
            replace(
                self._state,
                status=SyncStatus.ERROR,
                progress=None,
                current_operation=None,
                error_message=message,
            )
        )

    def reset(self) -> SyncState:
        """Acknowledge an error and return to idle."""
        if self._state.status == SyncStatus.IDLE:
            return self._state
        if self._state.status != SyncStatus.ERROR:
            raise InvalidTransitionError(self._state.status.value, SyncStatus.IDLE.value)
        return self._set(replace(self._state, status=SyncStatus.IDLE, error_message=None))

    def set_pending_changes(self, count: int) -> SyncState:
        if count == self._state.pending_changes:
            return self._state
        return self._set(replace(self._state, pending_changes=count))

    def add_conflicts(self, conflict_ids: list[str]) -> SyncState:
        new_ids = [cid for cid in conflict_ids if cid not in self._state.conflicts]
        if not new_ids:
            return self._state
        return self._set(
            replace(self._state, conflicts=self._state.conflicts + tuple(new_ids))
        )

    def remove_conflict(self, conflict_id: str) -> SyncState:
        if conflict_id not in self._state.conflicts:
            return self._state
        return self._set(
            replace(
                self._state,
                conflicts=tuple(c for c in self._state.conflicts if c != conflict_id),
            )
        )

    def restore_times(
        self,
        last_sync_time: datetime | None,
        last_backup_time: datetime | None = None,
    ) -> SyncState:
        """Seed persisted timestamps at startup."""
        return self._set(
            replace(
                self._state,
                last_sync_time=last_sync_time,
                last_backup_time=last_backup_time,
            )
        )
