"""Conflict detection and resolution.

Detection is a pure function of two snapshots and a base reference, so the
same inputs always classify the same way. Resolution persists the chosen
outcome through the local store and drains the conflict from the sync state.
"""

import hashlib
import json
import logging
from datetime import datetime
from typing import TYPE_CHECKING, Any

from ..data.records import (
    PENDING,
    RECORD_TYPES,
    SYNCED,
    strip_metadata,
    to_epoch_ms,
)
from .models import ConflictResolution, ConflictType, ResolutionStrategy, SyncConflict

if TYPE_CHECKING:
    from ..data.database import LocalDatabase
    from .metrics import SyncMetrics
    from .state import SyncStateMachine

logger = logging.getLogger(__name__)


def conflict_id_for(table_name: str, record_id: str, remote: Any) -> str:
    """Derive a stable id from the table, record and remote snapshot."""
    digest = hashlib.sha256(
        json.dumps([table_name, record_id, remote], sort_keys=True, default=str).encode()
    ).hexdigest()
    return f"{table_name}-{record_id}-{digest[:12]}"


def _validate_remote(table_name: str, remote: Any) -> str | None:
    """Return a problem description, or None when the snapshot is usable."""
    if not isinstance(remote, dict):
        return f"remote snapshot is not an object: {type(remote).__name__}"
    if not isinstance(remote.get("id"), str) or not remote["id"]:
        return "remote snapshot has no id"
    try:
        int(remote["last_modified"])
    except (KeyError, TypeError, ValueError):
        return "remote snapshot has no usable last_modified"
    if remote.get("base_modified") is not None:
        try:
            int(remote["base_modified"])
        except (TypeError, ValueError):
            return "remote snapshot has no usable base_modified"
    record_cls = RECORD_TYPES.get(table_name)
    if record_cls is not None:
        try:
            record_cls.from_sync_json(remote)
        except (TypeError, ValueError) as e:
            return f"remote snapshot does not decode: {e}"
    return None


def _base_ms(remote: dict[str, Any], base_reference: datetime | None) -> int | None:
    if remote.get("base_modified") is not None:
        return int(remote["base_modified"])
    if base_reference is not None:
        return to_epoch_ms(base_reference)
    return None


def detect_conflict(
    table_name: str,
    local: dict[str, Any] | None,
    remote: Any,
    base_reference: datetime | None = None,
    detected_at: datetime | None = None,
) -> SyncConflict | None:
    """Classify an incoming remote snapshot against the local copy.

    Args:
        table_name: Table the record lives in.
        local: Local sync JSON, or None if the record is not stored locally.
        remote: Incoming sync JSON. Anything other than a dict is reported
            as invalid data. May carry ``base_modified`` (epoch ms),
            the local version the remote edit was based on.
        base_reference: Fallback base when the remote carries none, usually
            the time of the last successful sync.
        detected_at: Timestamp to stamp on the conflict.

    Returns:
        A SyncConflict, or None when the remote change can be applied as-is.
    """
    detected_at = detected_at or datetime.now()
    remote_id = remote.get("id") if isinstance(remote, dict) else None
    record_id = str(remote_id or (local or {}).get("id") or "unknown")

    def make(conflict_type: ConflictType, description: str) -> SyncConflict:
        return SyncConflict(
            id=conflict_id_for(table_name, record_id, remote),
            table_name=table_name,
            record_id=record_id,
            local_data=dict(local or {}),
            remote_data=dict(remote) if isinstance(remote, dict) else {"raw": remote},
            conflict_time=detected_at,
            type=conflict_type,
            description=description,
        )

    problem = _validate_remote(table_name, remote)
    if problem:
        return make(ConflictType.INVALID_DATA, problem)

    if local is None:
        return None

    if strip_metadata(local) == strip_metadata(remote):
        return None

    # Local copy has no unsynced edits, remote simply moves it forward
    if local.get("sync_status") != PENDING:
        return None

    base = _base_ms(remote, base_reference)
    if base is None:
        return make(
            ConflictType.CREATE,
            "record created on both sides with the same id",
        )

    if int(local["last_modified"]) <= base:
        return None

    local_deleted = bool(local.get("deleted"))
    remote_deleted = bool(remote.get("deleted"))
    if local_deleted and remote_deleted:
        return None
    if local_deleted or remote_deleted:
        side = "locally" if local_deleted else "remotely"
        return make(
            ConflictType.DELETE,
            f"record deleted {side} and edited on the other side",
        )

    changed = sorted(
        key
        for key in set(strip_metadata(local)) | set(strip_metadata(remote))
        if local.get(key) != remote.get(key)
    )
    return make(
        ConflictType.UPDATE,
        f"both sides changed: {', '.join(changed)}",
    )


class ConflictResolver:
    """Builds and applies resolutions for stored conflicts."""

    def __init__(
        self,
        database: "LocalDatabase",
        state: "SyncStateMachine",
        metrics: "SyncMetrics | None" = None,
    ):
        self.database = database
        self.state = state
        self.metrics = metrics

    def build_resolution(
        self,
        conflict: SyncConflict,
        strategy: ResolutionStrategy,
        resolved_data: dict[str, Any] | None = None,
        notes: str | None = None,
    ) -> ConflictResolution:
        """Create a resolution for a conflict.

        Raises:
            ValueError: If the strategy cannot be used for this conflict.
        """
        if strategy == ResolutionStrategy.USE_LOCAL:
            if not conflict.local_data:
                raise ValueError(f"Conflict {conflict.id} has no local copy to keep")
            data = dict(conflict.local_data)
        elif strategy == ResolutionStrategy.USE_REMOTE:
            if conflict.type == ConflictType.INVALID_DATA:
                raise ValueError(
                    f"Conflict {conflict.id} has malformed remote data; "
                    "use the local copy or supply a merged record"
                )
            data = dict(conflict.remote_data)
        elif strategy == ResolutionStrategy.MERGE:
            if not resolved_data:
                raise ValueError("Merge resolution requires a merged payload")
            data = {**resolved_data, "id": conflict.record_id}
        else:
            data = None

        return ConflictResolution(
            conflict_id=conflict.id,
            strategy=strategy,
            resolved_data=data,
            resolution_time=datetime.now(),
            notes=notes,
        )

    def apply(self, resolution: ConflictResolution) -> bool:
        """Apply a resolution.

        Applying the same resolution again leaves the store unchanged.

        Returns:
            True if the store was changed.
        """
        if resolution.strategy == ResolutionStrategy.MANUAL:
            logger.info(f"Conflict {resolution.conflict_id} deferred for manual review")
            return False

        conflict = self.database.get_conflict(resolution.conflict_id)
        if conflict is None:
            raise ValueError(f"Unknown conflict: {resolution.conflict_id}")

        if self.database.is_conflict_resolved(conflict.id):
            logger.debug(f"Conflict {conflict.id} already resolved")
            self.state.remove_conflict(conflict.id)
            return False

        if resolution.strategy == ResolutionStrategy.USE_REMOTE:
            sync_status, touch = SYNCED, False
        else:
            sync_status, touch = PENDING, True

        def body() -> None:
            self.database.save_sync_json(
                conflict.table_name,
                resolution.resolved_data,
                sync_status=sync_status,
                touch=touch,
            )
            self.database.resolve_conflict(resolution)

        self.database.execute_in_transaction(body)

        self.state.remove_conflict(conflict.id)
        self.state.set_pending_changes(self.database.get_pending_changes_count())
        if self.metrics is not None:
            self.metrics.record_resolution(resolution.strategy)
        logger.info(
            f"Resolved conflict {conflict.id} on {conflict.table_name}/"
            f"{conflict.record_id} with {resolution.strategy.value}"
        )
        return True

    def resolve(
        self,
        conflict_id: str,
        strategy: ResolutionStrategy,
        resolved_data: dict[str, Any] | None = None,
        notes: str | None = None,
    ) -> ConflictResolution:
        """Resolve one stored conflict by id."""
        conflict = self.database.get_conflict(conflict_id)
        if conflict is None:
            raise ValueError(f"Unknown conflict: {conflict_id}")
        resolution = self.build_resolution(conflict, strategy, resolved_data, notes)
        self.apply(resolution)
        return resolution

    def resolve_all(self, strategy: ResolutionStrategy) -> list[ConflictResolution]:
        """Resolve every outstanding conflict with one strategy.

        Malformed-data conflicts are left for manual review.
        """
        if strategy == ResolutionStrategy.MERGE:
            raise ValueError("Merge needs a payload per conflict; resolve individually")
        if strategy == ResolutionStrategy.MANUAL:
            return []

        resolutions = []
        for conflict in self.database.get_pending_conflicts():
            if conflict.type == ConflictType.INVALID_DATA:
                logger.info(f"Skipping malformed conflict {conflict.id}")
                continue
            if strategy == ResolutionStrategy.USE_LOCAL and not conflict.local_data:
                logger.info(f"Skipping conflict {conflict.id} without a local copy")
                continue
            resolution = self.build_resolution(conflict, strategy)
            self.apply(resolution)
            resolutions.append(resolution)
        return resolutions
